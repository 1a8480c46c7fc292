import json
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, List, Optional, Protocol, Tuple

import httpx
import pydantic
import structlog

from app.core.config import settings
from app.core.errors import LifecycleError, MalformedResponse, UpstreamError
from app.schemas.issue import DeviceType, Diagnosis, RecommendedAction

log = structlog.get_logger(__name__)

# Shown when the model answered but not with a usable diagnosis.
FALLBACK_DIAGNOSIS = Diagnosis(
    device_type="Unknown",
    likely_causes=["Could not analyze image", "Please try again"],
    safety_warning="Please proceed with caution.",
    troubleshooting_steps=["Contact support if issue persists"],
    recommended_action=RecommendedAction.REMOTE_CONSULT,
    estimated_cost="Unknown",
)

DIAGNOSIS_PROMPT = """
You are a home appliance and household repair expert.
Analyze the provided image/video and description: "{description}"

Return your answer in this exact JSON format:
{{
  "device_type": "string",
  "likely_causes": ["string", "string", "string"],
  "safety_warning": "string",
  "troubleshooting_steps": ["string", "string", "string"],
  "recommended_action": "self fix" | "remote consult" | "on site",
  "estimated_cost": "string (INR)"
}}

Be concise, simple, and beginner-friendly.
"""

DETECT_PROMPT = """
Identify the home appliance in this image.
Also, briefly describe any visible damage or the state of the appliance (e.g., "Washing machine with error code E4", "AC unit leaking water").

Return ONLY a JSON object:
{{
  "device_type": {choices},
  "description": "string"
}}
"""

_FENCE = re.compile(r"```(?:json)?", re.IGNORECASE)
_THINK = re.compile(r"<think>.*?</think>", re.DOTALL)


@dataclass(frozen=True)
class ChatTurn:
    role: str  # system | user | assistant
    content: str


class DiagnosisProducer(Protocol):
    def diagnose(self, media_url: str, description: str) -> Diagnosis: ...


class ChatReplyProducer(Protocol):
    def reply(self, conversation: List[ChatTurn]) -> str: ...


class DeviceDetector(Protocol):
    def detect_device(self, media_url: str) -> Tuple[DeviceType, str]: ...


def strip_code_fences(content: str) -> str:
    return _FENCE.sub("", content).strip()


def strip_reasoning(content: str) -> str:
    return _THINK.sub("", content).strip()


def parse_diagnosis(content: str) -> Diagnosis:
    try:
        return Diagnosis.model_validate(json.loads(strip_code_fences(content)))
    except (ValueError, TypeError, pydantic.ValidationError) as exc:
        raise MalformedResponse("The diagnosis model returned an unreadable answer.") from exc


class InferenceClient:
    """
    Chat-completions client for an OpenRouter-compatible endpoint.

    Every call carries an explicit timeout. Transport failures and non-2xx
    answers surface as UpstreamError; answers in the wrong shape surface as
    MalformedResponse. Nothing here touches issue state.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        diagnosis_model: str,
        chat_model: str,
        timeout_seconds: float = 30.0,
        site_url: Optional[str] = None,
        site_name: Optional[str] = None,
        http_client: Optional[httpx.Client] = None,
    ):
        self.diagnosis_model = diagnosis_model
        self.chat_model = chat_model
        headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }
        if site_url:
            headers["HTTP-Referer"] = site_url
        if site_name:
            headers["X-Title"] = site_name

        self._owns_http_client = http_client is None
        self._http = http_client or httpx.Client(
            base_url=base_url.rstrip("/") + "/",
            headers=headers,
            timeout=httpx.Timeout(timeout_seconds),
        )

    def close(self) -> None:
        if self._owns_http_client:
            self._http.close()

    def _complete(self, model: str, messages: List[Dict[str, Any]]) -> str:
        try:
            response = self._http.post("chat/completions", json={"model": model, "messages": messages})
        except httpx.TimeoutException as exc:
            log.warning("inference.timeout", model=model)
            raise UpstreamError("The AI service took too long to answer.", hint="Please try again.") from exc
        except httpx.HTTPError as exc:
            log.warning("inference.transport_error", model=model, error=str(exc))
            raise UpstreamError("Could not reach the AI service.", hint="Please try again.") from exc

        if response.status_code >= 400:
            log.warning("inference.http_error", model=model, status_code=response.status_code)
            raise UpstreamError(f"The AI service answered with HTTP {response.status_code}.", hint="Please try again.")

        try:
            content = response.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise MalformedResponse("The AI service returned an unexpected response.") from exc
        if not isinstance(content, str):
            raise MalformedResponse("The AI service returned an unexpected response.")
        return content

    def diagnose(self, media_url: str, description: str) -> Diagnosis:
        content = self._complete(self.diagnosis_model, [{
            "role": "user",
            "content": [
                {"type": "text", "text": DIAGNOSIS_PROMPT.format(description=description)},
                {"type": "image_url", "image_url": {"url": media_url}},
            ],
        }])
        return parse_diagnosis(content)

    def reply(self, conversation: List[ChatTurn]) -> str:
        content = self._complete(self.chat_model, [{"role": t.role, "content": t.content} for t in conversation])
        text = strip_reasoning(content)
        if not text:
            raise MalformedResponse("The AI expert returned an empty reply.")
        return text

    def detect_device(self, media_url: str) -> Tuple[DeviceType, str]:
        choices = " | ".join(f'"{d.value}"' for d in DeviceType)
        try:
            content = self._complete(self.diagnosis_model, [{
                "role": "user",
                "content": [
                    {"type": "text", "text": DETECT_PROMPT.format(choices=choices)},
                    {"type": "image_url", "image_url": {"url": media_url}},
                ],
            }])
            data = json.loads(strip_code_fences(content))
            return DeviceType(data.get("device_type")), str(data.get("description") or "")
        except (LifecycleError, ValueError, TypeError, AttributeError):
            log.info("inference.detect_device_fallback")
            return DeviceType.OTHER, ""


class DisabledInference:
    """No inference endpoint configured."""

    def diagnose(self, media_url: str, description: str) -> Diagnosis:
        raise UpstreamError(
            "Automated diagnosis is not configured.",
            hint="Set INFERENCE_API_KEY to enable it.",
        )

    def reply(self, conversation: List[ChatTurn]) -> str:
        raise UpstreamError(
            "The automated expert is not configured.",
            hint="Set INFERENCE_API_KEY to enable it.",
        )

    def detect_device(self, media_url: str) -> Tuple[DeviceType, str]:
        return DeviceType.OTHER, ""


@lru_cache(maxsize=1)
def get_inference():
    """FastAPI dependency returning the process-wide inference client."""
    if not settings.INFERENCE_API_KEY:
        return DisabledInference()
    return InferenceClient(
        base_url=settings.INFERENCE_BASE_URL,
        api_key=settings.INFERENCE_API_KEY,
        diagnosis_model=settings.DIAGNOSIS_MODEL,
        chat_model=settings.CHAT_MODEL,
        timeout_seconds=settings.INFERENCE_TIMEOUT_SECONDS,
        site_url=settings.SITE_URL,
        site_name=settings.SITE_NAME,
    )
