import json
from typing import List, Optional

import structlog

from app.core.errors import MalformedResponse, UpstreamError
from app.core.lifecycle import IssueLifecycle
from app.core.status import IssueStatus
from app.models.issue import Issue, Message
from app.schemas.issue import Sender
from app.services.inference import FALLBACK_DIAGNOSIS, ChatReplyProducer, ChatTurn, DiagnosisProducer

log = structlog.get_logger(__name__)


def diagnose_issue(lifecycle: IssueLifecycle, producer: DiagnosisProducer, issue_id: str) -> Issue:
    """
    Ask the diagnosis producer about an issue and attach the answer.

    A malformed answer attaches the generic fallback diagnosis. Any other
    provider failure is re-raised as UpstreamError with the issue untouched,
    so the caller can offer a retry.
    """
    issue = lifecycle.get_issue(issue_id)
    lifecycle.fsm.ensure_mutable(issue)

    try:
        diagnosis = producer.diagnose(issue.media_url, issue.description)
    except MalformedResponse:
        log.warning("assistant.diagnosis_malformed", issue_id=issue_id)
        diagnosis = FALLBACK_DIAGNOSIS
    except UpstreamError as exc:
        log.warning("assistant.diagnosis_failed", issue_id=issue_id, error=exc.detail)
        raise

    # Re-checked inside attach_diagnosis: the issue may have closed meanwhile.
    return lifecycle.attach_diagnosis(issue_id, diagnosis)


def build_conversation(issue: Issue, messages: List[Message]) -> List[ChatTurn]:
    context = (
        f"You are a helpful home repair expert. The user has an issue with their {issue.device_type}. "
        f"Description: {issue.description}. AI Diagnosis: {json.dumps(issue.diagnosis)}"
    )
    turns = [ChatTurn(role="system", content=context)]
    for message in messages:
        role = "user" if message.sender == Sender.SUBMITTER.value else "assistant"
        turns.append(ChatTurn(role=role, content=message.text))
    return turns


def should_auto_reply(issue: Issue) -> bool:
    return bool(issue.assisted_mode) and not IssueStatus.normalize(issue.status).is_terminal


def auto_reply(lifecycle: IssueLifecycle, producer: ChatReplyProducer, issue_id: str) -> Optional[Message]:
    """
    Let the automated responder answer the thread, if it is still in charge.

    Returns None when a human expert has taken over. UpstreamError from the
    producer propagates and nothing is written.
    """
    issue = lifecycle.get_issue(issue_id)
    if not should_auto_reply(issue):
        return None

    conversation = build_conversation(issue, lifecycle.list_messages(issue_id))
    text = producer.reply(conversation)
    return lifecycle.record_assistant_reply(issue_id, text)
