from datetime import datetime
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.core.status import IssueStatus


class DeviceType(str, Enum):
    FAN = "Fan"
    LAPTOP = "Laptop"
    AC = "AC"
    WASHING_MACHINE = "Washing Machine"
    KITCHEN_APPLIANCE = "Kitchen Appliance"
    REFRIGERATOR = "Refrigerator"
    TELEVISION = "Television"
    WATER_HEATER = "Water Heater"
    OTHER = "Other"


class MediaKind(str, Enum):
    PHOTO = "photo"
    VIDEO = "video"


class Sender(str, Enum):
    SUBMITTER = "submitter"
    EXPERT = "expert"
    SYSTEM = "system"


class Capability(str, Enum):
    SUBMITTER = "submitter"
    EXPERT = "expert"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class RecommendedAction(str, Enum):
    SELF_FIX = "self fix"
    REMOTE_CONSULT = "remote consult"
    ON_SITE = "on site"


_ACTION_ALIASES = {
    "selffix": RecommendedAction.SELF_FIX,
    "diy": RecommendedAction.SELF_FIX,
    "remote": RecommendedAction.REMOTE_CONSULT,
    "remote consultation": RecommendedAction.REMOTE_CONSULT,
    "onsite": RecommendedAction.ON_SITE,
    "on site visit": RecommendedAction.ON_SITE,
}


class Diagnosis(BaseModel):
    device_type: str = Field(..., description="Device the diagnosis believes it is looking at.")
    likely_causes: List[str] = Field(..., description="Most likely causes, most likely first.")
    safety_warning: str = Field(..., description="Safety note shown before any troubleshooting.")
    troubleshooting_steps: List[str] = Field(..., description="Ordered steps for the user to try.")
    recommended_action: RecommendedAction = Field(..., description="self fix, remote consult or on site.")
    estimated_cost: str = Field(..., description="Free-text cost estimate, e.g. '₹500-₹1500'.")

    model_config = ConfigDict(frozen=True)

    @field_validator("recommended_action", mode="before")
    @classmethod
    def _normalize_action(cls, value: Any) -> Any:
        if isinstance(value, RecommendedAction) or not isinstance(value, str):
            return value
        key = " ".join(value.strip().lower().replace("-", " ").replace("_", " ").split())
        return _ACTION_ALIASES.get(key, _ACTION_ALIASES.get(key.replace(" ", ""), key))

    def summary(self) -> str:
        return f"AI Diagnosis Complete. Recommended Action: {self.recommended_action.value}"


class ProfileCreate(BaseModel):
    display_name: str = Field(..., min_length=1, description="Name shown to other participants.")
    email: Optional[str] = None
    phone: Optional[str] = None
    capability: Capability = Field(Capability.SUBMITTER, description="Explicit role, fixed at provisioning time.")


class ProfileResponse(BaseModel):
    id: str
    display_name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    capability: Capability
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class IssueCreate(BaseModel):
    description: str = Field(..., description="What is wrong, in the user's words.")
    device_type: str = Field(..., description="One of the supported device categories, or 'Other'.")
    media_url: str = Field(..., description="Stable URL returned by the media store.")
    media_kind: MediaKind = Field(MediaKind.PHOTO, description="photo or video.")


class IssueResponse(BaseModel):
    id: str
    owner_id: str
    description: str
    device_type: str
    media_url: str
    media_kind: MediaKind
    diagnosis: Optional[Diagnosis] = None
    status: IssueStatus
    assisted_mode: bool
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class IssueCreated(BaseModel):
    issue: IssueResponse
    diagnosis_error: Optional[str] = Field(None, description="Set when the issue was saved but could not be analysed yet.")


class DeviceDetectRequest(BaseModel):
    media_url: str


class DeviceDetectResponse(BaseModel):
    device_type: DeviceType
    description: str = ""


class MessageCreate(BaseModel):
    text: str = Field(..., description="Message body.")
    attachment_url: Optional[str] = None


class MessageResponse(BaseModel):
    id: str
    issue_id: str
    sender: Sender
    text: str
    attachment_url: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ReplyOutcome(BaseModel):
    message: MessageResponse
    auto_reply: Optional[MessageResponse] = None
    auto_reply_error: Optional[str] = Field(None, description="Set when the automated responder failed; retry via /auto-reply.")


class PaymentCreate(BaseModel):
    amount_minor_units: int = Field(..., description="Amount in minor currency units (paise/cents).")


class PaymentResponse(BaseModel):
    id: str
    issue_id: str
    payer_id: str
    amount_minor_units: int
    currency: str
    status: PaymentStatus
    provider_reference: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class FeedbackCreate(BaseModel):
    rating: int = Field(..., description="1 to 5.")
    comment: Optional[str] = None


class FeedbackResponse(BaseModel):
    id: str
    issue_id: str
    user_id: str
    rating: int
    comment: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class StatusChangeResponse(BaseModel):
    id: str
    issue_id: str
    actor: str
    action: str
    previous_status: Optional[IssueStatus] = None
    new_status: IssueStatus
    reason: Optional[str] = None
    timestamp: datetime

    model_config = ConfigDict(from_attributes=True)


class IssueSnapshot(BaseModel):
    issue: IssueResponse
    messages: List[MessageResponse] = []


class CloseRequest(BaseModel):
    reason: Optional[str] = Field(None, description="Why the expert is closing the issue.")
