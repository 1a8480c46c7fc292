from enum import Enum


class IssueStatus(str, Enum):
    OPEN = "open"
    DIAGNOSED = "diagnosed"
    EXPERT_REPLY = "expert_reply"
    PAYMENT_NEEDED = "payment_needed"
    CONSULTATION_PAID = "consultation_paid"
    CLOSED = "closed"

    @property
    def is_terminal(self) -> bool:
        return self is IssueStatus.CLOSED

    @property
    def rank(self) -> int:
        return STATUS_ORDER.index(self)

    @classmethod
    def normalize(cls, raw: "str | IssueStatus") -> "IssueStatus":
        """
        Map any spelling older clients stored ("Open", "Expert Replied",
        "pending", ...) onto the canonical value.

        Raises ValueError for strings that are not a known status at all.
        """
        if isinstance(raw, IssueStatus):
            return raw
        key = " ".join(str(raw).strip().lower().replace("_", " ").split())
        try:
            return _LEGACY_ALIASES[key]
        except KeyError:
            raise ValueError(f"Unknown issue status: {raw!r}") from None


STATUS_ORDER = [
    IssueStatus.OPEN,
    IssueStatus.DIAGNOSED,
    IssueStatus.EXPERT_REPLY,
    IssueStatus.PAYMENT_NEEDED,
    IssueStatus.CONSULTATION_PAID,
    IssueStatus.CLOSED,
]

_LEGACY_ALIASES = {
    "open": IssueStatus.OPEN,
    "pending": IssueStatus.OPEN,
    "diagnosed": IssueStatus.DIAGNOSED,
    "expert reply": IssueStatus.EXPERT_REPLY,
    "expert replied": IssueStatus.EXPERT_REPLY,
    "payment needed": IssueStatus.PAYMENT_NEEDED,
    "consultation paid": IssueStatus.CONSULTATION_PAID,
    "closed": IssueStatus.CLOSED,
}
