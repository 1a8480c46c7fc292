from datetime import datetime
from typing import List, Optional

from app.core.errors import NotFound, ValidationError
from app.core.timeutil import utcnow
from app.models.issue import Message, new_id
from app.schemas.issue import Sender


class MessageLog:
    """
    Append-only, per-issue chat history.

    There is no edit or delete: the log doubles as the audit trail of what
    every participant was told. append() stages the row; the caller commits.
    """

    def __init__(self, store):
        self.store = store

    def append(
        self,
        issue_id: str,
        sender: "Sender | str",
        text: str,
        attachment_url: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> Message:
        try:
            sender = Sender(sender)
        except ValueError:
            raise ValidationError(f"Unknown sender: {sender!r}") from None
        if text is None or not text.strip():
            raise ValidationError("Message text must not be empty.")
        if self.store.get_issue(issue_id) is None:
            raise NotFound(f"Issue {issue_id} not found")

        message = Message(
            id=new_id(),
            issue_id=issue_id,
            sender=sender.value,
            text=text.strip(),
            attachment_url=attachment_url,
            created_at=created_at or utcnow(),
        )
        self.store.add_message(message)
        return message

    def list_for(self, issue_id: str) -> List[Message]:
        """Full history, oldest first. Safe to call repeatedly."""
        if self.store.get_issue(issue_id) is None:
            raise NotFound(f"Issue {issue_id} not found")
        # IDs are random; creation time is the only meaningful order.
        return sorted(self.store.list_messages(issue_id), key=lambda m: m.created_at)
