from uuid import uuid4

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.sql import expression
from sqlalchemy.types import TypeDecorator

from app.core.db import Base
from app.core.status import IssueStatus
from app.core.timeutil import utcnow


def new_id() -> str:
    return str(uuid4())


class StatusType(TypeDecorator):
    """
    Stores IssueStatus as its canonical string.

    Legacy rows written as "Open" / "Expert Replied" / "pending" are normalised
    on the way out, so nothing above the storage layer ever branches on casing.
    """

    impl = String(50)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return IssueStatus.normalize(value).value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return IssueStatus.normalize(value)


class Profile(Base):
    __tablename__ = "profiles"

    id = Column(String(36), primary_key=True, default=new_id)
    display_name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True, index=True)
    phone = Column(String(32), nullable=True)
    # Set when the account is provisioned; never derived from the email.
    capability = Column(String(20), nullable=False, default="submitter")
    created_at = Column(DateTime, default=utcnow)


class Issue(Base):
    __tablename__ = "issues"

    id = Column(String(36), primary_key=True, default=new_id)
    owner_id = Column(String(36), ForeignKey("profiles.id"), nullable=False, index=True)
    description = Column(Text, nullable=False)
    device_type = Column(String(50), nullable=False, index=True)
    media_url = Column(Text, nullable=False)
    media_kind = Column(String(10), nullable=False)
    diagnosis = Column(JSON, nullable=True)
    status = Column(StatusType, nullable=False, default=IssueStatus.OPEN, index=True)
    assisted_mode = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Message(Base):
    """
    Append-only chat entry. Rows are never updated or deleted.
    """
    __tablename__ = "messages"

    id = Column(String(36), primary_key=True, default=new_id)
    issue_id = Column(String(36), ForeignKey("issues.id", ondelete="CASCADE"), nullable=False, index=True)
    sender = Column(String(20), nullable=False)
    text = Column(Text, nullable=False)
    attachment_url = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (
        # At most one completed payment per issue.
        Index(
            "uq_payments_completed_issue",
            "issue_id",
            unique=True,
            postgresql_where=expression.text("status = 'completed'"),
            sqlite_where=expression.text("status = 'completed'"),
        ),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    issue_id = Column(String(36), ForeignKey("issues.id", ondelete="CASCADE"), nullable=False, index=True)
    payer_id = Column(String(36), ForeignKey("profiles.id"), nullable=False)
    amount_minor_units = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="INR")
    status = Column(String(20), nullable=False, default="pending")
    provider_reference = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=utcnow)


class Feedback(Base):
    __tablename__ = "feedback"

    id = Column(String(36), primary_key=True, default=new_id)
    issue_id = Column(String(36), ForeignKey("issues.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(36), ForeignKey("profiles.id"), nullable=False)
    rating = Column(Integer, nullable=False)
    comment = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class StatusChange(Base):
    """
    Immutable audit record of one issue status transition.
    """
    __tablename__ = "status_changes"

    id = Column(String(36), primary_key=True, default=new_id)
    issue_id = Column(String(36), ForeignKey("issues.id", ondelete="CASCADE"), nullable=False, index=True)
    actor = Column(String(255), nullable=False)
    action = Column(String(100), nullable=False)
    previous_status = Column(StatusType, nullable=True)
    new_status = Column(StatusType, nullable=False)
    reason = Column(Text, nullable=True)
    timestamp = Column(DateTime, default=utcnow, index=True)
