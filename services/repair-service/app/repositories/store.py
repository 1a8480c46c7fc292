from typing import Dict, List, Optional, Protocol

from sqlalchemy import or_, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.errors import Conflict
from app.core.status import IssueStatus
from app.models.issue import Feedback, Issue, Message, Payment, Profile, StatusChange


class RepairStore(Protocol):
    """
    Persistence seam for the lifecycle manager.

    Writes are staged until commit(); rollback() discards everything staged
    since the last commit.
    """

    def get_profile(self, profile_id: str) -> Optional[Profile]: ...
    def add_profile(self, profile: Profile) -> None: ...

    def get_issue(self, issue_id: str) -> Optional[Issue]: ...
    def get_issue_for_update(self, issue_id: str) -> Optional[Issue]:
        """Latest committed row, locked until the next commit or rollback."""
        ...
    def add_issue(self, issue: Issue) -> None: ...
    def list_issues(
        self,
        owner_id: Optional[str] = None,
        status: Optional[IssueStatus] = None,
        device_type: Optional[str] = None,
        search: Optional[str] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> List[Issue]: ...

    def add_message(self, message: Message) -> None: ...
    def list_messages(self, issue_id: str) -> List[Message]: ...

    def add_payment(self, payment: Payment) -> None: ...
    def list_payments(self, issue_id: str) -> List[Payment]: ...

    def add_feedback(self, feedback: Feedback) -> None: ...
    def list_feedback(self, issue_id: str) -> List[Feedback]: ...

    def add_status_change(self, change: StatusChange) -> None: ...
    def list_status_changes(self, issue_id: str) -> List[StatusChange]: ...

    def commit(self) -> None: ...
    def rollback(self) -> None: ...


class SqlRepairStore:
    def __init__(self, db: Session):
        self.db = db

    def get_profile(self, profile_id: str) -> Optional[Profile]:
        return self.db.get(Profile, profile_id)

    def add_profile(self, profile: Profile) -> None:
        self.db.add(profile)

    def get_issue(self, issue_id: str) -> Optional[Issue]:
        return self.db.get(Issue, issue_id)

    def get_issue_for_update(self, issue_id: str) -> Optional[Issue]:
        # populate_existing: a row cached in this session may be stale.
        return (
            self.db.query(Issue)
            .filter(Issue.id == issue_id)
            .with_for_update()
            .populate_existing()
            .one_or_none()
        )

    def add_issue(self, issue: Issue) -> None:
        self.db.add(issue)

    def list_issues(self, owner_id=None, status=None, device_type=None, search=None, skip=0, limit=100) -> List[Issue]:
        query = self.db.query(Issue)

        if owner_id is not None:
            query = query.filter(Issue.owner_id == owner_id)
        if status is not None:
            query = query.filter(Issue.status == status)
        if device_type is not None:
            query = query.filter(Issue.device_type == device_type)
        if search:
            pattern = f"%{search}%"
            query = query.filter(or_(Issue.description.ilike(pattern), Issue.device_type.ilike(pattern)))

        return query.order_by(Issue.created_at.desc()).offset(skip).limit(limit).all()

    def add_message(self, message: Message) -> None:
        self.db.add(message)

    def list_messages(self, issue_id: str) -> List[Message]:
        return (
            self.db.query(Message)
            .filter(Message.issue_id == issue_id)
            .order_by(Message.created_at.asc())
            .all()
        )

    def add_payment(self, payment: Payment) -> None:
        self.db.add(payment)

    def list_payments(self, issue_id: str) -> List[Payment]:
        return (
            self.db.query(Payment)
            .filter(Payment.issue_id == issue_id)
            .order_by(Payment.created_at.asc())
            .all()
        )

    def add_feedback(self, feedback: Feedback) -> None:
        self.db.add(feedback)

    def list_feedback(self, issue_id: str) -> List[Feedback]:
        return (
            self.db.query(Feedback)
            .filter(Feedback.issue_id == issue_id)
            .order_by(Feedback.created_at.asc())
            .all()
        )

    def add_status_change(self, change: StatusChange) -> None:
        self.db.add(change)

    def list_status_changes(self, issue_id: str) -> List[StatusChange]:
        return (
            self.db.query(StatusChange)
            .filter(StatusChange.issue_id == issue_id)
            .order_by(StatusChange.timestamp.asc())
            .all()
        )

    def commit(self) -> None:
        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            raise Conflict("The change clashes with one committed concurrently.") from exc

    def rollback(self) -> None:
        self.db.rollback()


_MUTABLE_ISSUE_FIELDS = ("status", "diagnosis", "assisted_mode", "updated_at")


class InMemoryRepairStore:
    """
    Dict-backed store for unit tests and local experiments.

    Committed issues handed out since the last commit are snapshotted, so
    rollback() undoes in-place edits as well as staged inserts.
    """

    def __init__(self):
        self.profiles: Dict[str, Profile] = {}
        self.issues: Dict[str, Issue] = {}
        self.messages: List[Message] = []
        self.payments: List[Payment] = []
        self.feedback: List[Feedback] = []
        self.status_changes: List[StatusChange] = []
        self._pending: List[object] = []
        self._before: Dict[str, Dict[str, object]] = {}
        self.commits = 0

    def get_profile(self, profile_id: str) -> Optional[Profile]:
        return self.profiles.get(profile_id) or self._staged(Profile, profile_id)

    def add_profile(self, profile: Profile) -> None:
        self._pending.append(profile)

    def get_issue(self, issue_id: str) -> Optional[Issue]:
        issue = self.issues.get(issue_id)
        if issue is None:
            return self._staged(Issue, issue_id)
        if issue_id not in self._before:
            self._before[issue_id] = {name: getattr(issue, name) for name in _MUTABLE_ISSUE_FIELDS}
        return issue

    def get_issue_for_update(self, issue_id: str) -> Optional[Issue]:
        return self.get_issue(issue_id)

    def add_issue(self, issue: Issue) -> None:
        self._pending.append(issue)

    def list_issues(self, owner_id=None, status=None, device_type=None, search=None, skip=0, limit=100) -> List[Issue]:
        issues = list(self.issues.values())
        if owner_id is not None:
            issues = [i for i in issues if i.owner_id == owner_id]
        if status is not None:
            issues = [i for i in issues if IssueStatus.normalize(i.status) is status]
        if device_type is not None:
            issues = [i for i in issues if i.device_type == device_type]
        if search:
            needle = search.lower()
            issues = [i for i in issues if needle in i.description.lower() or needle in i.device_type.lower()]
        issues.sort(key=lambda i: i.created_at, reverse=True)
        return issues[skip:skip + limit]

    def add_message(self, message: Message) -> None:
        self._pending.append(message)

    def list_messages(self, issue_id: str) -> List[Message]:
        return sorted((m for m in self.messages if m.issue_id == issue_id), key=lambda m: m.created_at)

    def add_payment(self, payment: Payment) -> None:
        self._pending.append(payment)

    def list_payments(self, issue_id: str) -> List[Payment]:
        return [p for p in self.payments if p.issue_id == issue_id]

    def add_feedback(self, feedback: Feedback) -> None:
        self._pending.append(feedback)

    def list_feedback(self, issue_id: str) -> List[Feedback]:
        return [f for f in self.feedback if f.issue_id == issue_id]

    def add_status_change(self, change: StatusChange) -> None:
        self._pending.append(change)

    def list_status_changes(self, issue_id: str) -> List[StatusChange]:
        return [c for c in self.status_changes if c.issue_id == issue_id]

    def commit(self) -> None:
        for record in self._pending:
            if isinstance(record, Profile):
                self.profiles[record.id] = record
            elif isinstance(record, Issue):
                self.issues[record.id] = record
            elif isinstance(record, Message):
                self.messages.append(record)
            elif isinstance(record, Payment):
                self.payments.append(record)
            elif isinstance(record, Feedback):
                self.feedback.append(record)
            elif isinstance(record, StatusChange):
                self.status_changes.append(record)
        self._pending = []
        self._before = {}
        self.commits += 1

    def rollback(self) -> None:
        for issue_id, fields in self._before.items():
            issue = self.issues[issue_id]
            for name, value in fields.items():
                setattr(issue, name, value)
        self._pending = []
        self._before = {}

    def _staged(self, kind, record_id: str):
        for record in self._pending:
            if isinstance(record, kind) and record.id == record_id:
                return record
        return None


def normalize_legacy_statuses(db: Session) -> int:
    """
    Rewrite issue rows still carrying legacy status spellings ("Open",
    "Expert Replied", "pending", ...) to their canonical value. Idempotent.
    """
    changed = 0
    for issue_id, raw in db.execute(text("SELECT id, status FROM issues")).all():
        canonical = IssueStatus.normalize(raw).value
        if raw != canonical:
            db.execute(text("UPDATE issues SET status = :status WHERE id = :id"), {"status": canonical, "id": issue_id})
            changed += 1
    db.commit()
    return changed
