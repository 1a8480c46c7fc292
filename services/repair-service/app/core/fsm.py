from typing import Dict, List, Optional

from app.core.errors import Conflict
from app.core.status import STATUS_ORDER, IssueStatus
from app.core.timeutil import utcnow
from app.models.issue import Issue, StatusChange, new_id

# Forward-only: every status may move to any later one, closed goes nowhere.
VALID_TRANSITIONS: Dict[IssueStatus, List[IssueStatus]] = {
    status: STATUS_ORDER[index + 1:] for index, status in enumerate(STATUS_ORDER)
}


class IssueStateMachine:
    def __init__(self, store):
        self.store = store

    def ensure_mutable(self, issue: Issue) -> None:
        if IssueStatus.normalize(issue.status).is_terminal:
            raise Conflict(
                f"Issue {issue.id} is closed; no further changes are allowed.",
                hint="Open a new issue instead.",
            )

    def validate_transition(self, current: IssueStatus, new_state: IssueStatus) -> None:
        if current.is_terminal:
            raise Conflict(
                f"Issue is {current.value}; no further changes are allowed.",
                hint="Open a new issue instead.",
            )
        if new_state not in VALID_TRANSITIONS.get(current, []):
            raise Conflict(f"Transition from {current.value} to {new_state.value} is not permitted.")

    def can_advance(self, issue: Issue, new_state: IssueStatus) -> bool:
        return new_state in VALID_TRANSITIONS[IssueStatus.normalize(issue.status)]

    def transition(self, issue: Issue, new_state: IssueStatus, actor: str, action: str, reason: Optional[str] = None) -> StatusChange:
        """
        Move an issue to a new status and record the change in the audit trail.
        Does NOT commit. The caller must commit the unit of work.
        """
        current = IssueStatus.normalize(issue.status)
        self.validate_transition(current, new_state)

        timestamp = utcnow()
        issue.status = new_state
        issue.updated_at = timestamp

        change = StatusChange(
            id=new_id(),
            issue_id=issue.id,
            actor=actor,
            action=action,
            previous_status=current,
            new_status=new_state,
            reason=reason,
            timestamp=timestamp,
        )
        self.store.add_status_change(change)
        return change
