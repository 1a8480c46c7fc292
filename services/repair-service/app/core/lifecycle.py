from contextlib import contextmanager
from typing import Any, Dict, List, Optional, Tuple, Union

import pydantic
import structlog

from app.core.errors import Conflict, Forbidden, NotFound, UpstreamError, ValidationError
from app.core.fsm import IssueStateMachine
from app.core.identity import SYSTEM_ACTOR, Actor
from app.core.message_log import MessageLog
from app.core.notifier import DIAGNOSIS, MESSAGE, STATUS, IssueEvent, NotificationHub
from app.core.status import IssueStatus
from app.core.timeutil import utcnow
from app.models.issue import Feedback, Issue, Message, Payment, StatusChange, new_id
from app.schemas.issue import (
    DeviceType,
    Diagnosis,
    IssueResponse,
    MediaKind,
    MessageResponse,
    PaymentStatus,
    Sender,
)

log = structlog.get_logger(__name__)

CLOSED_NOTICE = "This issue has been closed by the expert. Please rate your experience."
PAYMENT_CONFIRMED_NOTICE = "Payment received. Your live consultation with an expert is booked."


def format_amount(amount_minor_units: int, currency: str) -> str:
    return f"{currency} {amount_minor_units / 100:.2f}"


class IssueLifecycle:
    """
    The single entry point for every change to an issue.

    Each public mutation validates first, stages its writes, commits once and
    only then announces what changed to the notification hub, so viewers never
    hear about writes that were rolled back.
    """

    def __init__(
        self,
        store,
        notifier: Optional[NotificationHub] = None,
        consultation_price: int = 19900,
        currency: str = "INR",
    ):
        self.store = store
        self.notifier = notifier
        self.consultation_price = consultation_price
        self.currency = currency
        self.fsm = IssueStateMachine(store)
        self.messages = MessageLog(store)
        self._outbox: List[IssueEvent] = []

    # -- reads -------------------------------------------------------------

    def get_issue(self, issue_id: str) -> Issue:
        issue = self.store.get_issue(issue_id)
        if issue is None:
            raise NotFound(f"Issue {issue_id} not found")
        return issue

    def get_issue_for(self, actor: Actor, issue_id: str) -> Issue:
        issue = self.get_issue(issue_id)
        self._require_participant(actor, issue)
        return issue

    def get_diagnosis(self, issue_id: str) -> Optional[Diagnosis]:
        issue = self.get_issue(issue_id)
        if issue.diagnosis is None:
            return None
        return Diagnosis.model_validate(issue.diagnosis)

    def list_issues(self, actor: Actor, **filters: Any) -> List[Issue]:
        owner_id = None if actor.is_expert else actor.id
        return self.store.list_issues(owner_id=owner_id, **filters)

    def list_messages(self, issue_id: str) -> List[Message]:
        return self.messages.list_for(issue_id)

    def list_payments(self, issue_id: str) -> List[Payment]:
        self.get_issue(issue_id)
        return self.store.list_payments(issue_id)

    def list_feedback(self, issue_id: str) -> List[Feedback]:
        self.get_issue(issue_id)
        return self.store.list_feedback(issue_id)

    def history(self, issue_id: str) -> List[StatusChange]:
        self.get_issue(issue_id)
        return self.store.list_status_changes(issue_id)

    def snapshot(self, issue_id: str) -> Tuple[Issue, List[Message]]:
        return self.get_issue(issue_id), self.messages.list_for(issue_id)

    # -- mutations ---------------------------------------------------------

    def create_issue(
        self,
        owner_id: str,
        description: str,
        device_type: str,
        media_url: str,
        media_kind: Union[MediaKind, str] = MediaKind.PHOTO,
    ) -> Issue:
        if description is None or not description.strip():
            raise ValidationError("Description must not be empty.")
        device = _coerce_device_type(device_type)
        if not media_url or not media_url.strip():
            raise ValidationError("A photo or video of the device is required.")
        try:
            kind = MediaKind(media_kind)
        except ValueError:
            raise ValidationError(f"Unsupported media kind: {media_kind!r}") from None

        now = utcnow()
        issue = Issue(
            id=new_id(),
            owner_id=owner_id,
            description=description.strip(),
            device_type=device.value,
            media_url=media_url.strip(),
            media_kind=kind.value,
            diagnosis=None,
            status=IssueStatus.OPEN,
            assisted_mode=True,
            created_at=now,
            updated_at=now,
        )
        with self._unit_of_work():
            self.store.add_issue(issue)
            self.store.add_status_change(StatusChange(
                id=new_id(),
                issue_id=issue.id,
                actor=owner_id,
                action="create",
                previous_status=None,
                new_status=IssueStatus.OPEN,
                reason="Issue submitted",
                timestamp=now,
            ))
        log.info("lifecycle.issue_created", issue_id=issue.id, device_type=issue.device_type)
        return issue

    def attach_diagnosis(self, issue_id: str, diagnosis: Union[Diagnosis, Dict[str, Any]]) -> Issue:
        issue = self._lock_issue(issue_id)
        self.fsm.ensure_mutable(issue)
        if not isinstance(diagnosis, Diagnosis):
            try:
                diagnosis = Diagnosis.model_validate(diagnosis)
            except pydantic.ValidationError as exc:
                raise ValidationError(f"Malformed diagnosis: {exc.error_count()} invalid field(s).") from exc

        value = diagnosis.model_dump(mode="json")
        if issue.diagnosis == value:
            # Same value again: nothing to store and nothing to announce.
            return issue

        with self._unit_of_work():
            issue.diagnosis = value
            issue.updated_at = utcnow()
            if IssueStatus.normalize(issue.status) is IssueStatus.OPEN:
                change = self.fsm.transition(issue, IssueStatus.DIAGNOSED, SYSTEM_ACTOR, "attach_diagnosis", diagnosis.summary())
                self._emit_status(issue, change)
            else:
                self._emit(DIAGNOSIS, issue.id, {"issue": _issue_payload(issue)})
            self._emit_message(self.messages.append(issue.id, Sender.SYSTEM, diagnosis.summary()))
        log.info("lifecycle.diagnosis_attached", issue_id=issue.id, action=diagnosis.recommended_action.value)
        return issue

    def record_expert_reply(self, issue_id: str, actor: Actor, text: str, attachment_url: Optional[str] = None) -> Message:
        issue = self._lock_issue(issue_id)
        if not actor.is_expert:
            raise Forbidden("Only an expert can post expert replies.")
        self.fsm.ensure_mutable(issue)

        with self._unit_of_work():
            message = self.messages.append(issue.id, Sender.EXPERT, text, attachment_url)
            self._emit_message(message)
            issue.updated_at = message.created_at
            if issue.assisted_mode:
                # A human has taken over; the automated responder stands down.
                issue.assisted_mode = False
            if self.fsm.can_advance(issue, IssueStatus.EXPERT_REPLY):
                change = self.fsm.transition(issue, IssueStatus.EXPERT_REPLY, actor.id, "expert_reply")
                self._emit_status(issue, change)
        log.info("lifecycle.expert_reply", issue_id=issue.id, expert_id=actor.id)
        return message

    def record_assistant_reply(self, issue_id: str, text: str) -> Message:
        """Automated responder's answer. Posts as expert, leaves status alone."""
        issue = self._lock_issue(issue_id)
        self.fsm.ensure_mutable(issue)
        if not issue.assisted_mode:
            raise Conflict("A human expert is handling this issue; automated replies are off.")

        with self._unit_of_work():
            message = self.messages.append(issue.id, Sender.EXPERT, text)
            self._emit_message(message)
            issue.updated_at = message.created_at
        return message

    def record_user_reply(self, issue_id: str, actor: Actor, text: str, attachment_url: Optional[str] = None) -> Message:
        issue = self._lock_issue(issue_id)
        if actor.id != issue.owner_id:
            raise Forbidden("Only the person who submitted this issue can reply as the submitter.")
        self.fsm.ensure_mutable(issue)

        with self._unit_of_work():
            message = self.messages.append(issue.id, Sender.SUBMITTER, text, attachment_url)
            self._emit_message(message)
            issue.updated_at = message.created_at
        return message

    def request_payment(self, issue_id: str, actor: Actor) -> Issue:
        issue = self._lock_issue(issue_id)
        if not actor.is_expert:
            raise Forbidden("Only an expert can request a consultation payment.")
        self.fsm.ensure_mutable(issue)

        current = IssueStatus.normalize(issue.status)
        if current is IssueStatus.PAYMENT_NEEDED:
            return issue
        if current is IssueStatus.CONSULTATION_PAID:
            raise Conflict("The consultation for this issue is already paid.")

        with self._unit_of_work():
            change = self.fsm.transition(issue, IssueStatus.PAYMENT_NEEDED, actor.id, "request_payment")
            self._emit_status(issue, change)
            self._emit_message(self.messages.append(
                issue.id,
                Sender.SYSTEM,
                f"A live consultation is available for {format_amount(self.consultation_price, self.currency)}.",
            ))
        return issue

    def record_payment(self, issue_id: str, payer_id: str, amount_minor_units: int, provider) -> Payment:
        """
        Charge the consultation fee and, on success, mark the issue paid.

        A second call after a completed payment returns the existing record:
        the status change, the booking notice and the charge happen once.
        A declined charge leaves a failed record and the status untouched.

        The issue is re-read after the provider answers, so a payment that
        completed meanwhile on another connection wins and this call returns
        it instead of recording a second one.
        """
        issue = self._lock_issue(issue_id)
        if payer_id != issue.owner_id:
            raise Forbidden("Only the person who submitted this issue can pay for its consultation.")
        self.fsm.ensure_mutable(issue)
        if isinstance(amount_minor_units, bool) or amount_minor_units != self.consultation_price:
            raise ValidationError(
                f"Consultation price is {format_amount(self.consultation_price, self.currency)}; "
                f"got {amount_minor_units!r} minor units."
            )

        existing = self._completed_payment(issue.id)
        if existing is not None:
            return existing

        try:
            result = provider.charge(amount_minor_units, issue.id)
        except UpstreamError as exc:
            log.warning("lifecycle.payment_provider_error", issue_id=issue.id, error=exc.detail)
            result = None

        payment = Payment(
            id=new_id(),
            issue_id=issue.id,
            payer_id=payer_id,
            amount_minor_units=amount_minor_units,
            currency=self.currency,
            status=PaymentStatus.COMPLETED.value if result and result.success else PaymentStatus.FAILED.value,
            provider_reference=result.reference if result else None,
            created_at=utcnow(),
        )

        if payment.status == PaymentStatus.FAILED.value:
            with self._unit_of_work():
                self.store.add_payment(payment)
            log.warning("lifecycle.payment_failed", issue_id=issue.id, payment_id=payment.id)
            reason = result.error if result and result.error else "the payment provider did not confirm the charge"
            raise UpstreamError(f"Payment failed: {reason}.", hint="No money was taken; please try again.")

        issue = self._lock_issue(issue_id)
        existing = self._completed_payment(issue.id)
        if existing is not None:
            log.warning("lifecycle.payment_raced", issue_id=issue.id, payment_id=existing.id, reference=payment.provider_reference)
            return existing
        self.fsm.ensure_mutable(issue)

        try:
            with self._unit_of_work():
                self.store.add_payment(payment)
                change = self.fsm.transition(issue, IssueStatus.CONSULTATION_PAID, payer_id, "payment", payment.id)
                self._emit_status(issue, change)
                self._emit_message(self.messages.append(issue.id, Sender.SYSTEM, PAYMENT_CONFIRMED_NOTICE))
        except Conflict:
            existing = self._completed_payment(issue_id)
            if existing is None:
                raise
            log.warning("lifecycle.payment_raced", issue_id=issue_id, payment_id=existing.id, reference=payment.provider_reference)
            return existing
        log.info("lifecycle.payment_completed", issue_id=issue.id, payment_id=payment.id)
        return payment

    def close_issue(self, issue_id: str, actor: Actor, reason: Optional[str] = None) -> Issue:
        issue = self._lock_issue(issue_id)
        if not actor.is_expert:
            raise Forbidden("Only an expert can close an issue.")
        self.fsm.ensure_mutable(issue)

        with self._unit_of_work():
            change = self.fsm.transition(issue, IssueStatus.CLOSED, actor.id, "close", reason)
            self._emit_status(issue, change)
            self._emit_message(self.messages.append(issue.id, Sender.SYSTEM, CLOSED_NOTICE))
        log.info("lifecycle.issue_closed", issue_id=issue.id, expert_id=actor.id)
        return issue

    def submit_feedback(self, issue_id: str, actor: Actor, rating: int, comment: Optional[str] = None) -> Feedback:
        issue = self._lock_issue(issue_id)
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise ValidationError("Rating must be a whole number from 1 to 5.")
        if actor.id != issue.owner_id:
            raise Forbidden("Only the person who submitted this issue can rate it.")
        if not IssueStatus.normalize(issue.status).is_terminal:
            raise Conflict("Feedback can be left once the issue is closed.")
        if any(f.user_id == actor.id for f in self.store.list_feedback(issue.id)):
            raise Conflict("Feedback for this issue was already submitted.")

        feedback = Feedback(
            id=new_id(),
            issue_id=issue.id,
            user_id=actor.id,
            rating=rating,
            comment=comment.strip() if comment and comment.strip() else None,
            created_at=utcnow(),
        )
        with self._unit_of_work():
            self.store.add_feedback(feedback)
        log.info("lifecycle.feedback_submitted", issue_id=issue.id, rating=rating)
        return feedback

    # -- internals ---------------------------------------------------------

    @contextmanager
    def _unit_of_work(self):
        try:
            yield
            self.store.commit()
        except Exception:
            self.store.rollback()
            self._outbox.clear()
            raise
        events, self._outbox = self._outbox, []
        if self.notifier is not None:
            self.notifier.publish_many(events)

    def _lock_issue(self, issue_id: str) -> Issue:
        issue = self.store.get_issue_for_update(issue_id)
        if issue is None:
            raise NotFound(f"Issue {issue_id} not found")
        return issue

    def _completed_payment(self, issue_id: str) -> Optional[Payment]:
        for existing in self.store.list_payments(issue_id):
            if existing.status == PaymentStatus.COMPLETED.value:
                log.info("lifecycle.payment_duplicate", issue_id=issue_id, payment_id=existing.id)
                return existing
        return None

    def _require_participant(self, actor: Actor, issue: Issue) -> None:
        if not actor.is_expert and actor.id != issue.owner_id:
            raise Forbidden("You are not a participant in this issue.")

    def _emit(self, kind: str, issue_id: str, payload: Dict[str, Any], event_id: Optional[str] = None) -> None:
        extra = {"event_id": event_id} if event_id is not None else {}
        self._outbox.append(IssueEvent(kind=kind, issue_id=issue_id, payload=payload, **extra))

    def _emit_message(self, message: Message) -> None:
        payload = {"message": MessageResponse.model_validate(message).model_dump(mode="json")}
        self._emit(MESSAGE, message.issue_id, payload, event_id=message.id)

    def _emit_status(self, issue: Issue, change: StatusChange) -> None:
        self._emit(STATUS, issue.id, {
            "status": IssueStatus.normalize(change.new_status).value,
            "previous_status": IssueStatus.normalize(change.previous_status).value,
            "issue": _issue_payload(issue),
        })
        log.info(
            "lifecycle.transition",
            issue_id=issue.id,
            previous_status=IssueStatus.normalize(change.previous_status).value,
            new_status=IssueStatus.normalize(change.new_status).value,
            actor=change.actor,
        )


def _issue_payload(issue: Issue) -> Dict[str, Any]:
    return IssueResponse.model_validate(issue).model_dump(mode="json")


def _coerce_device_type(raw: str) -> DeviceType:
    if raw:
        wanted = raw.strip().lower()
        for device in DeviceType:
            if device.value.lower() == wanted:
                return device
    allowed = ", ".join(d.value for d in DeviceType)
    raise ValidationError(f"Unsupported device type {raw!r}. Choose one of: {allowed}.")
