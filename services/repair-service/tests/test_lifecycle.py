import pytest

from app.core.errors import Conflict, Forbidden, NotFound, UpstreamError, ValidationError
from app.core.lifecycle import CLOSED_NOTICE, PAYMENT_CONFIRMED_NOTICE
from app.core.notifier import MESSAGE, STATUS
from app.core.status import IssueStatus
from app.schemas.issue import PaymentStatus, Sender
from conftest import EXPERT, OTHER_SUBMITTER, SUBMITTER, build_diagnosis


def system_messages(lifecycle, issue_id):
    return [m for m in lifecycle.list_messages(issue_id) if m.sender == Sender.SYSTEM.value]


def close(lifecycle, issue):
    return lifecycle.close_issue(issue.id, EXPERT)


# -- creation ----------------------------------------------------------------

def test_create_issue_starts_open_without_diagnosis(lifecycle, open_issue):
    assert open_issue.status == IssueStatus.OPEN
    assert open_issue.diagnosis is None
    assert open_issue.assisted_mode is True
    assert open_issue.created_at == open_issue.updated_at
    assert lifecycle.get_issue(open_issue.id) is open_issue
    assert lifecycle.list_messages(open_issue.id) == []


def test_create_issue_records_creation_in_history(lifecycle, open_issue):
    history = lifecycle.history(open_issue.id)
    assert len(history) == 1
    assert history[0].action == "create"
    assert history[0].previous_status is None
    assert history[0].new_status == IssueStatus.OPEN


@pytest.mark.parametrize(
    "description, device_type, media_url",
    [
        ("", "Fan", "https://media.example/a.jpg"),
        ("   ", "Fan", "https://media.example/a.jpg"),
        ("Broken", "Toaster Oven", "https://media.example/a.jpg"),
        ("Broken", "Fan", ""),
    ],
)
def test_create_issue_rejects_bad_input(lifecycle, store, description, device_type, media_url):
    with pytest.raises(ValidationError):
        lifecycle.create_issue(SUBMITTER.id, description, device_type, media_url)
    assert store.issues == {}


def test_create_issue_accepts_device_type_in_any_case(lifecycle):
    issue = lifecycle.create_issue(SUBMITTER.id, "Not cooling", "washing machine", "https://media.example/w.mp4", "video")
    assert issue.device_type == "Washing Machine"
    assert issue.media_kind == "video"


def test_unknown_issue_is_not_found(lifecycle):
    with pytest.raises(NotFound):
        lifecycle.get_issue("missing")
    with pytest.raises(NotFound):
        lifecycle.record_user_reply("missing", SUBMITTER, "hello")
    with pytest.raises(NotFound):
        lifecycle.close_issue("missing", EXPERT)


# -- scenarios ---------------------------------------------------------------

def test_scenario_a_diagnosis_advances_and_is_announced(lifecycle, open_issue, diagnosis):
    issue = lifecycle.attach_diagnosis(open_issue.id, diagnosis)

    assert issue.status == IssueStatus.DIAGNOSED
    assert issue.diagnosis is not None
    announcements = system_messages(lifecycle, issue.id)
    assert len(announcements) == 1
    assert "remote consult" in announcements[0].text


def test_scenario_b_payment_books_consultation(lifecycle, open_issue, diagnosis, payment_provider):
    lifecycle.attach_diagnosis(open_issue.id, diagnosis)

    payment = lifecycle.record_payment(open_issue.id, SUBMITTER.id, 19900, payment_provider)

    assert payment.status == PaymentStatus.COMPLETED.value
    assert payment.amount_minor_units == 19900
    assert payment.provider_reference
    assert lifecycle.get_issue(open_issue.id).status == IssueStatus.CONSULTATION_PAID
    assert PAYMENT_CONFIRMED_NOTICE in [m.text for m in system_messages(lifecycle, open_issue.id)]


def test_scenario_c_close_then_reply_conflicts(lifecycle, open_issue, diagnosis, payment_provider):
    lifecycle.attach_diagnosis(open_issue.id, diagnosis)
    lifecycle.record_payment(open_issue.id, SUBMITTER.id, 19900, payment_provider)

    issue = close(lifecycle, open_issue)

    assert issue.status == IssueStatus.CLOSED
    assert system_messages(lifecycle, issue.id)[-1].text == CLOSED_NOTICE
    with pytest.raises(Conflict):
        lifecycle.record_user_reply(issue.id, SUBMITTER, "Is it fixed?")


def test_scenario_d_feedback_after_close(lifecycle, open_issue, diagnosis, payment_provider):
    lifecycle.attach_diagnosis(open_issue.id, diagnosis)
    lifecycle.record_payment(open_issue.id, SUBMITTER.id, 19900, payment_provider)
    close(lifecycle, open_issue)

    feedback = lifecycle.submit_feedback(open_issue.id, SUBMITTER, 5, "great")

    stored = lifecycle.list_feedback(open_issue.id)
    assert stored == [feedback]
    assert stored[0].rating == 5
    assert stored[0].comment == "great"
    assert lifecycle.get_issue(open_issue.id).status == IssueStatus.CLOSED


# -- terminal state ----------------------------------------------------------

def test_closed_issue_rejects_every_mutation(lifecycle, open_issue, diagnosis, payment_provider):
    close(lifecycle, open_issue)

    with pytest.raises(Conflict):
        lifecycle.record_expert_reply(open_issue.id, EXPERT, "One more thing")
    with pytest.raises(Conflict):
        lifecycle.record_user_reply(open_issue.id, SUBMITTER, "Hello?")
    with pytest.raises(Conflict):
        lifecycle.record_payment(open_issue.id, SUBMITTER.id, 19900, payment_provider)
    with pytest.raises(Conflict):
        lifecycle.attach_diagnosis(open_issue.id, diagnosis)
    with pytest.raises(Conflict):
        lifecycle.close_issue(open_issue.id, EXPERT)
    with pytest.raises(Conflict):
        lifecycle.record_assistant_reply(open_issue.id, "Automated hint")
    assert payment_provider.charge_count == 0


def test_closed_issue_is_still_readable(lifecycle, open_issue):
    close(lifecycle, open_issue)
    issue, messages = lifecycle.snapshot(open_issue.id)
    assert issue.status == IssueStatus.CLOSED
    assert [m.text for m in messages] == [CLOSED_NOTICE]


# -- diagnosis ---------------------------------------------------------------

def test_diagnosis_round_trips_field_for_field(lifecycle, open_issue, diagnosis):
    lifecycle.attach_diagnosis(open_issue.id, diagnosis)
    assert lifecycle.get_diagnosis(open_issue.id) == diagnosis


def test_attaching_same_diagnosis_twice_is_a_no_op(lifecycle, open_issue, diagnosis):
    lifecycle.attach_diagnosis(open_issue.id, diagnosis)
    lifecycle.attach_diagnosis(open_issue.id, build_diagnosis())

    assert len(system_messages(lifecycle, open_issue.id)) == 1
    transitions = [c for c in lifecycle.history(open_issue.id) if c.new_status == IssueStatus.DIAGNOSED]
    assert len(transitions) == 1


def test_attaching_a_different_diagnosis_replaces_and_reannounces(lifecycle, open_issue, diagnosis):
    lifecycle.attach_diagnosis(open_issue.id, diagnosis)
    replacement = build_diagnosis(recommended_action="on site", estimated_cost="₹1500")

    issue = lifecycle.attach_diagnosis(open_issue.id, replacement)

    assert issue.status == IssueStatus.DIAGNOSED
    assert lifecycle.get_diagnosis(issue.id) == replacement
    texts = [m.text for m in system_messages(lifecycle, issue.id)]
    assert len(texts) == 2
    assert "on site" in texts[-1]


def test_diagnosis_after_expert_reply_keeps_status(lifecycle, open_issue, diagnosis):
    lifecycle.record_expert_reply(open_issue.id, EXPERT, "Send me a video please.")
    issue = lifecycle.attach_diagnosis(open_issue.id, diagnosis)
    assert issue.status == IssueStatus.EXPERT_REPLY
    assert issue.diagnosis is not None


def test_malformed_diagnosis_dict_is_rejected_without_writes(lifecycle, open_issue, store):
    with pytest.raises(ValidationError):
        lifecycle.attach_diagnosis(open_issue.id, {"device_type": "Fan", "recommended_action": "pray"})
    assert lifecycle.get_issue(open_issue.id).status == IssueStatus.OPEN
    assert store.messages == []


def test_recommended_action_spellings_are_normalized():
    assert build_diagnosis(recommended_action="Self-Fix").recommended_action.value == "self fix"
    assert build_diagnosis(recommended_action="ON_SITE").recommended_action.value == "on site"


# -- replies -----------------------------------------------------------------

def test_expert_reply_advances_and_is_reentrant(lifecycle, open_issue):
    lifecycle.record_expert_reply(open_issue.id, EXPERT, "First look: the bearings.")
    lifecycle.record_expert_reply(open_issue.id, EXPERT, "Try oiling them.")

    issue = lifecycle.get_issue(open_issue.id)
    assert issue.status == IssueStatus.EXPERT_REPLY
    assert issue.assisted_mode is False
    transitions = [c for c in lifecycle.history(issue.id) if c.new_status == IssueStatus.EXPERT_REPLY]
    assert len(transitions) == 1
    senders = [m.sender for m in lifecycle.list_messages(issue.id)]
    assert senders == [Sender.EXPERT.value, Sender.EXPERT.value]


def test_expert_reply_never_moves_status_backwards(lifecycle, open_issue, payment_provider):
    lifecycle.record_payment(open_issue.id, SUBMITTER.id, 19900, payment_provider)
    lifecycle.record_expert_reply(open_issue.id, EXPERT, "Calling you now.")
    assert lifecycle.get_issue(open_issue.id).status == IssueStatus.CONSULTATION_PAID


def test_user_reply_does_not_change_status(lifecycle, open_issue):
    message = lifecycle.record_user_reply(open_issue.id, SUBMITTER, "It started yesterday.")
    assert message.sender == Sender.SUBMITTER.value
    assert lifecycle.get_issue(open_issue.id).status == IssueStatus.OPEN


def test_reply_permissions(lifecycle, open_issue):
    with pytest.raises(Forbidden):
        lifecycle.record_user_reply(open_issue.id, OTHER_SUBMITTER, "Me too")
    with pytest.raises(Forbidden):
        lifecycle.record_expert_reply(open_issue.id, SUBMITTER, "I am an expert, honest")
    with pytest.raises(ValidationError):
        lifecycle.record_user_reply(open_issue.id, SUBMITTER, "   ")


def test_assistant_reply_stands_down_after_human_expert(lifecycle, open_issue):
    lifecycle.record_assistant_reply(open_issue.id, "Automated: check the plug.")
    assert lifecycle.get_issue(open_issue.id).status == IssueStatus.OPEN

    lifecycle.record_expert_reply(open_issue.id, EXPERT, "Human here.")
    with pytest.raises(Conflict):
        lifecycle.record_assistant_reply(open_issue.id, "Automated: anything else?")


# -- payments ----------------------------------------------------------------

def test_payment_must_match_consultation_price(lifecycle, open_issue, payment_provider):
    with pytest.raises(ValidationError):
        lifecycle.record_payment(open_issue.id, SUBMITTER.id, 100, payment_provider)
    assert lifecycle.list_payments(open_issue.id) == []


def test_payment_only_by_owner(lifecycle, open_issue, payment_provider):
    with pytest.raises(Forbidden):
        lifecycle.record_payment(open_issue.id, OTHER_SUBMITTER.id, 19900, payment_provider)


def test_repeated_payment_has_one_effect(lifecycle, open_issue, payment_provider):
    first = lifecycle.record_payment(open_issue.id, SUBMITTER.id, 19900, payment_provider)
    second = lifecycle.record_payment(open_issue.id, SUBMITTER.id, 19900, payment_provider)

    assert second.id == first.id
    assert len(lifecycle.list_payments(open_issue.id)) == 1
    assert payment_provider.charge_count == 1
    paid = [c for c in lifecycle.history(open_issue.id) if c.new_status == IssueStatus.CONSULTATION_PAID]
    assert len(paid) == 1
    notices = [m for m in system_messages(lifecycle, open_issue.id) if m.text == PAYMENT_CONFIRMED_NOTICE]
    assert len(notices) == 1


def test_declined_payment_leaves_failed_record_and_status(lifecycle, open_issue, diagnosis, payment_provider):
    lifecycle.attach_diagnosis(open_issue.id, diagnosis)
    payment_provider.decline(open_issue.id)

    with pytest.raises(UpstreamError):
        lifecycle.record_payment(open_issue.id, SUBMITTER.id, 19900, payment_provider)

    payments = lifecycle.list_payments(open_issue.id)
    assert [p.status for p in payments] == [PaymentStatus.FAILED.value]
    assert lifecycle.get_issue(open_issue.id).status == IssueStatus.DIAGNOSED
    assert all(m.text != PAYMENT_CONFIRMED_NOTICE for m in lifecycle.list_messages(open_issue.id))


def test_provider_fault_counts_as_failed_payment(lifecycle, open_issue):
    class BrokenProvider:
        def charge(self, amount_minor_units, issue_id):
            raise UpstreamError("gateway timeout")

    with pytest.raises(UpstreamError):
        lifecycle.record_payment(open_issue.id, SUBMITTER.id, 19900, BrokenProvider())
    assert [p.status for p in lifecycle.list_payments(open_issue.id)] == [PaymentStatus.FAILED.value]
    assert lifecycle.get_issue(open_issue.id).status == IssueStatus.OPEN


def test_expert_can_request_payment(lifecycle, open_issue, payment_provider):
    issue = lifecycle.request_payment(open_issue.id, EXPERT)
    assert issue.status == IssueStatus.PAYMENT_NEEDED
    assert "INR 199.00" in system_messages(lifecycle, issue.id)[-1].text

    # Asking twice is harmless.
    lifecycle.request_payment(open_issue.id, EXPERT)
    assert len(system_messages(lifecycle, issue.id)) == 1

    with pytest.raises(Forbidden):
        lifecycle.request_payment(open_issue.id, SUBMITTER)

    lifecycle.record_payment(open_issue.id, SUBMITTER.id, 19900, payment_provider)
    with pytest.raises(Conflict):
        lifecycle.request_payment(open_issue.id, EXPERT)


# -- closing and feedback ----------------------------------------------------

def test_only_experts_close(lifecycle, open_issue):
    with pytest.raises(Forbidden):
        lifecycle.close_issue(open_issue.id, SUBMITTER)
    assert lifecycle.get_issue(open_issue.id).status == IssueStatus.OPEN


@pytest.mark.parametrize("rating", [0, 6, -1, True])
def test_feedback_rating_out_of_range(lifecycle, open_issue, rating):
    close(lifecycle, open_issue)
    with pytest.raises(ValidationError):
        lifecycle.submit_feedback(open_issue.id, SUBMITTER, rating, None)
    assert lifecycle.list_feedback(open_issue.id) == []


@pytest.mark.parametrize("rating", [1, 5])
def test_feedback_rating_bounds_accepted(lifecycle, open_issue, rating):
    close(lifecycle, open_issue)
    feedback = lifecycle.submit_feedback(open_issue.id, SUBMITTER, rating, "  ")
    assert feedback.rating == rating
    assert feedback.comment is None


def test_feedback_gated_to_closed_owner_and_once(lifecycle, open_issue):
    with pytest.raises(Conflict):
        lifecycle.submit_feedback(open_issue.id, SUBMITTER, 4, "too early")

    close(lifecycle, open_issue)
    with pytest.raises(Forbidden):
        lifecycle.submit_feedback(open_issue.id, OTHER_SUBMITTER, 4, "not mine")

    lifecycle.submit_feedback(open_issue.id, SUBMITTER, 4, "good")
    with pytest.raises(Conflict):
        lifecycle.submit_feedback(open_issue.id, SUBMITTER, 5, "changed my mind")


# -- visibility and notifications --------------------------------------------

def test_list_issues_scoped_by_capability(lifecycle, open_issue):
    other = lifecycle.create_issue(OTHER_SUBMITTER.id, "TV has no picture", "Television", "https://media.example/tv.jpg")

    assert [i.id for i in lifecycle.list_issues(SUBMITTER)] == [open_issue.id]
    assert {i.id for i in lifecycle.list_issues(EXPERT)} == {open_issue.id, other.id}
    assert [i.id for i in lifecycle.list_issues(EXPERT, search="picture")] == [other.id]

    with pytest.raises(Forbidden):
        lifecycle.get_issue_for(OTHER_SUBMITTER, open_issue.id)
    assert lifecycle.get_issue_for(EXPERT, open_issue.id) is open_issue


def test_events_published_after_commit(lifecycle, open_issue, notifier, diagnosis):
    lifecycle.attach_diagnosis(open_issue.id, diagnosis)

    batch = notifier.batches[-1]
    kinds = [event.kind for event in batch]
    assert kinds == [STATUS, MESSAGE]
    status_event, message_event = batch
    assert status_event.payload["status"] == "diagnosed"
    assert status_event.payload["previous_status"] == "open"
    assert message_event.event_id == message_event.payload["message"]["id"]


def test_rejected_mutation_publishes_nothing(lifecycle, open_issue, notifier):
    before = len(notifier.events)
    with pytest.raises(Forbidden):
        lifecycle.close_issue(open_issue.id, SUBMITTER)
    with pytest.raises(ValidationError):
        lifecycle.record_user_reply(open_issue.id, SUBMITTER, "")
    assert len(notifier.events) == before


def test_failed_commit_restores_issue_fields(lifecycle, open_issue, store, notifier, monkeypatch):
    committed_at = open_issue.updated_at
    messages_before = len(store.messages)
    real_commit = store.commit

    def commit_fails_once():
        monkeypatch.setattr(store, "commit", real_commit)
        raise RuntimeError("disk full")

    monkeypatch.setattr(store, "commit", commit_fails_once)
    events_before = len(notifier.events)

    with pytest.raises(RuntimeError):
        close(lifecycle, open_issue)

    issue = lifecycle.get_issue(open_issue.id)
    assert issue.status == IssueStatus.OPEN
    assert issue.updated_at == committed_at
    assert [c.action for c in lifecycle.history(open_issue.id)] == ["create"]
    assert len(store.messages) == messages_before
    assert len(notifier.events) == events_before

    close(lifecycle, open_issue)
    assert lifecycle.get_issue(open_issue.id).status == IssueStatus.CLOSED


def test_store_rollback_undoes_in_place_edits(store, open_issue, diagnosis):
    issue = store.get_issue_for_update(open_issue.id)
    issue.status = IssueStatus.CLOSED
    issue.diagnosis = diagnosis.model_dump(mode="json")
    issue.assisted_mode = False

    store.rollback()

    assert issue.status == IssueStatus.OPEN
    assert issue.diagnosis is None
    assert issue.assisted_mode is True
