from datetime import datetime, timedelta

import pytest

from app.core.errors import NotFound, ValidationError
from app.core.message_log import MessageLog
from app.models.issue import Issue, Profile
from app.repositories.store import SqlRepairStore
from app.schemas.issue import Sender


def test_append_requires_known_sender_and_text(store, open_issue):
    log = MessageLog(store)

    with pytest.raises(ValidationError):
        log.append(open_issue.id, "robot", "beep")
    with pytest.raises(ValidationError):
        log.append(open_issue.id, Sender.SUBMITTER, "")
    with pytest.raises(ValidationError):
        log.append(open_issue.id, Sender.SUBMITTER, None)
    with pytest.raises(NotFound):
        log.append("missing", Sender.SUBMITTER, "hello")


def test_append_is_staged_until_commit(store, open_issue):
    log = MessageLog(store)

    message = log.append(open_issue.id, "submitter", "  It rattles at high speed.  ")
    assert log.list_for(open_issue.id) == []

    store.commit()
    assert log.list_for(open_issue.id) == [message]
    assert message.text == "It rattles at high speed."
    assert message.sender == Sender.SUBMITTER.value


def test_list_orders_by_creation_time_not_insertion(store, open_issue):
    log = MessageLog(store)
    base = datetime(2026, 10, 17, 10, 0, 0)

    late = log.append(open_issue.id, Sender.EXPERT, "third", created_at=base + timedelta(seconds=2))
    early = log.append(open_issue.id, Sender.SUBMITTER, "first", created_at=base)
    middle = log.append(open_issue.id, Sender.SYSTEM, "second", created_at=base + timedelta(seconds=1))
    store.commit()

    assert [m.id for m in log.list_for(open_issue.id)] == [early.id, middle.id, late.id]


def test_list_is_repeatable(store, open_issue):
    log = MessageLog(store)
    log.append(open_issue.id, Sender.SUBMITTER, "one")
    log.append(open_issue.id, Sender.EXPERT, "two")
    store.commit()

    first = [m.id for m in log.list_for(open_issue.id)]
    second = [m.id for m in log.list_for(open_issue.id)]

    assert first == second
    assert len(first) == 2


def test_list_unknown_issue_is_not_found(store):
    with pytest.raises(NotFound):
        MessageLog(store).list_for("missing")


def test_sql_store_orders_by_creation_time(db_session):
    db_session.add(Profile(id="user-1", display_name="Asha", capability="submitter"))
    issue = Issue(
        id="issue-1",
        owner_id="user-1",
        description="Laptop will not boot",
        device_type="Laptop",
        media_url="https://media.example/laptop.jpg",
        media_kind="photo",
    )
    db_session.add(issue)
    db_session.commit()

    log = MessageLog(SqlRepairStore(db_session))
    base = datetime(2026, 10, 17, 9, 30, 0)
    second = log.append("issue-1", Sender.EXPERT, "Hold the power button for 30s.", created_at=base + timedelta(minutes=1))
    first = log.append("issue-1", Sender.SUBMITTER, "Still black screen.", created_at=base)
    db_session.commit()

    messages = log.list_for("issue-1")
    assert [m.id for m in messages] == [first.id, second.id]
    assert messages[1].sender == "expert"
