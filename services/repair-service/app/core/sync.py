import asyncio
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

import structlog

from app.core.errors import NotFound
from app.core.notifier import DIAGNOSIS, MESSAGE, RESYNC, STATUS, IssueEvent, NotificationHub
from app.core.status import IssueStatus

log = structlog.get_logger(__name__)

SnapshotFetcher = Callable[[], Awaitable[Dict[str, Any]]]


def _created_at(message: Dict[str, Any]) -> datetime:
    value = message["created_at"]
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    return datetime.fromisoformat(str(value).replace("Z", "+00:00")).replace(tzinfo=None)


def _rank(issue: Dict[str, Any]) -> int:
    return IssueStatus.normalize(issue["status"]).rank


class ViewerState:
    """
    What one viewer currently knows about an issue.

    Accepts snapshots (pull) and events (push) in any order and any number of
    times; messages are keyed by ID and always read back in timestamp order.
    """

    def __init__(self, issue_id: str):
        self.issue_id = issue_id
        self.issue: Optional[Dict[str, Any]] = None
        self._messages: Dict[str, Dict[str, Any]] = {}
        self.needs_resync = False

    @property
    def status(self) -> Optional[str]:
        return self.issue["status"] if self.issue else None

    @property
    def messages(self) -> List[Dict[str, Any]]:
        return sorted(self._messages.values(), key=_created_at)

    def apply_snapshot(self, snapshot: Dict[str, Any]) -> None:
        self.issue = dict(snapshot["issue"])
        for message in snapshot.get("messages", []):
            self._messages[message["id"]] = message
        self.needs_resync = False

    def apply(self, event: Dict[str, Any]) -> bool:
        """Fold one event in. Returns False if it told us nothing new."""
        kind = event.get("type")
        if kind == MESSAGE:
            message = event["message"]
            if message["id"] in self._messages:
                return False
            self._messages[message["id"]] = message
            return True
        if kind in (STATUS, DIAGNOSIS):
            issue = event.get("issue")
            if issue is None or issue == self.issue:
                return False
            if self.issue is not None and _rank(issue) < _rank(self.issue):
                # Status only moves forward; this event predates what we hold.
                return False
            self.issue = dict(issue)
            return True
        if kind == RESYNC:
            self.needs_resync = True
            return True
        return False


def diff_snapshot(state: ViewerState, snapshot: Dict[str, Any]) -> List[IssueEvent]:
    """Events that take `state` to `snapshot`, in the order a push viewer would see them."""
    events: List[IssueEvent] = []
    issue = snapshot["issue"]
    previous = state.issue

    if previous is not None and previous.get("status") != issue["status"]:
        events.append(IssueEvent(
            kind=STATUS,
            issue_id=state.issue_id,
            payload={"status": issue["status"], "previous_status": previous.get("status"), "issue": issue},
        ))
    elif previous is not None and previous.get("diagnosis") != issue.get("diagnosis"):
        events.append(IssueEvent(kind=DIAGNOSIS, issue_id=state.issue_id, payload={"issue": issue}))

    known = {m["id"] for m in state.messages}
    fresh = [m for m in snapshot.get("messages", []) if m["id"] not in known]
    for message in sorted(fresh, key=_created_at):
        events.append(IssueEvent(kind=MESSAGE, issue_id=state.issue_id, payload={"message": message}, event_id=message["id"]))

    state.apply_snapshot(snapshot)
    return events


class IssuePoller:
    """
    Pull-model feed: re-fetch the whole snapshot every `interval` seconds and
    emit whatever changed since the previous fetch.

    stop() (or cancelling the consuming task) ends the loop promptly.
    """

    def __init__(self, issue_id: str, fetch: SnapshotFetcher, interval: float = 2.0, state: Optional[ViewerState] = None):
        self.issue_id = issue_id
        self.fetch = fetch
        self.interval = interval
        self.state = state or ViewerState(issue_id)
        self._stopped = asyncio.Event()

    def stop(self) -> None:
        self._stopped.set()

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()

    async def poll_once(self) -> List[IssueEvent]:
        snapshot = await self.fetch()
        return diff_snapshot(self.state, snapshot)

    async def events(self) -> AsyncIterator[IssueEvent]:
        while not self._stopped.is_set():
            try:
                batch = await self.poll_once()
            except NotFound:
                log.info("sync.poll_issue_gone", issue_id=self.issue_id)
                return
            except Exception:
                # Transient fetch failures just wait for the next tick.
                log.warning("sync.poll_failed", issue_id=self.issue_id, exc_info=True)
                batch = []
            for event in batch:
                yield event
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass


class IssueFeed:
    """
    One delivery mechanism behind one interface.

    mode="push" relays NotificationHub events; mode="poll" runs an IssuePoller.
    Either way the consumer receives the same event dictionaries.
    """

    def __init__(self, issue_id: str, mode: str, hub: NotificationHub, fetch: SnapshotFetcher, interval: float = 2.0):
        if mode not in {"push", "poll"}:
            raise ValueError("sync mode must be 'push' or 'poll'")
        self.issue_id = issue_id
        self.mode = mode
        self.hub = hub
        self.fetch = fetch
        self.interval = interval
        self._subscription = None
        self._poller: Optional[IssuePoller] = None

    async def open(self) -> Dict[str, Any]:
        """Attach, then return the starting snapshot."""
        if self.mode == "push":
            # Subscribe first so nothing committed after the snapshot is missed.
            self._subscription = self.hub.subscribe(self.issue_id)
            try:
                return await self.fetch()
            except BaseException:
                self.close()
                raise
        self._poller = IssuePoller(self.issue_id, self.fetch, self.interval)
        snapshot = await self.fetch()
        self._poller.state.apply_snapshot(snapshot)
        return snapshot

    async def events(self) -> AsyncIterator[Dict[str, Any]]:
        if self._subscription is not None:
            async for event in self._subscription:
                yield event.to_dict()
        elif self._poller is not None:
            async for event in self._poller.events():
                yield event.to_dict()

    def close(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        if self._poller is not None:
            self._poller.stop()
            self._poller = None
