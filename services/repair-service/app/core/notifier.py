import asyncio
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set
from uuid import uuid4

import structlog

from app.core.timeutil import isoformat_utc, utcnow

log = structlog.get_logger(__name__)

MESSAGE = "message"
STATUS = "status"
DIAGNOSIS = "diagnosis"
# Sent instead of the dropped backlog when a viewer falls behind; the viewer
# must re-fetch the snapshot.
RESYNC = "resync"


@dataclass(frozen=True)
class IssueEvent:
    kind: str
    issue_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: str(uuid4()))
    occurred_at: str = field(default_factory=lambda: isoformat_utc(utcnow()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.kind,
            "event_id": self.event_id,
            "issue_id": self.issue_id,
            "occurred_at": self.occurred_at,
            **self.payload,
        }


class Subscription:
    """
    One viewer attached to one issue.

    Events are queued on the viewer's event loop. Publishers may live on any
    thread (sync route handlers run in a worker pool).
    """

    def __init__(self, hub: "NotificationHub", issue_id: str, loop: asyncio.AbstractEventLoop, maxsize: int):
        self.hub = hub
        self.issue_id = issue_id
        self.loop = loop
        self.queue: "asyncio.Queue[IssueEvent]" = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def offer(self, event: IssueEvent) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self.loop:
            self._put(event)
        else:
            self.loop.call_soon_threadsafe(self._put, event)

    def _put(self, event: IssueEvent) -> None:
        if self.closed:
            return
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            while not self.queue.empty():
                self.queue.get_nowait()
            self.queue.put_nowait(IssueEvent(kind=RESYNC, issue_id=self.issue_id))
            log.warning("notifier.subscriber_lagged", issue_id=self.issue_id)

    async def get(self) -> IssueEvent:
        return await self.queue.get()

    def __aiter__(self):
        return self

    async def __anext__(self) -> IssueEvent:
        if self.closed:
            raise StopAsyncIteration
        return await self.get()

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.hub.unsubscribe(self)


class NotificationHub:
    """
    Fans every committed mutation out to the viewers attached to that issue.

    Delivery is at-least-once from the viewer's point of view: a viewer that
    also polls, or reconnects, will see some events twice and must
    de-duplicate by message ID.
    """

    def __init__(self, queue_size: int = 100):
        self.queue_size = queue_size
        self._subscribers: Dict[str, Set[Subscription]] = {}
        self._lock = threading.Lock()

    def subscribe(self, issue_id: str) -> Subscription:
        subscription = Subscription(self, issue_id, asyncio.get_running_loop(), self.queue_size)
        with self._lock:
            self._subscribers.setdefault(issue_id, set()).add(subscription)
        log.debug("notifier.subscribed", issue_id=issue_id)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._subscribers.get(subscription.issue_id)
            if subscribers is None:
                return
            subscribers.discard(subscription)
            if not subscribers:
                del self._subscribers[subscription.issue_id]
        log.debug("notifier.unsubscribed", issue_id=subscription.issue_id)

    def subscriber_count(self, issue_id: Optional[str] = None) -> int:
        with self._lock:
            if issue_id is not None:
                return len(self._subscribers.get(issue_id, ()))
            return sum(len(s) for s in self._subscribers.values())

    def publish(self, event: IssueEvent) -> int:
        with self._lock:
            targets: List[Subscription] = list(self._subscribers.get(event.issue_id, ()))
        delivered = 0
        for subscription in targets:
            try:
                subscription.offer(event)
                delivered += 1
            except RuntimeError:
                # Viewer's loop is gone; it can no longer receive anything.
                log.warning("notifier.dead_subscriber", issue_id=event.issue_id)
                subscription.close()
        return delivered

    def publish_many(self, events: Iterable[IssueEvent]) -> None:
        for event in events:
            self.publish(event)
