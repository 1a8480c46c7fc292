import asyncio
from functools import partial
from typing import Optional

import structlog
from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect
from starlette.concurrency import run_in_threadpool

from app.api.issues import snapshot_payload
from app.core.errors import LifecycleError
from app.core.identity import resolve_actor
from app.core.lifecycle import IssueLifecycle
from app.core.sync import IssueFeed
from app.repositories.store import SqlRepairStore

log = structlog.get_logger(__name__)

router = APIRouter(tags=["Events"])


def load_snapshot(session_factory, user_id: Optional[str], issue_id: str) -> dict:
    db = session_factory()
    try:
        actor = resolve_actor(db, user_id)
        lifecycle = IssueLifecycle(SqlRepairStore(db))
        lifecycle.get_issue_for(actor, issue_id)
        issue, messages = lifecycle.snapshot(issue_id)
        return snapshot_payload(issue, messages)
    finally:
        db.close()


async def _pump(websocket: WebSocket, feed: IssueFeed) -> None:
    async for event in feed.events():
        await websocket.send_json(event)


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return


@router.websocket("/issues/{issue_id}/events")
async def issue_events(websocket: WebSocket, issue_id: str):
    """
    Live view of one issue. The first frame is a full snapshot; every later
    frame is one event (message, status, diagnosis or resync). Events may
    repeat, so viewers de-duplicate messages by id.
    """
    state = websocket.app.state
    user_id = websocket.headers.get("x-user-id") or websocket.query_params.get("user_id")
    await websocket.accept()

    fetch = partial(run_in_threadpool, load_snapshot, state.session_factory, user_id, issue_id)
    feed = IssueFeed(issue_id, state.sync_mode, state.notifier, fetch, state.poll_interval)
    try:
        snapshot = await feed.open()
    except HTTPException:
        await websocket.close(code=4401)
        return
    except LifecycleError as exc:
        await websocket.close(code=4000 + exc.status_code, reason=exc.detail[:120])
        return

    log.info("events.viewer_attached", issue_id=issue_id, mode=state.sync_mode)
    try:
        await websocket.send_json({"type": "snapshot", "issue_id": issue_id, "snapshot": snapshot})
        pump = asyncio.create_task(_pump(websocket, feed))
        listener = asyncio.create_task(_wait_for_disconnect(websocket))
        done, pending = await asyncio.wait({pump, listener}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                raise exc
    except WebSocketDisconnect:
        pass
    finally:
        feed.close()
        log.info("events.viewer_detached", issue_id=issue_id)
