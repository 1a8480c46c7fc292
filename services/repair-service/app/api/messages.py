from typing import List

from fastapi import APIRouter, Depends, status

from app.api.deps import get_lifecycle
from app.core.errors import Conflict, UpstreamError
from app.core.identity import Actor, get_current_actor
from app.core.lifecycle import IssueLifecycle
from app.schemas.issue import MessageCreate, MessageResponse, ReplyOutcome
from app.services.assistant import auto_reply, should_auto_reply
from app.services.inference import get_inference

router = APIRouter(prefix="/issues/{issue_id}", tags=["Messages"])


@router.get("/messages", response_model=List[MessageResponse])
def list_messages(issue_id: str, actor: Actor = Depends(get_current_actor), lifecycle: IssueLifecycle = Depends(get_lifecycle)):
    """
    Full message history for an issue, ordered by creation time.
    """
    lifecycle.get_issue_for(actor, issue_id)
    return lifecycle.list_messages(issue_id)


@router.post("/messages", response_model=ReplyOutcome, status_code=status.HTTP_201_CREATED)
def post_user_message(
    issue_id: str,
    message_in: MessageCreate,
    actor: Actor = Depends(get_current_actor),
    lifecycle: IssueLifecycle = Depends(get_lifecycle),
    inference=Depends(get_inference),
):
    """
    The submitter writes to the thread. While no human expert has stepped in,
    the automated responder answers in the same request. If it fails, the
    submitter's message is kept and the error is reported for a retry.
    """
    message = lifecycle.record_user_reply(issue_id, actor, message_in.text, message_in.attachment_url)
    outcome = ReplyOutcome(message=MessageResponse.model_validate(message))

    try:
        reply = auto_reply(lifecycle, inference, issue_id)
    except (UpstreamError, Conflict) as exc:
        outcome.auto_reply_error = exc.detail
    else:
        if reply is not None:
            outcome.auto_reply = MessageResponse.model_validate(reply)
    return outcome


@router.post("/auto-reply", response_model=MessageResponse, status_code=status.HTTP_201_CREATED)
def retry_auto_reply(
    issue_id: str,
    actor: Actor = Depends(get_current_actor),
    lifecycle: IssueLifecycle = Depends(get_lifecycle),
    inference=Depends(get_inference),
):
    issue = lifecycle.get_issue_for(actor, issue_id)
    lifecycle.fsm.ensure_mutable(issue)
    if not should_auto_reply(issue):
        raise Conflict("A human expert is handling this issue; automated replies are off.")
    return auto_reply(lifecycle, inference, issue_id)


@router.post("/expert-replies", response_model=MessageResponse, status_code=status.HTTP_201_CREATED)
def post_expert_reply(
    issue_id: str,
    message_in: MessageCreate,
    actor: Actor = Depends(get_current_actor),
    lifecycle: IssueLifecycle = Depends(get_lifecycle),
):
    return lifecycle.record_expert_reply(issue_id, actor, message_in.text, message_in.attachment_url)
