from typing import List

from fastapi import APIRouter, Depends, status

from app.api.deps import get_lifecycle
from app.core.identity import Actor, get_current_actor
from app.core.lifecycle import IssueLifecycle
from app.schemas.issue import FeedbackCreate, FeedbackResponse

router = APIRouter(prefix="/issues/{issue_id}/feedback", tags=["Feedback"])


@router.post("", response_model=FeedbackResponse, status_code=status.HTTP_201_CREATED)
def submit_feedback(
    issue_id: str,
    feedback_in: FeedbackCreate,
    actor: Actor = Depends(get_current_actor),
    lifecycle: IssueLifecycle = Depends(get_lifecycle),
):
    return lifecycle.submit_feedback(issue_id, actor, feedback_in.rating, feedback_in.comment)


@router.get("", response_model=List[FeedbackResponse])
def list_feedback(issue_id: str, actor: Actor = Depends(get_current_actor), lifecycle: IssueLifecycle = Depends(get_lifecycle)):
    lifecycle.get_issue_for(actor, issue_id)
    return lifecycle.list_feedback(issue_id)
