from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from app.api.deps import get_lifecycle
from app.core.errors import UpstreamError
from app.core.identity import Actor, get_current_actor
from app.core.lifecycle import IssueLifecycle
from app.core.status import IssueStatus
from app.schemas.issue import (
    CloseRequest,
    DeviceDetectRequest,
    DeviceDetectResponse,
    IssueCreate,
    IssueCreated,
    IssueResponse,
    IssueSnapshot,
    MessageResponse,
    StatusChangeResponse,
)
from app.services.assistant import diagnose_issue
from app.services.inference import DeviceDetector, get_inference

router = APIRouter(prefix="/issues", tags=["Issues"])


def snapshot_payload(issue, messages) -> dict:
    return IssueSnapshot(
        issue=IssueResponse.model_validate(issue),
        messages=[MessageResponse.model_validate(m) for m in messages],
    ).model_dump(mode="json")


@router.post("", response_model=IssueCreated, status_code=status.HTTP_201_CREATED)
def create_issue(
    issue_in: IssueCreate,
    actor: Actor = Depends(get_current_actor),
    lifecycle: IssueLifecycle = Depends(get_lifecycle),
    inference=Depends(get_inference),
):
    """
    Submit a repair request, then ask for an automated diagnosis.
    The issue is saved even when the diagnosis fails; it stays open and the
    diagnosis can be retried via /issues/{id}/diagnose.
    """
    issue = lifecycle.create_issue(
        owner_id=actor.id,
        description=issue_in.description,
        device_type=issue_in.device_type,
        media_url=issue_in.media_url,
        media_kind=issue_in.media_kind,
    )

    diagnosis_error = None
    try:
        issue = diagnose_issue(lifecycle, inference, issue.id)
    except UpstreamError as exc:
        diagnosis_error = exc.detail

    return IssueCreated(issue=IssueResponse.model_validate(issue), diagnosis_error=diagnosis_error)


@router.post("/detect-device", response_model=DeviceDetectResponse)
def detect_device(
    request: DeviceDetectRequest,
    actor: Actor = Depends(get_current_actor),
    inference: DeviceDetector = Depends(get_inference),
):
    """
    Guess the device category from a photo, to pre-fill the submission form.
    Never fails: anything unrecognised comes back as 'Other'.
    """
    device_type, description = inference.detect_device(request.media_url)
    return DeviceDetectResponse(device_type=device_type, description=description)


@router.get("", response_model=List[IssueResponse])
def list_issues(
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    status: Optional[IssueStatus] = None,
    device_type: Optional[str] = None,
    search: Optional[str] = None,
    actor: Actor = Depends(get_current_actor),
    lifecycle: IssueLifecycle = Depends(get_lifecycle),
):
    """
    Experts see every issue; submitters see their own. Newest first.
    """
    return lifecycle.list_issues(
        actor,
        status=status,
        device_type=device_type,
        search=search,
        skip=skip,
        limit=limit,
    )


@router.get("/{issue_id}", response_model=IssueResponse)
def get_issue(issue_id: str, actor: Actor = Depends(get_current_actor), lifecycle: IssueLifecycle = Depends(get_lifecycle)):
    return lifecycle.get_issue_for(actor, issue_id)


@router.get("/{issue_id}/snapshot", response_model=IssueSnapshot)
def get_snapshot(issue_id: str, actor: Actor = Depends(get_current_actor), lifecycle: IssueLifecycle = Depends(get_lifecycle)):
    """
    Pull-model view: the issue plus its full message history, oldest first.
    Polling this converges to the same state the event stream delivers.
    """
    lifecycle.get_issue_for(actor, issue_id)
    issue, messages = lifecycle.snapshot(issue_id)
    return snapshot_payload(issue, messages)


@router.get("/{issue_id}/history", response_model=List[StatusChangeResponse])
def get_history(issue_id: str, actor: Actor = Depends(get_current_actor), lifecycle: IssueLifecycle = Depends(get_lifecycle)):
    lifecycle.get_issue_for(actor, issue_id)
    return lifecycle.history(issue_id)


@router.post("/{issue_id}/diagnose", response_model=IssueResponse)
def retry_diagnosis(
    issue_id: str,
    actor: Actor = Depends(get_current_actor),
    lifecycle: IssueLifecycle = Depends(get_lifecycle),
    inference=Depends(get_inference),
):
    lifecycle.get_issue_for(actor, issue_id)
    return diagnose_issue(lifecycle, inference, issue_id)


@router.post("/{issue_id}/payment-request", response_model=IssueResponse)
def request_payment(issue_id: str, actor: Actor = Depends(get_current_actor), lifecycle: IssueLifecycle = Depends(get_lifecycle)):
    return lifecycle.request_payment(issue_id, actor)


@router.post("/{issue_id}/close", response_model=IssueResponse)
def close_issue(
    issue_id: str,
    close_in: Optional[CloseRequest] = None,
    actor: Actor = Depends(get_current_actor),
    lifecycle: IssueLifecycle = Depends(get_lifecycle),
):
    """
    Close an issue. Expert only, and final: a closed issue accepts no further
    messages or payments.
    """
    return lifecycle.close_issue(issue_id, actor, reason=close_in.reason if close_in else None)
