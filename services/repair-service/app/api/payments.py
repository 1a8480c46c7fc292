from typing import List

from fastapi import APIRouter, Depends, status

from app.api.deps import get_lifecycle
from app.core.identity import Actor, get_current_actor
from app.core.lifecycle import IssueLifecycle
from app.schemas.issue import PaymentCreate, PaymentResponse
from app.services.payments import get_payment_provider

router = APIRouter(prefix="/issues/{issue_id}/payments", tags=["Payments"])


@router.post("", response_model=PaymentResponse, status_code=status.HTTP_201_CREATED)
def create_payment(
    issue_id: str,
    payment_in: PaymentCreate,
    actor: Actor = Depends(get_current_actor),
    lifecycle: IssueLifecycle = Depends(get_lifecycle),
    provider=Depends(get_payment_provider),
):
    """
    Pay for a live consultation. Repeating the call after a successful
    payment returns the first payment instead of charging again.
    """
    return lifecycle.record_payment(issue_id, actor.id, payment_in.amount_minor_units, provider)


@router.get("", response_model=List[PaymentResponse])
def list_payments(issue_id: str, actor: Actor = Depends(get_current_actor), lifecycle: IssueLifecycle = Depends(get_lifecycle)):
    lifecycle.get_issue_for(actor, issue_id)
    return lifecycle.list_payments(issue_id)
