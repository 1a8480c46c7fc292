from fastapi import Depends, Request
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.db import get_db
from app.core.lifecycle import IssueLifecycle
from app.repositories.store import SqlRepairStore


def get_lifecycle(request: Request, db: Session = Depends(get_db)) -> IssueLifecycle:
    return IssueLifecycle(
        SqlRepairStore(db),
        notifier=request.app.state.notifier,
        consultation_price=settings.CONSULTATION_PRICE_MINOR_UNITS,
        currency=settings.CURRENCY,
    )
