from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from app.core.db import get_db
from app.core.identity import Actor, get_current_actor
from app.core.timeutil import utcnow
from app.models.issue import Profile, new_id
from app.schemas.issue import ProfileCreate, ProfileResponse

router = APIRouter(prefix="/profiles", tags=["Profiles"])


@router.post("", response_model=ProfileResponse, status_code=status.HTTP_201_CREATED)
def create_profile(profile_in: ProfileCreate, db: Session = Depends(get_db)):
    """
    Provision a profile. The capability is fixed here, by whoever provisions
    the account, and is never inferred from the name or email.
    """
    profile = Profile(
        id=new_id(),
        display_name=profile_in.display_name.strip(),
        email=profile_in.email,
        phone=profile_in.phone,
        capability=profile_in.capability.value,
        created_at=utcnow(),
    )
    try:
        db.add(profile)
        db.commit()
        db.refresh(profile)
        return profile
    except Exception:
        db.rollback()
        raise


@router.get("/me", response_model=ProfileResponse)
def read_current_profile(actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    return db.get(Profile, actor.id)
