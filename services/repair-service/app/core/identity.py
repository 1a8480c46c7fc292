from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from app.core.db import get_db
from app.models.issue import Profile
from app.schemas.issue import Capability

SYSTEM_ACTOR = "system"


@dataclass(frozen=True)
class Actor:
    id: str
    display_name: str
    capability: Capability

    @property
    def is_expert(self) -> bool:
        return self.capability is Capability.EXPERT

    @classmethod
    def from_profile(cls, profile: Profile) -> "Actor":
        return cls(
            id=profile.id,
            display_name=profile.display_name,
            capability=Capability(profile.capability),
        )


def resolve_actor(db: Session, user_id: Optional[str]) -> Actor:
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-Id header")
    profile = db.get(Profile, user_id)
    if profile is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unknown user")
    return Actor.from_profile(profile)


def get_current_actor(x_user_id: Optional[str] = Header(None), db: Session = Depends(get_db)) -> Actor:
    """
    currentUser() for HTTP routes. Session handling lives with the identity
    provider in front of this service; here we only trust its user id.
    """
    return resolve_actor(db, x_user_id)


