import logging
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from sqlalchemy.orm import Session

from exceptions.exceptions import NotAuthenticated, NotFound
from lending import models
from lending.crud import authenticate_profile
from lending.storage import get_db
from lending.transitions import (
    BorrowAction,
    Role,
    Transition,
    allowed_actions,
    plan_transition,
)

logger = logging.getLogger(__name__)

security = HTTPBasic(auto_error=False)


def get_current_actor(
    credentials: Optional[HTTPBasicCredentials] = Depends(security),
    db: Session = Depends(get_db),
) -> Optional[int]:
    """Resolve the calling profile id, or ``None`` when nobody is signed in."""
    if credentials is None:
        return None
    actor_id = authenticate_profile(db, credentials.username, credentials.password)
    if actor_id is None:
        logger.warning(f"Rejected credentials for {credentials.username}")
    return actor_id


def require_actor(actor_id: Optional[int]) -> int:
    if actor_id is None:
        raise NotAuthenticated()
    return actor_id


def resolve_role(record: models.BorrowRecord, actor_id: int) -> Role:
    # Records are only visible to the two people they involve.
    if record.owner_id == actor_id:
        return Role.OWNER
    if record.borrower_id == actor_id:
        return Role.BORROWER
    raise NotFound("Borrow record", record.id)


def authorize(
    record: models.BorrowRecord, actor_id: Optional[int], action: BorrowAction
) -> Transition:
    actor_id = require_actor(actor_id)
    role = resolve_role(record, actor_id)
    return plan_transition(record.status, action, role)


def visible_actions(record: models.BorrowRecord, actor_id: int):
    return allowed_actions(record.status, resolve_role(record, actor_id))
