"""Lending operations.

Each operation runs the same pipeline: resolve the actor, authorize and plan
the transition, perform a single conditional write, then describe the
notification the caller should hand to the emitter.
"""
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import List, Optional

from sqlalchemy.orm import Session

from exceptions.exceptions import (
    AlreadyActive,
    ItemOwnershipMismatch,
    NotFound,
    SelfLoan,
)
from lending import crud, models
from lending.auth import authorize, require_actor, visible_actions
from lending.notifications import NotificationEvent, build_event
from lending.transitions import BorrowAction, Role, plan_request

logger = logging.getLogger(__name__)

# per-item failures in a batch; storage errors abort the whole batch
ITEM_FAILURES = (AlreadyActive, ItemOwnershipMismatch, NotFound, SelfLoan)


@dataclass
class LendingOutcome:
    record_id: str
    record: Optional[models.BorrowRecord] = None
    event: Optional[NotificationEvent] = None
    allowed_actions: List[BorrowAction] = field(default_factory=list)


def request_borrow(
    db: Session,
    actor_id: Optional[int],
    item_id: int,
    owner_id: int,
    notes: Optional[str] = None,
    expected_return_date: Optional[date] = None,
) -> LendingOutcome:
    borrower_id = require_actor(actor_id)

    item = crud.get_item(db, item_id)
    if item.owner_id != owner_id:
        raise ItemOwnershipMismatch(item_id, owner_id)
    if borrower_id == owner_id:
        raise SelfLoan(item_id)

    transition = plan_request(Role.BORROWER)
    record = crud.new_record(
        item_id=item_id,
        owner_id=owner_id,
        borrower_id=borrower_id,
        status=transition.target,
        now=models.utcnow(),
        notes=notes,
        expected_return_date=expected_return_date,
    )
    record = crud.create_record(db, record)
    logger.info(f"User {borrower_id} requested item {item_id} ({record.id})")

    return LendingOutcome(
        record_id=record.id,
        record=record,
        event=build_event(BorrowAction.REQUEST, record, borrower_id),
    )


def request_borrow_many(
    db: Session,
    actor_id: Optional[int],
    items: List[tuple],
    notes: Optional[str] = None,
) -> List[LendingOutcome]:
    """Request several items one at a time.

    Succeeds when at least one request goes through; otherwise the first
    failure is raised.
    """
    require_actor(actor_id)
    outcomes = []
    errors = []
    for item_id, owner_id in items:
        try:
            outcomes.append(request_borrow(db, actor_id, item_id, owner_id, notes))
        except ITEM_FAILURES as e:
            logger.warning(f"Batch request for item {item_id} failed: {e}")
            errors.append(e)

    if not outcomes and errors:
        raise errors[0]
    return outcomes


def _transition(
    db: Session, record_id: str, actor_id: Optional[int], action: BorrowAction
) -> LendingOutcome:
    actor_id = require_actor(actor_id)
    record = crud.get_record(db, record_id)
    transition = authorize(record, actor_id, action)

    if transition.deletes:
        event = build_event(action, record, actor_id)
        crud.delete_record(db, record.id, record.borrower_id, transition.source)
        logger.info(f"User {actor_id} cancelled borrow record {record_id}")
        return LendingOutcome(record_id=record_id, event=event)

    updated = crud.conditional_update(
        db,
        record.id,
        transition.source,
        transition.target,
        transition.timestamps(models.utcnow()),
    )
    logger.info(
        f"User {actor_id} moved borrow record {record_id} "
        f"{transition.source.value} -> {transition.target.value}"
    )
    return LendingOutcome(
        record_id=record_id,
        record=updated,
        event=build_event(action, updated, actor_id),
        allowed_actions=visible_actions(updated, actor_id),
    )


def approve(db: Session, record_id: str, actor_id: Optional[int]) -> LendingOutcome:
    return _transition(db, record_id, actor_id, BorrowAction.APPROVE)


def decline(db: Session, record_id: str, actor_id: Optional[int]) -> LendingOutcome:
    return _transition(db, record_id, actor_id, BorrowAction.DECLINE)


def mark_borrowed(db: Session, record_id: str, actor_id: Optional[int]) -> LendingOutcome:
    return _transition(db, record_id, actor_id, BorrowAction.MARK_BORROWED)


def mark_returned(db: Session, record_id: str, actor_id: Optional[int]) -> LendingOutcome:
    return _transition(db, record_id, actor_id, BorrowAction.MARK_RETURNED)


def cancel(db: Session, record_id: str, actor_id: Optional[int]) -> LendingOutcome:
    return _transition(db, record_id, actor_id, BorrowAction.CANCEL)


def get_record(db: Session, record_id: str, actor_id: Optional[int]) -> LendingOutcome:
    actor_id = require_actor(actor_id)
    record = crud.get_record(db, record_id)
    actions = visible_actions(record, actor_id)
    return LendingOutcome(record_id=record.id, record=record, allowed_actions=actions)
