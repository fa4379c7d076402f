"""Borrow lifecycle state machine.

Everything here is a pure function of (status, action, role); nothing reads
or writes storage. A transition whose target is ``None`` removes the record
instead of moving it to a new status.
"""
import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, FrozenSet, List, Optional, Tuple

from exceptions.exceptions import InvalidTransition, NotAuthorized


class BorrowStatus(str, enum.Enum):
    REQUESTED = "requested"
    APPROVED = "approved"
    DECLINED = "declined"
    BORROWED = "borrowed"
    RETURNED = "returned"
    CANCELLED = "cancelled"


class BorrowAction(str, enum.Enum):
    REQUEST = "request"
    APPROVE = "approve"
    DECLINE = "decline"
    CANCEL = "cancel"
    MARK_BORROWED = "mark_borrowed"
    MARK_RETURNED = "mark_returned"


class Role(str, enum.Enum):
    OWNER = "owner"
    BORROWER = "borrower"


ACTIVE_STATUSES: FrozenSet[BorrowStatus] = frozenset(
    {BorrowStatus.REQUESTED, BorrowStatus.APPROVED, BorrowStatus.BORROWED}
)
TERMINAL_STATUSES: FrozenSet[BorrowStatus] = frozenset(
    {BorrowStatus.DECLINED, BorrowStatus.RETURNED}
)
# cancelled records are deleted, so the status never reaches storage
STORED_STATUSES: FrozenSet[BorrowStatus] = frozenset(BorrowStatus) - {
    BorrowStatus.CANCELLED
}

EITHER = frozenset({Role.OWNER, Role.BORROWER})

ACTION_ROLES: Dict[BorrowAction, FrozenSet[Role]] = {
    BorrowAction.REQUEST: frozenset({Role.BORROWER}),
    BorrowAction.APPROVE: frozenset({Role.OWNER}),
    BorrowAction.DECLINE: frozenset({Role.OWNER}),
    BorrowAction.CANCEL: frozenset({Role.BORROWER}),
    BorrowAction.MARK_BORROWED: EITHER,
    BorrowAction.MARK_RETURNED: EITHER,
}


@dataclass(frozen=True)
class Transition:
    action: BorrowAction
    source: Optional[BorrowStatus]
    target: Optional[BorrowStatus]
    stamp: Optional[str] = None

    @property
    def deletes(self) -> bool:
        return self.source is not None and self.target is None

    def timestamps(self, now: datetime) -> Dict[str, datetime]:
        fields = {"updated_at": now}
        if self.stamp:
            fields[self.stamp] = now
        return fields


REQUEST_TRANSITION = Transition(BorrowAction.REQUEST, None, BorrowStatus.REQUESTED)

TRANSITIONS: Dict[Tuple[BorrowStatus, BorrowAction], Transition] = {
    (BorrowStatus.REQUESTED, BorrowAction.APPROVE): Transition(
        BorrowAction.APPROVE, BorrowStatus.REQUESTED, BorrowStatus.APPROVED
    ),
    (BorrowStatus.REQUESTED, BorrowAction.DECLINE): Transition(
        BorrowAction.DECLINE, BorrowStatus.REQUESTED, BorrowStatus.DECLINED
    ),
    (BorrowStatus.REQUESTED, BorrowAction.CANCEL): Transition(
        BorrowAction.CANCEL, BorrowStatus.REQUESTED, None
    ),
    (BorrowStatus.APPROVED, BorrowAction.MARK_BORROWED): Transition(
        BorrowAction.MARK_BORROWED,
        BorrowStatus.APPROVED,
        BorrowStatus.BORROWED,
        stamp="borrowed_at",
    ),
    (BorrowStatus.APPROVED, BorrowAction.MARK_RETURNED): Transition(
        BorrowAction.MARK_RETURNED,
        BorrowStatus.APPROVED,
        BorrowStatus.RETURNED,
        stamp="returned_at",
    ),
    (BorrowStatus.BORROWED, BorrowAction.MARK_RETURNED): Transition(
        BorrowAction.MARK_RETURNED,
        BorrowStatus.BORROWED,
        BorrowStatus.RETURNED,
        stamp="returned_at",
    ),
}


def check_role(action: BorrowAction, role: Role) -> None:
    if role not in ACTION_ROLES[action]:
        raise NotAuthorized(action.value, role.value)


def plan_request(role: Role = Role.BORROWER) -> Transition:
    check_role(BorrowAction.REQUEST, role)
    return REQUEST_TRANSITION


def plan_transition(status, action, role: Role) -> Transition:
    """Decide the transition for ``action`` taken by ``role`` from ``status``.

    The role is checked first because each action has a fixed set of roles
    regardless of status. Any (status, action) pair missing from
    ``TRANSITIONS`` is an ``InvalidTransition``, including ``request`` on an
    existing record.
    """
    status = BorrowStatus(status)
    action = BorrowAction(action)
    check_role(action, role)

    transition = TRANSITIONS.get((status, action))
    if transition is None:
        raise InvalidTransition(status.value, action.value)
    return transition


def allowed_actions(status, role: Role) -> List[BorrowAction]:
    status = BorrowStatus(status)
    if status in TERMINAL_STATUSES:
        return []
    return [
        action
        for (source, action), _ in TRANSITIONS.items()
        if source == status and role in ACTION_ROLES[action]
    ]
