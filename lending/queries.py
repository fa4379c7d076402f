"""Read-only dashboard views over borrow records.

Items and profiles come from collaborators that may have lost a row since
the record was written, so every join falls back to a placeholder.
"""
from typing import Dict, Iterable, List

from sqlalchemy.orm import Session

from lending import crud, models
from lending.schemas import (
    ActiveBorrowSchema,
    ActiveLoanSchema,
    BorrowCountsSchema,
    HistoryEntrySchema,
    IncomingRequestSchema,
    ItemBorrowStatusSchema,
    ItemSnapshot,
    ProfileSnapshot,
    SentRequestSchema,
)
from lending.transitions import ACTIVE_STATUSES, BorrowStatus

SENT_STATUSES = (BorrowStatus.REQUESTED, BorrowStatus.APPROVED, BorrowStatus.DECLINED)
IN_HAND_STATUSES = (BorrowStatus.APPROVED, BorrowStatus.BORROWED)

HISTORY_LIMIT = 20


def placeholder_item(item_id: int) -> ItemSnapshot:
    return ItemSnapshot(id=item_id, name="Item", image_url="", category="top")


def placeholder_profile(profile_id: int) -> ProfileSnapshot:
    return ProfileSnapshot(id=profile_id, username="User", display_name=None, avatar_url=None)


class Snapshots:
    """Batch-loaded items and profiles for a page of records."""

    def __init__(self, db: Session, records: Iterable[models.BorrowRecord], *roles: str):
        records = list(records)
        self.items = crud.get_items_by_ids(db, (r.item_id for r in records))
        profile_ids = set()
        for role in roles:
            profile_ids.update(getattr(r, f"{role}_id") for r in records)
        self.profiles = crud.get_profiles_by_ids(db, profile_ids)

    def item(self, item_id: int) -> ItemSnapshot:
        item = self.items.get(item_id)
        if item is None:
            return placeholder_item(item_id)
        return ItemSnapshot.model_validate(item)

    def profile(self, profile_id: int) -> ProfileSnapshot:
        profile = self.profiles.get(profile_id)
        if profile is None:
            return placeholder_profile(profile_id)
        return ProfileSnapshot.model_validate(profile)


def list_incoming(db: Session, actor_id: int) -> List[IncomingRequestSchema]:
    records = crud.filter_records(
        db,
        owner_id=actor_id,
        statuses=[BorrowStatus.REQUESTED],
        order_by=crud.newest_first(),
    )
    snapshots = Snapshots(db, records, "borrower")
    return [
        IncomingRequestSchema(
            id=r.id,
            item=snapshots.item(r.item_id),
            requester=snapshots.profile(r.borrower_id),
            notes=r.notes,
            expected_return_date=r.expected_return_date,
            created_at=r.created_at,
        )
        for r in records
    ]


def list_sent(db: Session, actor_id: int) -> List[SentRequestSchema]:
    records = crud.filter_records(
        db,
        borrower_id=actor_id,
        statuses=SENT_STATUSES,
        order_by=crud.newest_first(),
    )
    snapshots = Snapshots(db, records, "owner")
    return [
        SentRequestSchema(
            id=r.id,
            item=snapshots.item(r.item_id),
            owner=snapshots.profile(r.owner_id),
            status=r.status,
            notes=r.notes,
            created_at=r.created_at,
        )
        for r in records
    ]


def list_active_borrows(db: Session, actor_id: int) -> List[ActiveBorrowSchema]:
    records = crud.filter_records(
        db,
        borrower_id=actor_id,
        statuses=IN_HAND_STATUSES,
        order_by=crud.recently_borrowed_first(),
    )
    snapshots = Snapshots(db, records, "owner")
    return [
        ActiveBorrowSchema(
            id=r.id,
            item=snapshots.item(r.item_id),
            owner=snapshots.profile(r.owner_id),
            status=r.status,
            borrowed_at=r.borrowed_at,
            expected_return_date=r.expected_return_date,
            notes=r.notes,
        )
        for r in records
    ]


def list_active_loans(db: Session, actor_id: int) -> List[ActiveLoanSchema]:
    records = crud.filter_records(
        db,
        owner_id=actor_id,
        statuses=IN_HAND_STATUSES,
        order_by=crud.recently_borrowed_first(),
    )
    snapshots = Snapshots(db, records, "borrower")
    return [
        ActiveLoanSchema(
            id=r.id,
            item=snapshots.item(r.item_id),
            borrower=snapshots.profile(r.borrower_id),
            status=r.status,
            borrowed_at=r.borrowed_at,
            expected_return_date=r.expected_return_date,
            notes=r.notes,
        )
        for r in records
    ]


def list_history(
    db: Session, actor_id: int, limit: int = HISTORY_LIMIT
) -> List[HistoryEntrySchema]:
    records = crud.filter_records(
        db,
        participant_id=actor_id,
        statuses=[BorrowStatus.RETURNED],
        order_by=crud.recently_returned_first(),
        limit=limit,
    )
    snapshots = Snapshots(db, records, "owner", "borrower")
    return [
        HistoryEntrySchema(
            id=r.id,
            item=snapshots.item(r.item_id),
            owner=snapshots.profile(r.owner_id),
            borrower=snapshots.profile(r.borrower_id),
            borrowed_at=r.borrowed_at,
            returned_at=r.returned_at,
            created_at=r.created_at,
        )
        for r in records
    ]


def borrow_counts(db: Session, actor_id: int) -> BorrowCountsSchema:
    return BorrowCountsSchema(
        pending_requests=crud.count_records(
            db, [BorrowStatus.REQUESTED], owner_id=actor_id
        ),
        active_borrows=crud.count_records(db, IN_HAND_STATUSES, borrower_id=actor_id),
    )


def item_borrow_statuses(
    db: Session, actor_id: int, item_ids: Iterable[int]
) -> Dict[int, ItemBorrowStatusSchema]:
    """The caller's active record per item, or an empty status."""
    unique_ids = list(dict.fromkeys(i for i in item_ids if i is not None))
    result = {item_id: ItemBorrowStatusSchema() for item_id in unique_ids}
    if not unique_ids:
        return result

    records = crud.filter_records(
        db,
        borrower_id=actor_id,
        item_ids=unique_ids,
        statuses=ACTIVE_STATUSES,
        order_by=crud.newest_first(),
    )
    for r in records:
        if r.item_id in result and result[r.item_id].status is None:
            result[r.item_id] = ItemBorrowStatusSchema(status=r.status, request_id=r.id)
    return result
