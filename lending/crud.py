import logging
from datetime import date, datetime
from typing import Dict, Iterable, List, Optional

import bcrypt
from sqlalchemy import delete, func, nulls_first, or_, update
from sqlalchemy.exc import (
    DBAPIError,
    IntegrityError,
    OperationalError,
    SQLAlchemyError,
    TimeoutError as PoolTimeoutError,
)
from sqlalchemy.orm import Session

from lending import models, schemas
from lending.transitions import ACTIVE_STATUSES, BorrowStatus
from exceptions.exceptions import (
    AlreadyActive,
    DatabaseError,
    NotFound,
    ProfileExists,
    StaleState,
    Unavailable,
)

logger = logging.getLogger(__name__)

SINGLE_ACTIVE_INDEX = "idx_borrowed_items_single_active_per_item"

ACTIVE_VALUES = [s.value for s in ACTIVE_STATUSES]


def _storage_error(operation: str, e: SQLAlchemyError):
    """Translate a driver failure into the lending error taxonomy."""
    if isinstance(e, (OperationalError, PoolTimeoutError)) or (
        isinstance(e, DBAPIError) and e.connection_invalidated
    ):
        logger.error(f"Storage unavailable during {operation}: {e}")
        return Unavailable(operation, str(e))
    logger.error(f"Database error during {operation}: {e}")
    return DatabaseError(operation, str(e))


def _is_single_active_violation(e: IntegrityError) -> bool:
    if getattr(e.orig, "pgcode", None) == "23505":
        return True
    raw = str(e.orig).lower()
    return SINGLE_ACTIVE_INDEX in raw or (
        "unique" in raw and "borrowed_items.item_id" in raw
    )


def _is_duplicate_email(e: IntegrityError) -> bool:
    if getattr(e.orig, "pgcode", None) == "23505":
        return True
    raw = str(e.orig).lower()
    return "unique" in raw and "profiles.email" in raw


# Identity collaborator


def create_profile(db: Session, profile: schemas.ProfileCreate):
    try:
        hashed_password = bcrypt.hashpw(
            profile.password.encode("utf-8"), bcrypt.gensalt()
        )
        db_profile = models.Profile(
            email=profile.email,
            username=profile.username,
            display_name=profile.display_name,
            avatar_url=profile.avatar_url,
            hashed_password=hashed_password.decode("utf-8"),
        )
        db.add(db_profile)
        db.commit()
        db.refresh(db_profile)
        return db_profile
    except IntegrityError as e:
        db.rollback()
        if not _is_duplicate_email(e):
            raise _storage_error("create profile", e)
        logger.warning(f"Profile with email {profile.email} already exists")
        raise ProfileExists(profile.email)
    except SQLAlchemyError as e:
        db.rollback()
        raise _storage_error("create profile", e)


def authenticate_profile(db: Session, email: str, password: str) -> Optional[int]:
    try:
        profile = (
            db.query(models.Profile).filter(models.Profile.email == email).first()
        )
    except SQLAlchemyError as e:
        raise _storage_error("authenticate", e)
    if profile is None or not profile.hashed_password:
        return None
    if not bcrypt.checkpw(password.encode("utf-8"), profile.hashed_password.encode("utf-8")):
        return None
    return profile.id


def get_profiles_by_ids(db: Session, profile_ids: Iterable[int]) -> Dict[int, models.Profile]:
    ids = set(profile_ids)
    if not ids:
        return {}
    try:
        profiles = db.query(models.Profile).filter(models.Profile.id.in_(ids)).all()
        return {p.id: p for p in profiles}
    except SQLAlchemyError as e:
        raise _storage_error("fetch profiles", e)


# Catalog collaborator


def create_item(db: Session, item: schemas.ItemCreate, owner_id: int):
    try:
        db_item = models.Item(**item.model_dump(), owner_id=owner_id)
        db.add(db_item)
        db.commit()
        db.refresh(db_item)
        return db_item
    except SQLAlchemyError as e:
        db.rollback()
        raise _storage_error("create item", e)


def get_item(db: Session, item_id: int):
    try:
        item = db.query(models.Item).filter(models.Item.id == item_id).first()
    except SQLAlchemyError as e:
        raise _storage_error("fetch item", e)
    if item is None:
        raise NotFound("Item", item_id)
    return item


def get_items_by_ids(db: Session, item_ids: Iterable[int]) -> Dict[int, models.Item]:
    ids = set(item_ids)
    if not ids:
        return {}
    try:
        items = db.query(models.Item).filter(models.Item.id.in_(ids)).all()
        return {i.id: i for i in items}
    except SQLAlchemyError as e:
        raise _storage_error("fetch items", e)


# Borrow records


def get_record(db: Session, record_id: str) -> models.BorrowRecord:
    try:
        record = db.get(models.BorrowRecord, record_id, populate_existing=True)
    except SQLAlchemyError as e:
        raise _storage_error("fetch borrow record", e)
    if record is None:
        raise NotFound("Borrow record", record_id)
    return record


def find_active_record(db: Session, item_id: int) -> Optional[models.BorrowRecord]:
    try:
        return (
            db.query(models.BorrowRecord)
            .filter(
                models.BorrowRecord.item_id == item_id,
                models.BorrowRecord.status.in_(ACTIVE_VALUES),
            )
            .first()
        )
    except SQLAlchemyError as e:
        raise _storage_error("fetch active record", e)


def create_record(db: Session, record: models.BorrowRecord) -> models.BorrowRecord:
    """Insert a new active record.

    The partial unique index over ``item_id`` is what makes this safe under
    concurrent requests: there is no read before the insert, the losing
    writer gets a unique violation.
    """
    try:
        db.add(record)
        db.commit()
        db.refresh(record)
        return record
    except IntegrityError as e:
        db.rollback()
        if not _is_single_active_violation(e):
            raise _storage_error("create borrow record", e)
        existing = find_active_record(db, record.item_id)
        own_id = None
        if existing is not None and existing.borrower_id == record.borrower_id:
            own_id = existing.id
        logger.warning(f"Item {record.item_id} already has an active borrow record")
        raise AlreadyActive(record.item_id, own_id)
    except SQLAlchemyError as e:
        db.rollback()
        raise _storage_error("create borrow record", e)


def conditional_update(
    db: Session,
    record_id: str,
    expected_status: BorrowStatus,
    new_status: BorrowStatus,
    fields: Optional[Dict[str, datetime]] = None,
) -> models.BorrowRecord:
    values = dict(fields or {})
    values["status"] = new_status.value
    try:
        result = db.execute(
            update(models.BorrowRecord)
            .where(
                models.BorrowRecord.id == record_id,
                models.BorrowRecord.status == expected_status.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            db.rollback()
            # distinguishes a concurrent transition from a concurrent delete
            get_record(db, record_id)
            logger.warning(
                f"Borrow record {record_id} changed concurrently, expected {expected_status.value}"
            )
            raise StaleState(record_id, expected_status.value)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise _storage_error("update borrow record", e)
    return get_record(db, record_id)


def delete_record(
    db: Session,
    record_id: str,
    expected_borrower_id: int,
    expected_status: BorrowStatus = BorrowStatus.REQUESTED,
) -> None:
    try:
        result = db.execute(
            delete(models.BorrowRecord)
            .where(
                models.BorrowRecord.id == record_id,
                models.BorrowRecord.borrower_id == expected_borrower_id,
                models.BorrowRecord.status == expected_status.value,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            db.rollback()
            get_record(db, record_id)
            logger.warning(
                f"Borrow record {record_id} changed concurrently, expected {expected_status.value}"
            )
            raise StaleState(record_id, expected_status.value)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise _storage_error("delete borrow record", e)


def filter_records(
    db: Session,
    owner_id: Optional[int] = None,
    borrower_id: Optional[int] = None,
    participant_id: Optional[int] = None,
    item_ids: Optional[Iterable[int]] = None,
    statuses: Optional[Iterable[BorrowStatus]] = None,
    order_by=None,
    limit: Optional[int] = None,
) -> List[models.BorrowRecord]:
    try:
        query = db.query(models.BorrowRecord)
        if owner_id is not None:
            query = query.filter(models.BorrowRecord.owner_id == owner_id)
        if borrower_id is not None:
            query = query.filter(models.BorrowRecord.borrower_id == borrower_id)
        if participant_id is not None:
            query = query.filter(
                or_(
                    models.BorrowRecord.owner_id == participant_id,
                    models.BorrowRecord.borrower_id == participant_id,
                )
            )
        if item_ids is not None:
            query = query.filter(models.BorrowRecord.item_id.in_(list(item_ids)))
        if statuses is not None:
            query = query.filter(
                models.BorrowRecord.status.in_([BorrowStatus(s).value for s in statuses])
            )
        if order_by is not None:
            query = query.order_by(*order_by)
        if limit is not None:
            query = query.limit(limit)
        return query.all()
    except SQLAlchemyError as e:
        raise _storage_error("filter borrow records", e)


def count_records(
    db: Session,
    statuses: Iterable[BorrowStatus],
    owner_id: Optional[int] = None,
    borrower_id: Optional[int] = None,
) -> int:
    try:
        query = db.query(func.count(models.BorrowRecord.id)).filter(
            models.BorrowRecord.status.in_([BorrowStatus(s).value for s in statuses])
        )
        if owner_id is not None:
            query = query.filter(models.BorrowRecord.owner_id == owner_id)
        if borrower_id is not None:
            query = query.filter(models.BorrowRecord.borrower_id == borrower_id)
        return query.scalar() or 0
    except SQLAlchemyError as e:
        raise _storage_error("count borrow records", e)


def newest_first():
    return [models.BorrowRecord.created_at.desc(), models.BorrowRecord.id]


def recently_borrowed_first():
    return [
        nulls_first(models.BorrowRecord.borrowed_at.desc()),
        models.BorrowRecord.created_at.desc(),
    ]


def recently_returned_first():
    return [models.BorrowRecord.returned_at.desc(), models.BorrowRecord.id]


def new_record(
    item_id: int,
    owner_id: int,
    borrower_id: int,
    status: BorrowStatus,
    now: datetime,
    notes: Optional[str] = None,
    expected_return_date: Optional[date] = None,
) -> models.BorrowRecord:
    return models.BorrowRecord(
        item_id=item_id,
        owner_id=owner_id,
        borrower_id=borrower_id,
        status=status.value,
        notes=notes or None,
        expected_return_date=expected_return_date,
        created_at=now,
        updated_at=now,
    )
