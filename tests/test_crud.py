import pytest
from sqlalchemy import update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from exceptions.exceptions import (
    AlreadyActive,
    NotFound,
    ProfileExists,
    StaleState,
    Unavailable,
)
from lending import crud, models
from lending.schemas import ProfileCreate
from lending.transitions import BorrowStatus


def _record(item, borrower, status=BorrowStatus.REQUESTED):
    return crud.new_record(
        item_id=item.id,
        owner_id=item.owner_id,
        borrower_id=borrower.id,
        status=status,
        now=models.utcnow(),
        notes="for the weekend",
    )


def test_create_record(db_session: Session, test_item, borrower):
    record = crud.create_record(db_session, _record(test_item, borrower))
    assert len(record.id) == 36
    assert record.status == "requested"
    assert record.created_at == record.updated_at
    assert record.borrowed_at is None
    assert record.returned_at is None


def test_second_active_record_is_rejected(db_session, test_item, borrower, other_borrower):
    crud.create_record(db_session, _record(test_item, borrower))

    with pytest.raises(AlreadyActive) as exc_info:
        crud.create_record(db_session, _record(test_item, other_borrower))
    assert exc_info.value.record_id is None
    assert crud.count_records(db_session, [BorrowStatus.REQUESTED]) == 1


def test_retry_by_same_borrower_finds_own_record(db_session, test_item, borrower):
    first = crud.create_record(db_session, _record(test_item, borrower))

    with pytest.raises(AlreadyActive) as exc_info:
        crud.create_record(db_session, _record(test_item, borrower))
    assert exc_info.value.record_id == first.id


def test_inactive_records_do_not_block(db_session, test_item, borrower, other_borrower):
    crud.create_record(db_session, _record(test_item, borrower, BorrowStatus.DECLINED))
    crud.create_record(db_session, _record(test_item, borrower, BorrowStatus.RETURNED))

    record = crud.create_record(db_session, _record(test_item, other_borrower))
    assert record.status == "requested"


def test_conditional_update(db_session, test_item, borrower):
    record = crud.create_record(db_session, _record(test_item, borrower))
    now = models.utcnow()

    updated = crud.conditional_update(
        db_session,
        record.id,
        BorrowStatus.REQUESTED,
        BorrowStatus.APPROVED,
        {"updated_at": now},
    )
    assert updated.status == "approved"
    assert updated.updated_at >= updated.created_at


def test_conditional_update_detects_concurrent_change(
    db_session, session_factory, test_item, borrower
):
    record = crud.create_record(db_session, _record(test_item, borrower))

    # another actor declines the request through a separate connection
    with session_factory() as other:
        crud.conditional_update(
            other, record.id, BorrowStatus.REQUESTED, BorrowStatus.DECLINED
        )

    with pytest.raises(StaleState):
        crud.conditional_update(
            db_session, record.id, BorrowStatus.REQUESTED, BorrowStatus.APPROVED
        )
    assert crud.get_record(db_session, record.id).status == "declined"


def test_conditional_update_missing_record(db_session):
    with pytest.raises(NotFound):
        crud.conditional_update(
            db_session, "missing", BorrowStatus.REQUESTED, BorrowStatus.APPROVED
        )


def test_delete_record(db_session, test_item, borrower):
    record = crud.create_record(db_session, _record(test_item, borrower))
    record_id = record.id

    crud.delete_record(db_session, record_id, borrower.id)

    with pytest.raises(NotFound):
        crud.get_record(db_session, record_id)


def test_delete_requires_requested_status(db_session, test_item, borrower):
    record = crud.create_record(db_session, _record(test_item, borrower))
    db_session.execute(
        update(models.BorrowRecord)
        .where(models.BorrowRecord.id == record.id)
        .values(status="approved")
    )
    db_session.commit()

    with pytest.raises(StaleState):
        crud.delete_record(db_session, record.id, borrower.id)
    assert crud.get_record(db_session, record.id).status == "approved"


def test_delete_requires_matching_borrower(db_session, test_item, borrower, other_borrower):
    record = crud.create_record(db_session, _record(test_item, borrower))

    with pytest.raises(StaleState):
        crud.delete_record(db_session, record.id, other_borrower.id)


def test_get_item_not_found(db_session):
    with pytest.raises(NotFound):
        crud.get_item(db_session, 999)


def test_authenticate_profile(db_session, borrower):
    assert crud.authenticate_profile(db_session, borrower.email, "testpassword") == borrower.id
    assert crud.authenticate_profile(db_session, borrower.email, "wrong") is None
    assert crud.authenticate_profile(db_session, "nobody@example.com", "testpassword") is None
    assert borrower.hashed_password != "testpassword"


def test_operational_errors_are_unavailable(db_session, monkeypatch):
    def lost_connection(*args, **kwargs):
        raise OperationalError("SELECT 1", {}, Exception("server closed the connection"))

    monkeypatch.setattr(db_session, "get", lost_connection)

    with pytest.raises(Unavailable):
        crud.get_record(db_session, "any")


def test_duplicate_email_is_rejected(db_session, borrower):
    duplicate = ProfileCreate(email=borrower.email, username="bruno2", password="secret")

    with pytest.raises(ProfileExists):
        crud.create_profile(db_session, duplicate)
    assert crud.authenticate_profile(db_session, borrower.email, "testpassword") == borrower.id
