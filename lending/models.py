import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import declarative_base

from lending.transitions import ACTIVE_STATUSES, STORED_STATUSES

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _quoted(statuses) -> str:
    return ", ".join(f"'{s.value}'" for s in sorted(statuses, key=lambda s: s.value))


ACTIVE_STATUS_CLAUSE = text(f"status IN ({_quoted(ACTIVE_STATUSES)})")


class Profile(Base):
    __tablename__ = "profiles"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, nullable=False, index=True)
    username = Column(String, nullable=False)
    display_name = Column(String, nullable=True)
    avatar_url = Column(String, nullable=True)
    hashed_password = Column(String)


class Item(Base):
    __tablename__ = "items"

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(Integer, nullable=False, index=True)
    name = Column(String, nullable=False)
    image_url = Column(String, nullable=False, default="")
    category = Column(String, nullable=False)


class BorrowRecord(Base):
    __tablename__ = "borrowed_items"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    # references into the catalog and identity collaborators, not owned here
    item_id = Column(Integer, nullable=False)
    owner_id = Column(Integer, nullable=False)
    borrower_id = Column(Integer, nullable=False)

    status = Column(String(16), nullable=False, default="requested")
    notes = Column(Text, nullable=True)
    expected_return_date = Column(Date, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    borrowed_at = Column(DateTime(timezone=True), nullable=True)
    returned_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("owner_id <> borrower_id", name="no_self_borrow"),
        CheckConstraint(
            f"status IN ({_quoted(STORED_STATUSES)})", name="valid_borrow_status"
        ),
        Index("idx_borrowed_owner", "owner_id", "status"),
        Index("idx_borrowed_borrower", "borrower_id", "status"),
        Index("idx_borrowed_item", "item_id"),
        Index(
            "idx_borrowed_items_single_active_per_item",
            "item_id",
            unique=True,
            postgresql_where=ACTIVE_STATUS_CLAUSE,
            sqlite_where=ACTIVE_STATUS_CLAUSE,
        ),
    )

    def __repr__(self):
        return f"<BorrowRecord {self.id} item={self.item_id} status={self.status}>"


class ActivityEvent(Base):
    __tablename__ = "activity_feed"

    id = Column(Integer, primary_key=True, index=True)
    recipient_id = Column(Integer, nullable=False, index=True)
    actor_id = Column(Integer, nullable=False)
    activity_type = Column(String, nullable=False)
    target_type = Column(String, nullable=False, default="borrowed_item")
    target_id = Column(String(36), nullable=False)
    metadata_ = Column("metadata", JSON, nullable=False, default=dict)
    is_read = Column(Boolean, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
