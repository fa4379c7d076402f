from datetime import date, datetime
import json
from pydantic import BaseModel, Field
from typing import Any, Optional

from lending.transitions import BorrowAction, BorrowStatus


class DateTimeEncoder(json.JSONEncoder):
    def default(self, obj):
        if isinstance(obj, (datetime, date)):
            return obj.isoformat()
        return super().default(obj)


def custom_json_dumps(obj: Any) -> str:
    return json.dumps(obj, cls=DateTimeEncoder)


# Collaborators


class ProfileBase(BaseModel):
    email: str
    username: str
    display_name: str | None = None
    avatar_url: str | None = None


class ProfileCreate(ProfileBase):
    password: str = Field(min_length=1)


class ProfileSchema(ProfileBase):
    id: int

    class Config:
        from_attributes = True


class ItemBase(BaseModel):
    name: str
    category: str
    image_url: str = ""


class ItemCreate(ItemBase):
    pass


class ItemSchema(ItemBase):
    id: int
    owner_id: int

    class Config:
        from_attributes = True


class ItemSnapshot(BaseModel):
    id: int
    name: str
    image_url: str
    category: str

    class Config:
        from_attributes = True


class ProfileSnapshot(BaseModel):
    id: int
    username: str
    display_name: str | None = None
    avatar_url: str | None = None

    class Config:
        from_attributes = True


# Borrow records


class BorrowRequestSchema(BaseModel):
    item_id: int
    owner_id: int
    notes: Optional[str] = Field(None, max_length=1000)
    expected_return_date: Optional[date] = None


class BorrowItemRef(BaseModel):
    item_id: int
    owner_id: int


class BorrowBatchRequestSchema(BaseModel):
    items: list[BorrowItemRef] = Field(min_length=1)
    notes: Optional[str] = Field(None, max_length=1000)


class BorrowCreatedSchema(BaseModel):
    id: str


class BorrowBatchResultSchema(BaseModel):
    count: int


class BorrowRecordSchema(BaseModel):
    id: str
    item_id: int
    owner_id: int
    borrower_id: int
    status: BorrowStatus
    notes: Optional[str] = None
    expected_return_date: Optional[date] = None
    created_at: datetime
    updated_at: datetime
    borrowed_at: Optional[datetime] = None
    returned_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class BorrowRecordDetailSchema(BorrowRecordSchema):
    allowed_actions: list[BorrowAction] = []


class CancelResultSchema(BaseModel):
    id: str
    message: str


# Query views


class IncomingRequestSchema(BaseModel):
    id: str
    item: ItemSnapshot
    requester: ProfileSnapshot
    notes: Optional[str] = None
    expected_return_date: Optional[date] = None
    created_at: datetime


class SentRequestSchema(BaseModel):
    id: str
    item: ItemSnapshot
    owner: ProfileSnapshot
    status: BorrowStatus
    notes: Optional[str] = None
    created_at: datetime


class ActiveBorrowSchema(BaseModel):
    id: str
    item: ItemSnapshot
    owner: ProfileSnapshot
    status: BorrowStatus
    borrowed_at: Optional[datetime] = None
    expected_return_date: Optional[date] = None
    notes: Optional[str] = None


class ActiveLoanSchema(BaseModel):
    id: str
    item: ItemSnapshot
    borrower: ProfileSnapshot
    status: BorrowStatus
    borrowed_at: Optional[datetime] = None
    expected_return_date: Optional[date] = None
    notes: Optional[str] = None


class HistoryEntrySchema(BaseModel):
    id: str
    item: ItemSnapshot
    owner: ProfileSnapshot
    borrower: ProfileSnapshot
    borrowed_at: Optional[datetime] = None
    returned_at: Optional[datetime] = None
    created_at: datetime


class BorrowCountsSchema(BaseModel):
    pending_requests: int
    active_borrows: int


class ItemBorrowStatusSchema(BaseModel):
    status: Optional[BorrowStatus] = None
    request_id: Optional[str] = None
