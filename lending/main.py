import os
from contextlib import asynccontextmanager
import logging
from typing import Dict, List, Optional
from fastapi import BackgroundTasks, Depends, FastAPI, Query, Request, status
from sqlalchemy.orm import Session
from dotenv import load_dotenv

from exceptions.exceptions import add_exception_handlers
from lending import crud, queries, service
from lending.auth import get_current_actor, require_actor
from lending.internal_message import setup_messaging, cleanup_messaging
from lending.notifications import ActivityFeedSink, NotificationEmitter, RabbitMQSink
from lending.schemas import (
    ActiveBorrowSchema,
    ActiveLoanSchema,
    BorrowBatchRequestSchema,
    BorrowBatchResultSchema,
    BorrowCountsSchema,
    BorrowCreatedSchema,
    BorrowRecordDetailSchema,
    BorrowRequestSchema,
    CancelResultSchema,
    HistoryEntrySchema,
    IncomingRequestSchema,
    ItemBorrowStatusSchema,
    ItemCreate,
    ItemSchema,
    ProfileCreate,
    ProfileSchema,
    SentRequestSchema,
)
from lending.models import Base
from lending.storage import SessionLocal, engine, get_db

load_dotenv()
# Set up logging
logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.testing = app.state.testing if hasattr(app.state, "testing") else False

    if not hasattr(app.state, "notification_emitter"):
        app.state.notification_emitter = NotificationEmitter(
            [ActivityFeedSink(SessionLocal)]
        )

    if not app.state.testing:
        Base.metadata.create_all(bind=engine)
        manager = await setup_messaging(app)
        if manager is not None:
            app.state.notification_emitter.add_sink(RabbitMQSink(manager))
    yield
    if not app.state.testing:
        await cleanup_messaging(app)


app = FastAPI(
    title="Lending API",
    lifespan=lifespan,
    description="Peer-to-peer borrow requests, approvals, hand-offs and returns",
    version="1.0.0",
)

add_exception_handlers(app)


def get_emitter(request: Request) -> NotificationEmitter:
    return request.app.state.notification_emitter


def _detail(outcome: service.LendingOutcome) -> BorrowRecordDetailSchema:
    detail = BorrowRecordDetailSchema.model_validate(outcome.record)
    detail.allowed_actions = outcome.allowed_actions
    return detail


def _notify(
    background_tasks: BackgroundTasks,
    emitter: NotificationEmitter,
    outcome: service.LendingOutcome,
):
    if outcome.event is not None:
        background_tasks.add_task(emitter.emit, outcome.event)


# Collaborators
@app.post("/profiles/", response_model=ProfileSchema, status_code=status.HTTP_201_CREATED)
def create_profile(profile: ProfileCreate, db: Session = Depends(get_db)):
    return crud.create_profile(db, profile)


@app.post("/items/", response_model=ItemSchema, status_code=status.HTTP_201_CREATED)
def create_item(
    item: ItemCreate,
    db: Session = Depends(get_db),
    actor_id: Optional[int] = Depends(get_current_actor),
):
    return crud.create_item(db, item, require_actor(actor_id))


@app.get("/items/{item_id}", response_model=ItemSchema)
def fetch_item(item_id: int, db: Session = Depends(get_db)):
    return crud.get_item(db, item_id)


# Requests
@app.post(
    "/borrows/", response_model=BorrowCreatedSchema, status_code=status.HTTP_201_CREATED
)
def request_borrow(
    borrow_request: BorrowRequestSchema,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    actor_id: Optional[int] = Depends(get_current_actor),
    emitter: NotificationEmitter = Depends(get_emitter),
):
    outcome = service.request_borrow(
        db,
        actor_id,
        borrow_request.item_id,
        borrow_request.owner_id,
        notes=borrow_request.notes,
        expected_return_date=borrow_request.expected_return_date,
    )
    _notify(background_tasks, emitter, outcome)
    return BorrowCreatedSchema(id=outcome.record_id)


@app.post(
    "/borrows/batch",
    response_model=BorrowBatchResultSchema,
    status_code=status.HTTP_201_CREATED,
)
def request_borrow_batch(
    batch: BorrowBatchRequestSchema,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    actor_id: Optional[int] = Depends(get_current_actor),
    emitter: NotificationEmitter = Depends(get_emitter),
):
    outcomes = service.request_borrow_many(
        db, actor_id, [(i.item_id, i.owner_id) for i in batch.items], notes=batch.notes
    )
    for outcome in outcomes:
        _notify(background_tasks, emitter, outcome)
    return BorrowBatchResultSchema(count=len(outcomes))


# Views
@app.get("/borrows/incoming", response_model=List[IncomingRequestSchema])
def list_incoming(
    db: Session = Depends(get_db), actor_id: Optional[int] = Depends(get_current_actor)
):
    return queries.list_incoming(db, require_actor(actor_id))


@app.get("/borrows/sent", response_model=List[SentRequestSchema])
def list_sent(
    db: Session = Depends(get_db), actor_id: Optional[int] = Depends(get_current_actor)
):
    return queries.list_sent(db, require_actor(actor_id))


@app.get("/borrows/active", response_model=List[ActiveBorrowSchema])
def list_active_borrows(
    db: Session = Depends(get_db), actor_id: Optional[int] = Depends(get_current_actor)
):
    return queries.list_active_borrows(db, require_actor(actor_id))


@app.get("/borrows/loans", response_model=List[ActiveLoanSchema])
def list_active_loans(
    db: Session = Depends(get_db), actor_id: Optional[int] = Depends(get_current_actor)
):
    return queries.list_active_loans(db, require_actor(actor_id))


@app.get("/borrows/history", response_model=List[HistoryEntrySchema])
def list_history(
    limit: int = Query(queries.HISTORY_LIMIT, ge=1, le=100),
    db: Session = Depends(get_db),
    actor_id: Optional[int] = Depends(get_current_actor),
):
    return queries.list_history(db, require_actor(actor_id), limit=limit)


@app.get("/borrows/counts", response_model=BorrowCountsSchema)
def borrow_counts(
    db: Session = Depends(get_db), actor_id: Optional[int] = Depends(get_current_actor)
):
    return queries.borrow_counts(db, require_actor(actor_id))


@app.get("/borrows/status", response_model=Dict[int, ItemBorrowStatusSchema])
def item_borrow_statuses(
    item_ids: List[int] = Query(default=[]),
    db: Session = Depends(get_db),
    actor_id: Optional[int] = Depends(get_current_actor),
):
    return queries.item_borrow_statuses(db, require_actor(actor_id), item_ids)


# Transitions
@app.get("/borrows/{record_id}", response_model=BorrowRecordDetailSchema)
def fetch_record(
    record_id: str,
    db: Session = Depends(get_db),
    actor_id: Optional[int] = Depends(get_current_actor),
):
    return _detail(service.get_record(db, record_id, actor_id))


@app.post("/borrows/{record_id}/approve", response_model=BorrowRecordDetailSchema)
def approve_request(
    record_id: str,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    actor_id: Optional[int] = Depends(get_current_actor),
    emitter: NotificationEmitter = Depends(get_emitter),
):
    outcome = service.approve(db, record_id, actor_id)
    _notify(background_tasks, emitter, outcome)
    return _detail(outcome)


@app.post("/borrows/{record_id}/decline", response_model=BorrowRecordDetailSchema)
def decline_request(
    record_id: str,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    actor_id: Optional[int] = Depends(get_current_actor),
    emitter: NotificationEmitter = Depends(get_emitter),
):
    outcome = service.decline(db, record_id, actor_id)
    _notify(background_tasks, emitter, outcome)
    return _detail(outcome)


@app.post("/borrows/{record_id}/borrowed", response_model=BorrowRecordDetailSchema)
def mark_borrowed(
    record_id: str,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    actor_id: Optional[int] = Depends(get_current_actor),
    emitter: NotificationEmitter = Depends(get_emitter),
):
    outcome = service.mark_borrowed(db, record_id, actor_id)
    _notify(background_tasks, emitter, outcome)
    return _detail(outcome)


@app.post("/borrows/{record_id}/returned", response_model=BorrowRecordDetailSchema)
def mark_returned(
    record_id: str,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    actor_id: Optional[int] = Depends(get_current_actor),
    emitter: NotificationEmitter = Depends(get_emitter),
):
    outcome = service.mark_returned(db, record_id, actor_id)
    _notify(background_tasks, emitter, outcome)
    return _detail(outcome)


@app.delete("/borrows/{record_id}", response_model=CancelResultSchema)
def cancel_request(
    record_id: str,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    actor_id: Optional[int] = Depends(get_current_actor),
    emitter: NotificationEmitter = Depends(get_emitter),
):
    outcome = service.cancel(db, record_id, actor_id)
    _notify(background_tasks, emitter, outcome)
    return CancelResultSchema(id=record_id, message="Borrow request cancelled")


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("LENDING_PORT", "8000"))
    logger.info(f"Starting lending server on port {port}")
    uvicorn.run(app, host="0.0.0.0", port=port)
