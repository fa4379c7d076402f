"""Best-effort activity notifications for borrow transitions.

Events are produced after the store has committed, so a failing sink can
only lose the notification, never the transition.
"""
import logging
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel
from sqlalchemy.orm import sessionmaker
from starlette.concurrency import run_in_threadpool

from lending import models
from lending.internal_message import NOTIFICATION_QUEUE, RabbitMQManager
from lending.schemas import custom_json_dumps
from lending.transitions import BorrowAction

logger = logging.getLogger(__name__)

EVENT_TYPES = {
    BorrowAction.REQUEST: "borrow_request",
    BorrowAction.APPROVE: "borrow_approved",
    BorrowAction.DECLINE: "borrow_declined",
    BorrowAction.CANCEL: "borrow_cancelled",
    BorrowAction.MARK_BORROWED: "borrow_started",
    BorrowAction.MARK_RETURNED: "borrow_returned",
}


class NotificationEvent(BaseModel):
    type: str
    recipient_id: int
    actor_id: int
    target_record_id: str
    metadata: Dict[str, Any] = {}


def build_event(
    action: BorrowAction, record: models.BorrowRecord, actor_id: int
) -> NotificationEvent:
    # the recipient is always the other party
    if actor_id == record.owner_id:
        recipient_id = record.borrower_id
    else:
        recipient_id = record.owner_id

    metadata: Dict[str, Any] = {"item_id": record.item_id}
    if action == BorrowAction.REQUEST and record.notes:
        metadata["notes"] = record.notes

    return NotificationEvent(
        type=EVENT_TYPES[action],
        recipient_id=recipient_id,
        actor_id=actor_id,
        target_record_id=record.id,
        metadata=metadata,
    )


class ActivityFeedSink:
    """Appends events to the activity_feed table using its own session."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def _append(self, event: NotificationEvent):
        db = self.session_factory()
        try:
            db.add(
                models.ActivityEvent(
                    recipient_id=event.recipient_id,
                    actor_id=event.actor_id,
                    activity_type=event.type,
                    target_type="borrowed_item",
                    target_id=event.target_record_id,
                    metadata_=event.metadata,
                    is_read=False,
                )
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    async def append(self, event: NotificationEvent):
        await run_in_threadpool(self._append, event)


class RabbitMQSink:
    def __init__(self, manager: RabbitMQManager, queue_name: str = NOTIFICATION_QUEUE):
        self.manager = manager
        self.queue_name = queue_name

    async def append(self, event: NotificationEvent):
        if not self.manager.connected:
            raise ConnectionError("RabbitMQ channel is not open")
        await self.manager.publish_message(
            self.queue_name, custom_json_dumps(event.model_dump())
        )


class NotificationEmitter:
    def __init__(self, sinks: Optional[Iterable] = None):
        self.sinks: List = list(sinks or [])

    def add_sink(self, sink):
        self.sinks.append(sink)

    async def emit(self, event: Optional[NotificationEvent]) -> int:
        """Deliver ``event`` to every sink and return how many accepted it.

        Never raises: delivery failures are logged and dropped.
        """
        if event is None:
            return 0
        delivered = 0
        for sink in self.sinks:
            try:
                await sink.append(event)
                delivered += 1
            except Exception as e:
                logger.error(
                    f"Failed to deliver {event.type} for {event.target_record_id} "
                    f"via {type(sink).__name__}: {e}"
                )
        if delivered:
            logger.info(
                f"Notified user {event.recipient_id} of {event.type} on {event.target_record_id}"
            )
        return delivered
