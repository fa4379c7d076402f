import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from lending import models, service
from lending.notifications import (
    ActivityFeedSink,
    NotificationEmitter,
    NotificationEvent,
    RabbitMQSink,
    build_event,
)
from lending.transitions import BorrowAction


def _event(**overrides):
    data = {
        "type": "borrow_approved",
        "recipient_id": 2,
        "actor_id": 1,
        "target_record_id": "0b6a4c38-2f1e-4d6b-9a51-0f4d8c3e2a77",
        "metadata": {"item_id": 7},
    }
    data.update(overrides)
    return NotificationEvent(**data)


def test_build_event_targets_counterparty():
    record = models.BorrowRecord(
        id="rec-1", item_id=7, owner_id=1, borrower_id=2, notes="Friday", status="requested"
    )

    request = build_event(BorrowAction.REQUEST, record, actor_id=2)
    assert request.type == "borrow_request"
    assert request.recipient_id == 1
    assert request.metadata == {"item_id": 7, "notes": "Friday"}

    approved = build_event(BorrowAction.APPROVE, record, actor_id=1)
    assert approved.recipient_id == 2
    assert approved.metadata == {"item_id": 7}

    started = build_event(BorrowAction.MARK_BORROWED, record, actor_id=2)
    assert started.type == "borrow_started"
    assert started.recipient_id == 1


@pytest.mark.asyncio
async def test_emit_delivers_to_every_sink():
    first, second = MagicMock(), MagicMock()
    first.append = AsyncMock()
    second.append = AsyncMock()
    emitter = NotificationEmitter([first, second])
    event = _event()

    assert await emitter.emit(event) == 2
    first.append.assert_awaited_once_with(event)
    second.append.assert_awaited_once_with(event)


@pytest.mark.asyncio
async def test_failing_sink_is_logged_not_raised(caplog):
    broken, healthy = MagicMock(), MagicMock()
    broken.append = AsyncMock(side_effect=RuntimeError("feed table locked"))
    healthy.append = AsyncMock()
    emitter = NotificationEmitter([broken, healthy])

    assert await emitter.emit(_event()) == 1
    healthy.append.assert_awaited_once()
    assert "feed table locked" in caplog.text


@pytest.mark.asyncio
async def test_emit_nothing():
    sink = MagicMock()
    sink.append = AsyncMock()
    assert await NotificationEmitter([sink]).emit(None) == 0
    sink.append.assert_not_awaited()


@pytest.mark.asyncio
async def test_activity_feed_sink_writes_row(session_factory, db_session):
    sink = ActivityFeedSink(session_factory)
    await sink.append(_event(type="borrow_returned"))

    row = db_session.query(models.ActivityEvent).one()
    assert row.recipient_id == 2
    assert row.actor_id == 1
    assert row.activity_type == "borrow_returned"
    assert row.target_type == "borrowed_item"
    assert row.target_id == "0b6a4c38-2f1e-4d6b-9a51-0f4d8c3e2a77"
    assert row.metadata_ == {"item_id": 7}
    assert row.is_read is False


@pytest.mark.asyncio
async def test_rabbitmq_sink_publishes_json():
    manager = MagicMock()
    manager.connected = True
    manager.publish_message = AsyncMock()
    sink = RabbitMQSink(manager, queue_name="borrow_activity_test")

    await sink.append(_event())

    queue_name, body = manager.publish_message.await_args.args
    assert queue_name == "borrow_activity_test"
    assert json.loads(body)["type"] == "borrow_approved"


@pytest.mark.asyncio
async def test_rabbitmq_sink_requires_open_channel():
    manager = MagicMock()
    manager.connected = False
    manager.publish_message = AsyncMock()

    with pytest.raises(ConnectionError):
        await RabbitMQSink(manager).append(_event())
    manager.publish_message.assert_not_awaited()


@pytest.mark.asyncio
async def test_transition_survives_notification_failure(db_session, test_item, owner, borrower):
    sink = MagicMock()
    sink.append = AsyncMock(side_effect=ConnectionError("broker down"))
    emitter = NotificationEmitter([sink])

    outcome = service.request_borrow(db_session, borrower.id, test_item.id, owner.id)
    assert await emitter.emit(outcome.event) == 0

    record = service.get_record(db_session, outcome.record_id, owner.id).record
    assert record.status == "requested"
