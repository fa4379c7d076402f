import os
import json
import logging
from typing import Optional
import aio_pika
from fastapi import FastAPI
from dotenv import load_dotenv

load_dotenv()
logger = logging.getLogger(__name__)

NOTIFICATION_QUEUE = os.getenv("NOTIFICATION_QUEUE", "borrow_activity")


class RabbitMQManager:
    def __init__(self, url: Optional[str] = None):
        self.url = url or os.getenv("RABBIT_MQ_CONN_STR")
        self.connection = None
        self.channel = None

    @property
    def connected(self) -> bool:
        return self.channel is not None and not self.channel.is_closed

    async def connect(self):
        logger.info("Initializing RabbitMQ connection")
        try:
            self.connection = await aio_pika.connect_robust(self.url)
            self.channel = await self.connection.channel()
            logger.info("RabbitMQ connection established successfully")
        except Exception as e:
            logger.error(f"Failed to connect to RabbitMQ: {e}")
            raise

    async def close(self):
        if self.connection:
            await self.connection.close()
            logger.info("RabbitMQ connection closed")
        self.connection = None
        self.channel = None

    async def setup_queue(self, queue_name: str):
        await self.channel.declare_queue(queue_name, durable=True)
        logger.info(f"Queue '{queue_name}' set up successfully")

    async def publish_message(self, queue_name: str, message: dict | str):
        if not isinstance(message, str):
            message = json.dumps(message)
        await self.channel.default_exchange.publish(
            aio_pika.Message(
                body=message.encode(),
                content_type="application/json",
                delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            ),
            routing_key=queue_name,
        )
        logger.info(f"Message published to queue: {queue_name}")


async def setup_messaging(app: FastAPI) -> Optional[RabbitMQManager]:
    """Connect the notification broker if one is configured.

    Lending keeps working without it, so a broker outage at startup only
    disables the queue sink.
    """
    manager = RabbitMQManager()
    if not manager.url:
        logger.info("RABBIT_MQ_CONN_STR not set, notification queue disabled")
        return None
    try:
        await manager.connect()
        await manager.setup_queue(NOTIFICATION_QUEUE)
    except Exception as e:
        logger.error(f"Notification queue disabled: {e}")
        return None
    app.state.rabbitmq_manager = manager
    return manager


async def cleanup_messaging(app: FastAPI):
    manager = getattr(app.state, "rabbitmq_manager", None)
    if manager is not None:
        await manager.close()
