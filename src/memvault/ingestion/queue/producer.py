"""RabbitMQ producer for memory ingestion jobs."""

import logging
from typing import Any

import aio_pika
from aio_pika import DeliveryMode, Message
from aio_pika.exceptions import AMQPException

from ...core.config import Settings, settings as default_settings
from ...core.domain.graph import utcnow
from ...core.errors import QueueError
from .base import JobPublisher
from .schemas import IngestionJob

logger = logging.getLogger(__name__)

ROUTING_PREFIX = "ingest"


async def declare_topology(channel: aio_pika.abc.AbstractChannel, settings: Settings):
    """Declare the exchange, main queue and dead letter queue; return (exchange, queue)."""
    exchange = await channel.declare_exchange(
        settings.rabbitmq_exchange,
        aio_pika.ExchangeType.TOPIC,
        durable=True,
    )

    main_queue = await channel.declare_queue(
        settings.rabbitmq_queue,
        durable=True,
        arguments={
            "x-dead-letter-exchange": f"{settings.rabbitmq_exchange}.dlx",
            "x-dead-letter-routing-key": "failed",
        },
    )
    await main_queue.bind(exchange, f"{ROUTING_PREFIX}.*")

    dlx_exchange = await channel.declare_exchange(
        f"{settings.rabbitmq_exchange}.dlx",
        aio_pika.ExchangeType.TOPIC,
        durable=True,
    )
    dlx_queue = await channel.declare_queue(settings.rabbitmq_dead_letter_queue, durable=True)
    await dlx_queue.bind(dlx_exchange, "failed")

    return exchange, main_queue


class QueueProducer(JobPublisher):
    """RabbitMQ producer for memory ingestion jobs."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or default_settings
        self.connection: aio_pika.abc.AbstractRobustConnection | None = None
        self.channel: aio_pika.abc.AbstractChannel | None = None
        self.exchange: aio_pika.abc.AbstractExchange | None = None
        self._is_connected = False

    async def connect(self) -> None:
        """Initialize RabbitMQ connection and setup."""
        try:
            self.connection = await aio_pika.connect_robust(
                self.settings.rabbitmq_url,
                client_properties={"connection_name": "memvault_producer"},
            )
            self.channel = await self.connection.channel()
            self.exchange, _ = await declare_topology(self.channel, self.settings)

            self._is_connected = True
            logger.info("🐰 RabbitMQ producer connected and configured")

        except (AMQPException, OSError) as e:
            logger.error(f"Failed to connect to RabbitMQ: {e}")
            raise QueueError(f"RabbitMQ connection failed: {str(e)}") from e

    async def disconnect(self) -> None:
        """Close RabbitMQ connection."""
        if self.connection:
            await self.connection.close()
            self._is_connected = False
            logger.info("🐰 RabbitMQ producer disconnected")

    async def publish(self, job: IngestionJob) -> None:
        """Send an ingestion job to the queue."""
        if not self._is_connected:
            await self.connect()

        message = Message(
            job.to_json().encode(),
            delivery_mode=DeliveryMode.PERSISTENT,  # Survive broker restart
            timestamp=utcnow(),
            message_id=job.job_id,
            content_type="application/json",
            headers={"user_id": job.user_id},
        )

        try:
            await self.exchange.publish(message, routing_key=f"{ROUTING_PREFIX}.{job.user_id}")
        except (AMQPException, OSError) as e:
            logger.error(f"Failed to send ingestion job {job.job_id}: {e}")
            raise QueueError(f"Failed to enqueue job {job.job_id}: {str(e)}") from e

        logger.debug(f"📤 Queued ingestion job {job.job_id} for user {job.user_id}")

    async def health_check(self) -> dict[str, Any]:
        """Check producer health."""
        if not self._is_connected:
            return {"status": "disconnected", "healthy": False}

        if self.connection and not self.connection.is_closed:
            return {"status": "connected", "healthy": True}
        return {"status": "connection_closed", "healthy": False}
