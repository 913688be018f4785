"""RabbitMQ consumer for memory ingestion jobs."""

import asyncio
import json
import logging
from datetime import datetime
from typing import Any

import aio_pika
from aio_pika import IncomingMessage
from aio_pika.exceptions import AMQPException
from pydantic import ValidationError as PydanticValidationError

from ...core.config import Settings, settings as default_settings
from ...core.domain.graph import utcnow
from ...core.errors import QueueError
from .base import JobHandler
from .producer import declare_topology
from .schemas import IngestionJob

logger = logging.getLogger(__name__)


class QueueConsumer:
    """RabbitMQ consumer that runs at most ``ingestion_workers`` jobs at once."""

    def __init__(self, handler: JobHandler, settings: Settings | None = None):
        self.handler = handler
        self.settings = settings or default_settings
        self.connection: aio_pika.abc.AbstractRobustConnection | None = None
        self.channel: aio_pika.abc.AbstractChannel | None = None
        self.queue: aio_pika.abc.AbstractQueue | None = None
        self._semaphore = asyncio.Semaphore(self.settings.ingestion_workers)
        self._is_consuming = False

        # Performance metrics
        self.processed_count = 0
        self.failed_count = 0
        self.start_time: datetime = utcnow()

    async def connect(self) -> None:
        """Connect to RabbitMQ and setup consumer."""
        try:
            self.connection = await aio_pika.connect_robust(
                self.settings.rabbitmq_url,
                client_properties={"connection_name": "memvault_worker"},
            )
            self.channel = await self.connection.channel()

            # Never hold more unacked messages than we can work on
            await self.channel.set_qos(prefetch_count=self.settings.ingestion_workers)

            _, self.queue = await declare_topology(self.channel, self.settings)
            logger.info(f"🐰 RabbitMQ consumer connected to queue: {self.settings.rabbitmq_queue}")

        except (AMQPException, OSError) as e:
            logger.error(f"Failed to connect consumer to RabbitMQ: {e}")
            raise QueueError(f"RabbitMQ connection failed: {str(e)}") from e

    async def start_consuming(self) -> None:
        """Start consuming messages from the queue."""
        if not self.connection:
            await self.connect()

        await self.queue.consume(self._process_message, consumer_tag="memvault_ingestion")

        self._is_consuming = True
        self.start_time = utcnow()
        logger.info(
            f"🔄 Started consuming ingestion jobs with {self.settings.ingestion_workers} workers"
        )

    async def stop_consuming(self) -> None:
        """Stop consuming and close connection."""
        if self.connection:
            await self.connection.close()
            self.connection = None
        self._is_consuming = False

        runtime = utcnow() - self.start_time
        logger.info(
            f"🔄 Stopped consuming. Processed: {self.processed_count}, "
            f"Failed: {self.failed_count}, Runtime: {runtime}"
        )

    async def _process_message(self, message: IncomingMessage) -> None:
        """Run one job; unreadable or crashing messages go to the dead letter queue."""
        async with self._semaphore:
            try:
                async with message.process(requeue=False):
                    job = IngestionJob.from_json(message.body.decode())
                    logger.debug(f"🔄 Processing ingestion job {job.job_id} for user {job.user_id}")
                    await self.handler(job)
                    self.processed_count += 1

            except (json.JSONDecodeError, KeyError, TypeError, PydanticValidationError) as e:
                self.failed_count += 1
                logger.error(f"❌ Dropping malformed message {message.message_id}: {e}")
            except Exception as e:
                self.failed_count += 1
                logger.error(f"❌ Error processing message {message.message_id}: {e}")

    async def health_check(self) -> dict[str, Any]:
        """Check consumer connection health."""
        if not self.connection or self.connection.is_closed:
            return {"status": "disconnected", "healthy": False}
        return {"status": "connected", "healthy": self._is_consuming, **self.get_stats()}

    def get_stats(self) -> dict[str, Any]:
        """Get consumer performance statistics."""
        runtime = utcnow() - self.start_time
        rate = self.processed_count / max(runtime.total_seconds(), 1)

        return {
            "is_consuming": self._is_consuming,
            "processed_count": self.processed_count,
            "failed_count": self.failed_count,
            "success_rate": self.processed_count / max(self.processed_count + self.failed_count, 1),
            "processing_rate_per_second": rate,
            "runtime_seconds": runtime.total_seconds(),
        }
