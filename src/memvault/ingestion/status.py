"""Job status records.

Key Schema (Redis):
    job:{job_id}:status - JSON-encoded JobStatus with TTL
"""

import logging
from abc import ABC, abstractmethod
from typing import Any

import redis.asyncio as redis
from redis.exceptions import RedisError

from ..core.config import Settings, settings as default_settings
from ..core.domain.graph import utcnow
from ..core.errors import NotFound, QueueError
from .queue.schemas import JobStatus

logger = logging.getLogger(__name__)


class JobStatusStore(ABC):
    """Stores the latest JobStatus per job id."""

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    @abstractmethod
    async def create(self, status: JobStatus) -> bool:
        """Store a new record. Returns False if the job id already exists."""
        pass

    @abstractmethod
    async def get(self, job_id: str) -> JobStatus | None:
        pass

    @abstractmethod
    async def save(self, status: JobStatus) -> None:
        pass

    async def update(self, job_id: str, **changes: Any) -> JobStatus:
        """Apply ``changes`` to an existing record.

        Raises:
            NotFound: If the job id is unknown
        """
        status = await self.get(job_id)
        if status is None:
            raise NotFound(f"Unknown job {job_id}", {"job_id": job_id})
        updated = status.model_copy(update={**changes, "updated_at": utcnow()})
        await self.save(updated)
        return updated


class RedisJobStatusStore(JobStatusStore):
    """Job status records in Redis, expiring after ``job_status_ttl_seconds``."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or default_settings
        self.redis_client: redis.Redis | None = None

    async def connect(self) -> None:
        try:
            self.redis_client = redis.from_url(
                self.settings.redis_url,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
            )
            await self.redis_client.ping()
            logger.info("Connected to Redis for job status")
        except (RedisError, OSError) as e:
            logger.error(f"Failed to connect to Redis: {str(e)}")
            raise QueueError(f"Redis connection failed: {str(e)}") from e

    async def disconnect(self) -> None:
        if self.redis_client:
            await self.redis_client.aclose()
            self.redis_client = None

    @staticmethod
    def _key(job_id: str) -> str:
        return f"job:{job_id}:status"

    def _client(self) -> redis.Redis:
        if not self.redis_client:
            raise QueueError("Redis client not connected")
        return self.redis_client

    async def create(self, status: JobStatus) -> bool:
        try:
            return bool(
                await self._client().set(
                    self._key(status.job_id),
                    status.model_dump_json(),
                    nx=True,
                    ex=self.settings.job_status_ttl_seconds,
                )
            )
        except (RedisError, OSError) as e:
            raise QueueError(f"Failed to record job {status.job_id}: {str(e)}") from e

    async def get(self, job_id: str) -> JobStatus | None:
        try:
            raw = await self._client().get(self._key(job_id))
        except (RedisError, OSError) as e:
            raise QueueError(f"Failed to read job {job_id}: {str(e)}") from e
        return JobStatus.model_validate_json(raw) if raw else None

    async def save(self, status: JobStatus) -> None:
        try:
            await self._client().set(
                self._key(status.job_id),
                status.model_dump_json(),
                ex=self.settings.job_status_ttl_seconds,
            )
        except (RedisError, OSError) as e:
            raise QueueError(f"Failed to update job {status.job_id}: {str(e)}") from e


class InMemoryJobStatusStore(JobStatusStore):
    """Job status records in a dict; nothing expires."""

    def __init__(self) -> None:
        self.records: dict[str, JobStatus] = {}

    async def create(self, status: JobStatus) -> bool:
        if status.job_id in self.records:
            return False
        self.records[status.job_id] = status
        return True

    async def get(self, job_id: str) -> JobStatus | None:
        return self.records.get(job_id)

    async def save(self, status: JobStatus) -> None:
        self.records[status.job_id] = status
