"""In-process job queue served by a fixed pool of asyncio worker tasks."""

import asyncio
import logging
from typing import Any

from ...core.errors import QueueError
from .base import JobHandler, JobPublisher
from .schemas import IngestionJob

logger = logging.getLogger(__name__)


class LocalJobQueue(JobPublisher):
    """asyncio.Queue transport for single-node deployments and tests.

    Jobs are lost if the process exits before they run.
    """

    def __init__(self, workers: int = 5):
        self.workers = workers
        self.handler: JobHandler | None = None
        self._queue: asyncio.Queue[IngestionJob] = asyncio.Queue()
        self._tasks: list[asyncio.Task] = []
        self.processed_count = 0
        self.failed_count = 0

    async def publish(self, job: IngestionJob) -> None:
        if not self._tasks:
            raise QueueError("Local job queue is not running")
        await self._queue.put(job)
        logger.debug(f"📤 Queued ingestion job {job.job_id} locally")

    async def start(self, handler: JobHandler) -> None:
        """Spawn the worker tasks."""
        if self._tasks:
            return
        self.handler = handler
        self._tasks = [
            asyncio.create_task(self._worker(i), name=f"ingestion-worker-{i}")
            for i in range(self.workers)
        ]
        logger.info(f"🔄 Started {self.workers} local ingestion workers")

    async def join(self) -> None:
        """Wait until every queued job has been handled."""
        await self._queue.join()

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info(
            f"🔄 Stopped local workers. Processed: {self.processed_count}, "
            f"Failed: {self.failed_count}"
        )

    async def _worker(self, index: int) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self.handler(job)
                self.processed_count += 1
            except Exception as e:
                self.failed_count += 1
                logger.error(f"❌ Worker {index} crashed on job {job.job_id}: {e}")
            finally:
                self._queue.task_done()

    async def health_check(self) -> dict[str, Any]:
        running = sum(1 for task in self._tasks if not task.done())
        return {
            "status": "running" if running else "stopped",
            "healthy": running == self.workers,
            "workers": running,
            "queued": self._queue.qsize(),
            "processed_count": self.processed_count,
            "failed_count": self.failed_count,
        }
