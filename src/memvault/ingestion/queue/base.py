"""Transport interface between job submission and the worker pool."""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any

from .schemas import IngestionJob

JobHandler = Callable[[IngestionJob], Awaitable[None]]


class JobPublisher(ABC):
    """Publishes ingestion jobs; delivery is at-least-once."""

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    @abstractmethod
    async def publish(self, job: IngestionJob) -> None:
        """Enqueue ``job``.

        Raises:
            QueueError: If the job could not be handed to the transport
        """
        pass

    async def health_check(self) -> dict[str, Any]:
        return {"status": "unknown", "healthy": True}
