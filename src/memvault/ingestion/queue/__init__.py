"""Job transports for the ingestion pipeline."""

from .base import JobHandler, JobPublisher
from .consumer import QueueConsumer
from .local import LocalJobQueue
from .producer import QueueProducer
from .schemas import IngestionJob, JobState, JobStatus, make_job_id

__all__ = [
    "IngestionJob",
    "JobHandler",
    "JobPublisher",
    "JobState",
    "JobStatus",
    "LocalJobQueue",
    "QueueConsumer",
    "QueueProducer",
    "make_job_id",
]
