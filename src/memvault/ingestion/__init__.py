"""Asynchronous memory ingestion: job submission, worker pool and processing."""

from .health import HealthMonitor
from .pipeline import IngestionPipeline
from .processor import MemoryProcessor
from .status import InMemoryJobStatusStore, JobStatusStore, RedisJobStatusStore

__all__ = [
    "HealthMonitor",
    "InMemoryJobStatusStore",
    "IngestionPipeline",
    "JobStatusStore",
    "MemoryProcessor",
    "RedisJobStatusStore",
]
