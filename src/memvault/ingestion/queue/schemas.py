"""Schema definitions for ingestion queue messages and job status records."""

import json
import secrets
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from ...core.domain.billing import UserContext
from ...core.domain.graph import utcnow


def make_job_id(user_id: str, idempotency_key: str | None = None) -> str:
    """Job id ``{user_id}-{epoch_ms}-{random}``, or ``{user_id}-{key}`` when keyed."""
    if idempotency_key:
        return f"{user_id}-{idempotency_key}"
    return f"{user_id}-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


@dataclass
class IngestionJob:
    """Schema for memory ingestion queue messages."""

    # Core identifiers
    job_id: str
    user_id: str

    # Statement to ingest
    text: str
    user_context: UserContext

    # Processing options
    metadata: dict[str, Any] = field(default_factory=dict)
    enable_graph_extraction: bool | None = None

    created_at: datetime = field(default_factory=utcnow)

    def to_json(self) -> str:
        """Serialize to JSON for queue transmission."""
        data = asdict(self)
        data["user_context"] = self.user_context.model_dump(mode="json")
        data["created_at"] = self.created_at.isoformat()
        return json.dumps(data)

    @classmethod
    def from_json(cls, json_str: str) -> "IngestionJob":
        """Deserialize from JSON."""
        data = json.loads(json_str)
        data["user_context"] = UserContext.model_validate(data["user_context"])
        data["created_at"] = datetime.fromisoformat(data["created_at"])
        return cls(**data)


class JobState(str, Enum):
    """Lifecycle of an ingestion job."""

    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class JobStatus(BaseModel):
    """Status record returned by ``IngestionPipeline.get_status``."""

    job_id: str
    user_id: str
    state: JobState = JobState.QUEUED
    progress: int = Field(default=0, ge=0, le=100)
    attempts: int = 0
    result: dict[str, Any] | None = None
    error: str | None = None
    error_code: str | None = None
    shortfall: int | None = Field(
        default=None,
        description="Cents missing, set when the job was denied for balance",
    )
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.state in (JobState.COMPLETED, JobState.FAILED)
