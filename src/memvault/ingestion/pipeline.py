"""Asynchronous ingestion pipeline: job submission, status and retrying execution."""

import logging
from typing import Any

from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..core.config import Settings, settings as default_settings
from ..core.domain.billing import UserContext
from ..core.errors import (
    AccessDenied,
    MemVaultError,
    NotFound,
    ProviderError,
    QueueError,
    ValidationError,
)
from .health import HealthMonitor
from .processor import MemoryProcessor
from .queue.base import JobPublisher
from .queue.schemas import IngestionJob, JobState, JobStatus, make_job_id
from .status import JobStatusStore

logger = logging.getLogger(__name__)


class IngestionPipeline:
    """Accepts statements for storage and runs them through the MemoryProcessor.

    Submission only validates, records a queued status and publishes; the
    worker pool calls ``run_job`` for each delivered job.
    """

    def __init__(
        self,
        publisher: JobPublisher,
        status_store: JobStatusStore,
        processor: MemoryProcessor,
        settings: Settings | None = None,
        health_monitor: HealthMonitor | None = None,
    ):
        self.publisher = publisher
        self.status_store = status_store
        self.processor = processor
        self.settings = settings or default_settings
        self.health_monitor = health_monitor

    def _validate(self, user_id: str, text: str, user_context: UserContext) -> None:
        if not user_id or not user_id.strip():
            raise ValidationError("user_id is required")
        if not text or not text.strip():
            raise ValidationError("text is required")
        if len(text) > self.settings.ingestion_max_text_length:
            raise ValidationError(
                f"text exceeds {self.settings.ingestion_max_text_length} characters",
                {"length": len(text)},
            )
        if user_context.user_id != user_id:
            raise ValidationError(
                "user_context does not belong to user_id",
                {"user_id": user_id, "context_user_id": user_context.user_id},
            )

    async def submit(
        self,
        user_id: str,
        text: str,
        user_context: UserContext,
        metadata: dict[str, Any] | None = None,
        enable_graph_extraction: bool | None = None,
        idempotency_key: str | None = None,
    ) -> str:
        """Enqueue a statement for ingestion and return its job id.

        With ``idempotency_key`` a repeated submission returns the existing job
        id without enqueuing again.

        Raises:
            ValidationError: For empty or oversized input
            QueueError: If the job could not be recorded or published
        """
        self._validate(user_id, text, user_context)

        job_id = make_job_id(user_id, idempotency_key)
        if not await self.status_store.create(JobStatus(job_id=job_id, user_id=user_id)):
            logger.info(f"Duplicate submission for job {job_id}, not enqueuing again")
            return job_id

        job = IngestionJob(
            job_id=job_id,
            user_id=user_id,
            text=text,
            user_context=user_context,
            metadata=metadata or {},
            enable_graph_extraction=enable_graph_extraction,
        )

        try:
            await self.publisher.publish(job)
        except QueueError as e:
            await self.status_store.update(
                job_id,
                state=JobState.FAILED,
                error=str(e),
                error_code=e.code,
            )
            raise

        logger.info(f"📥 Queued ingestion job {job_id} for user {user_id}")
        return job_id

    async def get_status(self, job_id: str) -> JobStatus:
        """Current status of a job.

        Raises:
            NotFound: If the job id is unknown or expired
        """
        status = await self.status_store.get(job_id)
        if status is None:
            raise NotFound(f"Unknown job {job_id}", {"job_id": job_id})
        return status

    async def _set_progress(self, job_id: str, progress: int) -> None:
        try:
            await self.status_store.update(job_id, progress=progress)
        except (QueueError, NotFound) as e:
            logger.warning(f"Could not record progress {progress} for job {job_id}: {e}")

    async def _record(self, job: IngestionJob, **changes: Any) -> None:
        try:
            await self.status_store.update(job.job_id, **changes)
        except NotFound:
            # Status expired or was never written; keep the outcome anyway
            status = JobStatus(job_id=job.job_id, user_id=job.user_id)
            await self.status_store.save(status.model_copy(update=changes))

    async def run_job(self, job: IngestionJob) -> JobStatus:
        """Process a delivered job, retrying transient failures.

        ProviderError retries the whole job with exponential backoff up to
        ``ingestion_max_attempts`` attempts. AccessDenied and ValidationError
        fail immediately. The terminal outcome is written to the status store;
        this method does not raise for job failures.
        """
        if self.health_monitor:
            self.health_monitor.record_job_start()

        attempts = 0
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.settings.ingestion_max_attempts),
                wait=wait_exponential(multiplier=self.settings.ingestion_retry_base_delay),
                retry=retry_if_exception_type(ProviderError),
                reraise=True,
            ):
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    await self._record(job, state=JobState.ACTIVE, attempts=attempts)
                    if attempts > 1:
                        logger.warning(
                            f"⚠️  Retrying job {job.job_id} "
                            f"(attempt {attempts}/{self.settings.ingestion_max_attempts})"
                        )
                    result = await self.processor.process(
                        job, progress=lambda p: self._set_progress(job.job_id, p)
                    )

        except AccessDenied as e:
            logger.warning(f"Job {job.job_id} denied: {e.message} (shortfall {e.shortfall})")
            return await self._fail(job, attempts, e, shortfall=e.shortfall)
        except (ValidationError, ProviderError) as e:
            logger.error(f"❌ Job {job.job_id} failed after {attempts} attempts: {e.message}")
            return await self._fail(job, attempts, e)
        except MemVaultError as e:
            logger.error(f"❌ Job {job.job_id} failed: {e}")
            return await self._fail(job, attempts, e)
        except Exception as e:
            logger.exception(f"❌ Unexpected error in job {job.job_id}: {e}")
            return await self._fail(job, attempts, e)

        await self._record(
            job,
            state=JobState.COMPLETED,
            progress=100,
            attempts=attempts,
            result=result,
            error=None,
            error_code=None,
        )
        if self.health_monitor:
            self.health_monitor.record_job_success()
        return await self.get_status(job.job_id)

    async def _fail(
        self,
        job: IngestionJob,
        attempts: int,
        error: Exception,
        shortfall: int | None = None,
    ) -> JobStatus:
        if self.health_monitor:
            self.health_monitor.record_job_failure()

        error_code = error.code if isinstance(error, MemVaultError) else "INTERNAL_ERROR"
        message = error.message if isinstance(error, MemVaultError) else str(error)
        await self._record(
            job,
            state=JobState.FAILED,
            attempts=attempts,
            error=message,
            error_code=error_code,
            shortfall=shortfall,
        )
        return await self.get_status(job.job_id)
