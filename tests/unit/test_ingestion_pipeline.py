"""Unit tests for the ingestion pipeline, processor and local worker pool."""

from unittest.mock import AsyncMock

import pytest

from conftest import make_context
from memvault.core.config import Settings
from memvault.core.domain.billing import UserSource, UserTier
from memvault.core.errors import (
    AccessDenied,
    DeductionFailure,
    EmbeddingError,
    NotFound,
    QueueError,
    ValidationError,
)
from memvault.ingestion import HealthMonitor, InMemoryJobStatusStore, IngestionPipeline
from memvault.ingestion.queue import IngestionJob, JobState, LocalJobQueue, make_job_id

JOHN = "John works at Acme Corp"


def script_john(extractor) -> None:
    extractor.add_graph(
        JOHN,
        [("John", "Person", "Software engineer"), ("Acme Corp", "Organization", None)],
        [("John", "works_at", "Acme Corp")],
    )


def make_job(user_id: str = "pro_user", text: str = JOHN, **context) -> IngestionJob:
    return IngestionJob(
        job_id=make_job_id(user_id),
        user_id=user_id,
        text=text,
        user_context=make_context(user_id, **context),
    )


@pytest.fixture
def status_store() -> InMemoryJobStatusStore:
    return InMemoryJobStatusStore()


@pytest.fixture
def queue(settings: Settings) -> LocalJobQueue:
    return LocalJobQueue(workers=settings.ingestion_workers)


@pytest.fixture
def pipeline(queue, status_store, processor, settings) -> IngestionPipeline:
    return IngestionPipeline(queue, status_store, processor, settings, HealthMonitor())


@pytest.mark.asyncio
class TestMemoryProcessor:
    """Test cases for a single ingestion job."""

    async def test_direct_job_writes_graph_and_charges(
        self, processor, extractor, graph_store, balance_store
    ) -> None:
        """Test the full path for a Direct tenant."""
        script_john(extractor)
        progress: list[int] = []

        async def record(value: int) -> None:
            progress.append(value)

        result = await processor.process(make_job(), progress=record)

        assert result["entities"] == 2
        assert result["relationships"] == 1
        assert result["graph_extraction"] is True
        assert result["cost"] > 0
        assert progress == [10, 25, 40, 60, 80, 100]
        assert balance_store.balances["pro_user"] == 1000 - result["cost"]
        assert len(graph_store.memories) == 1

    async def test_rapidapi_job_skips_extraction_and_balance(
        self, processor, extractor, graph_store, balance_store
    ) -> None:
        """Test that RapidAPI jobs embed only and never touch the balance."""
        script_john(extractor)

        result = await processor.process(make_job("rapid_user", source=UserSource.RAPIDAPI))

        assert result["graph_extraction"] is False
        assert extractor.graph_calls == 0
        assert graph_store.entities == {}
        assert "rapid_user" not in balance_store.balances

    async def test_extraction_disabled_per_job(self, processor, extractor) -> None:
        """Test that a job can opt out of graph extraction."""
        job = make_job()
        job.enable_graph_extraction = False

        result = await processor.process(job)

        assert result["graph_extraction"] is False
        assert extractor.graph_calls == 0

    async def test_short_entity_embedding_batch_is_rejected(
        self, processor, extractor, embedder, graph_store
    ) -> None:
        """Test that missing entity vectors fail the job instead of dropping entities."""
        script_john(extractor)
        embed_batch = embedder.embed_batch

        async def short_batch(texts: list[str]) -> list[list[float]]:
            return (await embed_batch(texts))[:-1]

        embedder.embed_batch = short_batch

        with pytest.raises(EmbeddingError):
            await processor.process(make_job())

        assert graph_store.memories == {}

    async def test_denied_job_raises_with_shortfall(self, processor, ledger, graph_store) -> None:
        """Test that a HOBBY tenant without balance is denied before any work."""
        ledger.profiles["hobby_user"].balance = 0

        with pytest.raises(AccessDenied) as exc_info:
            await processor.process(make_job("hobby_user", tier=UserTier.HOBBY))

        assert exc_info.value.shortfall > 0
        assert graph_store.memories == {}

    async def test_deduction_failure_becomes_pending_charge(
        self, processor, cost_guard, ledger, graph_store
    ) -> None:
        """Test that a committed write is kept and its charge recorded."""
        cost_guard.deduct = AsyncMock(side_effect=DeductionFailure("redis down"))
        job = make_job()

        result = await processor.process(job)

        assert result["deduction_pending"] is True
        assert len(graph_store.memories) == 1
        assert ledger.pending[job.job_id].amount == result["cost"]


@pytest.mark.asyncio
class TestIngestionPipeline:
    """Test cases for submission, status and retries."""

    async def test_submit_requires_running_queue(self, pipeline) -> None:
        """Test that publishing to a stopped queue fails the job."""
        with pytest.raises(QueueError):
            await pipeline.submit("pro_user", JOHN, make_context("pro_user"))

    async def test_submit_validates_input(self, pipeline) -> None:
        """Test empty text, oversized text and mismatched context."""
        with pytest.raises(ValidationError):
            await pipeline.submit("pro_user", "   ", make_context("pro_user"))
        with pytest.raises(ValidationError):
            await pipeline.submit("pro_user", "x" * 10_001, make_context("pro_user"))
        with pytest.raises(ValidationError):
            await pipeline.submit("pro_user", JOHN, make_context("someone_else"))

    async def test_job_completes_through_workers(
        self, pipeline, queue, extractor, graph_store
    ) -> None:
        """Test submit, background processing and final status."""
        script_john(extractor)
        await queue.start(pipeline.run_job)
        try:
            job_id = await pipeline.submit("pro_user", JOHN, make_context("pro_user"))
            await queue.join()
        finally:
            await queue.stop()

        status = await pipeline.get_status(job_id)
        assert status.state == JobState.COMPLETED
        assert status.progress == 100
        assert status.attempts == 1
        assert status.result["entities"] == 2
        assert len(graph_store.memories) == 1

    async def test_idempotency_key_enqueues_once(self, pipeline, queue, graph_store) -> None:
        """Test that a repeated key returns the same job without a second write."""
        await queue.start(pipeline.run_job)
        try:
            context = make_context("pro_user")
            first = await pipeline.submit("pro_user", JOHN, context, idempotency_key="abc")
            second = await pipeline.submit("pro_user", JOHN, context, idempotency_key="abc")
            await queue.join()
        finally:
            await queue.stop()

        assert first == second
        assert len(graph_store.memories) == 1

    async def test_transient_failure_is_retried(self, pipeline, embedder) -> None:
        """Test that provider errors retry the job and then succeed."""
        embedder.failures = [EmbeddingError("rate limited")]

        status = await pipeline.run_job(make_job())

        assert status.state == JobState.COMPLETED
        assert status.attempts == 2

    async def test_exhausted_retries_fail_job(self, pipeline, embedder, settings) -> None:
        """Test that a persistent provider error fails after max attempts."""
        embedder.failures = [EmbeddingError("down")] * settings.ingestion_max_attempts

        status = await pipeline.run_job(make_job())

        assert status.state == JobState.FAILED
        assert status.attempts == settings.ingestion_max_attempts
        assert status.error_code == "PROVIDER_ERROR"

    async def test_access_denied_is_not_retried(self, pipeline, ledger) -> None:
        """Test that denials fail immediately with the shortfall recorded."""
        ledger.profiles["hobby_user"].balance = 0

        status = await pipeline.run_job(make_job("hobby_user", tier=UserTier.HOBBY))

        assert status.state == JobState.FAILED
        assert status.attempts == 1
        assert status.error_code == "ACCESS_DENIED"
        assert status.shortfall > 0

    async def test_unknown_job_status(self, pipeline) -> None:
        """Test that unknown ids raise NotFound."""
        with pytest.raises(NotFound):
            await pipeline.get_status("missing")

    async def test_health_counters(self, pipeline) -> None:
        """Test that job outcomes reach the health monitor."""
        await pipeline.run_job(make_job())

        metrics = pipeline.health_monitor.metrics
        assert metrics.total_jobs_processed == 1
        assert metrics.successful_jobs == 1
