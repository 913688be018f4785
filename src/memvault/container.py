"""Wiring of stores, providers and services into a running MemVault instance."""

import logging
from contextlib import AsyncExitStack
from dataclasses import dataclass, field

from .billing import (
    BalanceLedger,
    BalanceStore,
    BillingProvider,
    HybridCostGuard,
    InMemoryBalanceLedger,
    InMemoryBalanceStore,
    LedgerSyncer,
    OverageInvoicer,
    PostgresBalanceLedger,
    ReconciliationService,
    RedisBalanceStore,
    StripeBillingProvider,
)
from .consolidation import ConsolidationScheduler, ConsolidationService
from .core.config import Settings, settings as default_settings
from .core.embeddings import EmbeddingProvider, get_embedding_provider
from .ingestion import (
    HealthMonitor,
    InMemoryJobStatusStore,
    IngestionPipeline,
    JobStatusStore,
    MemoryProcessor,
    RedisJobStatusStore,
)
from .ingestion.queue import JobPublisher, LocalJobQueue, QueueConsumer, QueueProducer
from .memory import GraphStore, InMemoryGraphStore, PostgresGraphStore
from .memory.database import PostgresConnection
from .memory.services import GraphExtractionProvider, OpenAIGraphExtractor
from .retrieval import GraphRAGEngine

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    """Every long-lived MemVault component, owned by one exit stack."""

    settings: Settings
    graph_store: GraphStore
    embedding_provider: EmbeddingProvider
    extractor: GraphExtractionProvider
    balance_store: BalanceStore
    ledger: BalanceLedger
    syncer: LedgerSyncer
    invoicer: OverageInvoicer
    cost_guard: HybridCostGuard
    reconciliation: ReconciliationService
    status_store: JobStatusStore
    publisher: JobPublisher
    processor: MemoryProcessor
    pipeline: IngestionPipeline
    retrieval: GraphRAGEngine
    consolidation: ConsolidationService
    scheduler: ConsolidationScheduler
    health_monitor: HealthMonitor
    consumer: QueueConsumer | None = None
    _stack: AsyncExitStack = field(default_factory=AsyncExitStack, repr=False)

    async def start(self, consume: bool = True, schedule: bool = True) -> None:
        """Start background tasks.

        Args:
            consume: Run ingestion workers in this process
            schedule: Run the periodic consolidation timer
        """
        await self.syncer.start()
        self._stack.push_async_callback(self.syncer.stop)

        await self.reconciliation.start()
        self._stack.push_async_callback(self.reconciliation.stop)

        if consume:
            if isinstance(self.publisher, LocalJobQueue):
                await self.publisher.start(self.pipeline.run_job)
                self._stack.push_async_callback(self.publisher.stop)
            else:
                self.consumer = QueueConsumer(self.pipeline.run_job, self.settings)
                await self.consumer.start_consuming()
                self._stack.push_async_callback(self.consumer.stop_consuming)
                self.health_monitor.register_queue(self.consumer)

        if schedule:
            self.scheduler.start()
            self._stack.push_async_callback(self.scheduler.stop)

        logger.info("✅ MemVault services started")

    async def aclose(self) -> None:
        """Stop background tasks and close every connection, newest first."""
        await self._stack.aclose()
        logger.info("👋 MemVault services stopped")


async def build_container(
    settings: Settings | None = None,
    *,
    graph_store: GraphStore | None = None,
    embedding_provider: EmbeddingProvider | None = None,
    extractor: GraphExtractionProvider | None = None,
    balance_store: BalanceStore | None = None,
    ledger: BalanceLedger | None = None,
    billing_provider: BillingProvider | None = None,
) -> ServiceContainer:
    """Connect the configured backends and assemble the services.

    Any component passed in is used as-is instead of the configured backend.
    On failure everything already connected is closed again.
    """
    settings = settings or default_settings
    stack = AsyncExitStack()

    try:
        postgres: PostgresConnection | None = None
        if settings.graph_store_backend == "postgres" and (graph_store is None or ledger is None):
            postgres = PostgresConnection(settings)
            await postgres.connect()
            stack.push_async_callback(postgres.disconnect)

        if graph_store is None:
            if postgres:
                graph_store = PostgresGraphStore(postgres, settings)
            else:
                graph_store = InMemoryGraphStore()
            await graph_store.initialize()

        if ledger is None:
            ledger = PostgresBalanceLedger(postgres) if postgres else InMemoryBalanceLedger()
            await ledger.initialize()

        if embedding_provider is None:
            embedding_provider = await stack.enter_async_context(
                get_embedding_provider(settings=settings)
            )
        if extractor is None:
            extractor = await stack.enter_async_context(OpenAIGraphExtractor(settings))

        if balance_store is None:
            if settings.balance_store_backend == "redis":
                balance_store = RedisBalanceStore(settings)
            else:
                balance_store = InMemoryBalanceStore()
            await balance_store.connect()
            stack.push_async_callback(balance_store.disconnect)

        if billing_provider is None and settings.stripe_secret_key:
            billing_provider = StripeBillingProvider(settings)
            stack.push_async_callback(billing_provider.close)
        if billing_provider is None:
            logger.warning("No billing provider configured; PRO overage will not be invoiced")

        if settings.balance_store_backend == "redis":
            status_store: JobStatusStore = RedisJobStatusStore(settings)
        else:
            status_store = InMemoryJobStatusStore()
        await status_store.connect()
        stack.push_async_callback(status_store.disconnect)

        if settings.queue_backend == "rabbitmq":
            publisher: JobPublisher = QueueProducer(settings)
        else:
            publisher = LocalJobQueue(workers=settings.ingestion_workers)
        await publisher.connect()
        stack.push_async_callback(publisher.disconnect)

        syncer = LedgerSyncer(ledger, interval=settings.ledger_sync_interval, store=balance_store)
        invoicer = OverageInvoicer(ledger, balance_store, billing_provider, settings)
        cost_guard = HybridCostGuard(balance_store, ledger, syncer, invoicer, settings)
        reconciliation = ReconciliationService(
            ledger, cost_guard, interval=settings.reconciliation_interval
        )

        health_monitor = HealthMonitor()
        processor = MemoryProcessor(
            graph_store, embedding_provider, extractor, cost_guard, reconciliation, settings
        )
        pipeline = IngestionPipeline(publisher, status_store, processor, settings, health_monitor)
        consolidation = ConsolidationService(
            graph_store, extractor, cost_guard, ledger, reconciliation, settings
        )

        health_monitor.register_queue(publisher)
        health_monitor.register_component("processor", processor)
        health_monitor.register_component("graph_store", graph_store)
        health_monitor.register_component("balance_store", balance_store)

    except BaseException:
        await stack.aclose()
        raise

    logger.info(
        f"🧠 MemVault container built (graph={settings.graph_store_backend}, "
        f"balance={settings.balance_store_backend}, queue={settings.queue_backend})"
    )
    return ServiceContainer(
        settings=settings,
        graph_store=graph_store,
        embedding_provider=embedding_provider,
        extractor=extractor,
        balance_store=balance_store,
        ledger=ledger,
        syncer=syncer,
        invoicer=invoicer,
        cost_guard=cost_guard,
        reconciliation=reconciliation,
        status_store=status_store,
        publisher=publisher,
        processor=processor,
        pipeline=pipeline,
        retrieval=GraphRAGEngine(graph_store, embedding_provider, settings),
        consolidation=consolidation,
        scheduler=ConsolidationScheduler(consolidation, settings),
        health_monitor=health_monitor,
        _stack=stack,
    )
