"""Shared fixtures: deterministic providers and in-memory backends."""

import re
from typing import Any

import pytest

from memvault.billing import (
    HybridCostGuard,
    InMemoryBalanceLedger,
    InMemoryBalanceStore,
    LedgerSyncer,
    ReconciliationService,
)
from memvault.core.config import Settings
from memvault.core.domain.billing import TenantProfile, UserContext, UserSource, UserTier
from memvault.core.domain.graph import (
    CoreFact,
    CoreFactExtraction,
    ExtractedEntity,
    ExtractedRelationship,
    GraphExtractionResult,
    Memory,
    TokenUsage,
)
from memvault.core.embeddings.base import EmbeddingProvider
from memvault.ingestion.processor import MemoryProcessor
from memvault.memory import InMemoryGraphStore
from memvault.memory.services.graph_extractor import GraphExtractionProvider


class BagOfWordsEmbedder(EmbeddingProvider):
    """Counts words into a fixed vocabulary; equal words give equal axes."""

    def __init__(self, dimension: int = 512):
        self._dimension = dimension
        self._vocabulary: dict[str, int] = {}
        self.calls = 0
        self.failures: list[Exception] = []

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def model_name(self) -> str:
        return "bag-of-words"

    def _index(self, word: str) -> int:
        if word not in self._vocabulary:
            self._vocabulary[word] = len(self._vocabulary) % self._dimension
        return self._vocabulary[word]

    def _embed(self, text: str) -> list[float]:
        vector = [0.0] * self._dimension
        for word in re.findall(r"[a-z0-9]+", text.lower()):
            vector[self._index(word)] += 1.0
        return vector

    async def embed_text(self, text: str) -> list[float]:
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return self._embed(text)

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [self._embed(text) for text in texts]

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        pass


class ScriptedExtractor(GraphExtractionProvider):
    """Returns canned graphs by exact text and a fixed fact batch."""

    def __init__(self) -> None:
        self.graphs: dict[str, GraphExtractionResult] = {}
        self.facts = CoreFactExtraction()
        self.graph_calls = 0
        self.fact_calls = 0
        self.failures: list[Exception] = []

    def add_graph(
        self,
        text: str,
        entities: list[tuple[str, str, str | None]],
        relationships: list[tuple[str, str, str]] = (),
        total_tokens: int = 0,
    ) -> None:
        self.graphs[text] = GraphExtractionResult(
            entities=[
                ExtractedEntity(name=name, type=type_, description=description)
                for name, type_, description in entities
            ],
            relationships=[
                ExtractedRelationship(from_entity=src, to_entity=dst, predicate=predicate)
                for src, predicate, dst in relationships
            ],
            usage=TokenUsage(total_tokens=total_tokens) if total_tokens else None,
        )

    def set_facts(self, facts: list[tuple[str, str, str, float]], total_tokens: int = 0) -> None:
        self.facts = CoreFactExtraction(
            facts=[
                CoreFact(entity_name=name, entity_type=type_, fact=fact, confidence=confidence)
                for name, type_, fact, confidence in facts
            ],
            usage=TokenUsage(total_tokens=total_tokens) if total_tokens else None,
        )

    async def extract_graph(self, text: str) -> GraphExtractionResult:
        self.graph_calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return self.graphs.get(text, GraphExtractionResult())

    async def extract_core_facts(self, memories: list[Memory]) -> CoreFactExtraction:
        self.fact_calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return self.facts


def make_context(
    user_id: str,
    source: UserSource = UserSource.DIRECT,
    tier: UserTier = UserTier.PRO,
    balance: int = 0,
) -> UserContext:
    return UserContext(user_id=user_id, source=source, tier=tier, balance=balance)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        graph_store_backend="memory",
        balance_store_backend="memory",
        queue_backend="local",
        ingestion_workers=3,
        ingestion_retry_base_delay=0.0,
        ledger_sync_interval=0.05,
        reconciliation_interval=0.05,
        provider_timeout=5.0,
        admin_api_key="",
    )


@pytest.fixture
def embedder() -> BagOfWordsEmbedder:
    return BagOfWordsEmbedder()


@pytest.fixture
def extractor() -> ScriptedExtractor:
    return ScriptedExtractor()


@pytest.fixture
def graph_store() -> InMemoryGraphStore:
    return InMemoryGraphStore()


@pytest.fixture
def balance_store() -> InMemoryBalanceStore:
    return InMemoryBalanceStore()


@pytest.fixture
def ledger() -> InMemoryBalanceLedger:
    return InMemoryBalanceLedger(
        [
            TenantProfile(user_id="pro_user", tier=UserTier.PRO, balance=1000),
            TenantProfile(user_id="hobby_user", tier=UserTier.HOBBY, balance=1000),
            TenantProfile(user_id="free_user", tier=UserTier.FREE, balance=1000),
            TenantProfile(
                user_id="rapid_user",
                source=UserSource.RAPIDAPI,
                tier=UserTier.PRO,
                balance=0,
            ),
        ]
    )


@pytest.fixture
def syncer(
    ledger: InMemoryBalanceLedger, balance_store: InMemoryBalanceStore, settings: Settings
) -> LedgerSyncer:
    return LedgerSyncer(ledger, interval=settings.ledger_sync_interval, store=balance_store)


@pytest.fixture
def cost_guard(
    balance_store: InMemoryBalanceStore,
    ledger: InMemoryBalanceLedger,
    syncer: LedgerSyncer,
    settings: Settings,
) -> HybridCostGuard:
    return HybridCostGuard(balance_store, ledger, syncer, invoicer=None, settings=settings)


@pytest.fixture
def reconciliation(
    ledger: InMemoryBalanceLedger, cost_guard: HybridCostGuard
) -> ReconciliationService:
    return ReconciliationService(ledger, cost_guard, interval=0.05)


@pytest.fixture
def processor(
    graph_store: InMemoryGraphStore,
    embedder: BagOfWordsEmbedder,
    extractor: ScriptedExtractor,
    cost_guard: HybridCostGuard,
    reconciliation: ReconciliationService,
    settings: Settings,
) -> MemoryProcessor:
    return MemoryProcessor(
        graph_store, embedder, extractor, cost_guard, reconciliation, settings
    )
