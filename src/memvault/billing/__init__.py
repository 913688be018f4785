"""Per-tenant metering: balance store, ledger, Cost Guard and overage invoicing."""

from .balance_store import BalanceStore, InMemoryBalanceStore, RedisBalanceStore
from .cost_guard import HybridCostGuard
from .invoicing import BillingProvider, OverageInvoicer, StripeBillingProvider
from .ledger import BalanceLedger, InMemoryBalanceLedger, PostgresBalanceLedger
from .ledger_sync import LedgerSyncer
from .reconciliation import ReconciliationService

__all__ = [
    "BalanceLedger",
    "BalanceStore",
    "BillingProvider",
    "HybridCostGuard",
    "InMemoryBalanceLedger",
    "InMemoryBalanceStore",
    "LedgerSyncer",
    "OverageInvoicer",
    "PostgresBalanceLedger",
    "RedisBalanceStore",
    "ReconciliationService",
    "StripeBillingProvider",
]
