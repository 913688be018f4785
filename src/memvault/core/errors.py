"""Error taxonomy shared by ingestion, retrieval, billing and consolidation."""

from typing import Any


class MemVaultError(Exception):
    """Base exception for all MemVault errors."""

    code = "INTERNAL_ERROR"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(MemVaultError):
    """Bad input. Never retried."""

    code = "VALIDATION_ERROR"


class AccessDenied(MemVaultError):
    """Balance or policy denial. Never retried.

    Carries the shortfall in minor currency units so callers can top up.
    """

    code = "ACCESS_DENIED"

    def __init__(
        self,
        message: str,
        shortfall: int = 0,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.shortfall = shortfall


class ProviderError(MemVaultError):
    """Transient failure of an embedding, extraction or storage dependency."""

    code = "PROVIDER_ERROR"


class EmbeddingError(ProviderError):
    """Exception raised for embedding-related errors."""


class ExtractionError(ProviderError):
    """Exception raised when graph or fact extraction fails."""


class GraphStoreError(ProviderError):
    """Exception raised for graph store round-trips."""


class BalanceStoreError(ProviderError):
    """Exception raised when the balance store or ledger is unreachable."""


class QueueError(ProviderError):
    """Exception raised when a job cannot be published or consumed."""


class BillingError(ProviderError):
    """Exception raised by the billing provider."""


class NotFound(MemVaultError):
    """Unknown job id or entity."""

    code = "NOT_FOUND"


class DeductionFailure(MemVaultError):
    """Balance deduction failed after work was already committed."""

    code = "DEDUCTION_FAILED"


class RetrievalError(MemVaultError):
    """Retrieval could not complete. No partial context is returned."""

    code = "RETRIEVAL_ERROR"
