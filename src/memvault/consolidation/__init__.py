"""Consolidation ("sleep cycles") of recent memories into entity knowledge."""

from .scheduler import ConsolidationInProgress, ConsolidationScheduler
from .service import ConsolidationResult, ConsolidationService, merge_description

__all__ = [
    "ConsolidationInProgress",
    "ConsolidationResult",
    "ConsolidationScheduler",
    "ConsolidationService",
    "merge_description",
]
