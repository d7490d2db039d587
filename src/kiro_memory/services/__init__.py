"""Services - focused components composed by MemoryManager.

Services:
- HybridSearchService: Merge keyword and vector candidates into one ranking
- ConsolidationService: Fold observations about the same files together
- StalenessService: Flag observations whose files changed afterwards
"""

from .search import HybridSearchService
from .consolidation import ConsolidationService
from .staleness import StalenessService

__all__ = [
    "HybridSearchService",
    "ConsolidationService",
    "StalenessService",
]
