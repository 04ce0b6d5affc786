"""Background workers for Recall Chat."""

from recall_chat.workers.base import DrainQueue
from recall_chat.workers.memory_worker import (
    AssociationSource,
    AssociationTarget,
    ExtractionResult,
    MemoryWorker,
    ReconcileSummary,
)
from recall_chat.workers.title_worker import TitleWorker

__all__ = [
    "AssociationSource",
    "AssociationTarget",
    "DrainQueue",
    "ExtractionResult",
    "MemoryWorker",
    "ReconcileSummary",
    "TitleWorker",
]
