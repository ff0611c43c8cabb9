"""Change history ledger and its storage backends."""

from roster_changes.history.backends import ChangeStore, InMemoryChangeStore
from roster_changes.history.ledger import ChangeHistoryLedger
from roster_changes.history.models import (
    BatchStoreResult,
    ChangeHistoryPage,
    ChangeHistoryQuery,
    ChangeHistoryStats,
    CleanupResult,
    CompressedChangeRecord,
)

__all__ = [
    "BatchStoreResult",
    "ChangeHistoryLedger",
    "ChangeHistoryPage",
    "ChangeHistoryQuery",
    "ChangeHistoryStats",
    "ChangeStore",
    "CleanupResult",
    "CompressedChangeRecord",
    "InMemoryChangeStore",
]
