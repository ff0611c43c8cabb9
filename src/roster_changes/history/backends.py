"""Storage backend interface and in-memory implementation for the change ledger."""

import threading
from abc import ABC, abstractmethod
from datetime import datetime

import structlog

from roster_changes.errors import StorageError
from roster_changes.history.models import ChangeHistoryQuery, CompressedChangeRecord
from roster_changes.models.changes import ChangeRecord, ensure_utc

log = structlog.stdlib.get_logger()


class ChangeStore(ABC):
    """Abstract interface for change ledger persistence.

    Any datastore capable of append, filtered range query and bulk delete by
    predicate can back the ledger. Implementations raise StorageError on
    failure; ``retryable`` marks transient failures.
    """

    @abstractmethod
    def add(self, record: ChangeRecord) -> None:
        """Append one record.

        Raises:
            StorageError: If the record id already exists or the write fails
        """
        pass

    @abstractmethod
    def add_many(self, records: list[ChangeRecord]) -> int:
        """Append records in a single transaction, skipping existing ids.

        Returns:
            Number of records inserted
        """
        pass

    @abstractmethod
    def find(
        self, query: ChangeHistoryQuery, offset: int, limit: int
    ) -> tuple[list[ChangeRecord], int]:
        """Return one page of matching records (newest first) and the total match count."""
        pass

    @abstractmethod
    def find_all(self, query: ChangeHistoryQuery) -> list[ChangeRecord]:
        """Return every matching record, newest first, ignoring pagination."""
        pass

    @abstractmethod
    def find_older_than(self, cutoff: datetime) -> list[ChangeRecord]:
        """Return records created strictly before ``cutoff``, oldest first."""
        pass

    @abstractmethod
    def delete_older_than(self, cutoff: datetime) -> int:
        """Delete records created strictly before ``cutoff``."""
        pass

    @abstractmethod
    def delete_ids(self, record_ids: list[str]) -> int:
        pass

    @abstractmethod
    def save_compressed(self, record: CompressedChangeRecord) -> None:
        pass

    @abstractmethod
    def list_compressed(self, integration_id: str | None = None) -> list[CompressedChangeRecord]:
        pass

    def optimize(self) -> None:
        """Backend-specific maintenance (index rebuild, statistics refresh)."""
        return None

    @property
    def supports_concurrent_writes(self) -> bool:
        """Whether chunks may be written from several threads at once."""
        return True


class InMemoryChangeStore(ChangeStore):
    """Thread-safe, process-local change store."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._records: dict[str, ChangeRecord] = {}
        self._compressed: dict[str, CompressedChangeRecord] = {}
        log.info("in_memory_change_store_initialized")

    def add(self, record: ChangeRecord) -> None:
        with self._lock:
            if record.id in self._records:
                raise StorageError(f"Change record already exists: {record.id}")
            self._records[record.id] = record

    def add_many(self, records: list[ChangeRecord]) -> int:
        with self._lock:
            inserted = 0
            for record in records:
                if record.id in self._records:
                    continue
                self._records[record.id] = record
                inserted += 1
            return inserted

    def _sorted_matches(self, query: ChangeHistoryQuery) -> list[ChangeRecord]:
        with self._lock:
            matches = [r for r in self._records.values() if query.matches(r)]
        matches.sort(key=lambda r: (r.created_at, r.id), reverse=True)
        return matches

    def find(
        self, query: ChangeHistoryQuery, offset: int, limit: int
    ) -> tuple[list[ChangeRecord], int]:
        matches = self._sorted_matches(query)
        return matches[offset : offset + limit], len(matches)

    def find_all(self, query: ChangeHistoryQuery) -> list[ChangeRecord]:
        return self._sorted_matches(query)

    def find_older_than(self, cutoff: datetime) -> list[ChangeRecord]:
        cutoff = ensure_utc(cutoff)
        with self._lock:
            old = [r for r in self._records.values() if r.created_at < cutoff]
        old.sort(key=lambda r: (r.created_at, r.id))
        return old

    def delete_older_than(self, cutoff: datetime) -> int:
        cutoff = ensure_utc(cutoff)
        with self._lock:
            doomed = [rid for rid, r in self._records.items() if r.created_at < cutoff]
            for rid in doomed:
                del self._records[rid]
            return len(doomed)

    def delete_ids(self, record_ids: list[str]) -> int:
        with self._lock:
            deleted = 0
            for rid in record_ids:
                if self._records.pop(rid, None) is not None:
                    deleted += 1
            return deleted

    def save_compressed(self, record: CompressedChangeRecord) -> None:
        with self._lock:
            self._compressed[record.id] = record

    def list_compressed(self, integration_id: str | None = None) -> list[CompressedChangeRecord]:
        with self._lock:
            compressed = list(self._compressed.values())
        if integration_id is not None:
            compressed = [c for c in compressed if c.integration_id == integration_id]
        return sorted(compressed, key=lambda c: c.compressed_at)
