"""Change history ledger: persistence, queries and lifecycle jobs for change records."""

import threading
import time
import uuid
from collections import Counter, defaultdict
from concurrent.futures import ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import datetime, timedelta
from typing import Callable, TypeVar

import structlog

from roster_changes.errors import ChangeValidationError, StorageError
from roster_changes.history.backends import ChangeStore, InMemoryChangeStore
from roster_changes.history.models import (
    BatchStoreResult,
    ChangeHistoryPage,
    ChangeHistoryQuery,
    ChangeHistoryStats,
    CleanupResult,
    CleanupType,
    CompressedChangeRecord,
    CompressedChangesSummary,
)
from roster_changes.models.changes import (
    CHANGE_TYPES,
    ChangeRecord,
    ChangeSummary,
    TimeRange,
    TopChangedEntity,
    empty_change_type_counts,
    empty_severity_counts,
    ensure_utc,
    utcnow,
)
from roster_changes.models.config import HistoryConfig
from roster_changes.utils.retry import exponential_backoff_retry

log = structlog.stdlib.get_logger()

T = TypeVar("T")

APPROX_RECORD_BYTES = 1024
_CANCEL_POLL_SECONDS = 0.05


def pack_chunks(records: list[ChangeRecord], chunk_size: int) -> list[list[ChangeRecord]]:
    """Split records into write chunks, keeping each entity's records together.

    Records of one entity stay in input order and share a chunk unless the
    entity alone exceeds ``chunk_size``.
    """
    groups: dict[tuple[str, str], list[ChangeRecord]] = defaultdict(list)
    for record in records:
        groups[(record.entity_type, record.entity_id)].append(record)

    chunks: list[list[ChangeRecord]] = []
    current: list[ChangeRecord] = []
    for group in groups.values():
        if current and len(current) + len(group) > chunk_size:
            chunks.append(current)
            current = []
        for record in group:
            if len(current) == chunk_size:
                chunks.append(current)
                current = []
            current.append(record)
    if current:
        chunks.append(current)
    return chunks


def _is_retryable(error: Exception) -> bool:
    return isinstance(error, StorageError) and error.retryable


class ChangeHistoryLedger:
    """Append-mostly ledger of change records over a pluggable ChangeStore."""

    def __init__(
        self,
        store: ChangeStore | None = None,
        config: HistoryConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the ledger.

        Args:
            store: Storage backend (defaults to an in-memory store)
            config: History configuration
            sleep: Wait function used between chunk retries
        """
        self._store = store or InMemoryChangeStore()
        self._config = config or HistoryConfig()
        self._sleep = sleep
        self._job_locks: dict[str, threading.Lock] = {
            "retention": threading.Lock(),
            "compression": threading.Lock(),
            "optimization": threading.Lock(),
        }
        self._query_executor: ThreadPoolExecutor | None = None
        self._executor_lock = threading.Lock()

        log.info(
            "change_history_ledger_initialized",
            store=type(self._store).__name__,
            retention_period_days=self._config.retention_period_days,
            enable_compression=self._config.enable_compression,
        )

    @property
    def config(self) -> HistoryConfig:
        return self._config

    @property
    def store_backend(self) -> ChangeStore:
        return self._store

    def close(self) -> None:
        """Release the query worker threads."""
        with self._executor_lock:
            if self._query_executor is not None:
                self._query_executor.shutdown(wait=False)
                self._query_executor = None

    def store(self, record: ChangeRecord) -> None:
        """
        Persist a single change record.

        Raises:
            StorageError: If the backend rejects the write
        """
        try:
            self._store.add(record)
        except StorageError as e:
            log.error(
                "change_record_store_failed",
                record_id=record.id,
                entity_type=record.entity_type,
                error=str(e),
            )
            raise
        except Exception as e:
            log.error(
                "change_record_store_failed",
                record_id=record.id,
                entity_type=record.entity_type,
                error=str(e),
            )
            raise StorageError(f"Failed to store change record {record.id}: {e}") from e

        log.debug("change_record_stored", record_id=record.id, entity_type=record.entity_type)

    def store_batch(self, records: list[ChangeRecord]) -> BatchStoreResult:
        """
        Persist records in chunks, isolating chunk failures.

        Chunks are written concurrently (bounded by ``max_write_concurrency``,
        one writer when the store shares a single connection) and retried
        with exponential backoff on retryable storage errors. A chunk that
        still fails is reported in ``errors`` while the other chunks commit.

        Args:
            records: Change records to persist

        Returns:
            BatchStoreResult with the number of stored records and chunk errors
        """
        if not records:
            return BatchStoreResult(success=True, stored_count=0)

        chunks = pack_chunks(records, self._config.batch_chunk_size)
        write_chunk = exponential_backoff_retry(
            max_retries=self._config.chunk_retries,
            base_delay=self._config.retry_base_delay,
            exceptions=(StorageError,),
            retry_if=_is_retryable,
            sleep=self._sleep,
        )(self._write_chunk)

        log.info(
            "storing_change_batch",
            record_count=len(records),
            chunk_count=len(chunks),
        )

        stored = 0
        errors: list[tuple[int, str]] = []
        workers = min(self._config.max_write_concurrency, len(chunks))
        if not self._store.supports_concurrent_writes:
            workers = 1
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="ledger-write") as executor:
            futures = {
                executor.submit(write_chunk, chunk): index for index, chunk in enumerate(chunks)
            }
            for future in as_completed(futures):
                index = futures[future]
                try:
                    stored += future.result()
                except StorageError as e:
                    log.error("change_chunk_store_failed", chunk=index + 1, error=str(e))
                    errors.append((index, f"Failed to store chunk {index + 1}: {e}"))

        error_messages = [message for _, message in sorted(errors)]

        log.info(
            "change_batch_stored",
            stored_count=stored,
            failed_chunks=len(error_messages),
        )

        return BatchStoreResult(
            success=not error_messages,
            stored_count=stored,
            errors=error_messages,
        )

    def _write_chunk(self, chunk: list[ChangeRecord]) -> int:
        try:
            return self._store.add_many(chunk)
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(str(e)) from e

    def _executor(self) -> ThreadPoolExecutor:
        with self._executor_lock:
            if self._query_executor is None:
                self._query_executor = ThreadPoolExecutor(
                    max_workers=self._config.max_write_concurrency,
                    thread_name_prefix="ledger-query",
                )
            return self._query_executor

    def _run_bounded(
        self,
        operation: str,
        func: Callable[[], T],
        timeout: float | None,
        cancel_event: threading.Event | None,
    ) -> T:
        if cancel_event is not None and cancel_event.is_set():
            raise StorageError(f"{operation} cancelled", retryable=True)
        if timeout is None and cancel_event is None:
            return func()

        future = self._executor().submit(func)
        deadline = time.monotonic() + timeout if timeout is not None else None

        while True:
            wait_for = _CANCEL_POLL_SECONDS
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    future.cancel()
                    log.warning("ledger_operation_timed_out", operation=operation, timeout=timeout)
                    raise StorageError(f"{operation} timed out after {timeout}s", retryable=True)
                wait_for = min(wait_for, remaining)
            try:
                return future.result(timeout=wait_for)
            except FutureTimeoutError:
                if cancel_event is not None and cancel_event.is_set():
                    future.cancel()
                    log.warning("ledger_operation_cancelled", operation=operation)
                    raise StorageError(f"{operation} cancelled", retryable=True) from None

    def query(
        self,
        query: ChangeHistoryQuery,
        timeout: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> ChangeHistoryPage:
        """
        Return one page of matching records, newest first.

        Args:
            query: Filter and pagination
            timeout: Optional time limit in seconds
            cancel_event: Optional event that aborts the query when set

        Returns:
            ChangeHistoryPage with total count and has_more flag

        Raises:
            StorageError: On backend failure; retryable on timeout or cancellation
        """
        start = time.perf_counter()
        limit = min(
            query.limit or self._config.default_query_limit,
            self._config.max_records_per_query,
        )
        offset = query.offset

        records, total = self._run_bounded(
            "query",
            lambda: self._store.find(query, offset, limit),
            timeout,
            cancel_event,
        )

        execution_time_ms = (time.perf_counter() - start) * 1000
        log.debug(
            "change_history_queried",
            integration_id=query.integration_id,
            entity_type=query.entity_type,
            returned=len(records),
            total_count=total,
            execution_time_ms=round(execution_time_ms, 2),
        )

        return ChangeHistoryPage(
            changes=records,
            total_count=total,
            has_more=offset + len(records) < total,
            limit=limit,
            offset=offset,
            execution_time_ms=execution_time_ms,
        )

    def find_all(
        self,
        query: ChangeHistoryQuery,
        timeout: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> list[ChangeRecord]:
        """Every record matching the filter, ignoring pagination."""
        return self._run_bounded(
            "find_all", lambda: self._store.find_all(query), timeout, cancel_event
        )

    def summarize(
        self,
        query: ChangeHistoryQuery,
        top_n: int | None = None,
        timeout: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> ChangeSummary:
        """
        Aggregate matching records into a ChangeSummary.

        Args:
            query: Filter (pagination is ignored)
            top_n: Size of the most-changed entity ranking
            timeout: Optional time limit in seconds
            cancel_event: Optional event that aborts the query when set

        Returns:
            ChangeSummary with counts, average score and top changed entities
        """
        records = self.find_all(query, timeout=timeout, cancel_event=cancel_event)
        return summarize_records(records, top_n or self._config.top_entities_limit)

    def get_stats(self) -> ChangeHistoryStats:
        """Counts and approximate size of everything in the ledger."""
        records = self._store.find_all(ChangeHistoryQuery())
        compressed = self._store.list_compressed()

        stats = ChangeHistoryStats(
            total_records=len(records),
            records_by_integration=dict(Counter(r.integration_id for r in records)),
            records_by_entity_type=dict(Counter(r.entity_type for r in records)),
            records_by_change_type=dict(Counter(r.change_type for r in records)),
            records_by_severity=dict(Counter(r.significance for r in records)),
            oldest_record=min((r.created_at for r in records), default=None),
            newest_record=max((r.created_at for r in records), default=None),
            compressed_records=len(compressed),
            storage_size=(len(records) + len(compressed)) * APPROX_RECORD_BYTES,
        )
        log.debug("change_history_stats", total_records=stats.total_records)
        return stats

    def retention_cleanup(self, now: datetime | None = None) -> CleanupResult:
        """
        Delete records older than the retention period.

        Only one retention run executes at a time; a concurrent call returns
        immediately with an error entry.

        Args:
            now: Reference time (defaults to the current UTC time)

        Returns:
            CleanupResult with the number of records deleted
        """
        lock = self._job_locks["retention"]
        if not lock.acquire(blocking=False):
            log.warning("retention_cleanup_already_running")
            return CleanupResult(
                cleanup_type="retention", errors=["Retention cleanup already running"]
            )

        start = time.perf_counter()
        try:
            retention = timedelta(days=self._config.retention_period_days)
            cutoff = ensure_utc(now or utcnow()) - retention
            log.info("retention_cleanup_started", cutoff=cutoff.isoformat())

            try:
                deleted = self._store.delete_older_than(cutoff)
            except StorageError as e:
                log.error("retention_cleanup_failed", error=str(e))
                return CleanupResult(
                    cleanup_type="retention",
                    duration_ms=(time.perf_counter() - start) * 1000,
                    errors=[f"Retention cleanup failed: {e}"],
                )

            duration_ms = (time.perf_counter() - start) * 1000
            log.info(
                "retention_cleanup_completed",
                records_deleted=deleted,
                duration_ms=round(duration_ms, 2),
            )
            return CleanupResult(
                cleanup_type="retention",
                records_processed=deleted,
                records_deleted=deleted,
                storage_reclaimed=deleted * APPROX_RECORD_BYTES,
                duration_ms=duration_ms,
            )
        finally:
            lock.release()

    def compress_old_records(self, now: datetime | None = None) -> CleanupResult:
        """
        Replace records older than the compression threshold with per-entity summaries.

        Does nothing unless ``enable_compression`` is set.

        Args:
            now: Reference time (defaults to the current UTC time)

        Returns:
            CleanupResult with processed, compressed and deleted counts
        """
        if not self._config.enable_compression:
            log.info("compression_skipped", reason="disabled")
            return CleanupResult(cleanup_type="compression", errors=["Compression disabled"])

        lock = self._job_locks["compression"]
        if not lock.acquire(blocking=False):
            log.warning("compression_already_running")
            return CleanupResult(cleanup_type="compression", errors=["Compression already running"])

        start = time.perf_counter()
        try:
            now = ensure_utc(now or utcnow())
            cutoff = now - timedelta(days=self._config.compression_threshold_days)

            try:
                old_records = self._store.find_older_than(cutoff)
            except StorageError as e:
                log.error("compression_failed", error=str(e))
                return CleanupResult(
                    cleanup_type="compression",
                    duration_ms=(time.perf_counter() - start) * 1000,
                    errors=[f"Compression failed: {e}"],
                )

            groups: dict[tuple[str, str, str], list[ChangeRecord]] = defaultdict(list)
            for record in old_records:
                groups[(record.integration_id, record.entity_type, record.entity_id)].append(record)

            compressed = 0
            deleted = 0
            summaries = 0
            errors: list[str] = []
            for (integration_id, entity_type, entity_id), group in groups.items():
                summary = build_compressed_record(
                    integration_id, entity_type, entity_id, group, now
                )
                try:
                    self._store.save_compressed(summary)
                    deleted += self._store.delete_ids(summary.original_record_ids)
                except StorageError as e:
                    log.error(
                        "entity_compression_failed",
                        entity_type=entity_type,
                        entity_id=entity_id,
                        error=str(e),
                    )
                    errors.append(f"Failed to compress {entity_type}/{entity_id}: {e}")
                    continue
                compressed += len(group)
                summaries += 1

            duration_ms = (time.perf_counter() - start) * 1000
            log.info(
                "compression_completed",
                records_processed=len(old_records),
                records_compressed=compressed,
                summaries_created=summaries,
                duration_ms=round(duration_ms, 2),
            )
            return CleanupResult(
                cleanup_type="compression",
                records_processed=len(old_records),
                records_deleted=deleted,
                records_compressed=compressed,
                storage_reclaimed=max(0, deleted - summaries) * APPROX_RECORD_BYTES,
                duration_ms=duration_ms,
                errors=errors,
            )
        finally:
            lock.release()

    def optimize_indexes(self) -> CleanupResult:
        """Run backend maintenance when ``enable_index_optimization`` is set."""
        if not self._config.enable_index_optimization:
            log.info("index_optimization_skipped", reason="disabled")
            return CleanupResult(
                cleanup_type="optimization", errors=["Index optimization disabled"]
            )

        lock = self._job_locks["optimization"]
        if not lock.acquire(blocking=False):
            return CleanupResult(
                cleanup_type="optimization", errors=["Index optimization already running"]
            )

        start = time.perf_counter()
        try:
            try:
                self._store.optimize()
            except StorageError as e:
                log.error("index_optimization_failed", error=str(e))
                return CleanupResult(
                    cleanup_type="optimization",
                    duration_ms=(time.perf_counter() - start) * 1000,
                    errors=[f"Index optimization failed: {e}"],
                )
            duration_ms = (time.perf_counter() - start) * 1000
            log.info("index_optimization_completed", duration_ms=round(duration_ms, 2))
            return CleanupResult(cleanup_type="optimization", duration_ms=duration_ms)
        finally:
            lock.release()

    def trigger_cleanup(self, cleanup_type: str, now: datetime | None = None) -> CleanupResult:
        """
        Run one lifecycle job by name.

        Raises:
            ChangeValidationError: If the cleanup type is unknown
        """
        jobs: dict[CleanupType, Callable[[], CleanupResult]] = {
            "retention": lambda: self.retention_cleanup(now),
            "compression": lambda: self.compress_old_records(now),
            "optimization": self.optimize_indexes,
        }
        if cleanup_type not in jobs:
            raise ChangeValidationError(
                f"Unknown cleanup type: {cleanup_type}. Expected one of {list(jobs)}"
            )
        return jobs[cleanup_type]()


def summarize_records(records: list[ChangeRecord], top_n: int = 10) -> ChangeSummary:
    """Aggregate change records into counts, average score and a most-changed ranking."""
    if not records:
        return ChangeSummary()

    by_type = empty_change_type_counts()
    by_severity = empty_severity_counts()
    by_entity: Counter[str] = Counter()
    per_entity: dict[tuple[str, str], list[float]] = defaultdict(list)

    for record in records:
        by_type[record.change_type] += 1
        by_severity[record.significance] += 1
        by_entity[record.entity_type] += 1
        per_entity[(record.entity_type, record.entity_id)].append(record.change_score)

    ranking = sorted(
        per_entity.items(),
        key=lambda item: (-len(item[1]), -sum(item[1]) / len(item[1]), item[0]),
    )
    top_entities = [
        TopChangedEntity(
            entity_type=entity_type,
            entity_id=entity_id,
            change_count=len(scores),
            average_score=sum(scores) / len(scores),
        )
        for (entity_type, entity_id), scores in ranking[:top_n]
    ]

    created = [r.created_at for r in records]
    return ChangeSummary(
        total_changes=len(records),
        changes_by_type=by_type,
        changes_by_severity=by_severity,
        changes_by_entity=dict(by_entity),
        average_change_score=sum(r.change_score for r in records) / len(records),
        time_range=TimeRange(start_date=min(created), end_date=max(created)),
        top_changed_entities=top_entities,
    )


def build_compressed_record(
    integration_id: str,
    entity_type: str,
    entity_id: str,
    records: list[ChangeRecord],
    compressed_at: datetime,
) -> CompressedChangeRecord:
    """Summarize one entity's aged records into a single compressed record."""
    seen_types = {r.change_type for r in records}
    severity_distribution = Counter(r.significance for r in records)
    field_counts: Counter[str] = Counter(
        fc.field_name for r in records for fc in r.field_changes
    )
    created = [r.created_at for r in records]

    return CompressedChangeRecord(
        id=f"compressed_{uuid.uuid4().hex}",
        integration_id=integration_id,
        entity_type=entity_type,
        entity_id=entity_id,
        changes_summary=CompressedChangesSummary(
            total_changes=len(records),
            change_types=[t for t in CHANGE_TYPES if t in seen_types],
            severity_distribution=dict(severity_distribution),
            field_change_counts=dict(field_counts),
        ),
        time_range=TimeRange(start_date=min(created), end_date=max(created)),
        original_record_ids=[r.id for r in records],
        compression_ratio=float(len(records)),
        compressed_at=compressed_at,
    )
