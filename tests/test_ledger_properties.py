"""Property-based tests for the change history ledger.

**Feature: roster-change-tracking, Property 9: Retention boundary**
**Feature: roster-change-tracking, Property 10: Pagination completeness**
**Feature: roster-change-tracking, Property 11: Chunk failure isolation**
**Feature: roster-change-tracking, Property 12: Chunks keep entity records together**
"""

import threading
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest
import structlog
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from roster_changes.errors import ChangeValidationError, StorageError
from roster_changes.history.backends import InMemoryChangeStore
from roster_changes.history.ledger import ChangeHistoryLedger, pack_chunks, summarize_records
from roster_changes.history.models import ChangeHistoryQuery
from roster_changes.models.config import HistoryConfig

log = structlog.stdlib.get_logger()

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class FlakyStore(InMemoryChangeStore):
    """In-memory store whose add_many fails for chunks holding one entity."""

    def __init__(self, failing_entity: str, failures: int, retryable: bool):
        super().__init__()
        self.failing_entity = failing_entity
        self.failures_left = failures
        self.retryable = retryable

    def add_many(self, records):
        if any(r.entity_id == self.failing_entity for r in records) and self.failures_left:
            self.failures_left -= 1
            raise StorageError("database is locked", retryable=self.retryable)
        return super().add_many(records)


class SlowStore(InMemoryChangeStore):
    def find(self, query, offset, limit):
        time.sleep(1.0)
        return super().find(query, offset, limit)


class BlockingStore(InMemoryChangeStore):
    """Store whose retention delete waits until released."""

    def __init__(self):
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def delete_older_than(self, cutoff):
        self.entered.set()
        self.release.wait(timeout=5)
        return super().delete_older_than(cutoff)


@given(st.lists(st.integers(min_value=0, max_value=200), min_size=1, max_size=30))
@settings(
    max_examples=50, suppress_health_check=[HealthCheck.function_scoped_fixture], deadline=None
)
def test_property_9_retention_boundary(make_record, ages_in_days: list[int]):
    """Property 9: Retention boundary.

    After retention cleanup no record is older than the retention period and
    every younger record is untouched; a second run deletes nothing.

    **Feature: roster-change-tracking, Property 9: Retention boundary**
    """
    ledger = ChangeHistoryLedger(config=HistoryConfig(retention_period_days=90))
    records = [
        make_record(entity_id=f"u{i}", created_at=NOW - timedelta(days=age))
        for i, age in enumerate(ages_in_days)
    ]
    ledger.store_batch(records)

    result = ledger.retention_cleanup(now=NOW)

    cutoff = NOW - timedelta(days=90)
    remaining = ledger.find_all(ChangeHistoryQuery())
    assert all(r.created_at >= cutoff for r in remaining)
    assert {r.id for r in remaining} == {r.id for r in records if r.created_at >= cutoff}
    assert result.records_deleted == len(records) - len(remaining)
    assert result.success

    again = ledger.retention_cleanup(now=NOW)
    assert again.records_deleted == 0


@given(st.integers(min_value=0, max_value=40), st.integers(min_value=1, max_value=15))
@settings(
    max_examples=50, suppress_health_check=[HealthCheck.function_scoped_fixture], deadline=None
)
def test_property_10_pagination_visits_every_record_once(make_record, count: int, limit: int):
    """Property 10: Pagination completeness.

    Following has_more page by page returns every matching record exactly
    once, newest first.

    **Feature: roster-change-tracking, Property 10: Pagination completeness**
    """
    ledger = ChangeHistoryLedger()
    records = [
        make_record(entity_id=f"u{i}", created_at=NOW - timedelta(minutes=i)) for i in range(count)
    ]
    ledger.store_batch(records)

    seen = []
    offset = 0
    while True:
        page = ledger.query(ChangeHistoryQuery(limit=limit, offset=offset))
        assert page.total_count == count
        seen.extend(page.changes)
        if not page.has_more:
            break
        offset += limit

    assert [r.id for r in seen] == [r.id for r in records]


def test_property_11_failed_chunk_does_not_block_others(make_record):
    """Property 11: Chunk failure isolation.

    **Feature: roster-change-tracking, Property 11: Chunk failure isolation**
    """
    store = FlakyStore(failing_entity="u0", failures=10, retryable=True)
    sleep = Mock()
    ledger = ChangeHistoryLedger(
        store, HistoryConfig(batch_chunk_size=2, chunk_retries=2, retry_base_delay=0.5), sleep=sleep
    )
    records = [make_record(entity_id=f"u{i}") for i in range(6)]

    result = ledger.store_batch(records)

    assert not result.success
    assert result.stored_count == 4
    assert result.errors == ["Failed to store chunk 1: database is locked"]
    assert sleep.call_count == 2
    assert [c.args[0] for c in sleep.call_args_list] == [0.5, 1.0]
    assert len(ledger.find_all(ChangeHistoryQuery())) == 4


def test_retryable_chunk_failure_recovers(make_record):
    store = FlakyStore(failing_entity="u0", failures=1, retryable=True)
    sleep = Mock()
    ledger = ChangeHistoryLedger(store, HistoryConfig(batch_chunk_size=2), sleep=sleep)

    result = ledger.store_batch([make_record(entity_id=f"u{i}") for i in range(4)])

    assert result.success
    assert result.stored_count == 4
    sleep.assert_called_once()


def test_non_retryable_chunk_failure_is_not_retried(make_record):
    store = FlakyStore(failing_entity="u0", failures=1, retryable=False)
    sleep = Mock()
    ledger = ChangeHistoryLedger(store, HistoryConfig(batch_chunk_size=2), sleep=sleep)

    result = ledger.store_batch([make_record(entity_id=f"u{i}") for i in range(4)])

    assert result.stored_count == 2
    assert len(result.errors) == 1
    sleep.assert_not_called()


@given(
    st.lists(st.sampled_from(["a", "b", "c", "d", "e"]), min_size=1, max_size=25),
    st.integers(min_value=1, max_value=6),
)
@settings(
    max_examples=100, suppress_health_check=[HealthCheck.function_scoped_fixture], deadline=None
)
def test_property_12_chunks_keep_entities_together(
    make_record, entity_ids: list[str], chunk_size: int
):
    """Property 12: Chunks keep entity records together.

    **Feature: roster-change-tracking, Property 12: Chunks keep entity records together**
    """
    records = [make_record(entity_id=entity_id) for entity_id in entity_ids]

    chunks = pack_chunks(records, chunk_size)

    assert all(0 < len(chunk) <= chunk_size for chunk in chunks)
    assert sorted(r.id for chunk in chunks for r in chunk) == sorted(r.id for r in records)
    for entity_id in set(entity_ids):
        holding = [
            i for i, chunk in enumerate(chunks) if any(r.entity_id == entity_id for r in chunk)
        ]
        if entity_ids.count(entity_id) <= chunk_size:
            assert len(holding) == 1
        in_order = [r.id for chunk in chunks for r in chunk if r.entity_id == entity_id]
        assert in_order == [r.id for r in records if r.entity_id == entity_id]


def test_single_store_surfaces_duplicate_immediately(make_record):
    ledger = ChangeHistoryLedger()
    record = make_record(record_id="chg_dup")
    ledger.store(record)

    with pytest.raises(StorageError):
        ledger.store(record)


def test_query_filters_and_caps_limit(make_record):
    ledger = ChangeHistoryLedger(config=HistoryConfig(max_records_per_query=3))
    ledger.store_batch(
        [make_record(entity_id=f"u{i}", significance="high") for i in range(5)]
        + [make_record(entity_id="c1", entity_type="class", significance="low")]
    )

    page = ledger.query(ChangeHistoryQuery(entity_type="user", limit=100))
    assert page.limit == 3
    assert len(page.changes) == 3
    assert page.total_count == 5
    assert page.has_more

    low = ledger.query(ChangeHistoryQuery(significance=["low"]))
    assert [r.entity_id for r in low.changes] == ["c1"]


def test_query_timeout_is_retryable():
    ledger = ChangeHistoryLedger(SlowStore())
    try:
        with pytest.raises(StorageError) as exc_info:
            ledger.query(ChangeHistoryQuery(), timeout=0.1)
        assert exc_info.value.retryable
    finally:
        ledger.close()


def test_query_cancellation_is_retryable():
    ledger = ChangeHistoryLedger(SlowStore())
    cancel = threading.Event()
    timer = threading.Timer(0.1, cancel.set)
    timer.start()
    try:
        with pytest.raises(StorageError) as exc_info:
            ledger.query(ChangeHistoryQuery(), cancel_event=cancel)
        assert exc_info.value.retryable
        assert "cancelled" in str(exc_info.value)
    finally:
        timer.cancel()
        ledger.close()


def test_already_cancelled_query_never_starts():
    store = Mock(spec=InMemoryChangeStore)
    ledger = ChangeHistoryLedger(store)
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(StorageError):
        ledger.query(ChangeHistoryQuery(), cancel_event=cancel)
    store.find.assert_not_called()


def test_retention_is_single_flight():
    store = BlockingStore()
    ledger = ChangeHistoryLedger(store)
    results = []
    worker = threading.Thread(target=lambda: results.append(ledger.retention_cleanup(now=NOW)))
    worker.start()
    try:
        assert store.entered.wait(timeout=5)

        concurrent = ledger.retention_cleanup(now=NOW)

        assert concurrent.errors == ["Retention cleanup already running"]
    finally:
        store.release.set()
        worker.join(timeout=5)
    assert results[0].success


def test_compression_replaces_old_records_with_summaries(make_record):
    config = HistoryConfig(enable_compression=True, compression_threshold_days=30)
    ledger = ChangeHistoryLedger(config=config)
    old = NOW - timedelta(days=45)
    ledger.store_batch(
        [
            make_record(entity_id="u1", created_at=old, field_names=("name",)),
            make_record(entity_id="u1", created_at=old + timedelta(hours=1), field_names=("name",)),
            make_record(entity_id="u1", created_at=old + timedelta(hours=2), change_type="deleted"),
            make_record(entity_id="u2", created_at=old),
            make_record(entity_id="u3", created_at=NOW - timedelta(days=1)),
        ]
    )

    result = ledger.compress_old_records(now=NOW)

    assert result.success
    assert result.records_processed == 4
    assert result.records_compressed == 4
    assert result.records_deleted == 4
    assert result.storage_reclaimed == 2 * 1024
    assert [r.entity_id for r in ledger.find_all(ChangeHistoryQuery())] == ["u3"]

    compressed = {c.entity_id: c for c in ledger.store_backend.list_compressed()}
    assert set(compressed) == {"u1", "u2"}
    assert compressed["u1"].changes_summary.total_changes == 3
    assert compressed["u1"].changes_summary.change_types == ["updated", "deleted"]
    assert compressed["u1"].changes_summary.field_change_counts == {"name": 3}
    assert compressed["u1"].compression_ratio == 3.0
    assert ledger.get_stats().compressed_records == 2


def test_disabled_jobs_report_why():
    ledger = ChangeHistoryLedger()

    assert ledger.trigger_cleanup("compression").errors == ["Compression disabled"]
    assert ledger.trigger_cleanup("optimization").errors == ["Index optimization disabled"]
    with pytest.raises(ChangeValidationError):
        ledger.trigger_cleanup("vacuum")


def test_stats_count_records(make_record):
    ledger = ChangeHistoryLedger()
    ledger.store_batch(
        [
            make_record(entity_id="u1", created_at=NOW - timedelta(days=2)),
            make_record(entity_id="u2", change_type="created", significance="high"),
            make_record(entity_id="c1", entity_type="class", integration_id="int_2"),
        ]
    )

    stats = ledger.get_stats()

    assert stats.total_records == 3
    assert stats.records_by_integration == {"int_1": 2, "int_2": 1}
    assert stats.records_by_entity_type == {"user": 2, "class": 1}
    assert stats.records_by_severity == {"medium": 2, "high": 1}
    assert stats.oldest_record == NOW - timedelta(days=2)
    assert stats.storage_size == 3 * 1024


def test_summary_ranks_most_changed_entities(make_record):
    records = [
        make_record(entity_id="u1", change_score=40.0),
        make_record(entity_id="u1", change_score=60.0),
        make_record(entity_id="u2", change_score=90.0),
        make_record(entity_id="u3", change_score=95.0, change_type="deleted"),
    ]

    summary = summarize_records(records, top_n=2)

    assert summary.total_changes == 4
    assert summary.changes_by_type["deleted"] == 1
    assert summary.changes_by_entity == {"user": 4}
    assert [(e.entity_id, e.change_count) for e in summary.top_changed_entities] == [
        ("u1", 2),
        ("u3", 1),
    ]
    assert summary.top_changed_entities[0].average_score == 50.0
    log.info("summary_ranking_checked", top=[e.entity_id for e in summary.top_changed_entities])
