"""Tests for the envelope-returning operation surface."""

from datetime import datetime, timezone
from unittest.mock import Mock

import pytest

from roster_changes.history.backends import InMemoryChangeStore
from roster_changes.history.sql_store import SqlChangeStore
from roster_changes.models.config import AppConfig, HistoryConfig
from roster_changes.service import ChangeTrackingService

CONTEXT = {"sync_id": "sync_1", "provider_id": "clever", "sync_type": "incremental"}
START = datetime(2024, 6, 1, tzinfo=timezone.utc)
END = datetime(2024, 6, 2, tzinfo=timezone.utc)


@pytest.fixture
def service():
    svc = ChangeTrackingService.from_config(AppConfig())
    yield svc
    svc.ledger.close()


def test_session_round_trip(service):
    started = service.start_session("int_1", ["user"], CONTEXT)
    session_id = started["session"]["session_id"]

    tracked = service.track_changes(session_id, [("user", [{"id": "u1", "email": "a@x.com"}])])
    completed = service.complete_session(session_id)
    again = service.complete_session(session_id)

    assert started["success"] and started["errors"] == []
    assert started["session"]["status"] == "active"
    assert tracked["success"]
    assert tracked["session"]["total_changes_detected"] == 1
    assert tracked["incremental_sync_plans"][0]["entity_type"] == "user"
    assert completed["session"]["status"] == "completed"
    assert again["success"] is False
    assert session_id in again["errors"][0]
    assert "session" not in again


def test_cancel_unknown_session(service):
    envelope = service.cancel_session("session_missing", reason="stop")

    assert envelope["success"] is False
    assert envelope["errors"] == [
        "Change tracking session not found or already terminal: session_missing"
    ]


def test_invalid_input_is_reported(service):
    bad_context = service.start_session(
        "int_1", ["user"], {"sync_id": "s", "provider_id": "p", "sync_type": "weekly"}
    )
    bad_query = service.query_change_history(
        {"start_date": "2024-06-02T00:00:00Z", "end_date": "2024-06-01T00:00:00Z"}
    )
    unknown_type = service.start_session("int_1", ["course"], CONTEXT)

    assert bad_context["success"] is False
    assert bad_context["errors"][0].startswith("Invalid input: ")
    assert bad_query["errors"][0].startswith("Invalid input: ")
    assert unknown_type["success"] is False
    assert "course" in unknown_type["errors"][0]


def test_detection_then_history_queries(service):
    detected = service.detect_entity_changes(
        "user", [{"id": "u1", "name": "Ann"}, {"id": "u2", "name": "Bo"}], "int_1", CONTEXT
    )

    page = service.query_change_history({"entity_type": "user", "limit": 1})
    summary = service.get_change_summary({"integration_id": "int_1"})
    stats = service.get_stats()

    assert detected["success"]
    assert len(detected["detection"]["entity_changes"]) == 2
    assert page["success"]
    assert page["total_count"] == 2
    assert page["has_more"] is True
    assert len(page["changes"]) == 1
    assert summary["summary"]["total_changes"] == 2
    assert stats["stats"]["total_records"] == 2
    assert stats["stats"]["storage_size"] == 2048


def test_detection_system_errors_fail_the_envelope():
    synchronizer = Mock()
    synchronizer.get_previous_states.side_effect = RuntimeError("roster db offline")
    factory = Mock()
    factory.get_synchronizer.return_value = synchronizer
    service = ChangeTrackingService.from_config(AppConfig(), synchronizer_factory=factory)

    envelope = service.detect_entity_changes("user", [{"id": "u1"}], "int_1", CONTEXT)

    assert envelope["success"] is False
    assert envelope["errors"] == ["roster db offline"]
    assert envelope["detection"]["recommendations"] == [
        "Review system logs and retry change detection"
    ]


def test_batch_delta_accepts_option_mappings(service):
    envelope = service.calculate_batch_delta(
        "user",
        [{"id": "u1", "name": "Ann"}],
        [{"id": "u1", "name": "Anne"}],
        {"include_unchanged": True},
    )

    assert envelope["success"]
    assert envelope["batch_delta"]["changed_entities"] == 1


def test_cleanup_envelopes(service):
    compression = service.trigger_cleanup("compression")
    retention = service.trigger_cleanup("retention", now=END)
    unknown = service.trigger_cleanup("vacuum")

    assert compression == {
        **compression,
        "success": False,
        "cleanup_type": "compression",
        "errors": ["Compression disabled"],
    }
    assert retention["success"] is True
    assert retention["records_deleted"] == 0
    assert unknown["success"] is False
    assert unknown["errors"][0].startswith("Unknown cleanup type: vacuum")


def test_execute_plan_without_synchronizer(service):
    plan = {
        "plan_id": "plan_1",
        "integration_id": "int_1",
        "entity_type": "user",
        "entities_to_sync": [{"entity_id": "u1", "change_score": 90.0}],
    }

    envelope = service.execute_incremental_sync(plan, CONTEXT)

    assert envelope["success"] is False
    assert envelope["plan_id"] == "plan_1"
    assert envelope["errors"] == ["No synchronizer available for user"]


def test_execute_plan_when_synchronizer_lookup_fails():
    factory = Mock()
    factory.get_synchronizer.side_effect = ConnectionError("provider registry unavailable")
    svc = ChangeTrackingService.from_config(AppConfig(), synchronizer_factory=factory)
    plan = {
        "plan_id": "plan_1",
        "integration_id": "int_1",
        "entity_type": "user",
        "entities_to_sync": [{"entity_id": "u1", "change_score": 90.0}],
    }

    first = svc.execute_incremental_sync(plan, CONTEXT)
    second = svc.execute_incremental_sync(plan, CONTEXT)

    assert first["success"] is False
    assert first["errors"] == [
        "Failed to get synchronizer for user: provider registry unavailable"
    ]
    assert second["errors"] == first["errors"]
    assert factory.get_synchronizer.call_count == 2


def test_analytics_and_report_envelopes(service):
    analytics = service.generate_analytics("int_1", START, END)
    report = service.generate_report("int_1", START, END)
    reversed_period = service.generate_analytics("int_1", END, START)

    assert analytics["success"]
    assert analytics["analytics"]["change_velocity"] == 0.0
    assert report["report"]["integration_id"] == "int_1"
    assert reversed_period == {
        "success": False,
        "errors": ["start_date must be before end_date"],
    }


def test_from_config_selects_store():
    in_memory = ChangeTrackingService.from_config(AppConfig())
    sql = ChangeTrackingService.from_config(
        AppConfig(history=HistoryConfig(database_url="sqlite://"))
    )

    assert isinstance(in_memory.ledger.store_backend, InMemoryChangeStore)
    assert isinstance(sql.ledger.store_backend, SqlChangeStore)
