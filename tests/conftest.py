"""Shared fixtures for the change tracking test suite."""

import uuid
from datetime import datetime, timezone

import pytest

from roster_changes.models.changes import ChangeRecord, FieldChange, SyncContext


@pytest.fixture
def sync_context() -> SyncContext:
    return SyncContext(sync_id="sync_1", provider_id="clever", sync_type="incremental")


@pytest.fixture
def full_sync_context() -> SyncContext:
    return SyncContext(sync_id="sync_full_1", provider_id="clever", sync_type="full")


@pytest.fixture
def make_record():
    """Factory for ChangeRecords with sensible defaults."""

    def _make(
        entity_id: str = "u1",
        entity_type: str = "user",
        change_type: str = "updated",
        created_at: datetime | None = None,
        integration_id: str = "int_1",
        change_score: float = 50.0,
        significance: str = "medium",
        field_names: tuple[str, ...] = ("name",),
        record_id: str | None = None,
    ) -> ChangeRecord:
        return ChangeRecord(
            id=record_id or f"chg_{uuid.uuid4().hex}",
            integration_id=integration_id,
            entity_type=entity_type,
            entity_id=entity_id,
            change_type=change_type,
            field_changes=[
                FieldChange(field_name=name, change_type="updated", old_value="a", new_value="b")
                for name in field_names
            ],
            change_score=change_score,
            significance=significance,
            created_at=created_at or datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc),
        )

    return _make


class FakeSynchronizer:
    """In-memory synchronizer holding last known states keyed by id."""

    def __init__(self, states=None, fail_on=()):
        self.states = dict(states or {})
        self.fail_on = set(fail_on)
        self.synced: list[str] = []

    def get_previous_states(self, integration_id, keys):
        if keys is None:
            return dict(self.states)
        return {key: self.states[key] for key in keys if key in self.states}

    def synchronize_entity(self, integration_id, entity_id, external_id, sync_context):
        if entity_id in self.fail_on:
            raise RuntimeError("upstream unavailable")
        self.synced.append(entity_id)


class FakeSynchronizerFactory:
    def __init__(self, synchronizers):
        self.synchronizers = synchronizers

    def get_synchronizer(self, entity_type):
        return self.synchronizers.get(entity_type)

    def get_available_entity_types(self):
        return list(self.synchronizers)


@pytest.fixture
def make_factory():
    """Factory for synchronizer factories: make_factory(user={"u1": {...}})."""

    def _make(**states_by_type) -> FakeSynchronizerFactory:
        return FakeSynchronizerFactory(
            {
                entity_type: FakeSynchronizer(states)
                for entity_type, states in states_by_type.items()
            }
        )

    return _make
