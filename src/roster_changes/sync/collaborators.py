"""Interfaces of the external collaborators the tracking engine depends on."""

from typing import Any, Mapping, Protocol, runtime_checkable

from roster_changes.models.changes import SyncContext
from roster_changes.sync.models import ChangeNotification


@runtime_checkable
class Synchronizer(Protocol):
    """Per-entity-type access to the last known state and to re-sync operations."""

    def get_previous_states(
        self, integration_id: str, keys: list[str] | None
    ) -> Mapping[str, Mapping[str, Any]]:
        """Return last known states keyed by internal or external id.

        ``keys=None`` asks for every known entity of the type, which is needed
        to detect deletions on a full sync.
        """
        ...

    def synchronize_entity(
        self,
        integration_id: str,
        entity_id: str,
        external_id: str | None,
        sync_context: SyncContext,
    ) -> None:
        """Re-fetch one entity from the external system and apply it."""
        ...


@runtime_checkable
class SynchronizerFactory(Protocol):
    def get_synchronizer(self, entity_type: str) -> Synchronizer | None:
        ...

    def get_available_entity_types(self) -> list[str]:
        ...


@runtime_checkable
class ExternalIdMapper(Protocol):
    """Translates external identifiers into internal ones."""

    def resolve_internal_id(
        self, integration_id: str, entity_type: str, external_id: str
    ) -> str | None:
        ...


@runtime_checkable
class NotificationSink(Protocol):
    """Receives notifications for significant changes; delivery is up to the sink."""

    def publish(self, notification: ChangeNotification) -> None:
        ...
