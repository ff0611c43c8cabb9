"""Detection over a whole entity-type snapshot, persisted through the change ledger."""

import time
import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Any, Mapping

import structlog

from roster_changes.detection.change_detector import (
    EntityChangeDetector,
    entity_hash,
    extract_entity_id,
    extract_external_id,
    first_id,
)
from roster_changes.history.ledger import ChangeHistoryLedger, summarize_records
from roster_changes.models.changes import (
    ChangeDetectionResult,
    ChangeMetadata,
    ChangeRecord,
    ChangeSummary,
    DetectionError,
    DetectionPerformance,
    EntityChange,
    SyncContext,
    utcnow,
)

if TYPE_CHECKING:
    from roster_changes.sync.collaborators import ExternalIdMapper, SynchronizerFactory

log = structlog.stdlib.get_logger()

EntityState = Mapping[str, Any]


def _identity(entity: EntityState) -> tuple[str | None, str | None]:
    return extract_entity_id(entity), extract_external_id(entity)


def generate_recommendations(
    entity_changes: list[EntityChange], errors: list[DetectionError]
) -> list[str]:
    recommendations = []

    if errors:
        recommendations.append(
            f"Review {len(errors)} errors that occurred during change detection"
        )

    high_severity = sum(1 for c in entity_changes if c.significance in ("high", "critical"))
    if high_severity:
        recommendations.append(
            f"Review {high_severity} high-severity changes for potential data issues"
        )

    created = sum(1 for c in entity_changes if c.change_type == "created")
    if created:
        recommendations.append(f"{created} new entities were created - verify they are expected")

    deleted = sum(1 for c in entity_changes if c.change_type == "deleted")
    if deleted:
        recommendations.append(f"{deleted} entities were deleted - confirm this is intentional")

    return recommendations


class ChangeDetectionService:
    """Detects, records and summarizes changes for one entity-type snapshot."""

    def __init__(
        self,
        detector: EntityChangeDetector,
        ledger: ChangeHistoryLedger,
        synchronizer_factory: "SynchronizerFactory | None" = None,
        id_mapper: "ExternalIdMapper | None" = None,
    ):
        """
        Initialize the detection service.

        Args:
            detector: Entity change detector (carries the detection rules)
            ledger: Change history ledger the records are written to
            synchronizer_factory: Source of previous entity states; without one
                every entity is treated as new
            id_mapper: Resolves external ids to internal ids for lookups
        """
        self._detector = detector
        self._ledger = ledger
        self._synchronizer_factory = synchronizer_factory
        self._id_mapper = id_mapper

    @property
    def detector(self) -> EntityChangeDetector:
        return self._detector

    def detect_entity_changes(
        self,
        entity_type: str,
        current_data: list[EntityState],
        integration_id: str,
        sync_context: SyncContext,
    ) -> ChangeDetectionResult:
        """
        Detect changes between a snapshot and the last known states.

        Per-entity failures are captured in ``errors`` and never abort the
        batch. On a ``full`` sync, entities known previously but missing from
        the snapshot are reported as deleted.

        Args:
            entity_type: Roster entity type
            current_data: Current snapshot of all (or some) entities of the type
            integration_id: Integration the snapshot belongs to
            sync_context: Sync run the snapshot came from

        Returns:
            ChangeDetectionResult with changes, stored records and summary

        Raises:
            ChangeValidationError: If the entity type is unknown
        """
        rules = self._detector.rules
        rules.for_entity(entity_type)
        config = rules.config

        start_time = utcnow()
        start = time.perf_counter()
        detection_id = f"detection_{uuid.uuid4().hex}"

        log.info(
            "change_detection_started",
            detection_id=detection_id,
            entity_type=entity_type,
            integration_id=integration_id,
            sync_id=sync_context.sync_id,
            sync_type=sync_context.sync_type,
            entity_count=len(current_data),
        )

        if not config.enable_change_tracking:
            log.info("change_tracking_disabled", detection_id=detection_id)
            return self._result(
                detection_id, entity_type, start_time, start, 0, [], [], [], [], True
            )

        detect_deletions = (
            sync_context.sync_type == "full" and config.detect_deletions_on_full_sync
        )

        try:
            previous_states = self._fetch_previous_states(
                entity_type, integration_id, current_data, detect_deletions
            )
        except Exception as e:
            log.error(
                "previous_state_fetch_failed",
                detection_id=detection_id,
                entity_type=entity_type,
                error=str(e),
            )
            result = self._result(
                detection_id, entity_type, start_time, start, 0, [], [], [], [], False
            )
            result.errors.append(DetectionError(entity_id="system", error=str(e)))
            result.recommendations = ["Review system logs and retry change detection"]
            return result

        pairs: list[tuple[EntityState | None, EntityState | None]] = []
        matched: set[tuple[str | None, str | None]] = set()
        for current in current_data:
            previous = self._match_previous(entity_type, integration_id, current, previous_states)
            if previous is not None:
                matched.add(_identity(previous))
            pairs.append((current, previous))

        if detect_deletions:
            seen_missing: set[tuple[str | None, str | None]] = set()
            for previous in previous_states.values():
                identity = _identity(previous)
                if identity in matched or identity in seen_missing:
                    continue
                seen_missing.add(identity)
                pairs.append((None, previous))

        metadata = ChangeMetadata(
            detected_at=utcnow(),
            detection_method="automatic",
            confidence=config.default_confidence,
            source=sync_context.provider_id,
            correlation_id=sync_context.sync_id,
        )

        entity_changes: list[EntityChange] = []
        errors: list[DetectionError] = []
        records: list[ChangeRecord] = []
        for offset in range(0, len(pairs), config.batch_size):
            batch = pairs[offset : offset + config.batch_size]
            changes, batch_errors = self._detector.detect_batch(entity_type, batch, metadata)
            entity_changes.extend(changes)
            errors.extend(batch_errors)
            records.extend(
                self._build_records(integration_id, sync_context, batch, changes)
            )

        storage_errors: list[str] = []
        if records:
            stored = self._ledger.store_batch(records)
            storage_errors = stored.errors

        result = self._result(
            detection_id,
            entity_type,
            start_time,
            start,
            len(pairs),
            entity_changes,
            records,
            errors,
            storage_errors,
            not storage_errors,
        )

        log.info(
            "change_detection_completed",
            detection_id=detection_id,
            entity_type=entity_type,
            changes_detected=len(entity_changes),
            entities_processed=len(pairs),
            errors=len(errors),
            storage_errors=len(storage_errors),
            duration_ms=round(result.performance.duration_ms, 2),
        )
        return result

    def _fetch_previous_states(
        self,
        entity_type: str,
        integration_id: str,
        current_data: list[EntityState],
        fetch_all: bool,
    ) -> Mapping[str, EntityState]:
        if self._synchronizer_factory is None:
            return {}
        synchronizer = self._synchronizer_factory.get_synchronizer(entity_type)
        if synchronizer is None:
            log.warning("no_synchronizer_for_entity_type", entity_type=entity_type)
            return {}

        keys: list[str] | None = None
        if not fetch_all:
            keys = []
            for entity in current_data:
                entity_id, external_id = _identity(entity)
                keys.extend(k for k in (external_id, entity_id) if k is not None)
                if entity_id is None and external_id is not None:
                    internal = self._resolve_internal_id(integration_id, entity_type, external_id)
                    if internal is not None:
                        keys.append(internal)

        return synchronizer.get_previous_states(integration_id, keys)

    def _resolve_internal_id(
        self, integration_id: str, entity_type: str, external_id: str
    ) -> str | None:
        if self._id_mapper is None:
            return None
        return self._id_mapper.resolve_internal_id(integration_id, entity_type, external_id)

    def _match_previous(
        self,
        entity_type: str,
        integration_id: str,
        current: EntityState,
        previous_states: Mapping[str, EntityState],
    ) -> EntityState | None:
        entity_id, external_id = _identity(current)
        for key in (external_id, entity_id):
            if key is not None and key in previous_states:
                return previous_states[key]
        if entity_id is None and external_id is not None:
            internal = self._resolve_internal_id(integration_id, entity_type, external_id)
            if internal is not None:
                return previous_states.get(internal)
        return None

    def _build_records(
        self,
        integration_id: str,
        sync_context: SyncContext,
        pairs: list[tuple[EntityState | None, EntityState | None]],
        changes: list[EntityChange],
    ) -> list[ChangeRecord]:
        by_identity: dict[str, tuple[EntityState | None, EntityState | None]] = {}
        for current, previous in pairs:
            key = first_id(
                extract_entity_id(current),
                extract_entity_id(previous),
                extract_external_id(current),
                extract_external_id(previous),
            )
            if key is not None:
                by_identity[key] = (current, previous)

        records = []
        for change in changes:
            current, previous = by_identity.get(change.entity_id, (None, None))
            records.append(
                ChangeRecord(
                    id=f"chg_{uuid.uuid4().hex}",
                    integration_id=integration_id,
                    entity_type=change.entity_type,
                    entity_id=change.entity_id,
                    external_id=change.external_id,
                    change_type=change.change_type,
                    field_changes=list(change.field_changes),
                    previous_hash=entity_hash(previous),
                    current_hash=entity_hash(current),
                    change_score=change.change_score,
                    significance=change.significance,
                    metadata=change.metadata,
                    sync_context=sync_context,
                )
            )
        return records

    def _result(
        self,
        detection_id: str,
        entity_type: str,
        start_time: datetime,
        start: float,
        entities_processed: int,
        entity_changes: list[EntityChange],
        records: list[ChangeRecord],
        errors: list[DetectionError],
        storage_errors: list[str],
        success: bool,
    ) -> ChangeDetectionResult:
        duration_ms = (time.perf_counter() - start) * 1000
        seconds = duration_ms / 1000
        summary = summarize_records(records) if records else ChangeSummary()

        return ChangeDetectionResult(
            success=success,
            detection_id=detection_id,
            entity_type=entity_type,
            entity_changes=entity_changes,
            records=records,
            summary=summary,
            performance=DetectionPerformance(
                start_time=start_time,
                end_time=utcnow(),
                duration_ms=duration_ms,
                entities_processed=entities_processed,
                changes_detected=len(entity_changes),
                processing_rate=entities_processed / seconds if seconds > 0 else 0.0,
            ),
            errors=errors,
            storage_errors=storage_errors,
            recommendations=generate_recommendations(entity_changes, errors),
        )
