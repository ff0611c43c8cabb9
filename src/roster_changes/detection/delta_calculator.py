"""Snapshot-to-snapshot delta calculation.

Compares two supplied collections directly (e.g. the last full sync against
this full sync) without consulting the change ledger.
"""

import time
import uuid
from typing import Any, Mapping

import structlog

from roster_changes.detection.change_detector import (
    DetectionRules,
    extract_entity_id,
    extract_external_id,
    first_id,
)
from roster_changes.detection.field_analyzer import (
    FieldChangeAnalyzer,
    classify_change,
    determine_field_type,
    normalize_value,
    values_equal,
)
from roster_changes.detection.scoring import DEFAULT_SCORING_POLICY, ScoringPolicy
from roster_changes.models.changes import utcnow
from roster_changes.models.delta import (
    BatchDelta,
    BatchDeltaMetadata,
    BatchDeltaSummary,
    DeltaCalculationOptions,
    EntityDelta,
    EntityDeltaMetadata,
    FieldDelta,
)

log = structlog.stdlib.get_logger()


class DeltaCalculator:
    """Computes per-field and per-entity deltas between two snapshots."""

    def __init__(
        self,
        rules: DetectionRules | None = None,
        policy: ScoringPolicy = DEFAULT_SCORING_POLICY,
    ):
        self._rules = rules or DetectionRules()
        self._policy = policy
        self._analyzer = FieldChangeAnalyzer(policy)

    def _resolve_options(
        self, entity_type: str, options: DeltaCalculationOptions | None
    ) -> DeltaCalculationOptions:
        options = options or DeltaCalculationOptions()
        if options.ignore_fields is None:
            settings = self._rules.for_entity(entity_type).settings
            options = options.model_copy(update={"ignore_fields": list(settings.ignore_fields)})
        return options

    def calculate_field_delta(
        self,
        entity_type: str,
        field_name: str,
        old_value: Any,
        new_value: Any,
        options: DeltaCalculationOptions,
    ) -> FieldDelta:
        custom = options.custom_comparisons.get(field_name)
        if custom is not None:
            unchanged = bool(custom(old_value, new_value))
        else:
            unchanged = values_equal(old_value, new_value, deep=options.deep_comparison)
        has_changed = not unchanged

        normalized_old = normalize_value(old_value) if options.normalize_values else None
        normalized_new = normalize_value(new_value) if options.normalize_values else None

        if not has_changed:
            return FieldDelta(
                field_name=field_name,
                has_changed=False,
                change_type="no_change",
                old_value=old_value,
                new_value=new_value,
                significance="low",
                confidence=1.0,
                normalized_old_value=normalized_old,
                normalized_new_value=normalized_new,
            )

        entity_rules = self._rules.for_entity(entity_type)
        field_type = determine_field_type(new_value if new_value is not None else old_value)
        severity, confidence, _ = self._analyzer.assess(
            old_value,
            new_value,
            field_type,
            entity_rules.field_rules.get(field_name),
            entity_rules.settings.confidence_threshold,
        )

        return FieldDelta(
            field_name=field_name,
            has_changed=True,
            change_type=classify_change(old_value, new_value),
            old_value=old_value,
            new_value=new_value,
            significance=severity,
            confidence=confidence,
            normalized_old_value=normalized_old,
            normalized_new_value=normalized_new,
        )

    def calculate_entity_delta(
        self,
        entity_type: str,
        previous: Mapping[str, Any] | None,
        current: Mapping[str, Any] | None,
        options: DeltaCalculationOptions | None = None,
    ) -> EntityDelta:
        """
        Calculate the delta between two states of one entity.

        Args:
            entity_type: Roster entity type
            previous: Previous snapshot of the entity (None if absent)
            current: Current snapshot of the entity (None if absent)
            options: Delta calculation options

        Returns:
            EntityDelta with per-field deltas and a 0-100 change score
        """
        options = self._resolve_options(entity_type, options)
        ignored = set(options.ignore_fields or [])

        entity_id = first_id(
            extract_entity_id(current),
            extract_entity_id(previous),
            extract_external_id(current),
            extract_external_id(previous),
        )

        previous_data = previous or {}
        current_data = current or {}
        field_names = list(previous_data.keys())
        field_names.extend(k for k in current_data.keys() if k not in previous_data)
        fields_to_compare = [name for name in field_names if name not in ignored]

        field_deltas: list[FieldDelta] = []
        changed: list[FieldDelta] = []
        for field_name in fields_to_compare:
            delta = self.calculate_field_delta(
                entity_type,
                field_name,
                previous_data.get(field_name),
                current_data.get(field_name),
                options,
            )
            if delta.has_changed:
                changed.append(delta)
            if delta.has_changed or options.include_unchanged:
                field_deltas.append(delta)

        if previous is not None and current is None:
            has_changes = True
            change_score = self._policy.deletion_score
        else:
            has_changes = bool(changed) or (previous is None and current is not None)
            change_score = self._policy.change_score(
                _ScoredDelta(d.significance, d.confidence) for d in changed
            )

        return EntityDelta(
            entity_type=entity_type,
            entity_id=entity_id,
            has_changes=has_changes,
            change_score=change_score,
            field_deltas=field_deltas,
            metadata=EntityDeltaMetadata(
                compared_at=utcnow(),
                comparison_method="deep" if options.deep_comparison else "field-by-field",
                total_fields=len(fields_to_compare),
                changed_fields=len(changed),
                unchanged_fields=len(fields_to_compare) - len(changed),
            ),
        )

    def calculate_batch_delta(
        self,
        entity_type: str,
        previous_entities: list[Mapping[str, Any]],
        current_entities: list[Mapping[str, Any]],
        options: DeltaCalculationOptions | None = None,
    ) -> BatchDelta:
        """
        Calculate deltas between two full collections of one entity type.

        Entities are matched by internal id, falling back to external id.
        Entities carrying neither are skipped and counted in the metadata.

        Args:
            entity_type: Roster entity type
            previous_entities: Previous snapshot collection
            current_entities: Current snapshot collection
            options: Delta calculation options

        Returns:
            BatchDelta with per-entity deltas and aggregate counts
        """
        options = self._resolve_options(entity_type, options)
        batch_id = f"batch_{uuid.uuid4().hex}"
        start = time.perf_counter()

        log.info(
            "calculating_batch_delta",
            batch_id=batch_id,
            entity_type=entity_type,
            previous_count=len(previous_entities),
            current_count=len(current_entities),
        )

        previous_map, skipped_previous = _index_by_identity(previous_entities)
        current_map, skipped_current = _index_by_identity(current_entities)

        entity_ids = list(previous_map.keys())
        entity_ids.extend(k for k in current_map.keys() if k not in previous_map)

        distribution = BatchDeltaSummary().change_distribution
        entity_deltas: list[EntityDelta] = []
        for entity_id in entity_ids:
            previous = previous_map.get(entity_id)
            current = current_map.get(entity_id)
            delta = self.calculate_entity_delta(entity_type, previous, current, options)
            entity_deltas.append(delta)

            if previous is None:
                distribution["created"] += 1
            elif current is None:
                distribution["deleted"] += 1
            elif delta.has_changes:
                distribution["updated"] += 1

        changed_entities = sum(1 for d in entity_deltas if d.has_changes)
        total_changes = sum(len(d.changed_field_deltas) for d in entity_deltas)
        significant_changes = sum(
            1 for d in entity_deltas if d.change_score >= options.significance_threshold
        )
        average_score = (
            sum(d.change_score for d in entity_deltas) / len(entity_deltas)
            if entity_deltas
            else 0.0
        )

        duration_ms = (time.perf_counter() - start) * 1000

        log.info(
            "batch_delta_calculated",
            batch_id=batch_id,
            entity_type=entity_type,
            total_entities=len(entity_deltas),
            changed_entities=changed_entities,
            duration_ms=round(duration_ms, 2),
        )

        return BatchDelta(
            batch_id=batch_id,
            entity_type=entity_type,
            total_entities=len(entity_deltas),
            changed_entities=changed_entities,
            unchanged_entities=len(entity_deltas) - changed_entities,
            entity_deltas=entity_deltas,
            summary=BatchDeltaSummary(
                total_changes=total_changes,
                significant_changes=significant_changes,
                average_change_score=average_score,
                change_distribution=distribution,
            ),
            metadata=BatchDeltaMetadata(
                calculated_at=utcnow(),
                calculation_duration_ms=duration_ms,
                options=options,
                skipped_entities=skipped_previous + skipped_current,
            ),
        )


class _ScoredDelta:
    __slots__ = ("severity", "confidence")

    def __init__(self, severity: str, confidence: float):
        self.severity = severity
        self.confidence = confidence


def _index_by_identity(
    entities: list[Mapping[str, Any]],
) -> tuple[dict[str, Mapping[str, Any]], int]:
    indexed: dict[str, Mapping[str, Any]] = {}
    skipped = 0
    for entity in entities:
        key = first_id(extract_entity_id(entity), extract_external_id(entity))
        if key is None:
            skipped += 1
            continue
        indexed[key] = entity
    return indexed, skipped
