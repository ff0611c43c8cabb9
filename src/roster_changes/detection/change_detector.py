"""Entity-level change detection for roster entities."""

import hashlib
import json
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

import structlog

from roster_changes.detection.field_analyzer import (
    FieldChangeAnalyzer,
    FieldChangeRule,
    default_field_rules,
)
from roster_changes.detection.scoring import DEFAULT_SCORING_POLICY, ScoringPolicy
from roster_changes.errors import ChangeValidationError, ComparisonError
from roster_changes.models.changes import ChangeMetadata, DetectionError, EntityChange
from roster_changes.models.config import DetectionConfig, EntityDetectionSettings

log = structlog.stdlib.get_logger()


def _first_present(entity: Mapping[str, Any] | None, *keys: str) -> str | None:
    if not entity:
        return None
    for key in keys:
        value = entity.get(key)
        if value is not None:
            return str(value)
    return None


def extract_entity_id(entity: Mapping[str, Any] | None) -> str | None:
    return _first_present(entity, "id", "internal_id")


def extract_external_id(entity: Mapping[str, Any] | None) -> str | None:
    return _first_present(entity, "external_id", "externalId")


def first_id(*candidates: str | None) -> str | None:
    """First candidate that is not None; empty strings count as ids."""
    return next((c for c in candidates if c is not None), None)


def entity_hash(entity: Mapping[str, Any] | None) -> str | None:
    """Content hash independent of key order."""
    if entity is None:
        return None
    normalized = json.dumps(entity, sort_keys=True, default=str, separators=(",", ":"))
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class EntityRules:
    """Resolved detection settings and field rules for one entity type."""

    entity_type: str
    settings: EntityDetectionSettings
    field_rules: dict[str, FieldChangeRule] = field(default_factory=dict)


class DetectionRules:
    """Explicit entity type -> settings and field-rule registry.

    Built once from configuration and handed to detectors; tenants that need
    different rules build their own instance with ``with_field_rule``.
    """

    def __init__(
        self,
        config: DetectionConfig | None = None,
        field_rules: Mapping[str, Mapping[str, FieldChangeRule]] | None = None,
    ):
        self._config = config or DetectionConfig()
        self._entities: dict[str, EntityRules] = {}

        for entity_type in self._config.known_entity_types():
            rules = default_field_rules()
            if field_rules and entity_type in field_rules:
                rules.update(field_rules[entity_type])
            self._entities[entity_type] = EntityRules(
                entity_type=entity_type,
                settings=self._config.settings_for(entity_type),
                field_rules=rules,
            )

    @property
    def config(self) -> DetectionConfig:
        return self._config

    @property
    def entity_types(self) -> list[str]:
        return list(self._entities.keys())

    def is_known(self, entity_type: str) -> bool:
        return entity_type in self._entities

    def for_entity(self, entity_type: str) -> EntityRules:
        try:
            return self._entities[entity_type]
        except KeyError:
            raise ChangeValidationError(
                f"Unknown entity type: {entity_type}. Known types: {self.entity_types}"
            ) from None

    def with_field_rule(self, entity_type: str, rule: FieldChangeRule) -> "DetectionRules":
        """Return a copy with one additional (or replaced) field rule."""
        current = self.for_entity(entity_type)
        overrides = {
            name: dict(entity.field_rules) for name, entity in self._entities.items()
        }
        overrides[current.entity_type][rule.field_name] = rule
        return DetectionRules(self._config, overrides)


class EntityChangeDetector:
    """Classifies and scores the change between two states of one entity."""

    def __init__(
        self,
        rules: DetectionRules | None = None,
        policy: ScoringPolicy = DEFAULT_SCORING_POLICY,
    ):
        """
        Initialize the detector.

        Args:
            rules: Entity type settings and field rules (defaults from DetectionConfig)
            policy: Scoring policy shared with the delta calculator
        """
        self._rules = rules or DetectionRules()
        self._policy = policy
        self._analyzer = FieldChangeAnalyzer(policy)

    @property
    def rules(self) -> DetectionRules:
        return self._rules

    def detect(
        self,
        entity_type: str,
        current: Mapping[str, Any] | None,
        previous: Mapping[str, Any] | None,
        metadata: ChangeMetadata | None = None,
    ) -> EntityChange | None:
        """
        Detect the change between the previous and current state of an entity.

        Args:
            entity_type: Roster entity type (user, class, ...)
            current: Current state, None if the entity is gone
            previous: Last known state, None if the entity is new
            metadata: Provenance stamped on the resulting change

        Returns:
            EntityChange, or None when there is nothing to report

        Raises:
            ChangeValidationError: If the entity type is unknown
            ComparisonError: If neither state carries an identifier
        """
        entity_rules = self._rules.for_entity(entity_type)
        settings = entity_rules.settings

        if current is None and previous is None:
            return None

        entity_id = first_id(extract_entity_id(current), extract_entity_id(previous))
        external_id = first_id(extract_external_id(current), extract_external_id(previous))
        if entity_id is None and external_id is None:
            raise ComparisonError(f"{entity_type} entity has no id or external id")

        metadata = metadata or ChangeMetadata()
        identity = first_id(entity_id, external_id)

        if previous is None:
            change_type = "created"
        elif current is None:
            change_type = "deleted"
        else:
            change_type = "updated"

        if change_type not in settings.enabled_change_types:
            log.debug(
                "change_type_disabled",
                entity_type=entity_type,
                entity_id=identity,
                change_type=change_type,
            )
            return None

        if change_type == "deleted":
            return EntityChange(
                entity_type=entity_type,
                entity_id=identity,
                external_id=external_id,
                change_type="deleted",
                field_changes=(),
                change_score=self._policy.deletion_score,
                significance=self._policy.deletion_severity,
                metadata=metadata,
            )

        if change_type == "updated" and entity_hash(previous) == entity_hash(current):
            return None

        field_changes = self._analyzer.analyze_fields(
            previous,
            current,
            ignore_fields=settings.ignore_fields,
            rules=entity_rules.field_rules,
            force_significant=change_type == "created",
            default_confidence=settings.confidence_threshold,
        )

        if change_type == "updated" and not field_changes:
            return None

        return EntityChange(
            entity_type=entity_type,
            entity_id=identity,
            external_id=external_id,
            change_type=change_type,
            field_changes=tuple(field_changes),
            change_score=self._policy.change_score(field_changes),
            significance=self._policy.max_severity(fc.severity for fc in field_changes),
            metadata=metadata,
        )

    def detect_batch(
        self,
        entity_type: str,
        pairs: Iterable[tuple[Mapping[str, Any] | None, Mapping[str, Any] | None]],
        metadata: ChangeMetadata | None = None,
    ) -> tuple[list[EntityChange], list[DetectionError]]:
        """
        Detect changes over (current, previous) pairs without aborting on bad records.

        Returns:
            Tuple of (entity changes, per-entity errors)
        """
        self._rules.for_entity(entity_type)

        changes: list[EntityChange] = []
        errors: list[DetectionError] = []

        for current, previous in pairs:
            try:
                change = self.detect(entity_type, current, previous, metadata)
            except ChangeValidationError:
                raise
            except Exception as e:
                entity_id = first_id(
                    extract_entity_id(current),
                    extract_external_id(current),
                    extract_entity_id(previous),
                    "unknown",
                )
                log.warning(
                    "entity_change_detection_failed",
                    entity_type=entity_type,
                    entity_id=entity_id,
                    error=str(e),
                )
                errors.append(DetectionError(entity_id=entity_id, error=str(e), severity="error"))
                continue

            if change is not None:
                changes.append(change)

        return changes, errors
