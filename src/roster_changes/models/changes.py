"""Pydantic models for field-level and entity-level changes."""

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

ChangeType = Literal["created", "updated", "deleted", "moved", "merged", "split"]
Severity = Literal["low", "medium", "high", "critical"]
FieldType = Literal["string", "number", "boolean", "date", "json", "array", "object"]
SyncType = Literal["full", "incremental", "manual"]
DetectionMethod = Literal["automatic", "manual", "scheduled"]

CHANGE_TYPES: tuple[ChangeType, ...] = ("created", "updated", "deleted", "moved", "merged", "split")
SEVERITIES: tuple[Severity, ...] = ("low", "medium", "high", "critical")


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so aware and naive values compare."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def empty_change_type_counts() -> dict[str, int]:
    return {change_type: 0 for change_type in CHANGE_TYPES}


def empty_severity_counts() -> dict[str, int]:
    return {severity: 0 for severity in SEVERITIES}


class SyncContext(BaseModel):
    """Identifies the synchronization run a detection belongs to."""

    sync_id: str = Field(default=..., description="Identifier of the sync run")
    provider_id: str = Field(default=..., description="External provider the data came from")
    sync_type: SyncType = Field(default="full", description="Kind of sync run")


class FieldChange(BaseModel):
    """A single field's transition between two entity states."""

    model_config = ConfigDict(frozen=True)

    field_name: str = Field(default=..., description="Name of the changed field")
    field_type: FieldType = Field(default="string", description="Detected value type")
    old_value: Any = Field(default=None, description="Value in the previous state")
    new_value: Any = Field(default=None, description="Value in the current state")
    change_type: Literal["created", "updated", "deleted"] = Field(default=...)
    severity: Severity = Field(default="medium")
    confidence: float = Field(default=0.8, ge=0.0, le=1.0)
    is_significant: bool = Field(default=True)
    metadata: dict[str, Any] | None = Field(
        default=None, description="Optional rule-specific annotations"
    )


class ChangeMetadata(BaseModel):
    """Provenance of a detected change."""

    model_config = ConfigDict(frozen=True)

    detected_at: datetime = Field(default_factory=utcnow)
    detection_method: DetectionMethod = Field(default="automatic")
    confidence: float = Field(default=0.8, ge=0.0, le=1.0)
    source: str = Field(default="system", description="Provider or component that saw the change")
    correlation_id: str | None = Field(default=None, description="Usually the sync id")


class EntityChange(BaseModel):
    """Entity-level result of one detection pass."""

    model_config = ConfigDict(frozen=True)

    entity_type: str
    entity_id: str
    external_id: str | None = None
    change_type: ChangeType
    field_changes: tuple[FieldChange, ...] = Field(default_factory=tuple)
    change_score: float = Field(default=0.0, ge=0.0, le=100.0)
    significance: Severity = Field(default="low")
    metadata: ChangeMetadata = Field(default_factory=ChangeMetadata)


class ChangeRecord(BaseModel):
    """Durable ledger form of an EntityChange."""

    id: str = Field(default=..., description="Globally unique record id")
    integration_id: str
    entity_type: str
    entity_id: str
    external_id: str | None = None
    change_type: ChangeType
    field_changes: list[FieldChange] = Field(default_factory=list)
    previous_hash: str | None = Field(default=None, description="Hash of the previous state")
    current_hash: str | None = Field(default=None, description="Hash of the current state")
    change_score: float = Field(default=0.0, ge=0.0, le=100.0)
    significance: Severity = Field(default="low")
    metadata: ChangeMetadata = Field(default_factory=ChangeMetadata)
    sync_context: SyncContext | None = None
    created_at: datetime = Field(default_factory=utcnow)
    processed_at: datetime | None = None
    is_processed: bool = False

    @field_validator("created_at")
    @classmethod
    def normalize_created_at(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    def to_entity_change(self) -> EntityChange:
        """Rebuild the transient EntityChange this record was persisted from."""
        return EntityChange(
            entity_type=self.entity_type,
            entity_id=self.entity_id,
            external_id=self.external_id,
            change_type=self.change_type,
            field_changes=tuple(self.field_changes),
            change_score=self.change_score,
            significance=self.significance,
            metadata=self.metadata,
        )


class DetectionError(BaseModel):
    """Per-entity failure captured during a detection batch."""

    entity_id: str
    error: str
    severity: Literal["warning", "error"] = "error"


class TopChangedEntity(BaseModel):
    entity_type: str
    entity_id: str
    change_count: int = Field(default=0, ge=0)
    average_score: float = Field(default=0.0, ge=0.0, le=100.0)


class TimeRange(BaseModel):
    start_date: datetime
    end_date: datetime


class ChangeSummary(BaseModel):
    """Aggregate counts over a set of changes."""

    total_changes: int = Field(default=0, ge=0)
    changes_by_type: dict[str, int] = Field(default_factory=empty_change_type_counts)
    changes_by_severity: dict[str, int] = Field(default_factory=empty_severity_counts)
    changes_by_entity: dict[str, int] = Field(default_factory=dict)
    average_change_score: float = Field(default=0.0, ge=0.0, le=100.0)
    time_range: TimeRange | None = None
    top_changed_entities: list[TopChangedEntity] = Field(default_factory=list)

    @property
    def significant_changes(self) -> int:
        """Number of high or critical changes."""
        return self.changes_by_severity.get("high", 0) + self.changes_by_severity.get(
            "critical", 0
        )


class DetectionPerformance(BaseModel):
    start_time: datetime
    end_time: datetime
    duration_ms: float = Field(default=0.0, ge=0.0)
    entities_processed: int = Field(default=0, ge=0)
    changes_detected: int = Field(default=0, ge=0)
    processing_rate: float = Field(default=0.0, ge=0.0, description="Entities per second")


class ChangeDetectionResult(BaseModel):
    """Outcome of detecting changes over one entity-type batch."""

    success: bool = True
    detection_id: str
    entity_type: str
    entity_changes: list[EntityChange] = Field(default_factory=list)
    records: list[ChangeRecord] = Field(default_factory=list)
    summary: ChangeSummary = Field(default_factory=ChangeSummary)
    performance: DetectionPerformance
    errors: list[DetectionError] = Field(default_factory=list)
    storage_errors: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
