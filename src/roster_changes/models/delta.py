"""Transient delta models produced by the delta calculator."""

from datetime import datetime
from typing import Any, Callable, Literal

from pydantic import BaseModel, ConfigDict, Field

from roster_changes.models.changes import Severity, empty_change_type_counts


class DeltaCalculationOptions(BaseModel):
    """Options controlling a delta calculation.

    ``ignore_fields`` of None means "use the entity type's configured ignore list".
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    include_unchanged: bool = Field(default=False, description="Report unchanged fields too")
    significance_threshold: float = Field(
        default=10.0, ge=0.0, le=100.0, description="Score at which an entity counts as significant"
    )
    ignore_fields: list[str] | None = Field(default=None)
    deep_comparison: bool = Field(
        default=True, description="Structural equality for dicts/lists (False: order-sensitive)"
    )
    normalize_values: bool = Field(
        default=True, description="Report lower-cased, trimmed string values alongside raw values"
    )
    custom_comparisons: dict[str, Callable[[Any, Any], bool]] = Field(
        default_factory=dict, exclude=True, description="Per-field equality overrides"
    )


class FieldDelta(BaseModel):
    field_name: str
    has_changed: bool
    change_type: Literal["created", "updated", "deleted", "no_change"]
    old_value: Any = None
    new_value: Any = None
    significance: Severity = "low"
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    normalized_old_value: Any = None
    normalized_new_value: Any = None


class EntityDeltaMetadata(BaseModel):
    compared_at: datetime
    comparison_method: str = "field-by-field"
    total_fields: int = 0
    changed_fields: int = 0
    unchanged_fields: int = 0


class EntityDelta(BaseModel):
    entity_type: str
    entity_id: str | None
    has_changes: bool = False
    change_score: float = Field(default=0.0, ge=0.0, le=100.0)
    field_deltas: list[FieldDelta] = Field(default_factory=list)
    metadata: EntityDeltaMetadata

    @property
    def changed_field_deltas(self) -> list[FieldDelta]:
        return [delta for delta in self.field_deltas if delta.has_changed]


class BatchDeltaSummary(BaseModel):
    total_changes: int = Field(default=0, ge=0, description="Changed fields across all entities")
    significant_changes: int = Field(default=0, ge=0)
    average_change_score: float = Field(default=0.0, ge=0.0, le=100.0)
    change_distribution: dict[str, int] = Field(default_factory=empty_change_type_counts)


class BatchDeltaMetadata(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    calculated_at: datetime
    calculation_duration_ms: float = 0.0
    options: DeltaCalculationOptions
    skipped_entities: int = Field(default=0, ge=0, description="Entities without any identifier")


class BatchDelta(BaseModel):
    batch_id: str
    entity_type: str
    total_entities: int = 0
    changed_entities: int = 0
    unchanged_entities: int = 0
    entity_deltas: list[EntityDelta] = Field(default_factory=list)
    summary: BatchDeltaSummary = Field(default_factory=BatchDeltaSummary)
    metadata: BatchDeltaMetadata
