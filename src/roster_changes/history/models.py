"""Data models for change history queries and lifecycle jobs."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from roster_changes.models.changes import (
    ChangeRecord,
    ChangeType,
    Severity,
    TimeRange,
    ensure_utc,
)

CleanupType = Literal["retention", "compression", "optimization"]


class ChangeHistoryQuery(BaseModel):
    """Filter for ledger queries; unset fields do not filter."""

    integration_id: str | None = None
    entity_type: str | None = None
    entity_id: str | None = None
    change_types: list[ChangeType] | None = None
    significance: list[Severity] | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    limit: int | None = Field(default=None, ge=1)
    offset: int = Field(default=0, ge=0)

    @field_validator("start_date", "end_date")
    @classmethod
    def normalize_dates(cls, v: datetime | None) -> datetime | None:
        return ensure_utc(v) if v is not None else None

    @model_validator(mode="after")
    def check_date_range(self) -> "ChangeHistoryQuery":
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValueError("start_date must not be after end_date")
        return self

    def matches(self, record: ChangeRecord) -> bool:
        """Evaluate this filter against one record in memory."""
        if self.integration_id is not None and record.integration_id != self.integration_id:
            return False
        if self.entity_type is not None and record.entity_type != self.entity_type:
            return False
        if self.entity_id is not None and record.entity_id != self.entity_id:
            return False
        if self.change_types and record.change_type not in self.change_types:
            return False
        if self.significance and record.significance not in self.significance:
            return False
        if self.start_date is not None and record.created_at < self.start_date:
            return False
        if self.end_date is not None and record.created_at > self.end_date:
            return False
        return True


class ChangeHistoryPage(BaseModel):
    changes: list[ChangeRecord] = Field(default_factory=list)
    total_count: int = Field(default=0, ge=0)
    has_more: bool = False
    limit: int = Field(default=50, ge=1)
    offset: int = Field(default=0, ge=0)
    execution_time_ms: float = Field(default=0.0, ge=0.0)


class BatchStoreResult(BaseModel):
    success: bool = True
    stored_count: int = Field(default=0, ge=0)
    errors: list[str] = Field(default_factory=list)


class CompressedChangesSummary(BaseModel):
    total_changes: int = 0
    change_types: list[ChangeType] = Field(default_factory=list)
    severity_distribution: dict[str, int] = Field(default_factory=dict)
    field_change_counts: dict[str, int] = Field(default_factory=dict)


class CompressedChangeRecord(BaseModel):
    """Summary that replaces a group of aged records for one entity."""

    id: str
    integration_id: str
    entity_type: str
    entity_id: str
    changes_summary: CompressedChangesSummary
    time_range: TimeRange
    original_record_ids: list[str] = Field(default_factory=list)
    compression_ratio: float = Field(default=1.0, ge=0.0)
    compressed_at: datetime


class CleanupResult(BaseModel):
    cleanup_type: CleanupType
    records_processed: int = Field(default=0, ge=0)
    records_deleted: int = Field(default=0, ge=0)
    records_compressed: int = Field(default=0, ge=0)
    storage_reclaimed: int = Field(default=0, ge=0, description="Approximate bytes")
    duration_ms: float = Field(default=0.0, ge=0.0)
    errors: list[str] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return len(self.errors) == 0


class ChangeHistoryStats(BaseModel):
    total_records: int = 0
    records_by_integration: dict[str, int] = Field(default_factory=dict)
    records_by_entity_type: dict[str, int] = Field(default_factory=dict)
    records_by_change_type: dict[str, int] = Field(default_factory=dict)
    records_by_severity: dict[str, int] = Field(default_factory=dict)
    oldest_record: datetime | None = None
    newest_record: datetime | None = None
    compressed_records: int = 0
    storage_size: int = Field(default=0, ge=0, description="Approximate bytes")
