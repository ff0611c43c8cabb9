"""Data models for incremental sync planning and tracking sessions."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from roster_changes.models.changes import (
    ChangeDetectionResult,
    ChangeSummary,
    EntityChange,
    Severity,
    utcnow,
)

PlanPriority = Literal["low", "medium", "high"]
SessionStatus = Literal["active", "completed", "failed", "cancelled"]

PRIORITY_ORDER: dict[str, int] = {"low": 1, "medium": 2, "high": 3}


class EntityToSync(BaseModel):
    entity_id: str
    external_id: str | None = None
    change_score: float = Field(default=0.0, ge=0.0, le=100.0)
    reason: list[str] = Field(default_factory=list)


class IncrementalSyncPlan(BaseModel):
    """Ordered worklist of entities to re-fetch for one entity type."""

    plan_id: str = Field(default=..., description="Identifier used to enforce single execution")
    integration_id: str
    entity_type: str
    planned_at: datetime = Field(default_factory=utcnow)
    entities_to_sync: list[EntityToSync] = Field(default_factory=list)
    estimated_duration_ms: int = Field(default=0, ge=0)
    priority: PlanPriority = "low"
    dependencies: list[str] = Field(default_factory=list)


class SessionPerformance(BaseModel):
    entities_processed: int = Field(default=0, ge=0)
    processing_rate: float = Field(default=0.0, ge=0.0, description="Entities per second")
    average_detection_time_ms: float = Field(default=0.0, ge=0.0)
    detection_runs: int = Field(default=0, ge=0)
    total_detection_time_ms: float = Field(default=0.0, ge=0.0)


class ChangeTrackingSession(BaseModel):
    """Session-scoped aggregate of one synchronization run."""

    session_id: str
    integration_id: str
    entity_types: list[str] = Field(default_factory=list)
    start_time: datetime = Field(default_factory=utcnow)
    end_time: datetime | None = None
    status: SessionStatus = "active"
    total_changes_detected: int = Field(default=0, ge=0)
    changes_by_type: dict[str, int] = Field(default_factory=dict)
    performance_metrics: SessionPerformance = Field(default_factory=SessionPerformance)
    failure_reason: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status != "active"


class EntityTypeError(BaseModel):
    entity_type: str
    error: str


class TrackingResult(BaseModel):
    """Outcome of one track_changes call; partial success is preserved."""

    session: ChangeTrackingSession
    detection_results: list[ChangeDetectionResult] = Field(default_factory=list)
    incremental_sync_plans: list[IncrementalSyncPlan] = Field(default_factory=list)
    errors: list[EntityTypeError] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return len(self.errors) == 0


class SyncExecutionResult(BaseModel):
    plan_id: str
    entity_type: str
    success: bool = True
    synced_entities: int = Field(default=0, ge=0)
    errors: list[str] = Field(default_factory=list)
    duration_ms: float = Field(default=0.0, ge=0.0)


class ChangeNotification(BaseModel):
    """Event emitted for every significant change while notifications are enabled."""

    id: str
    integration_id: str
    session_id: str | None = None
    entity_change: EntityChange
    channel: str = "database"
    status: Literal["pending", "sent", "failed"] = "pending"
    created_at: datetime = Field(default_factory=utcnow)
    retry_count: int = 0
    max_retries: int = 3


class ChangePattern(BaseModel):
    id: str
    name: str
    description: str
    entity_type: str | None = None
    change_type: str | None = None
    frequency: Literal["low", "medium", "high"] = "high"
    time_window_hours: int | None = None
    significance: Severity = "medium"
    automatic_actions: list[str] = Field(default_factory=list)


class PredictedChange(BaseModel):
    entity_type: str
    entity_id: str = "predicted"
    predicted_change_type: str = "updated"
    confidence: float = Field(default=0.7, ge=0.0, le=1.0)
    timeframe_hours: int = 2


class ChangeAnalytics(BaseModel):
    change_velocity: float = Field(default=0.0, description="Changes per hour")
    change_acceleration: float = 0.0
    peak_change_hours: list[int] = Field(default_factory=list)
    common_change_patterns: list[ChangePattern] = Field(default_factory=list)
    anomalous_changes: list[EntityChange] = Field(default_factory=list)
    predicted_changes: list[PredictedChange] = Field(default_factory=list)


class EntityTypeReport(BaseModel):
    entity_type: str
    change_count: int = 0
    significant_changes: int = 0
    patterns: list[ChangePattern] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


class ChangeTrackingReport(BaseModel):
    integration_id: str
    start_date: datetime
    end_date: datetime
    summary: ChangeSummary
    entity_reports: list[EntityTypeReport] = Field(default_factory=list)
    incremental_sync_plans: list[IncrementalSyncPlan] = Field(default_factory=list)
    analytics: ChangeAnalytics = Field(default_factory=ChangeAnalytics)
    generated_at: datetime = Field(default_factory=utcnow)
