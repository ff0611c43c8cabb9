"""Data models for the roster change tracking engine."""

from roster_changes.models.changes import (
    ChangeDetectionResult,
    ChangeMetadata,
    ChangeRecord,
    ChangeSummary,
    DetectionError,
    EntityChange,
    FieldChange,
    SyncContext,
)
from roster_changes.models.config import (
    AppConfig,
    DetectionConfig,
    EntityDetectionSettings,
    HistoryConfig,
    LoggingConfig,
    PlanningConfig,
    TrackingConfig,
)
from roster_changes.models.delta import (
    BatchDelta,
    DeltaCalculationOptions,
    EntityDelta,
    FieldDelta,
)

__all__ = [
    "FieldChange",
    "EntityChange",
    "ChangeMetadata",
    "ChangeRecord",
    "ChangeSummary",
    "ChangeDetectionResult",
    "DetectionError",
    "SyncContext",
    "AppConfig",
    "DetectionConfig",
    "EntityDetectionSettings",
    "HistoryConfig",
    "LoggingConfig",
    "PlanningConfig",
    "TrackingConfig",
    "BatchDelta",
    "DeltaCalculationOptions",
    "EntityDelta",
    "FieldDelta",
]
