"""Configuration models for the roster change tracking engine."""

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from roster_changes.models.changes import Severity

DEFAULT_ENTITY_TYPES = ["user", "class", "organization", "enrollment"]
DEFAULT_IGNORE_FIELDS = ["id", "created_at", "updated_at", "last_sync_at", "sync_version"]
DEFAULT_DEPENDENCIES = {
    "enrollment": ["user", "class"],
    "class": ["organization", "user"],
    "user": ["organization"],
    "organization": [],
}


class EntityDetectionSettings(BaseModel):
    """Per-entity-type detection settings."""

    enabled_change_types: list[str] = Field(
        default_factory=lambda: ["created", "updated", "deleted"],
        description="Entity change types that are reported",
    )
    significance_threshold: float = Field(default=20.0, ge=0.0, le=100.0)
    confidence_threshold: float = Field(
        default=0.7, ge=0.0, le=1.0, description="Field confidence used when no rule applies"
    )
    ignore_fields: list[str] = Field(default_factory=lambda: list(DEFAULT_IGNORE_FIELDS))
    monitor_relationships: bool = Field(default=True)
    max_history_depth: int = Field(default=10, ge=1)


class DetectionConfig(BaseModel):
    """Global change detection settings."""

    enable_change_tracking: bool = Field(default=True)
    default_confidence: float = Field(
        default=0.8, ge=0.0, le=1.0, description="Confidence stamped on change metadata"
    )
    batch_size: int = Field(default=100, ge=1, description="Entities detected per batch")
    max_concurrent_detections: int = Field(
        default=5, ge=1, description="Entity types processed in parallel per tracking call"
    )
    entity_types: list[str] = Field(default_factory=lambda: list(DEFAULT_ENTITY_TYPES))
    entity_overrides: dict[str, EntityDetectionSettings] = Field(default_factory=dict)
    detect_deletions_on_full_sync: bool = Field(
        default=True,
        description="Report entities missing from a full snapshot as deleted",
    )

    def settings_for(self, entity_type: str) -> EntityDetectionSettings:
        return self.entity_overrides.get(entity_type, EntityDetectionSettings())

    def known_entity_types(self) -> list[str]:
        known = list(self.entity_types)
        known.extend(t for t in self.entity_overrides if t not in known)
        return known


class HistoryConfig(BaseModel):
    """Change ledger storage and lifecycle settings."""

    retention_period_days: int = Field(default=90, ge=1)
    compression_threshold_days: int = Field(default=30, ge=1)
    enable_compression: bool = Field(default=False)
    max_records_per_query: int = Field(default=1000, ge=1)
    default_query_limit: int = Field(default=50, ge=1)
    enable_index_optimization: bool = Field(default=False)
    cleanup_interval_hours: int = Field(default=24, ge=1)
    batch_chunk_size: int = Field(default=100, ge=1, description="Records per write transaction")
    max_write_concurrency: int = Field(default=5, ge=1)
    chunk_retries: int = Field(default=2, ge=0)
    retry_base_delay: float = Field(default=0.5, ge=0.0)
    top_entities_limit: int = Field(default=10, ge=1)
    database_url: str | None = Field(
        default=None, description="SQLAlchemy URL; None keeps the ledger in memory"
    )


class PlanningConfig(BaseModel):
    """Incremental sync planning settings."""

    per_entity_cost_ms: int = Field(default=100, ge=0)
    plan_score_threshold: float = Field(default=50.0, ge=0.0, le=100.0)
    plan_severities: list[Severity] = Field(default_factory=lambda: ["high", "critical"])
    high_priority_score: float = Field(default=80.0, ge=0.0, le=100.0)
    medium_priority_score: float = Field(default=50.0, ge=0.0, le=100.0)
    dependencies: dict[str, list[str]] = Field(
        default_factory=lambda: {k: list(v) for k, v in DEFAULT_DEPENDENCIES.items()}
    )


class AnalyticsConfig(BaseModel):
    """Thresholds for the heuristic analytics model."""

    enable_analytics: bool = Field(default=True)
    enable_prediction: bool = Field(default=True)
    prediction_velocity_threshold: float = Field(default=10.0, ge=0.0)
    prediction_confidence: float = Field(default=0.7, ge=0.0, le=1.0)
    prediction_timeframe_hours: int = Field(default=2, ge=1)
    anomaly_score_threshold: float = Field(default=90.0, ge=0.0, le=100.0)
    peak_hour_factor: float = Field(default=2.0, gt=0.0)
    high_frequency_threshold: int = Field(default=50, ge=1)
    mass_deletion_threshold: int = Field(default=5, ge=1)
    high_volume_threshold: int = Field(
        default=100, ge=1, description="Changes per entity type that trigger a data quality review"
    )


class TrackingConfig(BaseModel):
    """Orchestrator settings."""

    enable_incremental_sync: bool = Field(default=True)
    enable_notifications: bool = Field(default=False)
    notification_severities: list[Severity] = Field(default_factory=lambda: ["high", "critical"])
    analytics: AnalyticsConfig = Field(default_factory=AnalyticsConfig)


class LoggingConfig(BaseModel):
    """Configuration for logging."""

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    json_logs: bool = Field(
        default=True,
        description="If True, output JSON logs. If False, use console format.",
    )
    log_file: str | None = Field(
        default=None,
        description="Optional path to log file. If None, logs only to stdout.",
    )
    sql_log_level: str = Field(
        default="WARNING",
        description="Level of the sqlalchemy loggers used by the SQL ledger backend",
    )

    @field_validator("log_level", "sql_log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level: {v}")
        return level


class AppConfig(BaseSettings):
    """Main application configuration.

    Values can be overridden with environment variables using the ROSTER_
    prefix and ``__`` as the nested delimiter (e.g. ROSTER_HISTORY__RETENTION_PERIOD_DAYS).
    """

    model_config = SettingsConfigDict(
        env_prefix="ROSTER_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    detection: DetectionConfig = Field(default_factory=DetectionConfig)
    history: HistoryConfig = Field(default_factory=HistoryConfig)
    planning: PlanningConfig = Field(default_factory=PlanningConfig)
    tracking: TrackingConfig = Field(default_factory=TrackingConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
