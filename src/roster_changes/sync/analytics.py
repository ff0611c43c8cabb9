"""Change analytics: velocity, peak hours, anomalies, patterns and predictions.

The heuristics here are deliberately simple approximations. They sit behind
``ChangeAnalyticsModel`` so a statistical model can replace them without
touching detection or the ledger.
"""

from abc import ABC, abstractmethod
from collections import Counter
from datetime import datetime, timezone

import structlog

from roster_changes.models.changes import ChangeRecord, ChangeSummary
from roster_changes.models.config import AnalyticsConfig
from roster_changes.sync.models import ChangeAnalytics, ChangePattern, PredictedChange

log = structlog.stdlib.get_logger()


class ChangeAnalyticsModel(ABC):
    """Interface for change trend analysis."""

    @abstractmethod
    def analyze(
        self,
        changes: list[ChangeRecord],
        previous_changes: list[ChangeRecord],
        start_date: datetime,
        end_date: datetime,
    ) -> ChangeAnalytics:
        """
        Analyze the changes of a period.

        Args:
            changes: Records created within [start_date, end_date]
            previous_changes: Records of the preceding period of equal length
            start_date: Period start
            end_date: Period end

        Returns:
            ChangeAnalytics for the period
        """
        pass

    @abstractmethod
    def detect_patterns(self, changes: list[ChangeRecord], entity_type: str) -> list[ChangePattern]:
        pass

    @abstractmethod
    def recommendations(
        self, entity_type: str, summary: ChangeSummary, patterns: list[ChangePattern]
    ) -> list[str]:
        pass


def peak_hours(changes: list[ChangeRecord], factor: float = 2.0) -> list[int]:
    """UTC hours of day whose change count exceeds ``factor`` times the mean of all 24 hours."""
    if not changes:
        return []
    counts = Counter(record.created_at.astimezone(timezone.utc).hour for record in changes)
    mean = len(changes) / 24
    return sorted(hour for hour, count in counts.items() if count > mean * factor)


class HeuristicChangeAnalytics(ChangeAnalyticsModel):
    """Threshold-based analytics with a naive velocity-triggered prediction."""

    def __init__(self, config: AnalyticsConfig | None = None):
        self._config = config or AnalyticsConfig()

    def analyze(
        self,
        changes: list[ChangeRecord],
        previous_changes: list[ChangeRecord],
        start_date: datetime,
        end_date: datetime,
    ) -> ChangeAnalytics:
        hours = (end_date - start_date).total_seconds() / 3600
        velocity = len(changes) / hours if hours > 0 else 0.0
        previous_velocity = len(previous_changes) / hours if hours > 0 else 0.0

        peaks = peak_hours(changes, self._config.peak_hour_factor)
        patterns: list[ChangePattern] = []
        if peaks:
            patterns.append(
                ChangePattern(
                    id="peak_hours",
                    name="Peak Change Hours",
                    description=f"Changes concentrated in hours: {', '.join(map(str, peaks))}",
                    frequency="high",
                    time_window_hours=1,
                    significance="medium",
                    automatic_actions=["schedule_sync_off_peak"],
                )
            )

        anomalies = [
            record.to_entity_change()
            for record in changes
            if record.change_score > self._config.anomaly_score_threshold
        ]

        analytics = ChangeAnalytics(
            change_velocity=velocity,
            change_acceleration=velocity - previous_velocity,
            peak_change_hours=peaks,
            common_change_patterns=patterns,
            anomalous_changes=anomalies,
            predicted_changes=self._predict(changes, velocity),
        )

        log.debug(
            "change_analytics_computed",
            change_count=len(changes),
            change_velocity=round(velocity, 3),
            peak_hours=peaks,
            anomalies=len(anomalies),
        )
        return analytics

    def _predict(self, changes: list[ChangeRecord], velocity: float) -> list[PredictedChange]:
        if not self._config.enable_prediction or not changes:
            return []
        if velocity <= self._config.prediction_velocity_threshold:
            return []

        entity_type, _ = Counter(r.entity_type for r in changes).most_common(1)[0]
        return [
            PredictedChange(
                entity_type=entity_type,
                predicted_change_type="updated",
                confidence=self._config.prediction_confidence,
                timeframe_hours=self._config.prediction_timeframe_hours,
            )
        ]

    def detect_patterns(self, changes: list[ChangeRecord], entity_type: str) -> list[ChangePattern]:
        patterns = []

        if len(changes) > self._config.high_frequency_threshold:
            patterns.append(
                ChangePattern(
                    id=f"high_freq_{entity_type}",
                    name="High Frequency Changes",
                    description=f"High volume of changes detected for {entity_type} entities",
                    entity_type=entity_type,
                    frequency="high",
                    time_window_hours=24,
                    significance="medium",
                    automatic_actions=["incremental_sync", "change_notification"],
                )
            )

        deletions = sum(1 for r in changes if r.change_type == "deleted")
        if deletions > self._config.mass_deletion_threshold:
            patterns.append(
                ChangePattern(
                    id=f"deletion_{entity_type}",
                    name="Mass Deletion Pattern",
                    description=f"Multiple {entity_type} entities being deleted",
                    entity_type=entity_type,
                    change_type="deleted",
                    frequency="high",
                    significance="high",
                    automatic_actions=["admin_notification", "sync_pause"],
                )
            )

        return patterns

    def recommendations(
        self, entity_type: str, summary: ChangeSummary, patterns: list[ChangePattern]
    ) -> list[str]:
        if summary.total_changes == 0:
            return [f"No changes detected for {entity_type} entities"]

        recommendations = []
        if summary.total_changes > self._config.high_volume_threshold:
            recommendations.append(
                f"High volume of {entity_type} changes detected - consider reviewing data quality"
            )

        critical = summary.changes_by_severity.get("critical", 0)
        if critical:
            recommendations.append(
                f"{critical} critical {entity_type} changes require immediate attention"
            )

        deletions = summary.changes_by_type.get("deleted", 0)
        if deletions:
            recommendations.append(
                f"{deletions} {entity_type} deletions detected - verify these are intentional"
            )

        for pattern in patterns:
            if pattern.significance in ("high", "critical"):
                recommendations.append(
                    f"Pattern detected: {pattern.description} - consider implementing "
                    f"{', '.join(pattern.automatic_actions)}"
                )

        return recommendations
