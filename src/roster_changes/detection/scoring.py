"""Severity and change-score policy shared by every detection path.

Both the entity change detector and the delta calculator score changes
through the same ``ScoringPolicy`` so a field transition gets identical
severity and an entity gets an identical score regardless of which path
observed it.
"""

from dataclasses import dataclass, field
from typing import Any, Iterable, Protocol

from roster_changes.models.changes import Severity

SEVERITY_RANK: dict[str, int] = {"low": 1, "medium": 2, "high": 3, "critical": 4}
RANK_SEVERITY: dict[int, Severity] = {1: "low", 2: "medium", 3: "high", 4: "critical"}


class ScoredChange(Protocol):
    severity: Severity
    confidence: float


@dataclass(frozen=True)
class ScoringPolicy:
    """Weights and thresholds used to grade field changes and score entities."""

    severity_weights: dict[str, float] = field(
        default_factory=lambda: {"low": 5.0, "medium": 10.0, "high": 15.0, "critical": 25.0}
    )
    score_multiplier: float = 10.0
    max_score: float = 100.0
    deletion_score: float = 100.0
    deletion_severity: Severity = "high"
    long_string_delta: int = 100
    medium_string_delta: int = 20

    def weight(self, severity: str) -> float:
        return self.severity_weights.get(severity, self.severity_weights["low"])

    def field_severity(self, old_value: Any, new_value: Any, field_type: str) -> Severity:
        """Default severity for a field transition when no rule applies."""
        if field_type == "boolean":
            return "high"
        if old_value is None and new_value is not None:
            return "medium"
        if old_value is not None and new_value is None:
            return "high"

        if field_type == "string":
            old_len = len(str(old_value or ""))
            new_len = len(str(new_value or ""))
            length_diff = abs(new_len - old_len)
            if length_diff > self.long_string_delta:
                return "high"
            if length_diff > self.medium_string_delta:
                return "medium"
            return "low"

        return "medium"

    def change_score(self, changes: Iterable[ScoredChange]) -> float:
        """Entity score: mean(weight x confidence) x multiplier, capped at max_score."""
        changes = list(changes)
        if not changes:
            return 0.0

        total = sum(self.weight(c.severity) * c.confidence for c in changes)
        return min(self.max_score, total / len(changes) * self.score_multiplier)

    def max_severity(self, severities: Iterable[str]) -> Severity:
        """Highest severity in the collection, ``low`` when empty."""
        ranks = [SEVERITY_RANK[s] for s in severities]
        if not ranks:
            return "low"
        return RANK_SEVERITY[max(ranks)]


DEFAULT_SCORING_POLICY = ScoringPolicy()
