"""Field, entity and batch change detection."""

from roster_changes.detection.change_detector import DetectionRules, EntityChangeDetector
from roster_changes.detection.delta_calculator import DeltaCalculator
from roster_changes.detection.field_analyzer import FieldChangeAnalyzer, FieldChangeRule
from roster_changes.detection.scoring import DEFAULT_SCORING_POLICY, ScoringPolicy
from roster_changes.detection.service import ChangeDetectionService

__all__ = [
    "ChangeDetectionService",
    "DEFAULT_SCORING_POLICY",
    "DeltaCalculator",
    "DetectionRules",
    "EntityChangeDetector",
    "FieldChangeAnalyzer",
    "FieldChangeRule",
    "ScoringPolicy",
]
