"""Incremental sync planning, tracking sessions and change analytics."""

from roster_changes.sync.analytics import ChangeAnalyticsModel, HeuristicChangeAnalytics
from roster_changes.sync.models import (
    ChangeTrackingSession,
    IncrementalSyncPlan,
    SyncExecutionResult,
    TrackingResult,
)
from roster_changes.sync.orchestrator import ChangeTrackingOrchestrator
from roster_changes.sync.planner import IncrementalSyncPlanner

__all__ = [
    "ChangeAnalyticsModel",
    "ChangeTrackingOrchestrator",
    "ChangeTrackingSession",
    "HeuristicChangeAnalytics",
    "IncrementalSyncPlan",
    "IncrementalSyncPlanner",
    "SyncExecutionResult",
    "TrackingResult",
]
