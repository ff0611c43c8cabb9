"""Operation surface of the change tracking engine.

Every operation returns a plain dict envelope ``{"success": bool, ..., "errors": [...]}``
suitable for an HTTP or RPC layer. Expected failures (invalid input, unknown
or terminal sessions, storage errors) come back as ``success=False`` with a
populated ``errors`` list instead of raising.
"""

import threading
from datetime import datetime
from typing import Any, Callable, Mapping, Sequence

import structlog
from pydantic import ValidationError

from roster_changes.detection.change_detector import DetectionRules, EntityChangeDetector
from roster_changes.detection.delta_calculator import DeltaCalculator
from roster_changes.detection.scoring import DEFAULT_SCORING_POLICY, ScoringPolicy
from roster_changes.detection.service import ChangeDetectionService
from roster_changes.errors import ChangeTrackingError
from roster_changes.history.backends import ChangeStore
from roster_changes.history.ledger import ChangeHistoryLedger
from roster_changes.history.models import ChangeHistoryQuery
from roster_changes.models.changes import SyncContext
from roster_changes.models.config import AppConfig
from roster_changes.models.delta import DeltaCalculationOptions
from roster_changes.providers import get_change_store
from roster_changes.sync.analytics import ChangeAnalyticsModel, HeuristicChangeAnalytics
from roster_changes.sync.collaborators import (
    ExternalIdMapper,
    NotificationSink,
    SynchronizerFactory,
)
from roster_changes.sync.models import IncrementalSyncPlan
from roster_changes.sync.orchestrator import ChangeTrackingOrchestrator, EntityBatch
from roster_changes.sync.planner import IncrementalSyncPlanner

log = structlog.stdlib.get_logger()

Envelope = dict[str, Any]


def _coerce(model: type, value: Any) -> Any:
    if value is None or isinstance(value, model):
        return value
    return model.model_validate(value)


class ChangeTrackingService:
    """Wraps the engine's operations in success/error envelopes."""

    def __init__(
        self,
        orchestrator: ChangeTrackingOrchestrator,
        detection_service: ChangeDetectionService,
        delta_calculator: DeltaCalculator,
        ledger: ChangeHistoryLedger,
    ):
        self._orchestrator = orchestrator
        self._detection = detection_service
        self._delta = delta_calculator
        self._ledger = ledger

    @classmethod
    def from_config(
        cls,
        config: AppConfig | None = None,
        store: ChangeStore | None = None,
        synchronizer_factory: SynchronizerFactory | None = None,
        id_mapper: ExternalIdMapper | None = None,
        notification_sink: NotificationSink | None = None,
        analytics: ChangeAnalyticsModel | None = None,
        rules: DetectionRules | None = None,
        policy: ScoringPolicy = DEFAULT_SCORING_POLICY,
    ) -> "ChangeTrackingService":
        """
        Build the full engine from configuration.

        Args:
            config: Application configuration (defaults to AppConfig())
            store: Ledger backend (defaults to providers.get_change_store)
            synchronizer_factory: Previous-state source and sync executor
            id_mapper: External to internal id resolver
            notification_sink: Receiver of significant-change notifications
            analytics: Analytics model (defaults to the heuristic model)
            rules: Detection rules (defaults to rules built from config.detection)
            policy: Scoring policy shared by detection and delta calculation

        Returns:
            Configured ChangeTrackingService
        """
        config = config or AppConfig()
        rules = rules or DetectionRules(config.detection)
        ledger = ChangeHistoryLedger(store or get_change_store(config.history), config.history)
        detection = ChangeDetectionService(
            EntityChangeDetector(rules, policy),
            ledger,
            synchronizer_factory=synchronizer_factory,
            id_mapper=id_mapper,
        )
        orchestrator = ChangeTrackingOrchestrator(
            detection,
            ledger,
            planner=IncrementalSyncPlanner(config.planning),
            analytics=analytics or HeuristicChangeAnalytics(config.tracking.analytics),
            synchronizer_factory=synchronizer_factory,
            notification_sink=notification_sink,
            config=config.tracking,
        )
        return cls(orchestrator, detection, DeltaCalculator(rules, policy), ledger)

    @property
    def orchestrator(self) -> ChangeTrackingOrchestrator:
        return self._orchestrator

    @property
    def ledger(self) -> ChangeHistoryLedger:
        return self._ledger

    def _run(
        self, operation: str, func: Callable[[], tuple[dict[str, Any], list[str]]]
    ) -> Envelope:
        try:
            payload, errors = func()
        except ValidationError as e:
            log.warning("operation_rejected", operation=operation, error=str(e))
            return {"success": False, "errors": [f"Invalid input: {e}"]}
        except ChangeTrackingError as e:
            log.warning(
                "operation_failed",
                operation=operation,
                error=str(e),
                error_type=type(e).__name__,
            )
            return {"success": False, "errors": [str(e)]}

        return {"success": not errors, **payload, "errors": errors}

    def start_session(
        self,
        integration_id: str,
        entity_types: Sequence[str],
        sync_context: SyncContext | Mapping[str, Any],
    ) -> Envelope:
        def run():
            session = self._orchestrator.start_session(
                integration_id, entity_types, _coerce(SyncContext, sync_context)
            )
            return {"session": session.model_dump(mode="json")}, []

        return self._run("start_session", run)

    def track_changes(
        self,
        session_id: str,
        entity_batches: Sequence[EntityBatch],
        sync_context: SyncContext | Mapping[str, Any] | None = None,
    ) -> Envelope:
        def run():
            result = self._orchestrator.track_changes(
                session_id, entity_batches, _coerce(SyncContext, sync_context)
            )
            payload = {
                "session": result.session.model_dump(mode="json"),
                "detection_results": [r.model_dump(mode="json") for r in result.detection_results],
                "incremental_sync_plans": [
                    p.model_dump(mode="json") for p in result.incremental_sync_plans
                ],
            }
            return payload, [f"{e.entity_type}: {e.error}" for e in result.errors]

        return self._run("track_changes", run)

    def complete_session(self, session_id: str) -> Envelope:
        def run():
            session = self._orchestrator.complete_session(session_id)
            return {"session": session.model_dump(mode="json")}, []

        return self._run("complete_session", run)

    def cancel_session(self, session_id: str, reason: str | None = None) -> Envelope:
        def run():
            session = self._orchestrator.cancel_session(session_id, reason)
            return {"session": session.model_dump(mode="json")}, []

        return self._run("cancel_session", run)

    def detect_entity_changes(
        self,
        entity_type: str,
        current_data: list[Mapping[str, Any]],
        integration_id: str,
        sync_context: SyncContext | Mapping[str, Any],
    ) -> Envelope:
        def run():
            result = self._detection.detect_entity_changes(
                entity_type, current_data, integration_id, _coerce(SyncContext, sync_context)
            )
            errors = [e.error for e in result.errors if e.entity_id == "system"]
            errors.extend(result.storage_errors)
            return {"detection": result.model_dump(mode="json")}, errors

        return self._run("detect_entity_changes", run)

    def calculate_batch_delta(
        self,
        entity_type: str,
        previous_entities: list[Mapping[str, Any]],
        current_entities: list[Mapping[str, Any]],
        options: DeltaCalculationOptions | Mapping[str, Any] | None = None,
    ) -> Envelope:
        def run():
            delta = self._delta.calculate_batch_delta(
                entity_type,
                previous_entities,
                current_entities,
                _coerce(DeltaCalculationOptions, options),
            )
            return {"batch_delta": delta.model_dump(mode="json")}, []

        return self._run("calculate_batch_delta", run)

    def query_change_history(
        self,
        query: ChangeHistoryQuery | Mapping[str, Any],
        timeout: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> Envelope:
        def run():
            page = self._ledger.query(
                _coerce(ChangeHistoryQuery, query), timeout=timeout, cancel_event=cancel_event
            )
            return page.model_dump(mode="json"), []

        return self._run("query_change_history", run)

    def get_change_summary(self, query: ChangeHistoryQuery | Mapping[str, Any]) -> Envelope:
        def run():
            summary = self._ledger.summarize(_coerce(ChangeHistoryQuery, query))
            return {"summary": summary.model_dump(mode="json")}, []

        return self._run("get_change_summary", run)

    def generate_analytics(
        self, integration_id: str, start_date: datetime, end_date: datetime
    ) -> Envelope:
        def run():
            analytics = self._orchestrator.generate_analytics(integration_id, start_date, end_date)
            return {"analytics": analytics.model_dump(mode="json")}, []

        return self._run("generate_analytics", run)

    def generate_report(
        self, integration_id: str, start_date: datetime, end_date: datetime
    ) -> Envelope:
        def run():
            report = self._orchestrator.generate_report(integration_id, start_date, end_date)
            return {"report": report.model_dump(mode="json")}, []

        return self._run("generate_report", run)

    def execute_incremental_sync(
        self,
        plan: IncrementalSyncPlan | Mapping[str, Any],
        sync_context: SyncContext | Mapping[str, Any],
    ) -> Envelope:
        def run():
            result = self._orchestrator.execute_incremental_sync(
                _coerce(IncrementalSyncPlan, plan), _coerce(SyncContext, sync_context)
            )
            payload = result.model_dump(mode="json", exclude={"success", "errors"})
            return payload, list(result.errors)

        return self._run("execute_incremental_sync", run)

    def trigger_cleanup(self, cleanup_type: str, now: datetime | None = None) -> Envelope:
        def run():
            result = self._ledger.trigger_cleanup(cleanup_type, now)
            payload = result.model_dump(mode="json", exclude={"errors"})
            return payload, list(result.errors)

        return self._run("trigger_cleanup", run)

    def get_stats(self) -> Envelope:
        def run():
            return {"stats": self._ledger.get_stats().model_dump(mode="json")}, []

        return self._run("get_stats", run)
