"""Session-scoped coordination of change detection, planning, notification and analytics."""

import contextvars
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Mapping, Sequence

import structlog
from structlog.contextvars import bound_contextvars

from roster_changes.detection.change_detector import DetectionRules
from roster_changes.detection.service import ChangeDetectionService
from roster_changes.errors import ChangeValidationError, PlanningError, SessionStateError
from roster_changes.history.ledger import ChangeHistoryLedger, summarize_records
from roster_changes.history.models import ChangeHistoryQuery
from roster_changes.models.changes import (
    ChangeDetectionResult,
    EntityChange,
    SyncContext,
    ensure_utc,
    utcnow,
)
from roster_changes.models.config import TrackingConfig
from roster_changes.sync.analytics import ChangeAnalyticsModel, HeuristicChangeAnalytics
from roster_changes.sync.collaborators import NotificationSink, SynchronizerFactory
from roster_changes.sync.models import (
    PRIORITY_ORDER,
    ChangeAnalytics,
    ChangeNotification,
    ChangeTrackingReport,
    ChangeTrackingSession,
    EntityTypeError,
    EntityTypeReport,
    IncrementalSyncPlan,
    SyncExecutionResult,
    TrackingResult,
)
from roster_changes.sync.planner import IncrementalSyncPlanner

log = structlog.stdlib.get_logger()

EntityBatch = tuple[str, Sequence[Mapping[str, Any]]]


@dataclass
class _SessionState:
    session: ChangeTrackingSession
    sync_context: SyncContext
    config: TrackingConfig
    lock: threading.Lock = field(default_factory=threading.Lock)


@dataclass
class _EntityTypeOutcome:
    entity_type: str
    result: ChangeDetectionResult | None = None
    plan: IncrementalSyncPlan | None = None
    errors: list[str] = field(default_factory=list)


class ChangeTrackingOrchestrator:
    """Drives tracking sessions across entity types.

    Sessions move from ``active`` to exactly one of ``completed``, ``failed``
    or ``cancelled``; terminal sessions are dropped from the session table and
    cannot be reused.
    """

    def __init__(
        self,
        detection_service: ChangeDetectionService,
        ledger: ChangeHistoryLedger,
        planner: IncrementalSyncPlanner | None = None,
        analytics: ChangeAnalyticsModel | None = None,
        synchronizer_factory: SynchronizerFactory | None = None,
        notification_sink: NotificationSink | None = None,
        config: TrackingConfig | None = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            detection_service: Detects and records changes per entity type
            ledger: Change history ledger used for reports and analytics
            planner: Incremental sync planner
            analytics: Analytics model (defaults to the heuristic model)
            synchronizer_factory: Executes incremental syncs and lists entity types
            notification_sink: Receives notifications for significant changes
            config: Default tracking configuration for new sessions
        """
        self._detection = detection_service
        self._ledger = ledger
        self._planner = planner or IncrementalSyncPlanner()
        self._config = config or TrackingConfig()
        self._analytics = analytics or HeuristicChangeAnalytics(self._config.analytics)
        self._synchronizer_factory = synchronizer_factory
        self._notification_sink = notification_sink

        self._sessions: dict[str, _SessionState] = {}
        self._sessions_lock = threading.Lock()
        self._executed_plans: set[str] = set()
        self._plans_lock = threading.Lock()

    @property
    def planner(self) -> IncrementalSyncPlanner:
        return self._planner

    def _rules(self) -> DetectionRules:
        return self._detection.detector.rules

    def _validate_entity_types(self, entity_types: Sequence[str]) -> None:
        rules = self._rules()
        unknown = [t for t in entity_types if not rules.is_known(t)]
        if unknown:
            raise ChangeValidationError(
                f"Unknown entity types: {unknown}. Known types: {rules.entity_types}"
            )

    def _active_state(self, session_id: str) -> _SessionState:
        with self._sessions_lock:
            state = self._sessions.get(session_id)
        if state is None:
            raise SessionStateError(
                f"Change tracking session not found or already terminal: {session_id}",
                session_id=session_id,
            )
        return state

    def start_session(
        self,
        integration_id: str,
        entity_types: Sequence[str],
        sync_context: SyncContext,
        config: TrackingConfig | None = None,
    ) -> ChangeTrackingSession:
        """
        Open a new tracking session.

        Raises:
            ChangeValidationError: If any entity type is unknown
        """
        self._validate_entity_types(entity_types)

        session = ChangeTrackingSession(
            session_id=f"session_{uuid.uuid4().hex}",
            integration_id=integration_id,
            entity_types=list(entity_types),
            start_time=utcnow(),
        )
        state = _SessionState(
            session=session,
            sync_context=sync_context,
            config=config or self._config,
        )
        with self._sessions_lock:
            self._sessions[session.session_id] = state

        log.info(
            "change_tracking_session_started",
            session_id=session.session_id,
            integration_id=integration_id,
            entity_types=list(entity_types),
            sync_id=sync_context.sync_id,
        )
        return session.model_copy(deep=True)

    def get_session(self, session_id: str) -> ChangeTrackingSession:
        state = self._active_state(session_id)
        with state.lock:
            return state.session.model_copy(deep=True)

    def active_sessions(self) -> list[ChangeTrackingSession]:
        with self._sessions_lock:
            states = list(self._sessions.values())
        snapshots = []
        for state in states:
            with state.lock:
                snapshots.append(state.session.model_copy(deep=True))
        return snapshots

    def track_changes(
        self,
        session_id: str,
        entity_batches: Sequence[EntityBatch],
        sync_context: SyncContext | None = None,
    ) -> TrackingResult:
        """
        Detect, record and plan changes for several entity types of a session.

        Entity types are processed concurrently. A failure for one entity type
        is logged and reported in ``errors`` while the others continue.

        Args:
            session_id: Active session id
            entity_batches: (entity_type, current snapshot) pairs
            sync_context: Sync run of this batch (defaults to the session's)

        Returns:
            TrackingResult with per-type detection results, ordered sync plans
            and per-type errors

        Raises:
            SessionStateError: If the session is unknown or terminal
            ChangeValidationError: If any entity type is unknown
        """
        state = self._active_state(session_id)
        self._validate_entity_types([entity_type for entity_type, _ in entity_batches])
        sync_context = sync_context or state.sync_context
        integration_id = state.session.integration_id
        max_workers = max(
            1, min(self._rules().config.max_concurrent_detections, len(entity_batches))
        )

        with bound_contextvars(session_id=session_id, integration_id=integration_id):
            log.info(
                "tracking_changes",
                entity_types=[entity_type for entity_type, _ in entity_batches],
            )

            with ThreadPoolExecutor(
                max_workers=max_workers, thread_name_prefix="change-tracking"
            ) as executor:
                futures = [
                    executor.submit(
                        contextvars.copy_context().run,
                        self._track_entity_type,
                        state,
                        entity_type,
                        list(current_data),
                        sync_context,
                    )
                    for entity_type, current_data in entity_batches
                ]
                outcomes = [future.result() for future in futures]

            detection_results = [o.result for o in outcomes if o.result is not None]
            plans = [o.plan for o in outcomes if o.plan is not None]
            errors = [
                EntityTypeError(entity_type=o.entity_type, error=message)
                for o in outcomes
                for message in o.errors
            ]

            with state.lock:
                self._refresh_rates(state.session)
                snapshot = state.session.model_copy(deep=True)

            ordered_plans = self._order_plans(plans)

            log.info(
                "tracking_changes_completed",
                total_changes=snapshot.total_changes_detected,
                incremental_sync_plans=len(ordered_plans),
                errors=len(errors),
            )

        return TrackingResult(
            session=snapshot,
            detection_results=detection_results,
            incremental_sync_plans=ordered_plans,
            errors=errors,
        )

    def _track_entity_type(
        self,
        state: _SessionState,
        entity_type: str,
        current_data: list[Mapping[str, Any]],
        sync_context: SyncContext,
    ) -> _EntityTypeOutcome:
        outcome = _EntityTypeOutcome(entity_type=entity_type)
        session = state.session

        try:
            result = self._detection.detect_entity_changes(
                entity_type, current_data, session.integration_id, sync_context
            )
        except Exception as e:
            log.error("entity_type_tracking_failed", entity_type=entity_type, error=str(e))
            outcome.errors.append(f"Failed to track changes for {entity_type}: {e}")
            return outcome

        outcome.result = result
        outcome.errors.extend(
            f"{entity_type} detection error: {error.error}"
            for error in result.errors
            if error.entity_id == "system"
        )
        outcome.errors.extend(result.storage_errors)

        with state.lock:
            if session.is_terminal:
                log.warning(
                    "session_no_longer_active",
                    entity_type=entity_type,
                    status=session.status,
                )
                return outcome
            changes = len(result.entity_changes)
            session.total_changes_detected += changes
            session.changes_by_type[entity_type] = (
                session.changes_by_type.get(entity_type, 0) + changes
            )
            metrics = session.performance_metrics
            metrics.entities_processed += result.performance.entities_processed
            metrics.detection_runs += 1
            metrics.total_detection_time_ms += result.performance.duration_ms

            # A session cancelled mid-run gets no plans
            if state.config.enable_incremental_sync and result.entity_changes:
                outcome.plan = self._planner.generate_plan(
                    session.integration_id, entity_type, result.entity_changes
                )

        if state.config.enable_notifications:
            outcome.errors.extend(self._notify(state, result.entity_changes))

        return outcome

    def _notify(self, state: _SessionState, changes: list[EntityChange]) -> list[str]:
        if self._notification_sink is None:
            return []

        errors = []
        severities = state.config.notification_severities
        for change in changes:
            with state.lock:
                if state.session.is_terminal:
                    log.info("notifications_stopped", status=state.session.status)
                    break
            if change.significance not in severities:
                continue
            notification = ChangeNotification(
                id=f"notification_{uuid.uuid4().hex}",
                integration_id=state.session.integration_id,
                session_id=state.session.session_id,
                entity_change=change,
            )
            try:
                self._notification_sink.publish(notification)
            except Exception as e:
                log.error(
                    "notification_publish_failed",
                    notification_id=notification.id,
                    entity_id=change.entity_id,
                    error=str(e),
                )
                errors.append(f"Failed to publish notification for {change.entity_id}: {e}")
        return errors

    @staticmethod
    def _refresh_rates(session: ChangeTrackingSession) -> None:
        metrics = session.performance_metrics
        if metrics.detection_runs:
            metrics.average_detection_time_ms = (
                metrics.total_detection_time_ms / metrics.detection_runs
            )
        if metrics.total_detection_time_ms > 0:
            metrics.processing_rate = metrics.entities_processed / (
                metrics.total_detection_time_ms / 1000
            )

    def _order_plans(self, plans: list[IncrementalSyncPlan]) -> list[IncrementalSyncPlan]:
        try:
            return self._planner.order_plans(plans)
        except PlanningError as e:
            log.warning("sync_plan_ordering_failed", error=str(e))
            return sorted(
                plans,
                key=lambda p: (-PRIORITY_ORDER[p.priority], p.estimated_duration_ms),
            )

    def _finish(
        self, session_id: str, status: str, reason: str | None = None
    ) -> ChangeTrackingSession:
        with self._sessions_lock:
            state = self._sessions.pop(session_id, None)
        if state is None:
            raise SessionStateError(
                f"Change tracking session not found or already terminal: {session_id}",
                session_id=session_id,
            )

        with state.lock:
            session = state.session
            session.status = status
            session.end_time = utcnow()
            session.failure_reason = reason
            self._refresh_rates(session)
            snapshot = session.model_copy(deep=True)

        log.info(
            "change_tracking_session_finished",
            session_id=session_id,
            status=status,
            total_changes=snapshot.total_changes_detected,
            duration_ms=round(
                (snapshot.end_time - snapshot.start_time).total_seconds() * 1000, 2
            ),
            reason=reason,
        )
        return snapshot

    def complete_session(self, session_id: str) -> ChangeTrackingSession:
        """
        Mark an active session completed and finalize its performance metrics.

        Raises:
            SessionStateError: If the session is unknown or terminal
        """
        return self._finish(session_id, "completed")

    def cancel_session(self, session_id: str, reason: str | None = None) -> ChangeTrackingSession:
        """Stop accumulating for a session; stored change records are kept."""
        return self._finish(session_id, "cancelled", reason)

    def fail_session(self, session_id: str, reason: str) -> ChangeTrackingSession:
        return self._finish(session_id, "failed", reason)

    def execute_incremental_sync(
        self, plan: IncrementalSyncPlan, sync_context: SyncContext
    ) -> SyncExecutionResult:
        """
        Re-sync the entities of a plan, highest change score first.

        Each plan runs at most once; per-entity failures are collected and do
        not stop the remaining entities.

        Raises:
            ChangeValidationError: If the plan was already executed
        """
        with self._plans_lock:
            if plan.plan_id in self._executed_plans:
                raise ChangeValidationError(f"Sync plan already executed: {plan.plan_id}")
            self._executed_plans.add(plan.plan_id)

        start = time.perf_counter()
        error = None
        synchronizer = None
        try:
            if self._synchronizer_factory is not None:
                synchronizer = self._synchronizer_factory.get_synchronizer(plan.entity_type)
        except Exception as e:
            error = f"Failed to get synchronizer for {plan.entity_type}: {e}"
        else:
            if synchronizer is None:
                error = f"No synchronizer available for {plan.entity_type}"

        if error is not None:
            # Nothing ran, so the plan stays executable
            with self._plans_lock:
                self._executed_plans.discard(plan.plan_id)
            log.error(
                "no_synchronizer_for_plan",
                plan_id=plan.plan_id,
                entity_type=plan.entity_type,
                error=error,
            )
            return SyncExecutionResult(
                plan_id=plan.plan_id,
                entity_type=plan.entity_type,
                success=False,
                errors=[error],
                duration_ms=(time.perf_counter() - start) * 1000,
            )

        log.info(
            "executing_incremental_sync",
            plan_id=plan.plan_id,
            integration_id=plan.integration_id,
            entity_type=plan.entity_type,
            entity_count=len(plan.entities_to_sync),
        )

        synced = 0
        errors: list[str] = []
        for entity in sorted(plan.entities_to_sync, key=lambda e: e.change_score, reverse=True):
            try:
                synchronizer.synchronize_entity(
                    plan.integration_id, entity.entity_id, entity.external_id, sync_context
                )
            except Exception as e:
                log.warning(
                    "entity_sync_failed",
                    plan_id=plan.plan_id,
                    entity_id=entity.entity_id,
                    error=str(e),
                )
                errors.append(f"Failed to sync {entity.entity_id}: {e}")
                continue
            log.debug(
                "entity_synced",
                entity_id=entity.entity_id,
                change_score=entity.change_score,
                reason=", ".join(entity.reason),
            )
            synced += 1

        duration_ms = (time.perf_counter() - start) * 1000
        log.info(
            "incremental_sync_completed",
            plan_id=plan.plan_id,
            entity_type=plan.entity_type,
            synced_entities=synced,
            errors=len(errors),
            duration_ms=round(duration_ms, 2),
        )
        return SyncExecutionResult(
            plan_id=plan.plan_id,
            entity_type=plan.entity_type,
            success=not errors,
            synced_entities=synced,
            errors=errors,
            duration_ms=duration_ms,
        )

    def _check_period(
        self, start_date: datetime, end_date: datetime
    ) -> tuple[datetime, datetime]:
        start_date, end_date = ensure_utc(start_date), ensure_utc(end_date)
        if start_date >= end_date:
            raise ChangeValidationError("start_date must be before end_date")
        return start_date, end_date

    def generate_analytics(
        self, integration_id: str, start_date: datetime, end_date: datetime
    ) -> ChangeAnalytics:
        """
        Velocity, acceleration, peak hours, anomalies and predictions for a period.

        Raises:
            ChangeValidationError: If the period is empty or reversed
        """
        start_date, end_date = self._check_period(start_date, end_date)
        if not self._config.analytics.enable_analytics:
            return ChangeAnalytics()

        changes = self._ledger.find_all(
            ChangeHistoryQuery(
                integration_id=integration_id, start_date=start_date, end_date=end_date
            )
        )
        previous_start = start_date - (end_date - start_date)
        previous = self._ledger.find_all(
            ChangeHistoryQuery(
                integration_id=integration_id,
                start_date=previous_start,
                end_date=start_date - timedelta(microseconds=1),
            )
        )
        return self._analytics.analyze(changes, previous, start_date, end_date)

    def _report_entity_types(self) -> list[str]:
        if self._synchronizer_factory is not None:
            return list(self._synchronizer_factory.get_available_entity_types())
        return self._rules().entity_types

    def generate_report(
        self, integration_id: str, start_date: datetime, end_date: datetime
    ) -> ChangeTrackingReport:
        """
        Summary, per-entity-type breakdown, sync plans and analytics for a period.

        Raises:
            ChangeValidationError: If the period is empty or reversed
        """
        start_date, end_date = self._check_period(start_date, end_date)
        log.info(
            "generating_change_tracking_report",
            integration_id=integration_id,
            start_date=start_date.isoformat(),
            end_date=end_date.isoformat(),
        )

        period_query = ChangeHistoryQuery(
            integration_id=integration_id, start_date=start_date, end_date=end_date
        )
        summary = self._ledger.summarize(period_query)

        entity_reports = []
        plans = []
        for entity_type in self._report_entity_types():
            records = self._ledger.find_all(
                period_query.model_copy(update={"entity_type": entity_type})
            )
            entity_summary = summarize_records(records)
            patterns = self._analytics.detect_patterns(records, entity_type)
            entity_reports.append(
                EntityTypeReport(
                    entity_type=entity_type,
                    change_count=entity_summary.total_changes,
                    significant_changes=entity_summary.significant_changes,
                    patterns=patterns,
                    recommendations=self._analytics.recommendations(
                        entity_type, entity_summary, patterns
                    ),
                )
            )

            significant = [
                r.to_entity_change()
                for r in records
                if r.significance in self._planner.config.plan_severities
            ]
            if significant:
                plan = self._planner.generate_plan(integration_id, entity_type, significant)
                if plan is not None:
                    plans.append(plan)

        return ChangeTrackingReport(
            integration_id=integration_id,
            start_date=start_date,
            end_date=end_date,
            summary=summary,
            entity_reports=entity_reports,
            incremental_sync_plans=self._order_plans(plans),
            analytics=self.generate_analytics(integration_id, start_date, end_date),
        )

