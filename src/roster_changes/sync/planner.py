"""Incremental sync planning from detected entity changes."""

import heapq
import uuid
from typing import Iterable

import structlog

from roster_changes.errors import PlanningError
from roster_changes.models.changes import EntityChange, utcnow
from roster_changes.models.config import PlanningConfig
from roster_changes.sync.models import PRIORITY_ORDER, EntityToSync, IncrementalSyncPlan

log = structlog.stdlib.get_logger()


class IncrementalSyncPlanner:
    """Turns entity changes into prioritized, dependency-ordered sync plans."""

    def __init__(self, config: PlanningConfig | None = None):
        self._config = config or PlanningConfig()

    @property
    def config(self) -> PlanningConfig:
        return self._config

    def dependencies_for(self, entity_type: str) -> list[str]:
        """
        Entity types that must be synced before ``entity_type``.

        Raises:
            PlanningError: If the declared dependencies of ``entity_type`` form a cycle
        """
        self._check_acyclic(entity_type)
        return list(self._config.dependencies.get(entity_type, []))

    def _check_acyclic(self, entity_type: str) -> None:
        dependencies = self._config.dependencies
        visiting: list[str] = []
        done: set[str] = set()

        def visit(node: str) -> None:
            if node in done:
                return
            if node in visiting:
                cycle = visiting[visiting.index(node) :] + [node]
                raise PlanningError(f"Dependency cycle: {' -> '.join(cycle)}")
            visiting.append(node)
            for dependency in dependencies.get(node, []):
                visit(dependency)
            visiting.pop()
            done.add(node)

        visit(entity_type)

    def is_plan_worthy(self, change: EntityChange) -> bool:
        return (
            change.significance in self._config.plan_severities
            or change.change_score > self._config.plan_score_threshold
        )

    def priority_for(self, average_score: float) -> str:
        if average_score > self._config.high_priority_score:
            return "high"
        if average_score > self._config.medium_priority_score:
            return "medium"
        return "low"

    def generate_plan(
        self,
        integration_id: str,
        entity_type: str,
        entity_changes: Iterable[EntityChange],
    ) -> IncrementalSyncPlan | None:
        """
        Build a sync plan for the plan-worthy changes of one entity type.

        Only high/critical changes or changes scoring above the plan threshold
        qualify. Entities are ordered by descending change score.

        Args:
            integration_id: Integration the changes belong to
            entity_type: Entity type of the changes
            entity_changes: Detected changes

        Returns:
            IncrementalSyncPlan, or None if nothing qualifies or the
            dependencies cannot be ordered
        """
        qualifying = [c for c in entity_changes if self.is_plan_worthy(c)]
        if not qualifying:
            log.debug(
                "no_plan_worthy_changes",
                integration_id=integration_id,
                entity_type=entity_type,
            )
            return None

        try:
            dependencies = self.dependencies_for(entity_type)
        except PlanningError as e:
            log.warning(
                "sync_plan_dependency_error",
                integration_id=integration_id,
                entity_type=entity_type,
                error=str(e),
            )
            return None

        average_score = sum(c.change_score for c in qualifying) / len(qualifying)
        ordered = sorted(qualifying, key=lambda c: c.change_score, reverse=True)

        plan = IncrementalSyncPlan(
            plan_id=f"plan_{uuid.uuid4().hex}",
            integration_id=integration_id,
            entity_type=entity_type,
            planned_at=utcnow(),
            entities_to_sync=[
                EntityToSync(
                    entity_id=change.entity_id,
                    external_id=change.external_id or change.entity_id,
                    change_score=change.change_score,
                    reason=[
                        f"{change.change_type} change detected",
                        f"Significance: {change.significance}",
                        f"Field changes: {len(change.field_changes)}",
                    ],
                )
                for change in ordered
            ],
            estimated_duration_ms=len(ordered) * self._config.per_entity_cost_ms,
            priority=self.priority_for(average_score),
            dependencies=dependencies,
        )

        log.info(
            "sync_plan_generated",
            plan_id=plan.plan_id,
            integration_id=integration_id,
            entity_type=entity_type,
            entity_count=len(plan.entities_to_sync),
            priority=plan.priority,
            estimated_duration_ms=plan.estimated_duration_ms,
        )
        return plan

    def order_plans(self, plans: list[IncrementalSyncPlan]) -> list[IncrementalSyncPlan]:
        """
        Order plans so dependency entity types run before their dependents.

        Plans that are free to run at the same point are ordered by priority
        (high first), then by estimated duration (shortest first).

        Raises:
            PlanningError: If the plans' dependencies form a cycle
        """
        present = {plan.entity_type for plan in plans}
        blockers: list[set[str]] = [
            {d for d in plan.dependencies if d in present and d != plan.entity_type}
            for plan in plans
        ]
        remaining_by_type: dict[str, int] = {}
        for plan in plans:
            remaining_by_type[plan.entity_type] = remaining_by_type.get(plan.entity_type, 0) + 1

        def sort_key(index: int) -> tuple:
            plan = plans[index]
            return (
                -PRIORITY_ORDER[plan.priority],
                plan.estimated_duration_ms,
                plan.entity_type,
                index,
            )

        ready = [sort_key(i) for i, b in enumerate(blockers) if not b]
        heapq.heapify(ready)
        scheduled: set[int] = set()
        ordered: list[IncrementalSyncPlan] = []

        while ready:
            index = heapq.heappop(ready)[-1]
            scheduled.add(index)
            plan = plans[index]
            ordered.append(plan)

            remaining_by_type[plan.entity_type] -= 1
            if remaining_by_type[plan.entity_type] > 0:
                continue
            for other, waiting_on in enumerate(blockers):
                if other in scheduled or plan.entity_type not in waiting_on:
                    continue
                waiting_on.discard(plan.entity_type)
                if not waiting_on:
                    heapq.heappush(ready, sort_key(other))

        if len(ordered) != len(plans):
            stuck = sorted({plans[i].entity_type for i in range(len(plans)) if i not in scheduled})
            raise PlanningError(f"Cannot order sync plans, dependency cycle among: {stuck}")

        return ordered
