"""
Task Dependency & Execution Planning

Builds the dependency graph of a parent task's direct children from their
explicit ``dependencies`` and from the order of the workflow steps they are
bound to, then layers it into batches that can run in parallel.
"""

from __future__ import annotations

import json
from typing import Any, Literal

import structlog
from pydantic import ValidationError as PydanticValidationError

from ckg.engine.scope import ScopeResolver
from ckg.exceptions import CycleDetectedError, NotFoundError
from ckg.graph.models import Node, NodeType, ScopeContext, TaskRef
from ckg.graph.results import BlockedTask, DependencyAnalysis
from ckg.observability.metrics import (
    ckg_dependency_cycles_total,
    ckg_partial_results_total,
)
from ckg.storage.base import GraphStore


logger = structlog.get_logger(__name__)

CyclePolicy = Literal["raise", "truncate"]


def build_dependency_graph(
    children: list[TaskRef],
    step_orders: dict[str, int] | None = None,
) -> dict[str, list[str]]:
    """
    Map every child task to the tasks blocking it.

    Explicit dependencies come first, in declaration order. Then, for every
    pair of children bound to workflow steps, the child on the earlier step
    blocks the child on the later one. No edge is added twice.

    Args:
        children: Direct children of one parent, ordered by id
        step_orders: Workflow step id to ``stepOrder``

    Returns:
        ``{task_id: [blocking_task_id, ...]}``
    """
    graph: dict[str, list[str]] = {child.id: [] for child in children}
    for child in children:
        for blocker in child.dependencies:
            if blocker not in graph[child.id]:
                graph[child.id].append(blocker)

    step_orders = step_orders or {}
    bound = [
        (child.id, step_orders[child.guided_by_step])
        for child in children
        if child.guided_by_step in step_orders
    ]
    for later_id, later_order in bound:
        for earlier_id, earlier_order in bound:
            if earlier_order < later_order and earlier_id not in graph[later_id]:
                graph[later_id].append(earlier_id)
    return graph


def create_execution_plan(
    graph: dict[str, list[str]],
) -> tuple[list[list[str]], list[str]]:
    """
    Layer a dependency graph into parallel batches.

    A task joins the next batch once every one of its blockers is scheduled.
    A blocker outside the graph is never scheduled, so the tasks it blocks
    stay out of the plan. Batches are sorted by task id.

    Returns:
        ``(execution_plan, unscheduled)``; ``unscheduled`` lists, in id
        order, the tasks no batch could take
    """
    scheduled: set[str] = set()
    remaining = sorted(graph)
    plan: list[list[str]] = []
    while remaining:
        batch = [
            task_id
            for task_id in remaining
            if all(blocker in scheduled for blocker in graph[task_id])
        ]
        if not batch:
            break
        plan.append(batch)
        scheduled.update(batch)
        remaining = [task_id for task_id in remaining if task_id not in scheduled]
    return plan, remaining


def split_unscheduled(
    graph: dict[str, list[str]],
    unscheduled: list[str],
) -> tuple[list[str], list[str]]:
    """
    Separate tasks waiting on outside blockers from tasks stuck in a cycle.

    Only edges between unscheduled tasks are considered. Tasks that still
    cannot be layered then sit on, or downstream of, a cycle.

    Returns:
        ``(waiting, cyclic)``, both in id order
    """
    pending = set(unscheduled)
    subgraph = {
        task_id: [blocker for blocker in graph[task_id] if blocker in pending]
        for task_id in unscheduled
    }
    _, cyclic = create_execution_plan(subgraph)
    stuck = set(cyclic)
    return [task_id for task_id in unscheduled if task_id not in stuck], cyclic


def _scope_context(parent: Node) -> ScopeContext:
    raw: Any = parent.properties.get("scopeContext")
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError as e:
            logger.warning("planner.scope_context_invalid", task_id=parent.id, error=str(e))
            return ScopeContext()
    if not isinstance(raw, dict):
        return ScopeContext()
    try:
        return ScopeContext.model_validate(raw)
    except PydanticValidationError as e:
        logger.warning("planner.scope_context_invalid", task_id=parent.id, error=str(e))
        return ScopeContext()


class DependencyPlanner:
    """Dependency analysis for the direct children of one parent task."""

    def __init__(
        self,
        store: GraphStore,
        resolver: ScopeResolver,
        cycle_policy: CyclePolicy = "raise",
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.cycle_policy = cycle_policy

    async def _children(self, parent_task_id: str) -> list[TaskRef]:
        pairs = await self.store.related(NodeType.TASK, parent_task_id, "childTasks")
        children = {node.id: TaskRef.from_node(node) for _, node in pairs}
        return [children[task_id] for task_id in sorted(children)]

    async def analyze(self, parent_task_id: str) -> DependencyAnalysis:
        """
        Analyze a parent task's children.

        Args:
            parent_task_id: Task whose ``childTasks`` are planned

        Returns:
            Runnable and blocked tasks, the dependency graph and the plan

        Raises:
            NotFoundError: If the parent task does not exist
            CycleDetectedError: If children depend on each other in a cycle
                and the policy is ``raise``
        """
        parent = await self.store.get_node(NodeType.TASK, parent_task_id)
        if parent is None:
            raise NotFoundError(NodeType.TASK.value, parent_task_id)

        children = await self._children(parent_task_id)
        failures: list[str] = []
        workflow = await self.resolver.resolve_workflow(_scope_context(parent), failures)
        step_orders = (
            {step["id"]: step["stepOrder"] for step in workflow["steps"]} if workflow else {}
        )

        graph = build_dependency_graph(children, step_orders)
        plan, remaining = create_execution_plan(graph)
        waiting, unscheduled = split_unscheduled(graph, remaining)

        if waiting:
            logger.info(
                "planner.tasks_waiting",
                parent_task_id=parent_task_id,
                task_ids=waiting,
            )
        if unscheduled:
            ckg_dependency_cycles_total.inc()
            logger.error(
                "planner.cycle_detected",
                parent_task_id=parent_task_id,
                task_ids=unscheduled,
                policy=self.cycle_policy,
            )
            if self.cycle_policy == "raise":
                raise CycleDetectedError(unscheduled)

        partial = bool(failures or unscheduled)
        if partial:
            ckg_partial_results_total.labels(operation="analyzeTaskDependencies").inc()

        analysis = DependencyAnalysis(
            task_id=parent_task_id,
            runnable_tasks=[task_id for task_id in sorted(graph) if not graph[task_id]],
            blocked_tasks=[
                BlockedTask(id=task_id, blocked_by=graph[task_id])
                for task_id in sorted(graph)
                if graph[task_id]
            ],
            dependency_graph=graph,
            execution_plan=plan,
            partial=partial,
            unscheduled_tasks=unscheduled,
            waiting_tasks=waiting,
        )
        logger.info(
            "planner.analysis_completed",
            parent_task_id=parent_task_id,
            tasks=len(graph),
            batches=len(plan),
            partial=partial,
        )
        return analysis
