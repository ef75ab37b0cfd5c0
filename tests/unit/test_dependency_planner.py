"""Unit tests for dependency graphs and execution plans."""

import pytest

from ckg.engine.dependencies import (
    DependencyPlanner,
    build_dependency_graph,
    create_execution_plan,
    split_unscheduled,
)
from ckg.engine.scope import ScopeResolver
from ckg.exceptions import CycleDetectedError, NotFoundError
from ckg.graph.models import Node, NodeType, Relationship, TaskRef


async def add_task(store, task_id, **properties):
    await store.insert_node(
        Node(
            id=task_id,
            type=NodeType.TASK,
            properties=properties,
            created_at="2026-01-01T00:00:00+00:00",
            modified_at="2026-01-01T00:00:00+00:00",
        )
    )


async def add_child(store, parent_id, child_id, **properties):
    await add_task(store, child_id, **properties)
    await store.create_relationship(
        Relationship(
            type="childTasks",
            source_type=NodeType.TASK,
            source_id=parent_id,
            target_type=NodeType.TASK,
            target_id=child_id,
        )
    )


def planner_for(store, cycle_policy="raise"):
    return DependencyPlanner(store, ScopeResolver(store), cycle_policy=cycle_policy)


class TestBuildDependencyGraph:
    """Test edge derivation."""

    def test_explicit_then_workflow_edges(self):
        """Test explicit blockers come first and duplicates are dropped."""
        children = [
            TaskRef(id="a", guided_by_step="s1"),
            TaskRef(id="b", dependencies=["a", "ext"], guided_by_step="s2"),
            TaskRef(id="c", guided_by_step="s3"),
        ]

        graph = build_dependency_graph(children, {"s1": 1, "s2": 2, "s3": 3})

        assert graph == {"a": [], "b": ["a", "ext"], "c": ["a", "b"]}

    def test_same_step_order_unrelated(self):
        children = [
            TaskRef(id="a", guided_by_step="s1"),
            TaskRef(id="b", guided_by_step="s1"),
        ]

        assert build_dependency_graph(children, {"s1": 1}) == {"a": [], "b": []}

    def test_unknown_step_ignored(self):
        children = [TaskRef(id="a", guided_by_step="gone"), TaskRef(id="b")]

        assert build_dependency_graph(children, {}) == {"a": [], "b": []}


class TestCreateExecutionPlan:
    """Test batching."""

    def test_layers(self):
        """Test independent tasks share a batch, sorted by id."""
        plan, unscheduled = create_execution_plan(
            {"d": ["b", "c"], "c": ["a"], "b": ["a"], "a": []}
        )

        assert plan == [["a"], ["b", "c"], ["d"]]
        assert unscheduled == []

    def test_outside_blockers_hold_back(self):
        """Test a task blocked from outside the graph joins no batch."""
        plan, unscheduled = create_execution_plan({"a": ["outside"], "b": ["a"], "c": []})

        assert plan == [["c"]]
        assert unscheduled == ["a", "b"]

    def test_cycle_leaves_tasks_unscheduled(self):
        plan, unscheduled = create_execution_plan({"a": [], "b": ["c"], "c": ["b"]})

        assert plan == [["a"]]
        assert unscheduled == ["b", "c"]

    def test_empty(self):
        assert create_execution_plan({}) == ([], [])


class TestSplitUnscheduled:
    """Test waiting tasks are told apart from cycle members."""

    def test_outside_blockers_are_waiting(self):
        graph = {"a": ["outside"], "b": ["a"], "c": []}

        assert split_unscheduled(graph, ["a", "b"]) == (["a", "b"], [])

    def test_cycle_members_and_dependents(self):
        """Test tasks on or downstream of a cycle are reported as cyclic."""
        graph = {"a": ["b"], "b": ["a"], "c": ["a"], "d": ["outside"]}

        assert split_unscheduled(graph, ["a", "b", "c", "d"]) == (["d"], ["a", "b", "c"])


class TestDependencyPlanner:
    """Test analysis over a store."""

    @pytest.mark.anyio
    async def test_two_independent_children(self, store):
        """Test children without dependencies run together."""
        await add_task(store, "parent")
        await add_child(store, "parent", "t2")
        await add_child(store, "parent", "t1")

        analysis = await planner_for(store).analyze("parent")

        assert analysis.runnable_tasks == ["t1", "t2"]
        assert analysis.execution_plan == [["t1", "t2"]]
        assert analysis.to_wire() == {
            "task_id": "parent",
            "runnable_tasks": ["t1", "t2"],
            "blocked_tasks": [],
            "dependency_graph": {"t1": [], "t2": []},
            "execution_plan": [["t1", "t2"]],
        }

    @pytest.mark.anyio
    async def test_blocked_task(self, store):
        await add_task(store, "parent")
        await add_child(store, "parent", "t1")
        await add_child(store, "parent", "t2", dependencies=["t1"])

        analysis = await planner_for(store).analyze("parent")

        assert analysis.runnable_tasks == ["t1"]
        assert analysis.blocked_tasks[0].id == "t2"
        assert analysis.blocked_tasks[0].blocked_by == ["t1"]
        assert analysis.execution_plan == [["t1"], ["t2"]]

    @pytest.mark.anyio
    async def test_no_children(self, store):
        await add_task(store, "parent")

        analysis = await planner_for(store).analyze("parent")

        assert analysis.execution_plan == []
        assert analysis.dependency_graph == {}

    @pytest.mark.anyio
    async def test_missing_parent(self, store):
        with pytest.raises(NotFoundError):
            await planner_for(store).analyze("ghost")

    @pytest.mark.anyio
    async def test_cycle_raises(self, store):
        await add_task(store, "parent")
        await add_child(store, "parent", "a", dependencies=["b"])
        await add_child(store, "parent", "b", dependencies=["a"])

        with pytest.raises(CycleDetectedError) as exc_info:
            await planner_for(store).analyze("parent")

        assert exc_info.value.task_ids == ["a", "b"]

    @pytest.mark.anyio
    async def test_cycle_truncated(self, store):
        """Test the truncate policy returns the schedulable prefix."""
        await add_task(store, "parent")
        await add_child(store, "parent", "a", dependencies=["b"])
        await add_child(store, "parent", "b", dependencies=["a"])
        await add_child(store, "parent", "c")

        analysis = await planner_for(store, "truncate").analyze("parent")

        assert analysis.partial is True
        assert analysis.execution_plan == [["c"]]
        assert analysis.unscheduled_tasks == ["a", "b"]
        assert analysis.to_wire()["unscheduled_tasks"] == ["a", "b"]

    @pytest.mark.anyio
    async def test_workflow_edges_from_parent_scope(self, store):
        """Test the parent's scopeContext selects the workflow ordering children."""
        await add_task(store, "parent", scopeContext='{"projectId": "p1"}')
        await store.insert_node(
            Node(
                id="wf",
                type=NodeType.WORKFLOW,
                properties={"scope": "PROJECT", "scopeEntityId": "p1", "isActive": True},
                created_at="2026-01-01T00:00:00+00:00",
                modified_at="2026-01-01T00:00:00+00:00",
            )
        )
        for step_id, order in (("design", 1), ("build", 2)):
            await store.insert_node(
                Node(
                    id=step_id,
                    type=NodeType.WORKFLOW_STEP,
                    properties={"stepOrder": order},
                    created_at="2026-01-01T00:00:00+00:00",
                    modified_at="2026-01-01T00:00:00+00:00",
                )
            )
            await store.create_relationship(
                Relationship(
                    type="steps",
                    source_type=NodeType.WORKFLOW,
                    source_id="wf",
                    target_type=NodeType.WORKFLOW_STEP,
                    target_id=step_id,
                )
            )
        await add_child(store, "parent", "impl", guidedByStep="build")
        await add_child(store, "parent", "draft", guidedByStep={"id": "design"})

        analysis = await planner_for(store).analyze("parent")

        assert analysis.dependency_graph == {"impl": ["draft"], "draft": []}
        assert analysis.execution_plan == [["draft"], ["impl"]]

    @pytest.mark.anyio
    async def test_invalid_scope_context_ignored(self, store):
        await add_task(store, "parent", scopeContext="{not json")
        await add_child(store, "parent", "t1")

        analysis = await planner_for(store).analyze("parent")

        assert analysis.execution_plan == [["t1"]]

    @pytest.mark.anyio
    async def test_outside_blocker_keeps_task_out_of_plan(self, store):
        """Test a child blocked by a non-sibling is waiting, not scheduled."""
        await add_task(store, "parent")
        await add_child(store, "parent", "t1")
        await add_child(store, "parent", "t2", dependencies=["outside"])
        await add_child(store, "parent", "t3", dependencies=["t2"])

        analysis = await planner_for(store).analyze("parent")

        assert analysis.execution_plan == [["t1"]]
        assert analysis.waiting_tasks == ["t2", "t3"]
        assert analysis.unscheduled_tasks == []
        assert analysis.partial is False
        assert [task.id for task in analysis.blocked_tasks] == ["t2", "t3"]
        scheduled: set[str] = set()
        for batch in analysis.execution_plan:
            for task_id in batch:
                assert set(analysis.dependency_graph[task_id]) <= scheduled
            scheduled.update(batch)
        assert analysis.to_wire()["waiting_tasks"] == ["t2", "t3"]

    @pytest.mark.anyio
    async def test_waiting_and_cycle_together(self, store):
        await add_task(store, "parent")
        await add_child(store, "parent", "a", dependencies=["b"])
        await add_child(store, "parent", "b", dependencies=["a"])
        await add_child(store, "parent", "c", dependencies=["outside"])

        with pytest.raises(CycleDetectedError) as exc_info:
            await planner_for(store).analyze("parent")

        assert exc_info.value.task_ids == ["a", "b"]

    @pytest.mark.anyio
    async def test_analysis_is_deterministic(self, store):
        """Test repeated analysis of an unchanged graph gives the same plan."""
        await add_task(store, "parent")
        for child_id, dependencies in (
            ("e", ["c", "d"]),
            ("b", []),
            ("d", ["a"]),
            ("a", []),
            ("c", ["b", "a"]),
        ):
            await add_child(store, "parent", child_id, dependencies=dependencies)
        planner = planner_for(store)

        first = await planner.analyze("parent")
        second = await planner.analyze("parent")

        assert first.execution_plan == [["a", "b"], ["c", "d"], ["e"]]
        assert second.dependency_graph == first.dependency_graph
        assert second.execution_plan == first.execution_plan
        assert second.to_wire() == first.to_wire()
