"""Unit tests for scope resolution."""

from unittest.mock import patch

import pytest

from ckg.engine.scope import ScopeResolver, scope_hierarchy
from ckg.exceptions import BackendUnavailableError
from ckg.graph.models import Node, NodeType, Relationship, Scope, ScopeContext


CONTEXT = ScopeContext(user_id="u1", project_id="p1", team_id="tm1", org_id="o1")


async def add(store, node_type, node_id, created_at="2026-01-01T00:00:00+00:00", **properties):
    await store.insert_node(
        Node(
            id=node_id,
            type=node_type,
            properties=properties,
            created_at=created_at,
            modified_at=created_at,
        )
    )


async def add_config(store, node_type, node_id, scope, entity_id=None, **properties):
    properties = {"scope": scope.value, "isActive": True, **properties}
    if entity_id is not None:
        properties["scopeEntityId"] = entity_id
    await add(store, node_type, node_id, **properties)


@pytest.fixture
def resolver(store):
    return ScopeResolver(store)


class TestHierarchy:
    def test_full_context(self):
        """Test levels are most specific first, DEFAULT last."""
        assert scope_hierarchy(CONTEXT) == [
            (Scope.USER, "u1"),
            (Scope.PROJECT, "p1"),
            (Scope.TEAM, "tm1"),
            (Scope.ORG, "o1"),
            (Scope.DEFAULT, None),
        ]

    def test_missing_levels_skipped(self):
        assert scope_hierarchy(ScopeContext(project_id="p1")) == [
            (Scope.PROJECT, "p1"),
            (Scope.DEFAULT, None),
        ]


class TestRules:
    """Test override and composition of Rules."""

    @pytest.mark.anyio
    async def test_override_most_specific_wins(self, store, resolver):
        """Test a PROJECT rule shadows the DEFAULT rule of the same name."""
        await add_config(
            store, NodeType.RULE, "r-default", Scope.DEFAULT, name="style", content="tabs"
        )
        await add_config(
            store, NodeType.RULE, "r-project", Scope.PROJECT, "p1", name="style", content="spaces"
        )

        rules = await resolver.resolve_rules(CONTEXT, [])

        assert rules["overrideRules"]["style"]["id"] == "r-project"

    @pytest.mark.anyio
    async def test_compositional_collected_from_every_level(self, store, resolver):
        """Test compositional categories keep rules from all levels in order."""
        await add_config(
            store, NodeType.RULE, "sec-org", Scope.ORG, "o1", name="no-secrets", category="SECURITY"
        )
        await add_config(
            store, NodeType.RULE, "sec-user", Scope.USER, "u1", name="mfa", category="SECURITY"
        )
        await add_config(
            store, NodeType.RULE, "misc", Scope.DEFAULT, name="misc", ruleType="NAMING"
        )

        rules = await resolver.resolve_rules(CONTEXT, [])

        assert [r["id"] for r in rules["compositionalRules"]["SECURITY"]] == [
            "sec-user",
            "sec-org",
        ]
        assert "NAMING" not in rules["compositionalRules"]
        assert set(rules["overrideRules"]) == {"no-secrets", "mfa", "misc"}

    @pytest.mark.anyio
    async def test_rule_type_fallback_and_override_categories(self, store, resolver):
        """Test ruleType is the composition key when category is absent."""
        await add_config(store, NodeType.RULE, "n1", Scope.DEFAULT, name="n1", ruleType="NAMING")

        rules = await resolver.resolve_rules(CONTEXT, [], compositional_categories=["NAMING"])

        assert [r["id"] for r in rules["compositionalRules"]["NAMING"]] == ["n1"]

    @pytest.mark.anyio
    async def test_inactive_rules_ignored(self, store, resolver):
        await add_config(
            store, NodeType.RULE, "off", Scope.PROJECT, "p1", name="style", isActive=False
        )
        await add_config(store, NodeType.RULE, "on", Scope.DEFAULT, name="style")

        rules = await resolver.resolve_rules(CONTEXT, [])

        assert rules["overrideRules"]["style"]["id"] == "on"

    @pytest.mark.anyio
    async def test_other_entities_ignored(self, store, resolver):
        """Test configs bound to another project do not apply."""
        await add_config(store, NodeType.RULE, "other", Scope.PROJECT, "p2", name="style")

        rules = await resolver.resolve_rules(CONTEXT, [])

        assert rules["overrideRules"] == {}


class TestFirstMatch:
    """Test Workflow and Persona resolution."""

    @pytest.mark.anyio
    async def test_workflow_with_ordered_steps(self, store, resolver):
        """Test the most specific workflow comes with its steps by stepOrder."""
        await add_config(store, NodeType.WORKFLOW, "wf-default", Scope.DEFAULT, name="std")
        await add_config(store, NodeType.WORKFLOW, "wf-team", Scope.TEAM, "tm1", name="team")
        await add(store, NodeType.WORKFLOW_STEP, "s-b", stepOrder=2, name="review")
        await add(store, NodeType.WORKFLOW_STEP, "s-a", stepOrder=1, name="build")
        for step_id in ("s-b", "s-a"):
            await store.create_relationship(
                Relationship(
                    type="steps",
                    source_type=NodeType.WORKFLOW,
                    source_id="wf-team",
                    target_type=NodeType.WORKFLOW_STEP,
                    target_id=step_id,
                )
            )

        workflow = await resolver.resolve_workflow(CONTEXT, [])

        assert workflow["id"] == "wf-team"
        assert [step["id"] for step in workflow["steps"]] == ["s-a", "s-b"]
        assert workflow["steps"][0]["stepOrder"] == 1

    @pytest.mark.anyio
    async def test_ties_broken_by_creation(self, store, resolver):
        """Test the earliest-created config wins within one level."""
        await add(
            store,
            NodeType.PERSONA,
            "late",
            created_at="2026-01-02T00:00:00+00:00",
            scope="DEFAULT",
        )
        await add(
            store,
            NodeType.PERSONA,
            "early",
            created_at="2026-01-01T00:00:00+00:00",
            scope="DEFAULT",
        )

        persona = await resolver.resolve_persona(ScopeContext(), [])

        assert persona["id"] == "early"

    @pytest.mark.anyio
    async def test_nothing_configured(self, resolver):
        assert await resolver.resolve_workflow(CONTEXT, []) is None
        assert await resolver.resolve_persona(CONTEXT, []) is None


class TestResolve:
    """Test the combined resolution."""

    @pytest.mark.anyio
    async def test_only_requested_categories(self, store, resolver):
        await add_config(store, NodeType.PERSONA, "p", Scope.DEFAULT, name="dev")

        resolution = await resolver.resolve(CONTEXT, ["persona"])

        assert resolution.to_wire() == {"persona": resolution.data["persona"]}
        assert resolution.partial is False

    @pytest.mark.anyio
    async def test_failed_level_makes_result_partial(self, store, resolver):
        """Test a failing level is skipped and reported."""
        await add_config(store, NodeType.PERSONA, "fallback", Scope.DEFAULT, name="dev")
        original = store.find_nodes

        async def flaky(node_type, filters=None, limit=None, offset=0):
            if filters and filters.get("scope") == "USER":
                raise BackendUnavailableError("findNodesByLabel", "local", "timeout")
            return await original(node_type, filters, limit, offset)

        with patch.object(store, "find_nodes", side_effect=flaky):
            resolution = await resolver.resolve(CONTEXT, ["persona"])

        wire = resolution.to_wire()
        assert wire["persona"]["id"] == "fallback"
        assert wire["partial"] is True
        assert wire["failedLevels"] == ["Persona:USER"]

    @pytest.mark.anyio
    async def test_code_snippets(self, store, resolver):
        """Test files are returned with functions, classes and methods."""
        await add(store, NodeType.PROJECT, "p1", name="proj")
        await add(store, NodeType.FILE, "f1", path="app.py")
        await add(store, NodeType.FUNCTION, "fn1", name="main")
        await add(store, NodeType.CLASS, "c1", name="App")
        await add(store, NodeType.FUNCTION, "m1", name="run")
        edges = [
            (NodeType.PROJECT, "p1", "files", NodeType.FILE, "f1"),
            (NodeType.FILE, "f1", "functions", NodeType.FUNCTION, "fn1"),
            (NodeType.FILE, "f1", "classes", NodeType.CLASS, "c1"),
            (NodeType.CLASS, "c1", "methods", NodeType.FUNCTION, "m1"),
        ]
        for source_type, source_id, relation, target_type, target_id in edges:
            await store.create_relationship(
                Relationship(
                    type=relation,
                    source_type=source_type,
                    source_id=source_id,
                    target_type=target_type,
                    target_id=target_id,
                )
            )

        resolution = await resolver.resolve(CONTEXT, ["code_snippets"])

        (snippet,) = resolution.data["code_snippets"]
        assert snippet["path"] == "app.py"
        assert [f["id"] for f in snippet["functions"]] == ["fn1"]
        assert [m["id"] for m in snippet["classes"][0]["methods"]] == ["m1"]
