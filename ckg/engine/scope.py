"""
Scope Resolution Engine

Computes the effective Rules, Workflow and Persona for an execution
context by walking USER, PROJECT, TEAM, ORG and DEFAULT scope levels,
most specific first.

Rules are resolved with two policies in a single walk over every level:
override by ``name`` (first match wins) and composition by ``category``
(every match is kept). Workflows and Personas stop at the first level
that has an active match. A failed lookup at one level is logged and
treated as no match, and the result is flagged partial.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

import structlog
from pydantic import BaseModel, Field

from ckg.exceptions import CKGError
from ckg.graph.models import (
    SCOPE_ORDER,
    ConfigType,
    Node,
    NodeType,
    Scope,
    ScopeContext,
    WorkflowStep,
)
from ckg.storage.base import GraphStore


logger = structlog.get_logger(__name__)


class ScopeResolution(BaseModel):
    """Resolved context bundle plus the levels that could not be queried."""

    data: dict[str, Any] = Field(default_factory=dict)
    failed_levels: list[str] = Field(default_factory=list)

    @property
    def partial(self) -> bool:
        return bool(self.failed_levels)

    def to_wire(self) -> dict[str, Any]:
        payload = dict(self.data)
        if self.partial:
            payload["partial"] = True
            payload["failedLevels"] = list(self.failed_levels)
        return payload


def scope_hierarchy(context: ScopeContext) -> list[tuple[Scope, str | None]]:
    """
    Scope levels applicable to a context, most specific first.

    Levels without an id in the context are skipped; DEFAULT is always
    included.
    """
    levels: list[tuple[Scope, str | None]] = []
    for scope in SCOPE_ORDER:
        entity_id = context.entity_id_for(scope)
        if scope is Scope.DEFAULT or entity_id:
            levels.append((scope, entity_id))
    return levels


def _is_active(node: Node) -> bool:
    return node.properties.get("isActive", True) is not False


def rule_category(node: Node) -> str | None:
    """Composition key of a Rule: ``category``, falling back to ``ruleType``."""
    return node.properties.get("category") or node.properties.get("ruleType")


class ScopeResolver:
    """Resolves scoped configuration against a graph store."""

    def __init__(
        self,
        store: GraphStore,
        compositional_categories: Iterable[str] = ("CODE_STANDARD", "SECURITY"),
    ) -> None:
        self.store = store
        self.compositional_categories = frozenset(compositional_categories)

    async def _configs_at(
        self,
        config_type: ConfigType,
        scope: Scope,
        entity_id: str | None,
        failures: list[str],
    ) -> list[Node]:
        """Active configs of one type at one level, ordered by (createdAt, id)."""
        filters: dict[str, Any] = {"scope": scope.value}
        if entity_id is not None:
            filters["scopeEntityId"] = entity_id
        try:
            nodes = await self.store.find_nodes(NodeType(config_type.value), filters)
        except CKGError as e:
            logger.warning(
                "scope.level_query_failed",
                config_type=config_type.value,
                scope=scope.value,
                scope_entity_id=entity_id,
                error=str(e),
            )
            failures.append(f"{config_type.value}:{scope.value}")
            return []
        return [node for node in nodes if _is_active(node)]

    async def resolve_rules(
        self,
        context: ScopeContext,
        failures: list[str],
        compositional_categories: Iterable[str] | None = None,
    ) -> dict[str, Any]:
        """
        Resolve Rules for a context.

        Every active Rule competes for its ``name`` (most specific wins);
        Rules whose category is compositional are also collected from every
        level.

        Returns:
            ``{"overrideRules": {name: rule}, "compositionalRules": {category: [rule]}}``
        """
        categories = (
            frozenset(compositional_categories)
            if compositional_categories is not None
            else self.compositional_categories
        )
        override: dict[str, dict[str, Any]] = {}
        compositional: dict[str, list[dict[str, Any]]] = {}

        # Never short-circuit: composition needs every level
        for scope, entity_id in scope_hierarchy(context):
            for rule in await self._configs_at(ConfigType.RULE, scope, entity_id, failures):
                record = rule.to_record()
                name = rule.properties.get("name")
                if name and name not in override:
                    override[name] = record
                category = rule_category(rule)
                if category in categories:
                    compositional.setdefault(category, []).append(record)

        return {"overrideRules": override, "compositionalRules": compositional}

    async def _first_match(
        self,
        config_type: ConfigType,
        context: ScopeContext,
        failures: list[str],
    ) -> Node | None:
        for scope, entity_id in scope_hierarchy(context):
            candidates = await self._configs_at(config_type, scope, entity_id, failures)
            if candidates:
                logger.debug(
                    "scope.config_resolved",
                    config_type=config_type.value,
                    scope=scope.value,
                    config_id=candidates[0].id,
                )
                return candidates[0]
        return None

    async def workflow_steps(self, workflow_id: str) -> list[WorkflowStep]:
        """Steps of a Workflow ordered by ``stepOrder``."""
        pairs = await self.store.related(
            NodeType.WORKFLOW, workflow_id, "steps", NodeType.WORKFLOW_STEP
        )
        steps = [WorkflowStep.from_node(node) for _, node in pairs]
        return sorted(steps, key=lambda step: (step.step_order, step.id))

    async def resolve_workflow(
        self, context: ScopeContext, failures: list[str]
    ) -> dict[str, Any] | None:
        """Most specific active Workflow with its ordered steps, or None."""
        workflow = await self._first_match(ConfigType.WORKFLOW, context, failures)
        if workflow is None:
            return None
        record = workflow.to_record()
        try:
            steps = await self.workflow_steps(workflow.id)
        except CKGError as e:
            logger.warning("scope.workflow_steps_failed", workflow_id=workflow.id, error=str(e))
            failures.append(f"WorkflowStep:{workflow.id}")
            steps = []
        record["steps"] = [step.model_dump(by_alias=True) for step in steps]
        return record

    async def resolve_persona(
        self, context: ScopeContext, failures: list[str]
    ) -> dict[str, Any] | None:
        persona = await self._first_match(ConfigType.PERSONA, context, failures)
        return persona.to_record() if persona else None

    async def code_snippets(
        self, context: ScopeContext, failures: list[str]
    ) -> list[dict[str, Any]]:
        """Files of the context's project with their functions, classes and methods."""
        if not context.project_id:
            return []
        try:
            files = await self.store.related(
                NodeType.PROJECT, context.project_id, "files", NodeType.FILE
            )
            snippets = []
            for _, file_node in files:
                record = file_node.to_record()
                functions = await self.store.related(NodeType.FILE, file_node.id, "functions")
                classes = await self.store.related(NodeType.FILE, file_node.id, "classes")
                record["functions"] = [node.to_record() for _, node in functions]
                record["classes"] = []
                for _, class_node in classes:
                    class_record = class_node.to_record()
                    methods = await self.store.related(NodeType.CLASS, class_node.id, "methods")
                    class_record["methods"] = [node.to_record() for _, node in methods]
                    record["classes"].append(class_record)
                snippets.append(record)
        except CKGError as e:
            logger.warning(
                "scope.code_snippets_failed", project_id=context.project_id, error=str(e)
            )
            failures.append(f"code_snippets:{context.project_id}")
            return []
        return snippets

    async def resolve(
        self,
        context: ScopeContext,
        needed_context: Iterable[str],
        compositional_categories: Iterable[str] | None = None,
    ) -> ScopeResolution:
        """
        Resolve the requested context categories.

        Args:
            context: Scope entity ids that apply
            needed_context: Any of rules, workflow, persona, code_snippets
            compositional_categories: Override the configured composed categories

        Returns:
            ScopeResolution whose data holds only the requested categories
        """
        failures: list[str] = []
        data: dict[str, Any] = {}
        for category in dict.fromkeys(needed_context):
            if category == "rules":
                data["rules"] = await self.resolve_rules(
                    context, failures, compositional_categories
                )
            elif category == "workflow":
                data["workflow"] = await self.resolve_workflow(context, failures)
            elif category == "persona":
                data["persona"] = await self.resolve_persona(context, failures)
            elif category == "code_snippets":
                data["code_snippets"] = await self.code_snippets(context, failures)

        if failures:
            logger.warning("scope.resolution_partial", failed_levels=failures)
        return ScopeResolution(data=data, failed_levels=failures)
