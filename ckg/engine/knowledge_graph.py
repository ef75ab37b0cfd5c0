"""
Knowledge Graph Engine

Entry point for the query, update and dependency-analysis contracts.
The engine owns no globals: the store, the optional cache and the settings
are passed in, so several isolated engines can coexist.

Every query and update returns an ``OperationResult`` envelope. Errors are
caught here and reported as ``{success: false, error}``; they never escape
``query()`` or ``update()``.
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from contextlib import AbstractAsyncContextManager, nullcontext
from typing import Any

import structlog
from pydantic import ValidationError as PydanticValidationError

from ckg.config import Settings
from ckg.engine.dependencies import DependencyPlanner
from ckg.engine.scope import ScopeResolver
from ckg.engine.temporal import TemporalIndex
from ckg.exceptions import CacheError, CKGError, NotFoundError, ValidationError
from ckg.graph import requests as rq
from ckg.graph.models import (
    SCOPE_ENTITY_TYPES,
    ConfigType,
    EventType,
    Node,
    NodeType,
    Relationship,
    Scope,
    TimePoint,
    new_id,
    to_timestamp,
    utc_now,
)
from ckg.graph.results import DependencyAnalysis, OperationResult
from ckg.graph.schema import validate_properties
from ckg.observability.logging import log_operation
from ckg.observability.metrics import (
    ckg_cache_requests_total,
    ckg_partial_results_total,
    ckg_queries_total,
    ckg_query_duration_seconds,
    ckg_updates_total,
)
from ckg.storage.base import GraphStore
from ckg.storage.cache import QueryCache
from ckg.storage.factory import select_store


logger = structlog.get_logger(__name__)


def _records(nodes: list[Node], required: list[str] | None) -> list[dict[str, Any]]:
    return [node.to_record(required) for node in nodes]


def _raw_name(raw: Any, key: str, fallback: str) -> str:
    if isinstance(raw, dict) and isinstance(raw.get(key), str):
        return raw[key]
    return getattr(raw, "query_type", None) or getattr(raw, "update_type", None) or fallback


def _metric_label(name: str, known: frozenset[str]) -> str:
    """Operation label for metrics, limited to the known operation names."""
    return name if name in known else "invalid"


class KnowledgeGraph:
    """
    Query, update and planning facade over one graph store.

    Example:
        >>> graph = await KnowledgeGraph.open(settings)
        >>> result = await graph.query(
        ...     {"queryType": "getNodeById", "parameters": {"nodeType": "Task", "id": "t1"}}
        ... )
        >>> result.success, result.source
        (True, 'local')
    """

    def __init__(
        self,
        store: GraphStore,
        settings: Settings,
        cache: QueryCache | None = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.cache = cache
        self.temporal = TemporalIndex(store)
        self.resolver = ScopeResolver(store, settings.compositional_rule_categories)
        self.planner = DependencyPlanner(store, self.resolver, settings.cycle_policy)

    @classmethod
    async def open(cls, settings: Settings) -> KnowledgeGraph:
        """
        Select a store backend and connect the cache.

        The engine starts without a cache when caching is disabled or Redis
        is unreachable.
        """
        store = await select_store(settings)
        cache: QueryCache | None = None
        if settings.cache_enabled:
            candidate = QueryCache(settings)
            try:
                await candidate.connect()
            except CacheError as e:
                logger.warning("cache.disabled", reason=str(e))
            else:
                cache = candidate
        return cls(store, settings, cache)

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.disconnect()
        await self.store.close()

    @property
    def backend(self) -> str:
        return self.store.source

    # ==================================================================
    # Boundary
    # ==================================================================

    async def _guard(
        self,
        kind: str,
        operation: str,
        call: Callable[[], Awaitable[OperationResult]],
    ) -> OperationResult:
        """Run one operation, converting every error into a failed envelope."""
        started = time.perf_counter()
        try:
            result = await call()
        except ValidationError as e:
            result = OperationResult.fail(str(e))
        except CKGError as e:
            result = OperationResult.fail(str(e), source=self.store.source)
        except PydanticValidationError as e:
            result = OperationResult.fail(f"Invalid {operation} data: {e}")
        except Exception as e:
            logger.exception(f"{kind}.unexpected_error", operation=operation)
            result = OperationResult.fail(f"{operation} failed: {e}")

        elapsed_ms = (time.perf_counter() - started) * 1000
        result.with_timing(elapsed_ms)
        if result.partial:
            ckg_partial_results_total.labels(operation=operation).inc()
        log_operation(
            logger,
            kind,
            operation,
            result.success,
            result.source,
            elapsed_ms,
            result.error,
        )
        return result

    # ==================================================================
    # Queries
    # ==================================================================

    async def query(self, request: Any) -> OperationResult:
        """
        Serve a query request.

        Args:
            request: Query mapping in wire form, or an already parsed variant

        Returns:
            Result envelope; ``data`` is None when a node is absent
        """
        operation = _raw_name(request, "queryType", "query")
        started = time.perf_counter()

        async def call() -> OperationResult:
            parsed = rq.parse_query(request)
            return await self._cached_query(parsed)

        result = await self._guard("query", operation, call)
        status = "success" if result.success else "failure"
        label = _metric_label(operation, rq.QUERY_TYPES)
        ckg_queries_total.labels(
            query_type=label, source=result.source or "none", status=status
        ).inc()
        ckg_query_duration_seconds.labels(query_type=label).observe(
            time.perf_counter() - started
        )
        return result

    async def _cached_query(self, parsed: rq.BaseQuery) -> OperationResult:
        query_type: str = parsed.query_type  # type: ignore[attr-defined]
        cache = self.cache if parsed.cache_options.use_cache else None
        if cache is None:
            return await self._execute_query(parsed)

        params = parsed.parameters  # type: ignore[attr-defined]
        key = cache.key_for(
            query_type,
            params.model_dump(by_alias=True, mode="json"),
            parsed.required_properties,
        )
        try:
            cached = await cache.get_json(key)
        except CacheError as e:
            ckg_cache_requests_total.labels(result="error").inc()
            logger.warning("cache.lookup_failed", query_type=query_type, error=str(e))
            cached = None
        else:
            ckg_cache_requests_total.labels(result="hit" if cached else "miss").inc()
        if isinstance(cached, dict) and "data" in cached:
            return OperationResult.ok(cached["data"], source="cache")

        result = await self._execute_query(parsed)

        if result.success and not result.partial:
            ttl = parsed.cache_options.ttl_seconds or self.settings.cache_default_ttl_seconds
            try:
                await cache.set_json(key, {"data": result.data}, ttl)
            except CacheError as e:
                logger.warning("cache.store_failed", query_type=query_type, error=str(e))
        return result

    async def _execute_query(self, parsed: Any) -> OperationResult:
        handlers: dict[str, Callable[[Any], Awaitable[OperationResult]]] = {
            "getNodeById": self._get_node_by_id,
            "findNodesByLabel": self._find_nodes_by_label,
            "findRelatedNodes": self._find_related_nodes,
            "keywordSearch": self._keyword_search,
            "vectorSearch": self._vector_search,
            "traversePath": self._traverse_path,
            "aggregateData": self._aggregate_data,
            "resolveConfigByScope": self._resolve_config_by_scope,
            "findTimeRelatedEvents": self._find_time_related_events,
            "getEntityHistory": self._get_entity_history,
        }
        return await handlers[parsed.query_type](parsed)

    async def _get_node_by_id(self, parsed: rq.GetNodeByIdQuery) -> OperationResult:
        params = parsed.parameters
        node = await self.store.get_node(params.node_type, params.id)
        data = node.to_record(parsed.required_properties) if node else None
        return OperationResult.ok(data, self.store.source)

    async def _find_nodes_by_label(self, parsed: rq.FindNodesByLabelQuery) -> OperationResult:
        params = parsed.parameters
        nodes = await self.store.find_nodes(
            params.label, params.filter, params.limit, params.offset
        )
        return OperationResult.ok(_records(nodes, parsed.required_properties), self.store.source)

    async def _find_related_nodes(self, parsed: rq.FindRelatedNodesQuery) -> OperationResult:
        """Related nodes as a list, or grouped by relation when none is given."""
        params = parsed.parameters
        required = parsed.required_properties
        pairs = await self.store.related(
            params.node_type,
            params.node_id,
            params.relation_type,
            params.target_type,
            params.limit,
        )
        if params.relation_type is not None:
            return OperationResult.ok(
                [node.to_record(required) for _, node in pairs], self.store.source
            )
        grouped: dict[str, list[dict[str, Any]]] = {}
        for relation, node in pairs:
            grouped.setdefault(relation, []).append(node.to_record(required))
        return OperationResult.ok(grouped, self.store.source)

    async def _keyword_search(self, parsed: rq.KeywordSearchQuery) -> OperationResult:
        params = parsed.parameters
        nodes = await self.store.keyword_search(
            params.types, params.keyword, params.fields, params.limit
        )
        return OperationResult.ok(_records(nodes, parsed.required_properties), self.store.source)

    async def _vector_search(self, parsed: rq.VectorSearchQuery) -> OperationResult:
        params = parsed.parameters
        nodes = await self.store.vector_search(
            params.vector, params.field, params.types, params.limit
        )
        return OperationResult.ok(_records(nodes, parsed.required_properties), self.store.source)

    async def _traverse_path(self, parsed: rq.TraversePathQuery) -> OperationResult:
        params = parsed.parameters
        nodes = await self.store.traverse_path(
            params.start_node_id,
            params.end_node_id,
            params.relation_types,
            params.max_depth,
        )
        return OperationResult.ok(_records(nodes, parsed.required_properties), self.store.source)

    async def _aggregate_data(self, parsed: rq.AggregateDataQuery) -> OperationResult:
        params = parsed.parameters
        rows = await self.store.aggregate(
            params.node_type,
            params.group_by,
            params.aggregate_field,
            params.aggregate_function,
        )
        return OperationResult.ok(rows, self.store.source)

    async def _resolve_config_by_scope(
        self, parsed: rq.ResolveConfigByScopeQuery
    ) -> OperationResult:
        params = parsed.parameters
        resolution = await self.resolver.resolve(
            params.context_scope,
            params.needed_context,
            params.compositional_categories,
        )
        return OperationResult.ok(
            resolution.to_wire(), self.store.source, partial=resolution.partial
        )

    async def _find_time_related_events(
        self, parsed: rq.FindTimeRelatedEventsQuery
    ) -> OperationResult:
        params = parsed.parameters
        events = await self.temporal.find_events(
            params.start_time,
            params.end_time,
            params.event_types,
            params.entity_types,
        )
        return OperationResult.ok([tp.to_record() for tp in events], self.store.source)

    async def _get_entity_history(self, parsed: rq.GetEntityHistoryQuery) -> OperationResult:
        params = parsed.parameters
        history = await self.temporal.entity_history(
            params.entity_id,
            params.entity_type,
            params.start_time,
            params.end_time,
        )
        return OperationResult.ok(history, self.store.source)

    # ==================================================================
    # Updates
    # ==================================================================

    async def update(self, request: Any) -> OperationResult:
        """
        Apply an update request.

        ``batchUpdate`` runs its operations in order and reports one result
        per operation; a failure does not undo earlier operations.

        Args:
            request: Update mapping in wire form, or an already parsed variant

        Returns:
            Result envelope
        """
        operation = _raw_name(request, "updateType", "update")

        async def call() -> OperationResult:
            parsed = rq.parse_update(request)
            if isinstance(parsed, rq.BatchUpdate):
                return await self._batch(parsed.parameters)
            return await self._execute_update(parsed)

        result = await self._guard("update", operation, call)
        ckg_updates_total.labels(
            update_type=_metric_label(operation, rq.UPDATE_TYPES),
            status="success" if result.success else "failure",
        ).inc()
        return result

    async def _batch(self, params: rq.BatchUpdateParams) -> OperationResult:
        scope: AbstractAsyncContextManager[None] = (
            nullcontext() if params.commit_now else self.store.deferred_writes()
        )
        results: list[dict[str, Any]] = []
        async with scope:
            for index, operation in enumerate(params.operations):
                result = await self._guard(
                    "update",
                    operation.update_type,
                    lambda op=operation: self._execute_update(op),
                )
                ckg_updates_total.labels(
                    update_type=operation.update_type,
                    status="success" if result.success else "failure",
                ).inc()
                entry = result.to_wire()
                entry["index"] = index
                entry["updateType"] = operation.update_type
                results.append(entry)

        failed = sum(1 for entry in results if not entry["success"])
        logger.info(
            "update.batch_applied",
            operations=len(results),
            failed=failed,
            commit_now=params.commit_now,
        )
        return OperationResult.ok({"results": results}, self.store.source)

    async def _execute_update(self, parsed: Any) -> OperationResult:
        params = parsed.parameters
        source = self.store.source
        update_type = parsed.update_type

        if update_type == "createNode":
            node_id, timepoint = await self._create_node(
                "createNode", params.node_type, dict(params.properties)
            )
            return OperationResult.ok({"id": node_id, "timePointId": timepoint.id}, source)

        if update_type == "updateNodeProperties":
            timepoint = await self._update_node(params)
            return OperationResult.ok(
                {
                    "id": params.node_id,
                    "timePointId": timepoint.id,
                    "eventType": timepoint.event_type.value,
                },
                source,
            )

        if update_type == "createRelationship":
            created = await self.store.create_relationship(self._relationship(params))
            return OperationResult.ok({"created": created}, source)

        if update_type == "deleteRelationship":
            deleted = await self.store.delete_relationship(self._relationship(params))
            return OperationResult.ok({"deleted": deleted}, source)

        if update_type == "deleteNode":
            deleted = await self.store.delete_node(params.node_type, params.node_id)
            return OperationResult.ok({"deleted": deleted}, source)

        if update_type == "createScopedConfig":
            return OperationResult.ok(await self._create_scoped_config(params), source)

        if update_type == "createTimePoint":
            timepoint = await self.temporal.record(
                params.entity_id,
                params.entity_type,
                params.event_type,
                params.timestamp,
                params.metadata,
            )
            return OperationResult.ok(timepoint.to_record(), source)

        raise ValidationError("update", [f"unsupported update type {update_type}"])

    @staticmethod
    def _relationship(params: rq.RelationshipParams) -> Relationship:
        return Relationship(
            type=params.relation_type,
            source_type=params.from_type,
            source_id=params.from_id,
            target_type=params.to_type,
            target_id=params.to_id,
        )

    async def _create_node(
        self,
        operation: str,
        node_type: NodeType,
        properties: dict[str, Any],
    ) -> tuple[str, TimePoint]:
        """Insert a node, then record its CREATION TimePoint."""
        validate_properties(operation, node_type, properties, allow_id=True)
        node_id = properties.pop("id", None) or new_id()
        now = to_timestamp(utc_now())
        await self.store.insert_node(
            Node(
                id=node_id,
                type=node_type,
                properties=properties,
                created_at=now,
                modified_at=now,
            )
        )
        timepoint = await self.temporal.record(
            node_id,
            node_type.value,
            EventType.CREATION,
            metadata={"nodeType": node_type.value},
        )
        return node_id, timepoint

    async def _update_node(self, params: rq.UpdateNodePropertiesParams) -> TimePoint:
        """Merge properties, then record a STATUS_CHANGE or MODIFICATION TimePoint."""
        properties = dict(params.properties)
        old_status = properties.pop("oldStatus", None)
        if not properties:
            raise ValidationError(
                "updateNodeProperties", ["properties must change at least one field"]
            )
        validate_properties("updateNodeProperties", params.node_type, properties)

        current = await self.store.get_node(params.node_type, params.node_id)
        if current is None:
            raise NotFoundError(params.node_type.value, params.node_id)

        updated = await self.store.update_node(
            params.node_type, params.node_id, properties, to_timestamp(utc_now())
        )
        if updated is None:
            raise NotFoundError(params.node_type.value, params.node_id)

        metadata: dict[str, Any] = {"changedProperties": list(properties)}
        if "status" in properties:
            event_type = EventType.STATUS_CHANGE
            metadata["previousStatus"] = (
                old_status if old_status is not None else current.properties.get("status")
            )
            metadata["newStatus"] = properties["status"]
        else:
            event_type = EventType.MODIFICATION

        return await self.temporal.record(
            params.node_id, params.node_type.value, event_type, metadata=metadata
        )

    def _workflow_steps(
        self, raw_steps: Any
    ) -> list[dict[str, Any]]:
        """Validate ``configData.steps`` and order it by ``stepOrder``."""
        if not isinstance(raw_steps, list):
            raise ValidationError("createScopedConfig", ["configData.steps must be a list"])

        failures: list[str] = []
        steps: list[dict[str, Any]] = []
        for index, raw in enumerate(raw_steps):
            if not isinstance(raw, dict):
                failures.append(f"steps[{index}] must be an object")
                continue
            order = raw.get("stepOrder")
            if not isinstance(order, int) or isinstance(order, bool):
                failures.append(f"steps[{index}].stepOrder must be an integer")
                continue
            step = dict(raw)
            try:
                validate_properties(
                    "createScopedConfig", NodeType.WORKFLOW_STEP, step, allow_id=True
                )
            except ValidationError as e:
                failures.extend(f"steps[{index}]: {failure}" for failure in e.failures)
                continue
            steps.append(step)

        orders = [step["stepOrder"] for step in steps]
        if len(set(orders)) != len(orders):
            failures.append("stepOrder values must be unique within a workflow")
        if failures:
            raise ValidationError("createScopedConfig", failures)
        return sorted(steps, key=lambda step: step["stepOrder"])

    async def _create_scoped_config(
        self, params: rq.CreateScopedConfigParams
    ) -> dict[str, Any]:
        """
        Create a Rule, Workflow or Persona bound to a scope.

        The scope entity is linked to the config (``rules``, ``workflows`` or
        ``personas``). A Workflow's ``configData.steps`` become WorkflowStep
        nodes linked by ``steps`` edges and chained through ``nextStep``.
        """
        config_type: ConfigType = params.config_type
        node_type = NodeType(config_type.value)
        properties = dict(params.config_data)

        steps: list[dict[str, Any]] = []
        if config_type is ConfigType.WORKFLOW and "steps" in properties:
            steps = self._workflow_steps(properties.pop("steps"))

        properties["scope"] = params.scope.value
        properties.setdefault("isActive", True)
        if params.scope_entity_id is not None:
            properties["scopeEntityId"] = params.scope_entity_id

        config_id, _ = await self._create_node("createScopedConfig", node_type, properties)

        # request validation requires scopeEntityId outside DEFAULT
        entity_id = params.scope_entity_id
        if params.scope is not Scope.DEFAULT and entity_id is not None:
            await self.store.create_relationship(
                Relationship(
                    type=config_type.relation,
                    source_type=SCOPE_ENTITY_TYPES[params.scope],
                    source_id=entity_id,
                    target_type=node_type,
                    target_id=config_id,
                )
            )

        step_ids = [step.pop("id", None) or new_id() for step in steps]
        for index, step in enumerate(steps):
            step["id"] = step_ids[index]
            step["workflowId"] = config_id
            if index + 1 < len(steps):
                step["nextStep"] = step_ids[index + 1]
            await self._create_node("createScopedConfig", NodeType.WORKFLOW_STEP, step)
            await self.store.create_relationship(
                Relationship(
                    type="steps",
                    source_type=NodeType.WORKFLOW,
                    source_id=config_id,
                    target_type=NodeType.WORKFLOW_STEP,
                    target_id=step_ids[index],
                )
            )

        logger.info(
            "config.created",
            config_type=config_type.value,
            config_id=config_id,
            scope=params.scope.value,
            steps=len(step_ids),
        )
        return {"configId": config_id, "stepIds": step_ids}

    # ==================================================================
    # Dependency analysis
    # ==================================================================

    async def analyze_task_dependencies(self, parent_task_id: str) -> DependencyAnalysis:
        """
        Dependency graph and execution plan for a parent task's children.

        Raises:
            NotFoundError: If the parent task does not exist
            CycleDetectedError: On a dependency cycle with ``cycle_policy=raise``
        """
        return await self.planner.analyze(parent_task_id)
