"""
Dgraph Graph Store

Native backend speaking the Dgraph Alpha HTTP API through httpx.
Node properties are stored as ``<Type>.<field>`` predicates next to
``ckg.id``/``ckg.createdAt``/``ckg.modifiedAt``; edges are
``<SourceType>.<relation>`` uid predicates. Mapping and list values are
stored as JSON text and listed in ``ckg.jsonFields`` so they can be decoded
on read. Embeddings are ``float32vector`` predicates with an HNSW index,
written as ``"[0.1, 0.2]"`` text.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from datetime import datetime
from typing import Any, ClassVar

import httpx
import structlog

from ckg.config import Settings
from ckg.exceptions import (
    BackendUnavailableError,
    QueryExecutionError,
    SerializationError,
    ValidationError,
)
from ckg.graph.models import Node, NodeType, Relationship, parse_timestamp
from ckg.graph.schema import allowed_properties, is_vector_property
from ckg.storage import dql
from ckg.storage.base import GraphStore, aggregate_nodes


logger = structlog.get_logger(__name__)


def _encode(node_type: NodeType, name: str, value: Any) -> tuple[Any, bool]:
    """Predicate value for a property, and whether it was stored as JSON text."""
    if is_vector_property(node_type, name):
        return dql.vector_literal(value), False
    if isinstance(value, dict | list):
        return json.dumps(value), True
    return value, False


class DgraphStore(GraphStore):
    """
    Graph store backed by a Dgraph cluster.

    Transport failures raise ``BackendUnavailableError``; error answers from
    Dgraph raise ``QueryExecutionError``.
    """

    source: ClassVar[str] = "native"

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None) -> None:
        """
        Initialize store.

        Args:
            settings: Application settings (Dgraph URL and timeouts)
            client: Pre-built HTTP client (tests); built from settings otherwise
        """
        self.url = settings.dgraph_url
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            base_url=settings.dgraph_url,
            timeout=settings.dgraph_request_timeout_seconds,
        )

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        **kwargs: Any,
    ) -> Any:
        try:
            response = await self.client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise QueryExecutionError(
                self.source,
                operation,
                f"HTTP {e.response.status_code}",
                details={"body": e.response.text[:500]},
            ) from e
        except httpx.RequestError as e:
            raise BackendUnavailableError(operation, self.source, str(e)) from e

        try:
            body = response.json()
        except ValueError as e:
            raise QueryExecutionError(self.source, operation, "invalid JSON response") from e

        if isinstance(body, dict) and body.get("errors"):
            errors = body["errors"]
            raise QueryExecutionError(
                self.source,
                operation,
                str(errors[0].get("message", errors[0])),
                details={"errors": errors},
            )
        return body

    async def _query(
        self, operation: str, text: str, variables: Mapping[str, str] | None = None
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"query": text}
        if variables:
            payload["variables"] = dict(variables)
        body = await self._request(operation, "POST", "/query", json=payload)
        return body.get("data") or {}

    async def _mutate(self, operation: str, payload: dict[str, Any]) -> dict[str, Any]:
        body = await self._request(
            operation, "POST", "/mutate", params={"commitNow": "true"}, json=payload
        )
        return body.get("data") or {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """
        Verify the cluster is healthy and install the base schema.

        Raises:
            BackendUnavailableError: If Dgraph is unreachable or unhealthy
        """
        if not await self.is_available():
            raise BackendUnavailableError("connect", self.source, "health check failed")
        await self._request("alter", "POST", "/alter", content=dql.SCHEMA)
        logger.info("dgraph.connected", url=self.url)

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()
        logger.info("dgraph.disconnected")

    async def is_available(self) -> bool:
        try:
            response = await self.client.get("/health")
        except httpx.RequestError as e:
            logger.debug("dgraph.health_failed", url=self.url, error=str(e))
            return False
        if response.status_code != 200:
            return False
        try:
            body = response.json()
        except ValueError:
            return False
        entries = body if isinstance(body, list) else [body]
        return any(
            isinstance(entry, dict) and entry.get("status") == "healthy" for entry in entries
        )

    # ------------------------------------------------------------------
    # Record conversion
    # ------------------------------------------------------------------

    def _to_node(self, node_type: NodeType, record: Mapping[str, Any]) -> Node:
        node_id = str(record[dql.NODE_ID])
        try:
            json_fields = set(json.loads(record.get(dql.JSON_FIELDS) or "[]"))
        except ValueError as e:
            raise SerializationError(node_id, str(e)) from e

        prefix = f"{node_type.value}."
        properties: dict[str, Any] = {}
        for key, value in record.items():
            if not key.startswith(prefix):
                continue
            name = key[len(prefix):]
            decode = name in json_fields or is_vector_property(node_type, name)
            if decode and isinstance(value, str):
                try:
                    value = json.loads(value)
                except ValueError as e:
                    raise SerializationError(node_id, f"{name}: {e}") from e
            properties[name] = value

        return Node(
            id=node_id,
            type=node_type,
            properties=properties,
            created_at=record.get(dql.CREATED_AT, ""),
            modified_at=record.get(dql.MODIFIED_AT, ""),
        )

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    async def get_node(self, node_type: NodeType, node_id: str) -> Node | None:
        data = await self._query("getNodeById", dql.get_node(node_type), {"$id": node_id})
        records = data.get("node") or []
        return self._to_node(node_type, records[0]) if records else None

    async def find_nodes(
        self,
        node_type: NodeType,
        filters: Mapping[str, Any] | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Node]:
        text, variables = dql.find_nodes(node_type, filters or {}, limit, offset)
        data = await self._query("findNodesByLabel", text, variables)
        nodes = [self._to_node(node_type, r) for r in data.get("nodes") or []]
        nodes.sort(key=lambda n: (n.created_at, n.id))
        return nodes

    async def insert_node(self, node: Node) -> None:
        record: dict[str, Any] = {
            "uid": "_:node",
            "dgraph.type": node.type.value,
            dql.NODE_ID: node.id,
            dql.CREATED_AT: node.created_at,
            dql.MODIFIED_AT: node.modified_at,
        }
        json_fields: list[str] = []
        for name, value in node.properties.items():
            if value is None:
                continue
            encoded, is_json = _encode(node.type, name, value)
            record[dql.predicate(node.type, name)] = encoded
            if is_json:
                json_fields.append(name)
        record[dql.JSON_FIELDS] = json.dumps(sorted(json_fields))

        data = await self._mutate(
            "createNode",
            {
                "query": f"{{ existing as var(func: eq({dql.NODE_ID}, {dql.quote(node.id)})) }}",
                "cond": "@if(eq(len(existing), 0))",
                "set": [record],
            },
        )
        if not data.get("uids"):
            raise ValidationError("createNode", [f"id '{node.id}' already exists"])

    async def update_node(
        self,
        node_type: NodeType,
        node_id: str,
        properties: Mapping[str, Any],
        modified_at: str,
    ) -> Node | None:
        current = await self.get_node(node_type, node_id)
        if current is None:
            return None

        json_fields = {
            name
            for name, value in current.properties.items()
            if isinstance(value, dict | list) and not is_vector_property(node_type, name)
        }
        to_set: dict[str, Any] = {"uid": "uid(n)", dql.MODIFIED_AT: modified_at}
        to_delete: dict[str, Any] = {"uid": "uid(n)"}
        for name, value in properties.items():
            if value is None:
                to_delete[dql.predicate(node_type, name)] = None
                json_fields.discard(name)
                continue
            encoded, is_json = _encode(node_type, name, value)
            to_set[dql.predicate(node_type, name)] = encoded
            if is_json:
                json_fields.add(name)
            else:
                json_fields.discard(name)
        to_set[dql.JSON_FIELDS] = json.dumps(sorted(json_fields))

        payload: dict[str, Any] = {
            "query": f"{{ {dql.match_node('n', node_type, node_id)} }}",
            "set": [to_set],
        }
        if len(to_delete) > 1:
            payload["delete"] = [to_delete]
        await self._mutate("updateNodeProperties", payload)
        return await self.get_node(node_type, node_id)

    async def delete_node(self, node_type: NodeType, node_id: str) -> bool:
        if await self.get_node(node_type, node_id) is None:
            return False
        record: dict[str, Any] = {"uid": "uid(n)", "dgraph.type": None}
        for name in dql.SYSTEM_PREDICATES:
            record[name] = None
        for name in allowed_properties(node_type):
            record[dql.predicate(node_type, name)] = None
        await self._mutate(
            "deleteNode",
            {
                "query": f"{{ {dql.match_node('n', node_type, node_id)} }}",
                "delete": [record],
            },
        )
        return True

    # ------------------------------------------------------------------
    # Relationships
    # ------------------------------------------------------------------

    async def _edge_exists(self, relationship: Relationship) -> bool:
        data = await self._query(
            "edgeExists",
            dql.edge_exists(
                relationship.source_type, relationship.type, relationship.target_type
            ),
            {"$source": relationship.source_id, "$target": relationship.target_id},
        )
        edge = dql.predicate(relationship.source_type, relationship.type)
        return any(record.get(edge) for record in data.get("node") or [])

    def _edge_payload(self, relationship: Relationship, action: str) -> dict[str, Any]:
        edge = dql.predicate(relationship.source_type, relationship.type)
        blocks = " ".join(
            [
                dql.match_node("s", relationship.source_type, relationship.source_id),
                dql.match_node("t", relationship.target_type, relationship.target_id),
            ]
        )
        return {
            "query": f"{{ {blocks} }}",
            action: [{"uid": "uid(s)", edge: {"uid": "uid(t)"}}],
        }

    async def create_relationship(self, relationship: Relationship) -> bool:
        if await self._edge_exists(relationship):
            return False
        await self._mutate("createRelationship", self._edge_payload(relationship, "set"))
        return True

    async def delete_relationship(self, relationship: Relationship) -> bool:
        if not await self._edge_exists(relationship):
            return False
        await self._mutate("deleteRelationship", self._edge_payload(relationship, "delete"))
        return True

    async def _edge_predicates(self, node_type: NodeType | None = None) -> list[str]:
        body = await self._request("schema", "POST", "/query", json={"query": "schema {}"})
        schema = (body.get("data") or {}).get("schema") or []
        if node_type is not None:
            return dql.edge_predicates(schema, node_type)
        return sorted({p for t in NodeType for p in dql.edge_predicates(schema, t)})

    async def _resolve_stub(self, stub: Mapping[str, Any]) -> Node | None:
        for type_name in stub.get("dgraph.type") or []:
            if NodeType.has(type_name) and dql.NODE_ID in stub:
                return await self.get_node(NodeType(type_name), str(stub[dql.NODE_ID]))
        return None

    async def related(
        self,
        node_type: NodeType,
        node_id: str,
        relation_type: str | None = None,
        target_type: NodeType | None = None,
        limit: int | None = None,
    ) -> list[tuple[str, Node]]:
        if relation_type is not None:
            edges = [dql.predicate(node_type, relation_type)]
        else:
            edges = await self._edge_predicates(node_type)
        if not edges:
            return []

        data = await self._query(
            "findRelatedNodes", dql.related(node_type, edges, target_type), {"$id": node_id}
        )
        prefix_length = len(node_type.value) + 1
        pairs: list[tuple[str, Node]] = []
        for record in data.get("node") or []:
            for edge in edges:
                stubs = record.get(edge) or []
                if isinstance(stubs, dict):
                    stubs = [stubs]
                for stub in stubs:
                    node = await self._resolve_stub(stub)
                    if node is not None:
                        pairs.append((edge[prefix_length:], node))
        pairs.sort(key=lambda pair: (pair[0], pair[1].id))
        return pairs[:limit] if limit is not None else pairs

    # ------------------------------------------------------------------
    # Search & analytics
    # ------------------------------------------------------------------

    async def keyword_search(
        self,
        types: list[NodeType],
        keyword: str,
        fields: list[str] | None = None,
        limit: int = 10,
    ) -> list[Node]:
        # Matched in-process so both backends share the same semantics
        needle = keyword.lower()
        results: list[Node] = []
        for node_type in types:
            for node in await self.find_nodes(node_type):
                names = fields if fields is not None else list(node.properties)
                if any(
                    isinstance(node.properties.get(name), str)
                    and needle in node.properties[name].lower()
                    for name in names
                ):
                    results.append(node)
                    if len(results) >= limit:
                        return results
        return results

    async def vector_search(
        self,
        vector: list[float],
        field: str,
        types: list[NodeType],
        limit: int = 10,
    ) -> list[Node]:
        unindexed = [t.value for t in types if not is_vector_property(t, field)]
        if unindexed:
            raise ValidationError(
                "vectorSearch",
                [f"'{field}' is not a vector property of {name}" for name in unindexed],
            )

        results: list[Node] = []
        for node_type in types:
            data = await self._query(
                "vectorSearch",
                dql.vector_search(node_type, field, limit),
                {"$vector": dql.vector_literal(vector)},
            )
            results.extend(self._to_node(node_type, r) for r in data.get("nodes") or [])
        return results[:limit]

    async def traverse_path(
        self,
        start_id: str,
        end_id: str,
        relation_types: list[str] | None = None,
        max_depth: int = 3,
    ) -> list[Node]:
        if relation_types:
            edges = sorted({dql.predicate(t, r) for t in NodeType for r in relation_types})
        else:
            edges = await self._edge_predicates()
        if not edges:
            return []

        lookup = await self._query(
            "traversePath", dql.lookup_uids(), {"$start": start_id, "$end": end_id}
        )
        if not lookup.get("start") or not lookup.get("end"):
            return []
        start_uid = lookup["start"][0]["uid"]
        end_uid = lookup["end"][0]["uid"]

        data = await self._query(
            "traversePath", dql.shortest_path(start_uid, end_uid, edges, max_depth)
        )
        stubs = {stub["uid"]: stub for stub in data.get("nodes") or []}
        order: list[str] = []
        paths = data.get("_path_") or []
        hop: Any = paths[0] if paths else None
        while isinstance(hop, dict):
            order.append(hop["uid"])
            hop = next(
                (
                    value[0] if isinstance(value, list) else value
                    for key, value in hop.items()
                    if key in edges and value
                ),
                None,
            )

        path: list[Node] = []
        for uid in order:
            node = await self._resolve_stub(stubs.get(uid, {}))
            if node is not None:
                path.append(node)
        return path

    async def aggregate(
        self,
        node_type: NodeType,
        group_by: str,
        field: str,
        function: str,
    ) -> list[dict[str, Any]]:
        return aggregate_nodes(await self.find_nodes(node_type), group_by, field, function)

    async def find_timepoints(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        event_types: list[str] | None = None,
        entity_types: list[str] | None = None,
        entity_id: str | None = None,
    ) -> list[Node]:
        data = await self._query(
            "findTimeRelatedEvents", dql.timepoints(event_types, entity_types, entity_id)
        )
        results: list[Node] = []
        for record in data.get("nodes") or []:
            node = self._to_node(NodeType.TIME_POINT, record)
            timestamp = parse_timestamp(node.properties["timestamp"])
            if start is not None and timestamp < parse_timestamp(start):
                continue
            if end is not None and timestamp > parse_timestamp(end):
                continue
            results.append(node)
        return results
