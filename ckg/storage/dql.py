"""
DQL Query Builder

Renders Dgraph queries from node types and identifiers that have already
been validated by the request models. Caller-supplied values never enter
query text directly: they travel as query variables, or as JSON-quoted
literals inside upsert blocks.
"""

from __future__ import annotations

import json
import re
from collections.abc import Iterable, Mapping
from typing import Any

from ckg.graph.models import NodeType
from ckg.graph.schema import VECTOR_PROPERTIES, allowed_properties, is_identifier


NODE_ID = "ckg.id"
CREATED_AT = "ckg.createdAt"
MODIFIED_AT = "ckg.modifiedAt"
JSON_FIELDS = "ckg.jsonFields"
SYSTEM_PREDICATES = (NODE_ID, CREATED_AT, MODIFIED_AT, JSON_FIELDS)

SCHEMA = "\n".join(
    [
        f"{NODE_ID}: string @index(exact) @upsert .",
        f"{CREATED_AT}: string @index(exact) .",
        f"{MODIFIED_AT}: string .",
        f"{JSON_FIELDS}: string .",
        "TimePoint.entityId: string @index(exact) .",
        "TimePoint.eventType: string @index(exact) .",
        *(
            f'{node_type.value}.{name}: float32vector @index(hnsw(metric: "cosine")) .'
            for node_type, names in VECTOR_PROPERTIES.items()
            for name in sorted(names)
        ),
    ]
)

_UID = re.compile(r"^0x[0-9a-fA-F]+$")


def quote(value: Any) -> str:
    """Render a value as a DQL string literal."""
    return json.dumps(str(value))


def predicate(node_type: NodeType, name: str) -> str:
    """Type-qualified predicate for a property or outgoing edge."""
    if not is_identifier(name):
        raise ValueError(f"Invalid identifier: {name!r}")
    return f"{node_type.value}.{name}"


def check_uid(uid: str) -> str:
    if not _UID.match(uid):
        raise ValueError(f"Invalid uid: {uid!r}")
    return uid


def vector_literal(values: Iterable[float]) -> str:
    """Text form Dgraph accepts for a float32vector value or a similar_to query."""
    return json.dumps([float(v) for v in values])


def variable_value(value: Any) -> tuple[str, str]:
    """DQL variable type and string encoding for a scalar."""
    if isinstance(value, bool):
        return "bool", "true" if value else "false"
    if isinstance(value, int):
        return "int", str(value)
    if isinstance(value, float):
        return "float", repr(value)
    return "string", str(value)


def node_selection(node_type: NodeType) -> str:
    """Predicates fetched for every node of ``node_type``."""
    fields = ["uid", *SYSTEM_PREDICATES]
    fields.extend(predicate(node_type, name) for name in sorted(allowed_properties(node_type)))
    return " ".join(fields)


def get_node(node_type: NodeType) -> str:
    return (
        "query GetNode($id: string) {\n"
        f"  node(func: eq({NODE_ID}, $id)) @filter(type({node_type.value})) {{\n"
        f"    {node_selection(node_type)}\n"
        "  }\n"
        "}"
    )


def find_nodes(
    node_type: NodeType,
    filters: Mapping[str, Any],
    first: int | None = None,
    offset: int = 0,
) -> tuple[str, dict[str, str]]:
    """Nodes of one type matching every equality filter, oldest first."""
    declarations: list[str] = []
    variables: dict[str, str] = {}
    clauses = [f"type({node_type.value})"]
    for index, (name, value) in enumerate(filters.items()):
        var_type, encoded = variable_value(value)
        var = f"$f{index}"
        declarations.append(f"{var}: {var_type}")
        variables[var] = encoded
        target = NODE_ID if name == "id" else predicate(node_type, name)
        clauses.append(f"eq({target}, {var})")

    paging = f", offset: {int(offset)}"
    if first is not None:
        paging = f", first: {int(first)}{paging}"
    signature = f"query FindNodes({', '.join(declarations)})" if declarations else ""
    text = (
        f"{signature} {{\n"
        f"  nodes(func: type({node_type.value}), orderasc: {CREATED_AT}{paging})"
        f" @filter({' AND '.join(clauses)}) {{\n"
        f"    {node_selection(node_type)}\n"
        "  }\n"
        "}"
    )
    return text, variables


def edge_predicates(schema: Iterable[Mapping[str, Any]], node_type: NodeType) -> list[str]:
    """Outgoing uid predicates of ``node_type`` listed in a ``schema {}`` answer."""
    prefix = f"{node_type.value}."
    return sorted(
        entry["predicate"]
        for entry in schema
        if entry.get("type") == "uid" and str(entry.get("predicate", "")).startswith(prefix)
    )


def related(
    node_type: NodeType,
    edges: list[str],
    target_type: NodeType | None = None,
) -> str:
    """Targets of the given edge predicates, as ``uid dgraph.type ckg.id`` stubs."""
    target_filter = f" @filter(type({target_type.value}))" if target_type else ""
    blocks = "\n".join(
        f"    {edge}{target_filter} {{ uid dgraph.type {NODE_ID} }}" for edge in edges
    )
    return (
        "query Related($id: string) {\n"
        f"  node(func: eq({NODE_ID}, $id)) @filter(type({node_type.value})) {{\n"
        f"{blocks}\n"
        "  }\n"
        "}"
    )


def edge_exists(source_type: NodeType, relation: str, target_type: NodeType) -> str:
    edge = predicate(source_type, relation)
    return (
        "query EdgeExists($source: string, $target: string) {\n"
        f"  node(func: eq({NODE_ID}, $source)) @filter(type({source_type.value})) {{\n"
        f"    {edge} @filter(eq({NODE_ID}, $target) AND type({target_type.value})) {{ uid }}\n"
        "  }\n"
        "}"
    )


def lookup_uids() -> str:
    return (
        "query Lookup($start: string, $end: string) {\n"
        f"  start(func: eq({NODE_ID}, $start)) {{ uid }}\n"
        f"  end(func: eq({NODE_ID}, $end)) {{ uid }}\n"
        "}"
    )


def shortest_path(start_uid: str, end_uid: str, edges: list[str], depth: int) -> str:
    """Shortest path over ``edges`` plus the type and id of every node on it."""
    return (
        "{\n"
        f"  path as shortest(from: {check_uid(start_uid)}, to: {check_uid(end_uid)},"
        f" depth: {int(depth)}) {{\n"
        f"    {' '.join(edges)}\n"
        "  }\n"
        f"  nodes(func: uid(path)) {{ uid dgraph.type {NODE_ID} }}\n"
        "}"
    )


def vector_search(node_type: NodeType, field: str, limit: int) -> str:
    return (
        "query VectorSearch($vector: string) {\n"
        f"  nodes(func: similar_to({predicate(node_type, field)}, {int(limit)}, $vector)) {{\n"
        f"    {node_selection(node_type)}\n"
        "  }\n"
        "}"
    )


def timepoints(
    event_types: list[str] | None = None,
    entity_types: list[str] | None = None,
    entity_id: str | None = None,
) -> str:
    clauses = ["type(TimePoint)"]
    if entity_id is not None:
        clauses.append(f"eq(TimePoint.entityId, {quote(entity_id)})")
    if event_types:
        clauses.append(
            f"eq(TimePoint.eventType, [{', '.join(quote(e) for e in event_types)}])"
        )
    if entity_types:
        clauses.append(
            f"eq(TimePoint.entityType, [{', '.join(quote(e) for e in entity_types)}])"
        )
    return (
        "{\n"
        f"  nodes(func: type(TimePoint)) @filter({' AND '.join(clauses)}) {{\n"
        f"    {node_selection(NodeType.TIME_POINT)}\n"
        "  }\n"
        "}"
    )


def match_node(var: str, node_type: NodeType, node_id: str) -> str:
    """Upsert-block variable bound to the node with ``node_id``."""
    if not is_identifier(var):
        raise ValueError(f"Invalid variable: {var!r}")
    return f"{var} as var(func: eq({NODE_ID}, {quote(node_id)})) @filter(type({node_type.value}))"
