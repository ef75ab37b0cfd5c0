"""
Graph Store Interface

Abstract async interface implemented by the native Dgraph backend and the
local JSON fallback. Higher layers depend only on this class; which backend
answers is chosen once, at engine construction.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Iterable, Mapping
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, ClassVar

from ckg.graph.models import Node, NodeType, Relationship


def _numeric(values: list[Any]) -> list[float]:
    return [
        float(v) for v in values if isinstance(v, int | float) and not isinstance(v, bool)
    ]


def aggregate_nodes(
    nodes: Iterable[Node],
    group_by: str,
    field: str,
    function: str,
) -> list[dict[str, Any]]:
    """
    Group nodes by one property and aggregate another.

    ``count`` counts nodes carrying ``field``; ``min``/``max``/``sum``/``avg``
    consider numeric values only and yield ``None`` for a group without any.

    Args:
        nodes: Nodes to aggregate
        group_by: Property whose value forms the group key
        field: Property to aggregate
        function: One of count, min, max, sum, avg

    Returns:
        ``[{"group": key, "value": aggregate, "count": members}]`` ordered
        by the string form of the group key
    """
    groups: dict[Any, list[Any]] = {}
    members: dict[Any, int] = {}
    for node in nodes:
        key = node.properties.get(group_by)
        if isinstance(key, dict | list):
            key = str(key)
        members[key] = members.get(key, 0) + 1
        bucket = groups.setdefault(key, [])
        if field in node.properties:
            bucket.append(node.properties[field])

    rows: list[dict[str, Any]] = []
    for key in sorted(groups, key=lambda k: "" if k is None else str(k)):
        values = groups[key]
        numbers = _numeric(values)
        value: Any
        if function == "count":
            value = len(values)
        elif not numbers:
            value = None
        elif function == "min":
            value = min(numbers)
        elif function == "max":
            value = max(numbers)
        elif function == "sum":
            value = sum(numbers)
        else:
            value = sum(numbers) / len(numbers)
        rows.append({"group": key, "value": value, "count": members[key]})
    return rows


class GraphStore(ABC):
    """
    Typed node and relationship storage.

    Implementations wrap their library errors in ``ckg.exceptions`` types:
    ``BackendUnavailableError`` for unreachable backends or missing
    capabilities, ``QueryExecutionError`` for backend-reported failures and
    ``StorageError`` for local file I/O.
    """

    source: ClassVar[str]

    async def connect(self) -> None:
        """Open connections or load persisted state."""

    async def close(self) -> None:
        """Release connections and flush pending state."""

    @abstractmethod
    async def is_available(self) -> bool:
        """Return True if the backend can currently serve requests."""

    @abstractmethod
    async def get_node(self, node_type: NodeType, node_id: str) -> Node | None:
        """Fetch one node, or None if it does not exist."""

    @abstractmethod
    async def find_nodes(
        self,
        node_type: NodeType,
        filters: Mapping[str, Any] | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Node]:
        """List nodes of a type whose properties equal every filter value.

        Results are ordered by ``(createdAt, id)``.
        """

    @abstractmethod
    async def insert_node(self, node: Node) -> None:
        """Persist a new node.

        Raises:
            ValidationError: If a node with the same id already exists
        """

    @abstractmethod
    async def update_node(
        self,
        node_type: NodeType,
        node_id: str,
        properties: Mapping[str, Any],
        modified_at: str,
    ) -> Node | None:
        """Merge ``properties`` into a node and stamp ``modifiedAt``.

        Returns:
            The updated node, or None if it does not exist
        """

    @abstractmethod
    async def delete_node(self, node_type: NodeType, node_id: str) -> bool:
        """Remove a node. Relationships and TimePoints are left in place."""

    @abstractmethod
    async def create_relationship(self, relationship: Relationship) -> bool:
        """Add a directed edge. Returns False if it already existed."""

    @abstractmethod
    async def delete_relationship(self, relationship: Relationship) -> bool:
        """Remove a directed edge. Returns False if it did not exist."""

    @abstractmethod
    async def related(
        self,
        node_type: NodeType,
        node_id: str,
        relation_type: str | None = None,
        target_type: NodeType | None = None,
        limit: int | None = None,
    ) -> list[tuple[str, Node]]:
        """Outgoing neighbours as ``(relation, node)`` pairs ordered by relation then id.

        Edges whose target node no longer exists are skipped.
        """

    @abstractmethod
    async def keyword_search(
        self,
        types: list[NodeType],
        keyword: str,
        fields: list[str] | None = None,
        limit: int = 10,
    ) -> list[Node]:
        """Case-insensitive text match over string properties."""

    @abstractmethod
    async def vector_search(
        self,
        vector: list[float],
        field: str,
        types: list[NodeType],
        limit: int = 10,
    ) -> list[Node]:
        """Nearest neighbours of ``vector`` on an embedding property."""

    @abstractmethod
    async def traverse_path(
        self,
        start_id: str,
        end_id: str,
        relation_types: list[str] | None = None,
        max_depth: int = 3,
    ) -> list[Node]:
        """Nodes along a shortest directed path, empty when unreachable."""

    @abstractmethod
    async def aggregate(
        self,
        node_type: NodeType,
        group_by: str,
        field: str,
        function: str,
    ) -> list[dict[str, Any]]:
        """Grouped aggregate, see :func:`aggregate_nodes`."""

    @abstractmethod
    async def find_timepoints(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        event_types: list[str] | None = None,
        entity_types: list[str] | None = None,
        entity_id: str | None = None,
    ) -> list[Node]:
        """TimePoint nodes inside an inclusive window, in any order."""

    @asynccontextmanager
    async def deferred_writes(self) -> AsyncIterator[None]:
        """Group writes so they are persisted once, on exit.

        Backends that commit every mutation immediately ignore this.
        """
        yield
