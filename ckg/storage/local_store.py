"""
Local Graph Store

File-backed fallback used when the native graph engine is unreachable.
Keeps one JSON document per node type plus a relationships document under
a directory, read and written with aiofiles. Without a directory the store
is purely in-memory, which is what the tests use.
"""

from __future__ import annotations

import asyncio
import json
from collections import deque
from collections.abc import AsyncIterator, Callable, Mapping
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, ClassVar

import aiofiles
import structlog

from ckg.exceptions import BackendUnavailableError, StorageError, ValidationError
from ckg.graph.models import Node, NodeType, Relationship, parse_timestamp
from ckg.storage.base import GraphStore, aggregate_nodes


logger = structlog.get_logger(__name__)

RELATIONSHIPS_FILE = "_relationships.json"

# Marks the relationships document in the dirty set
_EDGES = "edges"


def _document_path(root: Path, node_type: NodeType) -> Path:
    return root / f"{node_type.value.lower()}.json"


def _sort_key(node: Node) -> tuple[str, str]:
    return (node.created_at, node.id)


class LocalGraphStore(GraphStore):
    """
    JSON document store with in-memory indexes.

    All mutations run under one asyncio lock and are flushed to disk after
    each write, or once at the end of a ``deferred_writes()`` block.
    """

    source: ClassVar[str] = "local"

    def __init__(self, path: Path | str | None = None) -> None:
        """
        Initialize store.

        Args:
            path: Directory for the JSON documents (None = in-memory only)
        """
        self.path = Path(path) if path is not None else None
        self._nodes: dict[NodeType, dict[str, Node]] = {t: {} for t in NodeType}
        self._types: dict[str, NodeType] = {}
        self._edges: dict[tuple[str, str, str, str, str], Relationship] = {}
        self._dirty: set[str] = set()
        self._defer_depth = 0
        self._lock = asyncio.Lock()

    async def connect(self) -> None:
        """
        Load persisted documents.

        Raises:
            StorageError: If a document cannot be read or decoded
        """
        if self.path is None:
            logger.info("local_store.connected", persistent=False)
            return

        try:
            self.path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(str(self.path), str(e)) from e

        for node_type in NodeType:
            document = await self._read(_document_path(self.path, node_type))
            for record in document.get("nodes", []):
                node = Node.model_validate(record)
                self._nodes[node_type][node.id] = node
                self._types[node.id] = node_type

        document = await self._read(self.path / RELATIONSHIPS_FILE)
        for record in document.get("relationships", []):
            relationship = Relationship.model_validate(record)
            self._edges[relationship.key()] = relationship

        logger.info(
            "local_store.connected",
            persistent=True,
            path=str(self.path),
            nodes=len(self._types),
            relationships=len(self._edges),
        )

    async def close(self) -> None:
        async with self._lock:
            await self._flush()
        logger.info("local_store.closed")

    async def is_available(self) -> bool:
        return True

    async def _read(self, file_path: Path) -> dict[str, Any]:
        if not file_path.exists():
            return {}
        try:
            async with aiofiles.open(file_path, encoding="utf-8") as f:
                content = await f.read()
            document = json.loads(content) if content.strip() else {}
        except (OSError, ValueError) as e:
            raise StorageError(str(file_path), str(e)) from e
        if not isinstance(document, dict):
            raise StorageError(str(file_path), "document is not a JSON object")
        return document

    async def _write(self, file_path: Path, document: dict[str, Any]) -> None:
        tmp_path = file_path.with_suffix(".json.tmp")
        try:
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                await f.write(json.dumps(document, indent=2))
            tmp_path.replace(file_path)
        except (OSError, TypeError, ValueError) as e:
            logger.error("local_store.flush_failed", path=str(file_path), error=str(e))
            raise StorageError(str(file_path), str(e)) from e

    async def _write_item(self, root: Path, item: str) -> None:
        if item == _EDGES:
            await self._write(
                root / RELATIONSHIPS_FILE,
                {"relationships": [r.model_dump(mode="json") for r in self._edges.values()]},
            )
            return
        node_type = NodeType(item)
        nodes = sorted(self._nodes[node_type].values(), key=_sort_key)
        await self._write(
            _document_path(root, node_type),
            {"nodes": [n.model_dump(by_alias=True, mode="json") for n in nodes]},
        )

    async def _flush(self) -> None:
        """
        Write every dirty document. Caller holds the lock.

        A document stays dirty until its write succeeds, so a failed flush is
        retried by the next one.
        """
        if self.path is None:
            self._dirty.clear()
            return
        if self._defer_depth:
            return

        for item in sorted(self._dirty, key=str):
            await self._write_item(self.path, item)
            self._dirty.discard(item)

    async def _commit(self, undo: Callable[[], None]) -> None:
        """Flush one mutation, reverting it in memory if the write fails."""
        try:
            await self._flush()
        except StorageError:
            undo()
            raise

    @asynccontextmanager
    async def deferred_writes(self) -> AsyncIterator[None]:
        self._defer_depth += 1
        try:
            yield
        finally:
            self._defer_depth -= 1
            if not self._defer_depth:
                async with self._lock:
                    await self._flush()

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    async def get_node(self, node_type: NodeType, node_id: str) -> Node | None:
        node = self._nodes[node_type].get(node_id)
        return node.model_copy(deep=True) if node else None

    async def find_nodes(
        self,
        node_type: NodeType,
        filters: Mapping[str, Any] | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Node]:
        filters = filters or {}
        matches = [
            node
            for node in sorted(self._nodes[node_type].values(), key=_sort_key)
            if all(
                (node.id if key == "id" else node.properties.get(key)) == value
                for key, value in filters.items()
            )
        ]
        end = offset + limit if limit is not None else None
        return [n.model_copy(deep=True) for n in matches[offset:end]]

    def _put(self, node: Node) -> None:
        self._nodes[node.type][node.id] = node
        self._types[node.id] = node.type

    def _drop(self, node_type: NodeType, node_id: str) -> None:
        self._nodes[node_type].pop(node_id, None)
        self._types.pop(node_id, None)

    async def insert_node(self, node: Node) -> None:
        async with self._lock:
            if node.id in self._types:
                raise ValidationError("createNode", [f"id '{node.id}' already exists"])
            self._put(node.model_copy(deep=True))
            self._dirty.add(node.type.value)
            await self._commit(lambda: self._drop(node.type, node.id))

    async def update_node(
        self,
        node_type: NodeType,
        node_id: str,
        properties: Mapping[str, Any],
        modified_at: str,
    ) -> Node | None:
        async with self._lock:
            previous = self._nodes[node_type].get(node_id)
            if previous is None:
                return None
            node = previous.model_copy(deep=True)
            node.properties.update(properties)
            node.modified_at = modified_at
            self._put(node)
            self._dirty.add(node_type.value)
            await self._commit(lambda: self._put(previous))
            return node.model_copy(deep=True)

    async def delete_node(self, node_type: NodeType, node_id: str) -> bool:
        async with self._lock:
            node = self._nodes[node_type].get(node_id)
            if node is None:
                return False
            self._drop(node_type, node_id)
            self._dirty.add(node_type.value)
            await self._commit(lambda: self._put(node))
            return True

    # ------------------------------------------------------------------
    # Relationships
    # ------------------------------------------------------------------

    async def create_relationship(self, relationship: Relationship) -> bool:
        async with self._lock:
            key = relationship.key()
            if key in self._edges:
                return False
            self._edges[key] = relationship
            self._dirty.add(_EDGES)
            await self._commit(lambda: self._edges.pop(key, None))
            return True

    async def delete_relationship(self, relationship: Relationship) -> bool:
        async with self._lock:
            key = relationship.key()
            existing = self._edges.pop(key, None)
            if existing is None:
                return False
            self._dirty.add(_EDGES)
            await self._commit(lambda: self._edges.update({key: existing}))
            return True

    def _lookup(self, node_id: str) -> Node | None:
        node_type = self._types.get(node_id)
        return self._nodes[node_type].get(node_id) if node_type else None

    async def related(
        self,
        node_type: NodeType,
        node_id: str,
        relation_type: str | None = None,
        target_type: NodeType | None = None,
        limit: int | None = None,
    ) -> list[tuple[str, Node]]:
        pairs: list[tuple[str, Node]] = []
        for edge in self._edges.values():
            if edge.source_type is not node_type or edge.source_id != node_id:
                continue
            if relation_type is not None and edge.type != relation_type:
                continue
            if target_type is not None and edge.target_type is not target_type:
                continue
            target = self._nodes[edge.target_type].get(edge.target_id)
            if target is not None:
                pairs.append((edge.type, target.model_copy(deep=True)))
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
        needle = keyword.lower()
        results: list[Node] = []
        for node_type in types:
            for node in sorted(self._nodes[node_type].values(), key=_sort_key):
                names = fields if fields is not None else list(node.properties)
                if any(
                    isinstance(node.properties.get(name), str)
                    and needle in node.properties[name].lower()
                    for name in names
                ):
                    results.append(node.model_copy(deep=True))
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
        raise BackendUnavailableError(
            "vectorSearch", self.source, "the local store has no vector index"
        )

    async def traverse_path(
        self,
        start_id: str,
        end_id: str,
        relation_types: list[str] | None = None,
        max_depth: int = 3,
    ) -> list[Node]:
        start = self._lookup(start_id)
        if start is None or self._lookup(end_id) is None:
            return []

        adjacency: dict[str, list[str]] = {}
        for edge in sorted(self._edges.values(), key=lambda e: (e.type, e.target_id)):
            if relation_types is None or edge.type in relation_types:
                adjacency.setdefault(edge.source_id, []).append(edge.target_id)

        previous: dict[str, str | None] = {start_id: None}
        queue: deque[tuple[str, int]] = deque([(start_id, 0)])
        while queue:
            current, depth = queue.popleft()
            if current == end_id:
                break
            if depth >= max_depth:
                continue
            for neighbour in adjacency.get(current, []):
                if neighbour not in previous and self._lookup(neighbour) is not None:
                    previous[neighbour] = current
                    queue.append((neighbour, depth + 1))

        if end_id not in previous:
            return []

        path: list[Node] = []
        step: str | None = end_id
        while step is not None:
            # every id in ``previous`` was checked by _lookup when queued
            path.append(self._nodes[self._types[step]][step].model_copy(deep=True))
            step = previous[step]
        path.reverse()
        return path

    async def aggregate(
        self,
        node_type: NodeType,
        group_by: str,
        field: str,
        function: str,
    ) -> list[dict[str, Any]]:
        return aggregate_nodes(self._nodes[node_type].values(), group_by, field, function)

    async def find_timepoints(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        event_types: list[str] | None = None,
        entity_types: list[str] | None = None,
        entity_id: str | None = None,
    ) -> list[Node]:
        results: list[Node] = []
        for node in self._nodes[NodeType.TIME_POINT].values():
            props = node.properties
            if entity_id is not None and props.get("entityId") != entity_id:
                continue
            if event_types and props.get("eventType") not in event_types:
                continue
            if entity_types and props.get("entityType") not in entity_types:
                continue
            timestamp = parse_timestamp(props["timestamp"])
            if start is not None and timestamp < parse_timestamp(start):
                continue
            if end is not None and timestamp > parse_timestamp(end):
                continue
            results.append(node.model_copy(deep=True))
        return results
