"""
Temporal Event Index

Append-only TimePoint log layered on the graph store. A TimePoint is
written after the primary mutation it describes; if that second write
fails the primary mutation stays, without its TimePoint.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import structlog

from ckg.graph.models import (
    EVENT_RELATIONS,
    EventType,
    Node,
    NodeType,
    Relationship,
    TimePoint,
    new_id,
    to_timestamp,
    utc_now,
)
from ckg.observability.metrics import ckg_timepoints_created_total
from ckg.storage.base import GraphStore


logger = structlog.get_logger(__name__)


def _chronological(timepoints: list[TimePoint]) -> list[TimePoint]:
    return sorted(timepoints, key=lambda tp: (tp.timestamp, tp.id))


class TemporalIndex:
    """Records and queries entity lifecycle events."""

    def __init__(self, store: GraphStore) -> None:
        self.store = store

    async def record(
        self,
        entity_id: str,
        entity_type: str,
        event_type: EventType,
        timestamp: datetime | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TimePoint:
        """
        Write one TimePoint and link the entity to it.

        The link uses the event's relation (``creationTimePoint``,
        ``statusChangeTimePoints``...) and is only made when ``entity_type``
        names a node type.

        Args:
            entity_id: Entity the event happened to
            entity_type: Entity's type name
            event_type: Lifecycle event
            timestamp: Event time (now when omitted)
            metadata: JSON-serialisable event details

        Returns:
            The stored TimePoint

        Raises:
            SerializationError: If metadata cannot be encoded as JSON
        """
        timepoint = TimePoint(
            id=new_id(),
            entity_id=entity_id,
            entity_type=entity_type,
            event_type=event_type,
            timestamp=timestamp or utc_now(),
            metadata=metadata,
        )
        properties = timepoint.to_properties()
        written_at = to_timestamp(utc_now())
        await self.store.insert_node(
            Node(
                id=timepoint.id,
                type=NodeType.TIME_POINT,
                properties=properties,
                created_at=written_at,
                modified_at=written_at,
            )
        )

        if NodeType.has(entity_type):
            await self.store.create_relationship(
                Relationship(
                    type=EVENT_RELATIONS[event_type],
                    source_type=NodeType(entity_type),
                    source_id=entity_id,
                    target_type=NodeType.TIME_POINT,
                    target_id=timepoint.id,
                )
            )

        ckg_timepoints_created_total.labels(event_type=event_type.value).inc()
        logger.debug(
            "timepoint.created",
            timepoint_id=timepoint.id,
            entity_id=entity_id,
            entity_type=entity_type,
            event_type=event_type.value,
        )
        return timepoint

    async def find_events(
        self,
        start: datetime,
        end: datetime,
        event_types: list[EventType] | None = None,
        entity_types: list[str] | None = None,
    ) -> list[TimePoint]:
        """TimePoints inside ``[start, end]`` across all entities, oldest first."""
        nodes = await self.store.find_timepoints(
            start=start,
            end=end,
            event_types=[e.value for e in event_types] if event_types else None,
            entity_types=entity_types,
        )
        return _chronological([TimePoint.from_node(node) for node in nodes])

    async def entity_history(
        self,
        entity_id: str,
        entity_type: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> dict[str, Any]:
        """
        Current state of an entity plus its TimePoints.

        Returns:
            ``{"entity": record | None, "timepoints": [...]}`` with TimePoints
            sorted ascending by timestamp
        """
        entity = None
        if NodeType.has(entity_type):
            node = await self.store.get_node(NodeType(entity_type), entity_id)
            entity = node.to_record() if node else None

        nodes = await self.store.find_timepoints(
            start=start,
            end=end,
            entity_types=[entity_type],
            entity_id=entity_id,
        )
        timepoints = _chronological([TimePoint.from_node(node) for node in nodes])
        return {"entity": entity, "timepoints": [tp.to_record() for tp in timepoints]}
