"""
Knowledge Graph Data Model

Node, relationship and TimePoint models shared by every store backend,
plus the closed vocabularies (node types, event types, scopes) the rest
of the system validates against.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ckg.exceptions import SerializationError


class NodeType(str, Enum):
    """Closed vocabulary of node labels."""

    PROJECT = "Project"
    TASK = "Task"
    SUB_TASK = "SubTask"
    AGENT_INSTANCE = "AgentInstance"
    RULE = "Rule"
    PERSONA = "Persona"
    WORKFLOW = "Workflow"
    WORKFLOW_STEP = "WorkflowStep"
    REQUIREMENT = "Requirement"
    DESIGN_SPEC = "DesignSpec"
    ARCH_DECISION = "ArchDecision"
    FILE = "File"
    FUNCTION = "Function"
    CLASS = "Class"
    INTERFACE = "Interface"
    TEST_PLAN = "TestPlan"
    TEST_CASE = "TestCase"
    BUG_REPORT = "BugReport"
    CODE_CHANGE = "CodeChange"
    HITL_INTERACTION = "HITLInteraction"
    TIME_POINT = "TimePoint"
    ORGANIZATION = "Organization"
    TEAM = "Team"
    USER = "User"
    ACTIVITY = "Activity"
    ACTIVITY_GROUP = "ActivityGroup"

    @classmethod
    def has(cls, value: str) -> bool:
        """Return True if ``value`` names a node type."""
        return value in cls._value2member_map_


class EventType(str, Enum):
    """Lifecycle events recorded as TimePoints."""

    CREATION = "CREATION"
    MODIFICATION = "MODIFICATION"
    STATUS_CHANGE = "STATUS_CHANGE"
    APPROVAL = "APPROVAL"
    REJECTION = "REJECTION"
    COMPLETION = "COMPLETION"
    RESOLUTION = "RESOLUTION"
    AGENT_ACTIVITY = "AGENT_ACTIVITY"
    TERMINATION = "TERMINATION"
    RESPONSE = "RESPONSE"


# Relation from an entity to the TimePoints of one event type
EVENT_RELATIONS: dict[EventType, str] = {
    EventType.CREATION: "creationTimePoint",
    EventType.MODIFICATION: "modificationTimePoints",
    EventType.STATUS_CHANGE: "statusChangeTimePoints",
    EventType.APPROVAL: "approvalTimePoint",
    EventType.REJECTION: "rejectionTimePoint",
    EventType.COMPLETION: "completionTimePoint",
    EventType.RESOLUTION: "resolutionTimePoint",
    EventType.AGENT_ACTIVITY: "activityTimePoints",
    EventType.TERMINATION: "terminationTimePoint",
    EventType.RESPONSE: "responseTimePoint",
}


class Scope(str, Enum):
    """Hierarchy level a configuration entity applies at."""

    USER = "USER"
    PROJECT = "PROJECT"
    TEAM = "TEAM"
    ORG = "ORG"
    DEFAULT = "DEFAULT"


# Most specific first
SCOPE_ORDER: tuple[Scope, ...] = (
    Scope.USER,
    Scope.PROJECT,
    Scope.TEAM,
    Scope.ORG,
    Scope.DEFAULT,
)

SCOPE_ENTITY_TYPES: dict[Scope, NodeType] = {
    Scope.USER: NodeType.USER,
    Scope.PROJECT: NodeType.PROJECT,
    Scope.TEAM: NodeType.TEAM,
    Scope.ORG: NodeType.ORGANIZATION,
}


class ConfigType(str, Enum):
    """Node types resolved through the scope hierarchy."""

    RULE = "Rule"
    WORKFLOW = "Workflow"
    PERSONA = "Persona"

    @property
    def relation(self) -> str:
        """Relation from a scope entity to configs of this type."""
        return f"{self.value.lower()}s"


class TaskLevel(str, Enum):
    """Granularity of a task in the planning hierarchy."""

    PROJECT = "PROJECT"
    MILESTONE = "MILESTONE"
    TASK = "TASK"
    SUBTASK = "SUBTASK"


def new_id() -> str:
    """Globally unique node id."""
    return str(uuid4())


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def to_timestamp(value: datetime) -> str:
    """Render a datetime as ISO 8601 in UTC, assuming UTC for naive values."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


def parse_timestamp(value: str | datetime) -> datetime:
    """Parse an ISO 8601 timestamp into an aware datetime."""
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class Node(BaseModel):
    """A typed node with its property map and system timestamps."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    type: NodeType
    properties: dict[str, Any] = Field(default_factory=dict)
    created_at: str
    modified_at: str

    def to_record(self, required_properties: list[str] | None = None) -> dict[str, Any]:
        """Flatten into the caller-facing record.

        Args:
            required_properties: Property names to project; all when None

        Returns:
            ``{id, type, <properties>, createdAt, modifiedAt}`` restricted to
            the requested properties (``id`` and ``type`` are always kept)
        """
        record: dict[str, Any] = {"id": self.id, "type": self.type.value}
        full = {
            **self.properties,
            "createdAt": self.created_at,
            "modifiedAt": self.modified_at,
        }
        if required_properties:
            for name in required_properties:
                if name in full:
                    record[name] = full[name]
        else:
            record.update(full)
        return record


class Relationship(BaseModel):
    """A directed, typed edge. Reverse edges are created separately."""

    type: str
    source_type: NodeType
    source_id: str
    target_type: NodeType
    target_id: str

    def key(self) -> tuple[str, str, str, str, str]:
        return (
            self.source_type.value,
            self.source_id,
            self.type,
            self.target_type.value,
            self.target_id,
        )


class TimePoint(BaseModel):
    """Immutable record of one lifecycle event on one entity."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    entity_id: str
    entity_type: str
    event_type: EventType
    timestamp: datetime
    metadata: dict[str, Any] | None = None

    def to_properties(self) -> dict[str, Any]:
        """Node properties used to persist this TimePoint."""
        properties: dict[str, Any] = {
            "entityId": self.entity_id,
            "entityType": self.entity_type,
            "eventType": self.event_type.value,
            "timestamp": to_timestamp(self.timestamp),
        }
        if self.metadata is not None:
            try:
                properties["metadata"] = json.dumps(self.metadata)
            except (TypeError, ValueError) as e:
                raise SerializationError(self.id, str(e)) from e
        return properties

    @classmethod
    def from_node(cls, node: Node) -> TimePoint:
        """Rebuild a TimePoint from its stored node."""
        props = node.properties
        raw_metadata = props.get("metadata")
        metadata: dict[str, Any] | None = None
        if raw_metadata is not None:
            if isinstance(raw_metadata, dict):
                metadata = raw_metadata
            else:
                try:
                    metadata = json.loads(raw_metadata)
                except (TypeError, ValueError) as e:
                    raise SerializationError(node.id, str(e)) from e
                if not isinstance(metadata, dict):
                    raise SerializationError(node.id, "metadata is not a JSON object")
        return cls(
            id=node.id,
            entity_id=props["entityId"],
            entity_type=props["entityType"],
            event_type=EventType(props["eventType"]),
            timestamp=parse_timestamp(props["timestamp"]),
            metadata=metadata,
        )

    def to_record(self) -> dict[str, Any]:
        record = self.model_dump(by_alias=True, mode="json")
        record["timestamp"] = to_timestamp(self.timestamp)
        return record


class ScopeContext(BaseModel):
    """Execution context identifying the scope entities that apply."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    user_id: str | None = None
    project_id: str | None = None
    team_id: str | None = None
    org_id: str | None = None

    def entity_id_for(self, scope: Scope) -> str | None:
        return {
            Scope.USER: self.user_id,
            Scope.PROJECT: self.project_id,
            Scope.TEAM: self.team_id,
            Scope.ORG: self.org_id,
            Scope.DEFAULT: None,
        }[scope]


def ref_id(value: Any) -> str | None:
    """Extract an id from a plain id or an ``{"id": ...}`` reference."""
    if isinstance(value, dict):
        value = value.get("id")
    if value is None or value == "":
        return None
    return str(value)


class TaskRef(BaseModel):
    """Planning view of a Task node."""

    id: str
    title: str | None = None
    status: str | None = None
    dependencies: list[str] = Field(default_factory=list)
    guided_by_step: str | None = None

    @classmethod
    def from_node(cls, node: Node) -> TaskRef:
        props = node.properties
        raw_deps = props.get("dependencies") or []
        if not isinstance(raw_deps, list):
            raw_deps = [raw_deps]
        dependencies = [dep for dep in (ref_id(d) for d in raw_deps) if dep]
        return cls(
            id=node.id,
            title=props.get("title"),
            status=props.get("status"),
            dependencies=dependencies,
            guided_by_step=ref_id(props.get("guidedByStep")),
        )


class WorkflowStep(BaseModel):
    """One ordered step of a Workflow."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    name: str | None = None
    description: str | None = None
    step_order: int
    required_role: str | None = None
    expected_sub_task_type: str | None = None
    is_optional: bool = False
    next_step: str | None = None

    @classmethod
    def from_node(cls, node: Node) -> WorkflowStep:
        props = node.properties
        return cls(
            id=node.id,
            name=props.get("name"),
            description=props.get("description"),
            step_order=int(props.get("stepOrder", 0)),
            required_role=props.get("requiredRole"),
            expected_sub_task_type=props.get("expectedSubTaskType"),
            is_optional=bool(props.get("isOptional", False)),
            next_step=ref_id(props.get("nextStep")),
        )
