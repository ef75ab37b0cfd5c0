"""Declared property sets per node type, validated at write time."""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

from ckg.exceptions import ValidationError
from ckg.graph.models import NodeType, TaskLevel


IDENTIFIER_PATTERN = r"^[A-Za-z_][A-Za-z0-9_]*$"
_IDENTIFIER = re.compile(IDENTIFIER_PATTERN)

# Managed by the store, never written by callers
SYSTEM_PROPERTIES = frozenset({"createdAt", "modifiedAt"})

COMMON_PROPERTIES = frozenset(
    {"name", "title", "description", "status", "metadata", "tags"}
)

_SCOPED = frozenset({"scope", "scopeEntityId", "isActive", "version"})

NODE_PROPERTIES: dict[NodeType, frozenset[str]] = {
    NodeType.PROJECT: frozenset({"rootPath", "scopeContext", "orgId", "teamId"}),
    NodeType.TASK: frozenset(
        {
            "taskLevel",
            "priority",
            "dependencies",
            "guidedByStep",
            "scopeContext",
            "assignedTo",
            "assignedRole",
            "type",
            "parentTask",
            "dueDate",
        }
    ),
    NodeType.SUB_TASK: frozenset(
        {
            "taskLevel",
            "type",
            "dependencies",
            "guidedByStep",
            "scopeContext",
            "assignedTo",
            "assignedRole",
            "parentTask",
            "ckgLinks",
            "commandDetails",
        }
    ),
    NodeType.AGENT_INSTANCE: frozenset(
        {"role", "contextSize", "lastActiveAt", "activeContext"}
    ),
    NodeType.RULE: _SCOPED
    | {"ruleType", "category", "content", "appliesForRoles"},
    NodeType.PERSONA: _SCOPED | {"role", "promptTemplate", "content"},
    NodeType.WORKFLOW: _SCOPED | {"appliesToTaskType", "content"},
    NodeType.WORKFLOW_STEP: frozenset(
        {
            "stepOrder",
            "requiredRole",
            "expectedSubTaskType",
            "isOptional",
            "nextStep",
            "workflowId",
        }
    ),
    NodeType.REQUIREMENT: frozenset({"priority", "type", "source"}),
    NodeType.DESIGN_SPEC: frozenset({"content", "version", "approvedBy"}),
    NodeType.ARCH_DECISION: frozenset({"rationale", "alternatives", "decidedAt"}),
    NodeType.FILE: frozenset(
        {"path", "content", "fileType", "lastModified", "embedding"}
    ),
    NodeType.FUNCTION: frozenset(
        {"signature", "filePath", "startLine", "endLine", "embedding"}
    ),
    NodeType.CLASS: frozenset({"filePath", "startLine", "endLine", "embedding"}),
    NodeType.INTERFACE: frozenset({"filePath", "startLine", "endLine"}),
    NodeType.TEST_PLAN: frozenset({"scopeContext"}),
    NodeType.TEST_CASE: frozenset({"steps", "expectedResult"}),
    NodeType.BUG_REPORT: frozenset({"severity", "stepsToReproduce", "resolution"}),
    NodeType.CODE_CHANGE: frozenset({"path", "diff", "commitHash", "author"}),
    NodeType.HITL_INTERACTION: frozenset({"message", "response", "interactionType"}),
    NodeType.TIME_POINT: frozenset(
        {"entityId", "entityType", "eventType", "timestamp"}
    ),
    NodeType.ORGANIZATION: frozenset(),
    NodeType.TEAM: frozenset({"orgId"}),
    NodeType.USER: frozenset({"email", "role", "teamId", "orgId"}),
    NodeType.ACTIVITY: frozenset(
        {
            "activityType",
            "agentId",
            "agentRole",
            "taskId",
            "groupId",
            "details",
            "timestamp",
            "duration",
        }
    ),
    NodeType.ACTIVITY_GROUP: frozenset(
        {"agentId", "taskId", "startTime", "endTime", "summary"}
    ),
}


# Embedding properties; the native backend indexes them for similar_to
VECTOR_PROPERTIES: dict[NodeType, frozenset[str]] = {
    NodeType.FILE: frozenset({"embedding"}),
    NodeType.FUNCTION: frozenset({"embedding"}),
    NodeType.CLASS: frozenset({"embedding"}),
}

_TASK_LEVELS = frozenset(level.value for level in TaskLevel)


def allowed_properties(node_type: NodeType) -> frozenset[str]:
    """All caller-writable properties of a node type."""
    return COMMON_PROPERTIES | NODE_PROPERTIES[node_type]


def is_identifier(name: str) -> bool:
    return bool(_IDENTIFIER.match(name))


def is_vector_property(node_type: NodeType, name: str) -> bool:
    return name in VECTOR_PROPERTIES.get(node_type, frozenset())


def is_vector(value: Any) -> bool:
    """True for a non-empty list of numbers."""
    return (
        isinstance(value, list)
        and bool(value)
        and all(isinstance(v, int | float) and not isinstance(v, bool) for v in value)
    )


def validate_properties(
    operation: str,
    node_type: NodeType,
    properties: Mapping[str, Any],
    allow_id: bool = False,
) -> None:
    """Check a property map against the declared set for ``node_type``.

    ``None`` values delete a property and are never checked further.

    Raises:
        ValidationError: On reserved, unknown or malformed property names,
            an unknown ``taskLevel`` or an embedding that is not a vector
    """
    failures: list[str] = []
    allowed = allowed_properties(node_type)
    for key, value in properties.items():
        if key == "id":
            if not allow_id:
                failures.append("'id' is immutable")
            elif not isinstance(value, str) or not value:
                failures.append("'id' must be a non-empty string")
        elif key in SYSTEM_PROPERTIES:
            failures.append(f"'{key}' is managed by the store")
        elif key not in allowed:
            failures.append(f"'{key}' is not a {node_type.value} property")
        elif value is None:
            continue
        elif key == "taskLevel" and (not isinstance(value, str) or value not in _TASK_LEVELS):
            failures.append(f"'taskLevel' must be one of {', '.join(sorted(_TASK_LEVELS))}")
        elif is_vector_property(node_type, key) and not is_vector(value):
            failures.append(f"'{key}' must be a non-empty list of numbers")
    if failures:
        raise ValidationError(operation, failures)
