"""
Graph Module

Data model, property schema, typed requests and result envelopes.
"""

from ckg.graph.models import (
    EVENT_RELATIONS,
    SCOPE_ORDER,
    ConfigType,
    EventType,
    Node,
    NodeType,
    Relationship,
    Scope,
    ScopeContext,
    TaskLevel,
    TaskRef,
    TimePoint,
    WorkflowStep,
)
from ckg.graph.requests import parse_query, parse_update
from ckg.graph.results import BlockedTask, DependencyAnalysis, OperationResult


__all__ = [
    "EVENT_RELATIONS",
    "SCOPE_ORDER",
    "BlockedTask",
    "ConfigType",
    "DependencyAnalysis",
    "EventType",
    "Node",
    "NodeType",
    "OperationResult",
    "Relationship",
    "Scope",
    "ScopeContext",
    "TaskLevel",
    "TaskRef",
    "TimePoint",
    "WorkflowStep",
    "parse_query",
    "parse_update",
]
