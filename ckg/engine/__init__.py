"""
Engine Module

Knowledge graph facade plus the temporal index, scope resolver and
dependency planner it is built from.
"""

from ckg.engine.dependencies import (
    DependencyPlanner,
    build_dependency_graph,
    create_execution_plan,
)
from ckg.engine.knowledge_graph import KnowledgeGraph
from ckg.engine.scope import ScopeResolution, ScopeResolver, scope_hierarchy
from ckg.engine.temporal import TemporalIndex


__all__ = [
    "DependencyPlanner",
    "KnowledgeGraph",
    "ScopeResolution",
    "ScopeResolver",
    "TemporalIndex",
    "build_dependency_graph",
    "create_execution_plan",
    "scope_hierarchy",
]
