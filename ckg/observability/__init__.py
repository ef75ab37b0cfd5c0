"""
Observability Module

Provides structured logging and metrics instrumentation for the knowledge graph core.
"""

from ckg.observability.logging import configure_logging, get_logger
from ckg.observability.metrics import (
    ckg_backend_selected_total,
    ckg_cache_requests_total,
    ckg_dependency_cycles_total,
    ckg_partial_results_total,
    ckg_queries_total,
    ckg_query_duration_seconds,
    ckg_timepoints_created_total,
    ckg_updates_total,
)


__all__ = [
    "ckg_backend_selected_total",
    "ckg_cache_requests_total",
    "ckg_dependency_cycles_total",
    "ckg_partial_results_total",
    "ckg_queries_total",
    "ckg_query_duration_seconds",
    "ckg_timepoints_created_total",
    "ckg_updates_total",
    "configure_logging",
    "get_logger",
]
