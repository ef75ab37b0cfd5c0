"""
Prometheus Metrics

Define and instrument Prometheus metrics for the knowledge graph core.
Covers request volume and latency, cache effectiveness, temporal writes
and planner health.
"""

from __future__ import annotations

from prometheus_client import Counter, Histogram


# ============================================================================
# Request Metrics
# ============================================================================

ckg_queries_total = Counter(
    "ckg_queries_total",
    "Total knowledge graph queries",
    ["query_type", "source", "status"],
)

ckg_query_duration_seconds = Histogram(
    "ckg_query_duration_seconds",
    "Knowledge graph query duration in seconds",
    ["query_type"],
    buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0],
)

ckg_updates_total = Counter(
    "ckg_updates_total",
    "Total knowledge graph updates",
    ["update_type", "status"],
)

ckg_partial_results_total = Counter(
    "ckg_partial_results_total",
    "Results returned after a best-effort sub-query failed",
    ["operation"],
)

# ============================================================================
# Cache Metrics
# ============================================================================

ckg_cache_requests_total = Counter(
    "ckg_cache_requests_total",
    "Query cache lookups",
    ["result"],  # hit, miss, error
)

# ============================================================================
# Backend & Temporal Metrics
# ============================================================================

ckg_backend_selected_total = Counter(
    "ckg_backend_selected_total",
    "Store backend selections at engine startup",
    ["backend"],
)

ckg_timepoints_created_total = Counter(
    "ckg_timepoints_created_total",
    "TimePoints written",
    ["event_type"],
)

# ============================================================================
# Planner Metrics
# ============================================================================

ckg_dependency_cycles_total = Counter(
    "ckg_dependency_cycles_total",
    "Dependency analyses that found a cycle",
)
