"""
Health Checks

Liveness and readiness endpoints. Readiness probes the active store and
pings the query cache.
"""

from datetime import UTC, datetime

import structlog
from fastapi import APIRouter, Request

from ckg import __version__
from ckg.api.schemas import HealthCheckResponse, HealthStatus, ReadinessCheckResponse
from ckg.engine.knowledge_graph import KnowledgeGraph


logger = structlog.get_logger(__name__)

router = APIRouter(tags=["health"])


def _graph(request: Request) -> KnowledgeGraph | None:
    return getattr(request.app.state, "graph", None)


async def check_store_health(graph: KnowledgeGraph | None) -> HealthStatus:
    """
    Check the active graph store.

    Returns:
        HEALTHY if the store answers, UNHEALTHY otherwise
    """
    if graph is None:
        return HealthStatus.UNHEALTHY
    return HealthStatus.HEALTHY if await graph.store.is_available() else HealthStatus.UNHEALTHY


async def check_cache_health(graph: KnowledgeGraph | None) -> HealthStatus:
    """
    Check the query cache.

    Returns:
        HEALTHY if Redis answers, DEGRADED if the engine runs without a cache
        or Redis stopped answering
    """
    if graph is None or graph.cache is None:
        return HealthStatus.DEGRADED
    return HealthStatus.HEALTHY if await graph.cache.ping() else HealthStatus.DEGRADED


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(request: Request) -> HealthCheckResponse:
    """
    Basic liveness health check.

    Returns:
        Application status with version and active backend
    """
    graph = _graph(request)
    settings = request.app.state.settings
    response = HealthCheckResponse(
        status=HealthStatus.HEALTHY,
        timestamp=datetime.now(tz=UTC),
        services={"application": HealthStatus.HEALTHY},
        details={
            "version": __version__,
            "environment": settings.environment,
            "backend": graph.backend if graph else None,
        },
    )
    logger.debug("health.checked", status=response.status.value)
    return response


@router.get("/ready", response_model=ReadinessCheckResponse)
async def readiness_check(request: Request) -> ReadinessCheckResponse:
    """
    Readiness check over the store and the cache.

    An unavailable store makes the service UNHEALTHY; a missing cache only
    DEGRADED, since queries still work without it.

    Returns:
        Readiness status of all dependencies
    """
    graph = _graph(request)
    dependencies = {
        "store": await check_store_health(graph),
        "cache": await check_cache_health(graph),
    }

    overall_status = HealthStatus.HEALTHY
    for dependency_status in dependencies.values():
        if dependency_status == HealthStatus.UNHEALTHY:
            overall_status = HealthStatus.UNHEALTHY
            break
        if dependency_status == HealthStatus.DEGRADED:
            overall_status = HealthStatus.DEGRADED

    response = ReadinessCheckResponse(
        status=overall_status,
        timestamp=datetime.now(tz=UTC),
        dependencies=dependencies,
        details={
            "backend": graph.backend if graph else None,
            "checked_at": datetime.now(tz=UTC).isoformat(),
        },
    )

    if overall_status == HealthStatus.HEALTHY:
        logger.info("readiness.passed")
    elif overall_status == HealthStatus.DEGRADED:
        logger.warning("readiness.degraded", dependencies=dependencies)
    else:
        logger.error("readiness.failed", dependencies=dependencies)
    return response
