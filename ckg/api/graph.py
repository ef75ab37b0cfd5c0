"""
Knowledge Graph Endpoints

HTTP bindings of the query, update and dependency-analysis contracts.
Query and update envelopes are returned with HTTP 200 even when
``success`` is false; callers must check the flag.
"""

import uuid
from typing import Any

import structlog
from fastapi import APIRouter, Body, Depends, Header, HTTPException, Request, status

from ckg.api.schemas import DependencyAnalysisRequest, ErrorResponse
from ckg.engine.knowledge_graph import KnowledgeGraph
from ckg.exceptions import CKGError, CycleDetectedError, NotFoundError
from ckg.observability.logging import bind_request_context


logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/v1/ckg", tags=["knowledge-graph"])


def get_graph(request: Request) -> KnowledgeGraph:
    """Engine opened by the application lifespan."""
    graph: KnowledgeGraph | None = getattr(request.app.state, "graph", None)
    if graph is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Knowledge graph is not initialised",
        )
    return graph


def _operation(body: dict[str, Any], key: str) -> str:
    value = body.get(key)
    return value if isinstance(value, str) else "unknown"


@router.post("/query")
async def run_query(
    body: dict[str, Any] = Body(...),
    graph: KnowledgeGraph = Depends(get_graph),
    x_request_id: str | None = Header(default=None),
) -> dict[str, Any]:
    """
    Execute a query.

    Returns:
        Result envelope ``{success, data, error?, source?, timing?, partial?}``
    """
    bind_request_context(x_request_id or str(uuid.uuid4()), _operation(body, "queryType"))
    result = await graph.query(body)
    return result.to_wire()


@router.post("/update")
async def run_update(
    body: dict[str, Any] = Body(...),
    graph: KnowledgeGraph = Depends(get_graph),
    x_request_id: str | None = Header(default=None),
) -> dict[str, Any]:
    """
    Apply an update or a batch of updates.

    Returns:
        Result envelope; ``data.results`` holds per-operation envelopes for
        ``batchUpdate``
    """
    bind_request_context(x_request_id or str(uuid.uuid4()), _operation(body, "updateType"))
    result = await graph.update(body)
    return result.to_wire()


@router.post("/tasks/dependencies")
async def analyze_dependencies(
    body: DependencyAnalysisRequest,
    graph: KnowledgeGraph = Depends(get_graph),
    x_request_id: str | None = Header(default=None),
) -> dict[str, Any]:
    """
    Dependency graph and execution plan for a parent task's children.

    Raises:
        HTTPException: 404 if the parent task is unknown, 409 on a
            dependency cycle, 502 if the store fails
    """
    bind_request_context(x_request_id or str(uuid.uuid4()), "analyzeTaskDependencies")
    try:
        analysis = await graph.analyze_task_dependencies(body.parent_task_id)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except CycleDetectedError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=ErrorResponse(error=str(e), task_ids=e.task_ids).model_dump(),
        ) from e
    except CKGError as e:
        logger.error(
            "planner.analysis_failed", parent_task_id=body.parent_task_id, error=str(e)
        )
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e)) from e
    return analysis.to_wire()
