"""
API Schemas

Pydantic models for the HTTP surface. Query and update bodies are passed
to the engine as-is so that malformed requests come back as result
envelopes rather than HTTP errors.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from ckg.graph.requests import DependencyAnalysisRequest


class HealthStatus(str, Enum):
    """Health status values."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class HealthCheckResponse(BaseModel):
    """
    Response schema for the liveness endpoint.
    """

    status: HealthStatus = Field(..., description="Overall health status")
    timestamp: datetime = Field(..., description="Timestamp of the health check")
    services: dict[str, HealthStatus] = Field(
        ..., description="Health status of individual services"
    )
    details: dict[str, Any] = Field(
        default_factory=dict, description="Additional health check details"
    )


class ReadinessCheckResponse(BaseModel):
    """
    Response schema for the readiness endpoint.
    """

    status: HealthStatus = Field(..., description="Overall readiness status")
    timestamp: datetime = Field(..., description="Timestamp of the readiness check")
    dependencies: dict[str, HealthStatus] = Field(
        ..., description="Readiness status of dependencies"
    )
    details: dict[str, Any] = Field(
        default_factory=dict, description="Additional readiness check details"
    )


class ErrorResponse(BaseModel):
    """Error body of the dependency-analysis endpoint."""

    error: str = Field(..., description="Error message")
    task_ids: list[str] = Field(
        default_factory=list, description="Tasks involved in a dependency cycle"
    )


__all__ = [
    "DependencyAnalysisRequest",
    "ErrorResponse",
    "HealthCheckResponse",
    "HealthStatus",
    "ReadinessCheckResponse",
]
