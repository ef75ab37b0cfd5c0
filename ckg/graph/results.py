"""
Result Envelopes

Uniform ``{success, data, error?, source?, timing?, partial?}`` envelope
returned by every query and update, plus the dependency-analysis result.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


Source = Literal["native", "local", "cache"]


class Timing(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    query_time_ms: float


class OperationResult(BaseModel):
    """
    Envelope for query and update results.

    ``data`` is always present (``None`` for "not found" and for failures);
    every other optional member is omitted from the wire form when unset.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    success: bool
    data: Any = None
    error: str | None = None
    source: Source | None = None
    timing: Timing | None = None
    partial: bool | None = None

    @classmethod
    def ok(
        cls,
        data: Any,
        source: Source | None = None,
        partial: bool = False,
    ) -> OperationResult:
        return cls(success=True, data=data, source=source, partial=partial or None)

    @classmethod
    def fail(cls, error: str, source: Source | None = None) -> OperationResult:
        return cls(success=False, data=None, error=error, source=source)

    def with_timing(self, elapsed_ms: float) -> OperationResult:
        self.timing = Timing(query_time_ms=round(elapsed_ms, 3))
        return self

    def to_wire(self) -> dict[str, Any]:
        """Serialise with camelCase names, dropping unset optional members."""
        payload = self.model_dump(by_alias=True, exclude_none=True, mode="json")
        payload.setdefault("data", None)
        return payload


class BlockedTask(BaseModel):
    id: str
    blocked_by: list[str]


class DependencyAnalysis(BaseModel):
    """
    Dependency graph and batched execution plan for one parent's children.

    ``waiting_tasks`` are held back, directly or through a sibling, by a
    blocker that is not a child of this parent; they appear in no batch.
    ``unscheduled_tasks`` are the tasks a cycle left out of the plan.
    """

    task_id: str
    runnable_tasks: list[str] = Field(default_factory=list)
    blocked_tasks: list[BlockedTask] = Field(default_factory=list)
    dependency_graph: dict[str, list[str]] = Field(default_factory=dict)
    execution_plan: list[list[str]] = Field(default_factory=list)
    partial: bool = False
    unscheduled_tasks: list[str] = Field(default_factory=list)
    waiting_tasks: list[str] = Field(default_factory=list)

    def to_wire(self) -> dict[str, Any]:
        payload = self.model_dump(mode="json")
        if not self.partial:
            payload.pop("partial")
        for name in ("unscheduled_tasks", "waiting_tasks"):
            if not payload[name]:
                payload.pop(name)
        return payload
