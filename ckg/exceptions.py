"""
Custom Exception Classes

Defines all custom exceptions used by the knowledge graph core.
Store implementations wrap their library errors in these so the engine
boundary can convert any of them into a result envelope.
"""

from typing import Any


class CKGError(Exception):
    """Base exception for all knowledge graph errors."""


class ValidationError(CKGError):
    """Raised when a request violates its operation's contract."""

    def __init__(self, operation: str, failures: list[str]) -> None:
        self.operation = operation
        self.failures = failures
        super().__init__(f"Invalid {operation} request: {'; '.join(failures)}")


class NotFoundError(CKGError):
    """Raised when an entity an operation depends on does not exist."""

    def __init__(self, entity_type: str, entity_id: str) -> None:
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} not found: {entity_id}")


class BackendUnavailableError(CKGError):
    """Raised when the active backend cannot serve a capability."""

    def __init__(self, capability: str, backend: str, reason: str = "") -> None:
        self.capability = capability
        self.backend = backend
        self.reason = reason
        message = f"{capability} unavailable on {backend} backend"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class QueryExecutionError(CKGError):
    """Raised when the backend answers a request with an error."""

    def __init__(
        self,
        backend: str,
        operation: str,
        reason: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.backend = backend
        self.operation = operation
        self.reason = reason
        self.details = details or {}
        super().__init__(f"{operation} failed on {backend} backend: {reason}")


class StorageError(CKGError):
    """Raised when the local store cannot read or write its files."""

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Local store I/O failed for '{path}': {reason}")


class CycleDetectedError(CKGError):
    """Raised when task dependencies contain a cycle."""

    def __init__(self, task_ids: list[str]) -> None:
        self.task_ids = task_ids
        super().__init__(
            f"Circular task dependency among: {', '.join(task_ids)}"
        )


class SerializationError(CKGError):
    """Raised when metadata cannot be encoded or decoded."""

    def __init__(self, entity_id: str, reason: str) -> None:
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(f"Metadata serialization failed for '{entity_id}': {reason}")


class CacheError(CKGError):
    """Raised when Redis cache operations fail."""

    def __init__(self, message: str) -> None:
        super().__init__(message)


class ConfigurationError(CKGError):
    """Raised when configuration is invalid."""

    def __init__(self, config_name: str, reason: str) -> None:
        self.config_name = config_name
        self.reason = reason
        super().__init__(f"Configuration error in '{config_name}': {reason}")
