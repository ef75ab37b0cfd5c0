"""
Structured Logging

structlog configuration with JSON output in production.
Provides consistent logging across the store, resolver and planner.
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog
from structlog.typing import EventDict, Processor

from ckg import __version__
from ckg.config import Settings, settings as default_settings


def app_context(environment: str) -> Processor:
    """
    Build a processor adding application-level context to all log entries.

    Args:
        environment: Runtime environment reported on every entry

    Returns:
        structlog processor enriching the event dictionary
    """

    def add_app_context(
        _logger: logging.Logger, _method_name: str, event_dict: EventDict
    ) -> EventDict:
        event_dict["service"] = "ckg"
        event_dict["environment"] = environment
        event_dict["version"] = __version__
        return event_dict

    return add_app_context


def configure_logging(settings: Settings | None = None) -> None:
    """
    Configure structlog for the application.

    Sets up structured logging with:
    - JSON output in production
    - Human-readable console output in development
    - Request context propagation through contextvars

    Args:
        settings: Settings to read environment and level from
            (defaults to the module-level settings)

    Example:
        >>> from ckg.observability.logging import configure_logging
        >>> configure_logging()
        >>> logger = structlog.get_logger(__name__)
        >>> logger.info("application.started", port=8000)
    """
    settings = settings or default_settings
    log_level = getattr(logging, settings.log_level)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
    )

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        app_context(settings.environment),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    if settings.environment == "production":
        processors = [
            *shared_processors,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [
            *shared_processors,
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(colors=True),
        ]

    structlog.configure(
        processors=processors,  # type: ignore[arg-type]
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a configured logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)  # type: ignore[no-any-return]


def bind_request_context(request_id: str, operation: str) -> None:
    """
    Bind request context to all subsequent log entries.

    Args:
        request_id: Caller-visible request identifier
        operation: Query or update type being served

    Example:
        >>> bind_request_context("req-001", "getNodeById")
        >>> logger.info("query.started")  # Includes request_id and operation
    """
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        operation=operation,
    )


def log_operation(
    logger: structlog.stdlib.BoundLogger,
    kind: str,
    operation: str,
    success: bool,
    source: str | None,
    duration_ms: float,
    error: str | None = None,
) -> None:
    """
    Log completion of a query or update.

    Args:
        logger: Logger instance
        kind: "query" or "update"
        operation: Query or update type
        success: Envelope success flag
        source: Backend tag that served the request
        duration_ms: Wall time spent in milliseconds
        error: Error message for failed operations
    """
    log_data: dict[str, Any] = {
        "operation": operation,
        "success": success,
        "duration_ms": round(duration_ms, 3),
    }
    if source:
        log_data["source"] = source
    if error:
        log_data["error"] = error
        logger.warning(f"{kind}.failed", **log_data)
    else:
        logger.info(f"{kind}.completed", **log_data)
