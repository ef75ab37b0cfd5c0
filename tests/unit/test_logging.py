"""Unit tests for structured logging (structlog configuration)."""

from unittest.mock import MagicMock, patch

import structlog

from ckg import __version__
from ckg.config import Settings
from ckg.observability.logging import (
    app_context,
    bind_request_context,
    configure_logging,
    get_logger,
    log_operation,
)


class TestAppContext:
    """Test the application context processor."""

    def test_enriches_event_dict(self):
        """Test that the processor adds application context."""
        processor = app_context("test")

        result = processor(None, None, {"event": "query.completed", "extra": 1})

        assert result["service"] == "ckg"
        assert result["version"] == __version__
        assert result["environment"] == "test"
        assert result["extra"] == 1

    def test_configured_environment_is_reported(self):
        """Test entries carry the environment of the settings passed in."""
        settings = Settings(_env_file=None, environment="production")
        with (
            patch("ckg.observability.logging.logging.basicConfig"),
            patch("ckg.observability.logging.structlog.configure") as configure,
        ):
            configure_logging(settings)

        processor = configure.call_args.kwargs["processors"][3]
        event = processor(None, "info", {"event": "store.selected"})
        assert event["environment"] == "production"


class TestConfigureLogging:
    """Test logging configuration."""

    def test_production_renders_json(self):
        """Test production output ends with the JSON renderer."""
        settings = Settings(_env_file=None, environment="production")
        with (
            patch("ckg.observability.logging.logging.basicConfig"),
            patch("ckg.observability.logging.structlog.configure") as configure,
        ):
            configure_logging(settings)

        processors = configure.call_args.kwargs["processors"]
        assert isinstance(processors[-1], structlog.processors.JSONRenderer)

    def test_development_renders_console(self):
        settings = Settings(_env_file=None, environment="development", log_level="DEBUG")
        with (
            patch("ckg.observability.logging.logging.basicConfig") as basic_config,
            patch("ckg.observability.logging.structlog.configure") as configure,
        ):
            configure_logging(settings)

        processors = configure.call_args.kwargs["processors"]
        assert isinstance(processors[-1], structlog.dev.ConsoleRenderer)
        assert basic_config.call_args.kwargs["level"] == 10

    def test_get_logger(self):
        assert get_logger(__name__) is not None


class TestContextHelpers:
    """Test request binding and operation logging."""

    def test_bind_request_context_replaces_previous(self):
        """Test each request starts from a clean context."""
        structlog.contextvars.bind_contextvars(stale="yes")

        bind_request_context("req-1", "getNodeById")

        context = structlog.contextvars.get_contextvars()
        assert context == {"request_id": "req-1", "operation": "getNodeById"}
        structlog.contextvars.clear_contextvars()

    def test_log_operation_success(self):
        logger = MagicMock()

        log_operation(logger, "query", "getNodeById", True, "local", 1.23456)

        logger.info.assert_called_once_with(
            "query.completed",
            operation="getNodeById",
            success=True,
            duration_ms=1.235,
            source="local",
        )

    def test_log_operation_failure(self):
        logger = MagicMock()

        log_operation(logger, "update", "createNode", False, None, 2.0, error="bad")

        logger.warning.assert_called_once_with(
            "update.failed",
            operation="createNode",
            success=False,
            duration_ms=2.0,
            error="bad",
        )
