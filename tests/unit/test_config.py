"""
Unit Tests for Configuration Management

Tests Settings defaults, environment variable loading,
and configuration constraints.
"""

from pathlib import Path

import pytest
from pydantic import ValidationError as PydanticValidationError

from ckg.config import Settings


class TestSettingsDefaults:
    """Test the engine starts from an empty environment."""

    def test_defaults(self):
        """Test every value has a usable default."""
        settings = Settings(_env_file=None)

        assert settings.dgraph_enabled is True
        assert settings.dgraph_url == "http://localhost:8080"
        assert settings.local_db_path == Path(".ckg_memory") / "local_db"
        assert settings.cycle_policy == "raise"
        assert settings.compositional_rule_categories == ["CODE_STANDARD", "SECURITY"]
        assert settings.cache_default_ttl_seconds == 300

    def test_redis_url(self):
        settings = Settings(_env_file=None, redis_host="cache", redis_port=6380, redis_db=2)

        assert settings.redis_url == "redis://cache:6380/2"


class TestSettingsFromEnvironment:
    """Test environment variable loading."""

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("DGRAPH_ENABLED", "false")
        monkeypatch.setenv("CYCLE_POLICY", "truncate")
        monkeypatch.setenv("COMPOSITIONAL_RULE_CATEGORIES", '["SECURITY"]')
        monkeypatch.setenv("LOCAL_DB_PATH", "/tmp/ckg")

        settings = Settings(_env_file=None)

        assert settings.dgraph_enabled is False
        assert settings.cycle_policy == "truncate"
        assert settings.compositional_rule_categories == ["SECURITY"]
        assert settings.local_db_path == Path("/tmp/ckg")


class TestSettingsValidation:
    """Test Settings validation rules."""

    def test_dgraph_url_requires_scheme(self):
        with pytest.raises(PydanticValidationError) as exc_info:
            Settings(_env_file=None, dgraph_url="localhost:8080")

        assert "must start with http://" in str(exc_info.value)

    def test_dgraph_url_trailing_slash_removed(self):
        settings = Settings(_env_file=None, dgraph_url="https://dgraph.internal/")

        assert settings.dgraph_url == "https://dgraph.internal"

    def test_unknown_cycle_policy(self):
        with pytest.raises(PydanticValidationError):
            Settings(_env_file=None, cycle_policy="ignore")

    def test_probe_timeout_positive(self):
        with pytest.raises(PydanticValidationError):
            Settings(_env_file=None, backend_probe_timeout_seconds=0)
