"""
Configuration Management

Pydantic Settings-based configuration with environment variable validation.
Every value has a default so the engine can start with an empty environment.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Environment variables are loaded from .env file or system environment.
    The engine receives an instance through its constructor; the module-level
    ``settings`` object is only used by the HTTP entrypoint.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    environment: Literal["development", "production", "test"] = Field(
        default="development", description="Runtime environment"
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )

    # Native graph engine (Dgraph Alpha HTTP endpoint)
    dgraph_enabled: bool = Field(
        default=True, description="Probe Dgraph at startup (False = local store only)"
    )
    dgraph_url: str = Field(
        default="http://localhost:8080", description="Dgraph Alpha HTTP URL"
    )
    backend_probe_timeout_seconds: float = Field(
        default=2.0, description="Upper bound for the Dgraph availability probe", gt=0
    )
    dgraph_request_timeout_seconds: float = Field(
        default=30.0, description="Timeout for individual Dgraph requests", gt=0
    )

    # Local fallback store
    local_db_path: Path = Field(
        default=Path(".ckg_memory") / "local_db",
        description="Directory holding the local JSON graph store",
    )

    # Result cache (Redis)
    cache_enabled: bool = Field(default=True, description="Enable the query cache")
    redis_host: str = Field(default="localhost", description="Redis host")
    redis_port: int = Field(default=6379, description="Redis port")
    redis_db: int = Field(default=0, description="Redis database number")
    cache_default_ttl_seconds: int = Field(
        default=300, description="Default TTL for cached query results", gt=0
    )
    cache_key_prefix: str = Field(
        default="ckg:query:", description="Prefix for cached query keys"
    )

    @property
    def redis_url(self) -> str:
        """Construct Redis connection URL."""
        return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}"

    # Planning & resolution
    cycle_policy: Literal["raise", "truncate"] = Field(
        default="raise",
        description="Dependency cycle handling: raise an error or truncate the plan",
    )
    compositional_rule_categories: list[str] = Field(
        default_factory=lambda: ["CODE_STANDARD", "SECURITY"],
        description="Rule categories collected from every scope level",
    )

    @field_validator("dgraph_url")
    @classmethod
    def validate_dgraph_url(cls, v: str) -> str:
        """Require an explicit HTTP scheme for the Dgraph endpoint."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("Dgraph URL must start with http:// or https://")
        return v.rstrip("/")


# Global settings instance for the HTTP entrypoint
settings = Settings()
