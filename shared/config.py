"""
Shared configuration management for the Policy Orchestrator.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="ORCH_",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Storage
    storage_backend: str = Field(default="postgres", description="postgres or memory")
    postgres_dsn: str = Field(default="postgres://localhost:5432/orchestrator")
    postgres_min_pool_size: int = Field(default=2)
    postgres_max_pool_size: int = Field(default=10)

    # Evaluation engine
    engine_url: str = Field(default="http://localhost:3000/run")
    engine_timeout_seconds: float = Field(default=10.0)
    engine_max_attempts: int = Field(default=2)
    engine_failure_threshold: int = Field(default=5)
    engine_recovery_timeout: float = Field(default=30.0)

    # Flow execution
    flow_timeout_seconds: float = Field(default=30.0)


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"


def get_config(service_name: str, port: int) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port)
