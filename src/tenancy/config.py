"""Tenancy service configuration using pydantic-settings.

This module defines the TenancySettings class that reads configuration
from environment variables with the TENANCY_ prefix. Which settings are
required depends on the gateway backend:

- rest: TENANCY_GATEWAY_URL and TENANCY_GATEWAY_API_KEY
- postgres: TENANCY_DATABASE_URL
- memory: nothing (local development only; state is lost on restart)
"""

from enum import Enum
from typing import Optional

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class GatewayBackend(str, Enum):
    """Store the resource gateway talks to."""

    REST = "rest"
    POSTGRES = "postgres"
    MEMORY = "memory"


class TenancySettings(BaseSettings):
    """Tenancy service configuration from environment variables.

    All environment variables are prefixed with TENANCY_ (e.g., TENANCY_GATEWAY_URL).
    """

    model_config = SettingsConfigDict(
        env_prefix="TENANCY_",
        case_sensitive=False,
    )

    # -------------------------------------------------------------------------
    # Gateway Configuration
    # -------------------------------------------------------------------------
    gateway_backend: GatewayBackend = GatewayBackend.REST

    # Base URL of the PostgREST-style API (rest backend)
    gateway_url: Optional[str] = None

    # Service key sent as apikey and bearer token (rest backend)
    gateway_api_key: Optional[str] = None

    # PostgreSQL connection string (postgres backend)
    database_url: Optional[str] = None

    # Upper bound on any single remote call
    request_timeout_seconds: float = 10.0

    # Retries for idempotent reads and deletes; inserts are never retried
    request_max_retries: int = 2

    # -------------------------------------------------------------------------
    # Saga Configuration
    # -------------------------------------------------------------------------
    # Default per-step timeout; must exceed request_timeout_seconds so a
    # step is not failed while its call can still land
    step_timeout_seconds: float = 30.0

    # -------------------------------------------------------------------------
    # Idempotency Configuration
    # -------------------------------------------------------------------------
    # How long a finished request's outcome is replayed to retries
    idempotency_retention_seconds: float = 900.0

    # Upper bound on remembered request outcomes
    idempotency_max_entries: int = 10_000

    # -------------------------------------------------------------------------
    # Server Configuration
    # -------------------------------------------------------------------------
    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "INFO"

    # -------------------------------------------------------------------------
    # Validators
    # -------------------------------------------------------------------------
    @field_validator("gateway_url")
    @classmethod
    def validate_gateway_url(cls, v: Optional[str]) -> Optional[str]:
        """Validate that the gateway URL is an http(s) URL."""
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError("gateway_url must start with http:// or https://")
        return v.rstrip("/")

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: Optional[str]) -> Optional[str]:
        """Validate that database URL has a PostgreSQL scheme."""
        if v is None:
            return v
        if not v.startswith(("postgresql://", "postgres://")):
            raise ValueError(
                "database_url must start with postgresql:// or postgres://"
            )
        return v

    @field_validator(
        "request_timeout_seconds",
        "step_timeout_seconds",
        "idempotency_retention_seconds",
    )
    @classmethod
    def validate_positive_seconds(cls, v: float) -> float:
        """Validate that durations are positive."""
        if v <= 0:
            raise ValueError("durations must be positive")
        return v

    @field_validator("request_max_retries")
    @classmethod
    def validate_max_retries(cls, v: int) -> int:
        if v < 0:
            raise ValueError("request_max_retries cannot be negative")
        return v

    @field_validator("idempotency_max_entries")
    @classmethod
    def validate_max_entries(cls, v: int) -> int:
        if v < 1:
            raise ValueError("idempotency_max_entries must be at least 1")
        return v

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate that port is in valid range."""
        if not 1 <= v <= 65535:
            raise ValueError("port must be between 1 and 65535")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"log_level {v!r} is not a logging level")
        return level

    @model_validator(mode="after")
    def validate_backend_settings(self) -> "TenancySettings":
        """Validate that the selected backend has what it needs."""
        if self.gateway_backend == GatewayBackend.REST:
            if not self.gateway_url:
                raise ValueError("gateway_url is required for the rest backend")
            if not self.gateway_api_key or not self.gateway_api_key.strip():
                raise ValueError("gateway_api_key is required for the rest backend")
        elif self.gateway_backend == GatewayBackend.POSTGRES:
            if not self.database_url:
                raise ValueError("database_url is required for the postgres backend")

        if self.step_timeout_seconds <= self.request_timeout_seconds:
            raise ValueError(
                "step_timeout_seconds must be greater than request_timeout_seconds"
            )
        return self


def get_settings() -> TenancySettings:
    """Create and return a TenancySettings instance.

    Raises:
        pydantic.ValidationError: If required fields are missing or invalid.
    """
    return TenancySettings()
