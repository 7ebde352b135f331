"""
Pydantic configuration schema for orglink.

A deployment is described by a single YAML file (config/orglink.yaml
by default) that conforms to these models. Environment variables may
override the environment name and log level.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Environment(str, Enum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    TEST = "test"
    PRODUCTION = "production"


# ---------------------------------------------------------------------------
# Sub-models
# ---------------------------------------------------------------------------

class RateLimitSettings(BaseModel):
    """Default admission limits for API-key and workspace traffic."""
    minute_limit: int = Field(
        100, ge=1, description="Requests allowed per 60-second window"
    )
    burst_limit: int = Field(
        20, ge=1, description="Requests allowed per 5-second burst window"
    )


class ServerSettings(BaseModel):
    """HTTP server binding for `main.py serve`."""
    host: str = "127.0.0.1"
    port: int = Field(8000, ge=1, le=65535)
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])


class AuditSettings(BaseModel):
    """Audit trail emission."""
    enabled: bool = True


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------

class OrgLinkSettings(BaseModel):
    """Root settings object."""
    env: Environment = Environment.DEVELOPMENT
    log_level: str = "INFO"
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)
    audit: AuditSettings = Field(default_factory=AuditSettings)
    seed_path: Optional[str] = Field(
        None, description="YAML seed document loaded into the in-memory store"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        v = v.strip().upper()
        if v not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level '{v}'")
        return v

    @property
    def is_production(self) -> bool:
        return self.env == Environment.PRODUCTION
