"""Pydantic models for engine settings."""

import os
from typing import Optional
from pydantic import BaseModel, Field, field_validator


class RetrySettings(BaseModel):
    """Backoff settings for retryable provider errors."""

    max_attempts: int = Field(3, ge=1, le=10)
    base_delay: float = Field(1.0, ge=0)
    max_delay: float = Field(30.0, ge=0)
    jitter: bool = True


class EngineSettings(BaseModel):
    """Settings shared by every command."""

    state_dir: str = Field(".stackweaver/state", min_length=1)
    log_dir: Optional[str] = Field(".stackweaver/logs", description="None disables file logging")
    log_level: str = Field("info", pattern="^(debug|info|warning|error)$")
    region: Optional[str] = None
    account_id: Optional[str] = Field(None, pattern="^[0-9]{12}$")
    profile: Optional[str] = None
    max_workers: int = Field(default_factory=lambda: os.cpu_count() or 4, ge=1, le=256)
    operation_timeout: float = Field(1800.0, gt=0, description="Per-resource deadline in seconds")
    retry: RetrySettings = Field(default_factory=RetrySettings)

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v):
        """Accept log levels in any case."""
        return v.lower() if isinstance(v, str) else v
