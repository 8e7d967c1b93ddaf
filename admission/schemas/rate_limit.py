"""Pydantic schemas for rate limit responses."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class RateLimitStatusResponse(BaseModel):
    """Caller's current quota under one policy."""

    model_config = ConfigDict(populate_by_name=True)

    policy: str = Field(..., description="Policy name the quota applies to.")
    limit: int = Field(..., description="Requests allowed per window.")
    remaining: int = Field(..., ge=0, description="Requests left in the current window.")
    reset_time: str = Field(
        ...,
        alias="resetTime",
        description="ISO-8601 UTC timestamp when the current window ends.",
    )
    retry_after: int | None = Field(
        default=None,
        alias="retryAfter",
        description="Seconds to wait before retrying, when the quota is exhausted.",
    )


class RateLimitExceededResponse(BaseModel):
    """Body returned with HTTP 429."""

    model_config = ConfigDict(populate_by_name=True)

    error: str = Field("Rate limit exceeded", description="Fixed error label.")
    message: str = Field(..., description="Policy-specific explanation.")
    retry_after: int = Field(..., alias="retryAfter", description="Seconds until retry.")
