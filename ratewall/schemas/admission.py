"""Pydantic schemas for admission responses."""

from __future__ import annotations

from pydantic import BaseModel, Field


class AdmissionResponse(BaseModel):
    """Caller-facing view of an admission decision."""

    enforced: bool = Field(
        ...,
        description="False when limiting is disabled or the store was unavailable (fail-open).",
    )
    limit: int | None = Field(default=None, description="Requests allowed per minute.")
    count: int | None = Field(default=None, description="Requests charged in this window.")
    remaining: int | None = Field(default=None, description="Requests left in this window.")
    reset_at: int | None = Field(
        default=None,
        description="UNIX epoch seconds at which the current window ends.",
    )
