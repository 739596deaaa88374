"""Pydantic schemas for the invocation context handed to rate-limited handlers."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class HttpRequestInfo(BaseModel):
    """Transport metadata of the incoming HTTP request."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    source_ip: str = Field(
        ...,
        alias="sourceIp",
        min_length=1,
        description="Client address as seen by the gateway.",
    )
    method: str | None = Field(default=None, description="HTTP method.")
    path: str | None = Field(default=None, description="Request path.")
    user_agent: str | None = Field(
        default=None,
        alias="userAgent",
        description="Client user agent, if forwarded.",
    )


class RequestContext(BaseModel):
    """Gateway request context wrapper."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    http: HttpRequestInfo


class InvocationContext(BaseModel):
    """First argument of every rate-limited handler.

    ``is_gnz_context`` is the capability marker: a payload only qualifies as
    an invocation context when it carries the marker set to true.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    is_gnz_context: Literal[True] = Field(..., alias="isGnzContext")
    request_context: RequestContext = Field(..., alias="requestContext")

    @classmethod
    def for_source_ip(cls, source_ip: str, **http: str | None) -> "InvocationContext":
        """Build a context for a known client address."""
        return cls(
            is_gnz_context=True,
            request_context=RequestContext(http=HttpRequestInfo(source_ip=source_ip, **http)),
        )

    @property
    def source_ip(self) -> str:
        return self.request_context.http.source_ip
