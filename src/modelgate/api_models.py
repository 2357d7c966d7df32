from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .analytics import AnalyticsSummary
from .contracts import AttachmentRef, InvocationRequest, InvocationSuccess, Operation
from .identity import Principal


class AttachmentBody(BaseModel):
    name: str = Field(min_length=1)
    url: str = Field(min_length=1)
    content_type: str = "text/plain"
    size: int | None = Field(default=None, ge=0)


class InvokeRequestBody(BaseModel):
    """
    Body of `POST /v1/invoke`.

    Options stay an open mapping here; ranges are checked by the normalizer so
    that out-of-range values surface as `out_of_range`, not a schema error.
    """

    model_config = ConfigDict(extra="forbid")

    operation: Operation
    provider_hint: str | None = None
    model_hint: str | None = None
    payload: dict[str, Any]
    options: dict[str, Any] = Field(default_factory=dict)
    search_enabled: bool = False
    attachments: list[AttachmentBody] = Field(default_factory=list)

    @field_validator("provider_hint", "model_hint")
    @classmethod
    def _blank_to_none(cls, v: str | None) -> str | None:
        if v is None:
            return None
        return v.strip() or None

    def to_request(self) -> InvocationRequest:
        return InvocationRequest(
            operation=self.operation,
            payload=self.payload,
            options=self.options,
            provider_hint=self.provider_hint,
            model_hint=self.model_hint,
            search_enabled=self.search_enabled,
            attachments=tuple(
                AttachmentRef(name=a.name, url=a.url, content_type=a.content_type, size=a.size)
                for a in self.attachments
            ),
        )


class InvokeResponseBody(BaseModel):
    provider_used: str
    model_used: str
    content: str
    tokens_used: int
    latency_ms: int

    @classmethod
    def from_outcome(cls, outcome: InvocationSuccess) -> "InvokeResponseBody":
        return cls(
            provider_used=outcome.provider_used,
            model_used=outcome.model_used,
            content=outcome.content,
            tokens_used=outcome.tokens_used,
            latency_ms=outcome.latency_ms,
        )


class PrincipalBody(BaseModel):
    id: str
    kind: str
    tier: str | None = None
    issued_at: datetime


class SessionResponse(BaseModel):
    token: str
    principal: PrincipalBody

    @classmethod
    def build(cls, token: str, principal: Principal) -> "SessionResponse":
        return cls(
            token=token,
            principal=PrincipalBody(
                id=principal.id, kind=principal.kind.value, tier=principal.tier, issued_at=principal.issued_at
            ),
        )


class RegisterRequestBody(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str = Field(min_length=3, max_length=320)
    password: str = Field(min_length=1, max_length=1024)
    subscription_tier: str | None = None


class LoginRequestBody(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str = Field(min_length=1, max_length=320)
    password: str = Field(min_length=1, max_length=1024)


class AnalyticsResponse(BaseModel):
    window_hours: int
    requests: int
    errors: int
    tokens: int
    average_latency_ms: int
    by_provider: dict[str, int]
    by_outcome: dict[str, int]

    @classmethod
    def from_summary(cls, summary: AnalyticsSummary) -> "AnalyticsResponse":
        return cls(
            window_hours=summary.window_hours,
            requests=summary.requests,
            errors=summary.errors,
            tokens=summary.tokens,
            average_latency_ms=summary.average_latency_ms,
            by_provider=summary.by_provider,
            by_outcome=summary.by_outcome,
        )


class ErrorBody(BaseModel):
    kind: str
    message: str
    request_id: str | None = None
    retry_after_seconds: int | None = None
    provider: str | None = None
    provider_status: int | None = None


class ErrorResponse(BaseModel):
    error: ErrorBody


def make_error_response(
    *,
    kind: str,
    message: str,
    request_id: str | None = None,
    retry_after_seconds: int | None = None,
    provider: str | None = None,
    provider_status: int | None = None,
) -> dict[str, Any]:
    body = ErrorResponse(
        error=ErrorBody(
            kind=kind,
            message=message,
            request_id=request_id,
            retry_after_seconds=retry_after_seconds,
            provider=provider,
            provider_status=provider_status,
        )
    )
    return body.model_dump(exclude_none=True)
