from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    AUTH_MISSING = "auth_missing"
    AUTH_INVALID = "auth_invalid"
    QUOTA_DENIED = "quota_denied"
    UNSUPPORTED_PROVIDER = "unsupported_provider"
    OUT_OF_RANGE = "out_of_range"
    ATTACHMENT_UNRESOLVABLE = "attachment_unresolvable"
    INVALID_PAYLOAD = "invalid_payload"
    TIMEOUT = "timeout"
    UNREACHABLE = "unreachable"
    PROVIDER_REJECTED = "provider_rejected"
    MALFORMED_RESPONSE = "malformed_response"
    ACCOUNT_EXISTS = "account_exists"


class GatewayError(Exception):
    """Base error for invocation pipeline failures."""

    kind: ErrorKind

    def __init__(self, kind: ErrorKind, message: str):
        super().__init__(message)
        self.kind = kind

    @property
    def message(self) -> str:
        return str(self)


class ConfigurationError(Exception):
    """Invalid static configuration detected at startup."""


class AuthError(GatewayError):
    @classmethod
    def missing(cls, message: str = "Missing or malformed credential.") -> "AuthError":
        return cls(ErrorKind.AUTH_MISSING, message)

    @classmethod
    def invalid(cls, message: str = "Credential is expired or has a bad signature.") -> "AuthError":
        return cls(ErrorKind.AUTH_INVALID, message)


class QuotaError(GatewayError):
    def __init__(self, retry_after_seconds: int, message: str = "Daily quota exhausted"):
        super().__init__(ErrorKind.QUOTA_DENIED, message)
        self.retry_after_seconds = retry_after_seconds


class RoutingError(GatewayError):
    def __init__(self, message: str, provider: str | None = None):
        super().__init__(ErrorKind.UNSUPPORTED_PROVIDER, message)
        self.provider = provider


class ValidationError(GatewayError):
    """Request rejected before any outbound call was made."""

    def __init__(self, kind: ErrorKind, message: str, field: str | None = None):
        super().__init__(kind, message)
        self.field = field

    @classmethod
    def out_of_range(cls, field: str, message: str) -> "ValidationError":
        return cls(ErrorKind.OUT_OF_RANGE, message, field=field)


class AccountError(GatewayError):
    """Registration conflicts with an existing account."""

    def __init__(self, message: str = "An account with this email already exists."):
        super().__init__(ErrorKind.ACCOUNT_EXISTS, message)


class DispatchError(GatewayError):
    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        provider: str | None = None,
        provider_status: int | None = None,
    ):
        super().__init__(kind, message)
        self.provider = provider
        self.provider_status = provider_status
