from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable, Mapping, MutableMapping
from typing import Any, TypeAlias, cast

import structlog


_SENSITIVE_KEYS = {
    "authorization",
    "x-api-key",
    "api_key",
    "credential",
    "signing_key",
    "fernet_key",
    "password",
}

_SENSITIVE_FRAGMENTS = ("key", "token", "secret", "password")

_BEARER_RE = re.compile(r"(?i)\bBearer\s+([A-Za-z0-9._-]{6,})")
_JWT_RE = re.compile(r"\beyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+")

ProcessorReturn: TypeAlias = Mapping[str, Any] | str | bytes | bytearray | tuple[Any, ...]
Processor: TypeAlias = Callable[[Any, str, MutableMapping[str, Any]], ProcessorReturn]


def _is_sensitive_key(key: Any) -> bool:
    key_str = str(key).lower()
    return key_str in _SENSITIVE_KEYS or any(s in key_str for s in _SENSITIVE_FRAGMENTS)


def redact(value: Any, *, secrets: Iterable[str] = ()) -> Any:
    """Recursively scrub secrets, bearer tokens and JWTs from a log payload."""
    secret_list = [s for s in secrets if s]
    if isinstance(value, str):
        out = value
        for secret in secret_list:
            if secret in out:
                out = out.replace(secret, "[REDACTED]")
        out = _BEARER_RE.sub("Bearer [REDACTED]", out)
        return _JWT_RE.sub("[REDACTED_JWT]", out)
    if isinstance(value, list):
        return [redact(v, secrets=secret_list) for v in value]
    if isinstance(value, tuple):
        return tuple(redact(v, secrets=secret_list) for v in value)
    if isinstance(value, dict):
        return {
            k: "[REDACTED]" if _is_sensitive_key(k) else redact(v, secrets=secret_list)
            for k, v in value.items()
        }
    return value


def _make_redaction_processor(*, secrets: list[str]) -> Processor:
    secrets_norm = [s for s in secrets if isinstance(s, str) and s]

    def _processor(_logger: Any, _method_name: str, event_dict: MutableMapping[str, Any]) -> ProcessorReturn:
        return cast(dict[str, Any], redact(dict(event_dict), secrets=secrets_norm))

    return _processor


def configure_logging(level: str = "INFO", fmt: str = "json", *, secrets: list[str] | None = None) -> None:
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=numeric_level)

    processors: list[Processor] = [
        cast(Processor, structlog.contextvars.merge_contextvars),
        cast(Processor, structlog.processors.add_log_level),
        cast(Processor, structlog.processors.TimeStamper(fmt="iso", utc=True)),
        _make_redaction_processor(secrets=secrets or []),
    ]

    if fmt == "json":
        processors.append(cast(Processor, structlog.processors.JSONRenderer()))
    else:
        processors.append(cast(Processor, structlog.dev.ConsoleRenderer()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        cache_logger_on_first_use=True,
    )
