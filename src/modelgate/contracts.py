from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeAlias

from .errors import ErrorKind


class Operation(str, Enum):
    CHAT = "chat"
    FIM = "fim"


@dataclass(frozen=True)
class AttachmentRef:
    name: str
    url: str
    content_type: str
    size: int | None = None


@dataclass(frozen=True)
class ResolvedAttachment:
    name: str
    content_type: str
    text: str


@dataclass(frozen=True)
class InvocationRequest:
    operation: Operation
    payload: dict[str, Any]
    options: dict[str, Any]
    provider_hint: str | None = None
    model_hint: str | None = None
    search_enabled: bool = False
    attachments: tuple[AttachmentRef, ...] = ()


@dataclass(frozen=True)
class InvocationSuccess:
    provider_used: str
    model_used: str
    content: str
    tokens_used: int
    latency_ms: int

    @property
    def outcome_kind(self) -> str:
        return "success"


@dataclass(frozen=True)
class InvocationFailure:
    kind: ErrorKind
    message: str
    provider_attempted: str
    provider_status: int | None = None

    @property
    def outcome_kind(self) -> str:
        return self.kind.value


InvocationOutcome: TypeAlias = InvocationSuccess | InvocationFailure
