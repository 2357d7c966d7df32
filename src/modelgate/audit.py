from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Protocol

import httpx
import structlog

from .metrics import audit_events_total, normalizer_dropped_fields_total

log = structlog.get_logger()


@dataclass(frozen=True)
class AuditEvent:
    timestamp: datetime
    principal_id: str | None
    provider_used: str | None
    operation: str
    outcome_kind: str
    latency_ms: int
    request_id: str | None = None
    tokens_used: int = 0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


class AuditSink(Protocol):
    async def record(self, event: AuditEvent) -> None: ...


class LoggingAuditSink:
    async def record(self, event: AuditEvent) -> None:
        log.info("audit_event", **event.to_dict())


class HttpAuditSink:
    """Posts each event as JSON to an analytics endpoint."""

    def __init__(self, url: str, *, client: httpx.AsyncClient | None = None, timeout_seconds: float = 5.0):
        self._url = url
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    async def record(self, event: AuditEvent) -> None:
        resp = await self._client.post(self._url, json=event.to_dict())
        resp.raise_for_status()

    async def close(self) -> None:
        await self._client.aclose()


class FanoutAuditSink:
    """Records each event in every wrapped sink, then re-raises the first failure."""

    def __init__(self, *sinks: AuditSink):
        self._sinks = sinks

    async def record(self, event: AuditEvent) -> None:
        results = await asyncio.gather(*(s.record(event) for s in self._sinks), return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                raise result

    async def close(self) -> None:
        for sink in self._sinks:
            close = getattr(sink, "close", None)
            if callable(close):
                await close()


class AuditEmitter:
    """Fire-and-forget delivery of audit events.

    `emit` never raises and never blocks the caller; delivery runs in a
    background task and failures are logged and dropped.
    """

    def __init__(self, sink: AuditSink):
        self._sink = sink
        self._pending: set[asyncio.Task[None]] = set()

    def emit(self, event: AuditEvent) -> None:
        try:
            task = asyncio.get_running_loop().create_task(self._deliver(event))
        except RuntimeError:
            audit_events_total.labels(result="dropped").inc()
            log.warning("audit_emit_without_loop", outcome_kind=event.outcome_kind)
            return
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, event: AuditEvent) -> None:
        try:
            await self._sink.record(event)
        except Exception as e:
            audit_events_total.labels(result="dropped").inc()
            log.warning("audit_sink_failed", error=str(e), outcome_kind=event.outcome_kind)
            return
        audit_events_total.labels(result="recorded").inc()

    def note_dropped_fields(self, provider: str, fields: tuple[str, ...] | list[str]) -> None:
        for name in fields:
            normalizer_dropped_fields_total.labels(provider=provider, field=name).inc()
        if fields:
            log.warning("normalizer_dropped_fields", provider=provider, fields=list(fields))

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def aclose(self) -> None:
        await self.drain()
        close = getattr(self._sink, "close", None)
        if callable(close):
            await close()
