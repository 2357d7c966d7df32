"""Usage analytics over recent audit events.

`AnalyticsRecorder` is an `AuditSink` that keeps the most recent events in a
bounded ring buffer and answers per-principal summaries for a trailing window.
It is not a historical store; events older than the buffer are gone.
"""

from __future__ import annotations

from collections import Counter, deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from .audit import AuditEvent

SUCCESS = "success"


@dataclass(frozen=True)
class AnalyticsSummary:
    window_hours: int
    requests: int = 0
    errors: int = 0
    tokens: int = 0
    average_latency_ms: int = 0
    by_provider: dict[str, int] = field(default_factory=dict)
    by_outcome: dict[str, int] = field(default_factory=dict)


class AnalyticsRecorder:
    def __init__(self, *, max_events: int = 10_000, clock: Callable[[], datetime] | None = None):
        self._events: deque[AuditEvent] = deque(maxlen=max(1, max_events))
        self._clock: Callable[[], datetime] = clock or (lambda: datetime.now(timezone.utc))

    def __len__(self) -> int:
        return len(self._events)

    async def record(self, event: AuditEvent) -> None:
        self._events.append(event)

    def summary(self, *, principal_id: str | None, hours: int = 24) -> AnalyticsSummary:
        since = self._clock() - timedelta(hours=hours)
        events = [
            e
            for e in self._events
            if e.timestamp >= since and (principal_id is None or e.principal_id == principal_id)
        ]
        if not events:
            return AnalyticsSummary(window_hours=hours)

        outcomes = Counter(e.outcome_kind for e in events)
        providers = Counter(e.provider_used for e in events if e.provider_used)
        return AnalyticsSummary(
            window_hours=hours,
            requests=len(events),
            errors=len(events) - outcomes.get(SUCCESS, 0),
            tokens=sum(e.tokens_used for e in events),
            average_latency_ms=sum(e.latency_ms for e in events) // len(events),
            by_provider=dict(providers),
            by_outcome=dict(outcomes),
        )
