"""Per-principal daily quotas.

Counters live in a `CounterStore`: anonymous principals use the in-process
`InMemoryCounterStore`, registered principals go through a
`RegisteredQuotaStore` that also knows each principal's limit. Both expose the
same atomic `compare_and_increment`, so the enforcer does not care which one
backs a given principal.
"""

from __future__ import annotations

import asyncio
import math
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Protocol

import structlog

from .identity import Principal
from .metrics import quota_decisions_total

log = structlog.get_logger()

ONE_DAY = timedelta(days=1)


def window_start_for(now: datetime) -> datetime:
    """Floor `now` to the UTC day boundary."""
    utc = now.astimezone(timezone.utc)
    return utc.replace(hour=0, minute=0, second=0, microsecond=0)


def next_window_start(now: datetime) -> datetime:
    return window_start_for(now) + ONE_DAY


@dataclass(frozen=True)
class CounterResult:
    admitted: bool
    count: int
    window_start: datetime


@dataclass(frozen=True)
class Admitted:
    remaining: int
    reset_at: datetime


@dataclass(frozen=True)
class Denied:
    retry_after_seconds: int
    reason: str = "limit_reached"


QuotaDecision = Admitted | Denied


class CounterStore(Protocol):
    async def compare_and_increment(self, key: str, window_start: datetime, limit: int) -> CounterResult:
        """Atomically reset a stale window, then increment iff `count < limit`."""
        ...


class RegisteredQuotaStore(CounterStore, Protocol):
    async def get_limit(self, principal_id: str) -> int: ...


@dataclass
class _Counter:
    window_start: datetime
    count: int = 0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class InMemoryCounterStore:
    """Process-local counters, each guarded by its own lock.

    When a newer window shows up, counters left over from older windows are
    evicted, so the store only holds principals seen in the current window.
    """

    def __init__(self) -> None:
        self._counters: dict[str, _Counter] = {}
        self._latest_window: datetime | None = None

    def __len__(self) -> int:
        return len(self._counters)

    def _evict_stale(self, window_start: datetime) -> None:
        if self._latest_window is not None and window_start <= self._latest_window:
            return
        self._latest_window = window_start
        stale = [k for k, c in self._counters.items() if c.users == 0 and c.window_start < window_start]
        for key in stale:
            del self._counters[key]
        if stale:
            log.debug("quota_counters_evicted", count=len(stale), window_start=window_start.isoformat())

    async def compare_and_increment(self, key: str, window_start: datetime, limit: int) -> CounterResult:
        self._evict_stale(window_start)
        # no await between lookup and insert, so there is one counter per key
        counter = self._counters.get(key)
        if counter is None:
            counter = self._counters[key] = _Counter(window_start=window_start)
        counter.users += 1
        try:
            async with counter.lock:
                if counter.window_start != window_start:
                    counter.window_start = window_start
                    counter.count = 0
                if counter.count >= limit:
                    return CounterResult(admitted=False, count=counter.count, window_start=counter.window_start)
                counter.count += 1
                return CounterResult(admitted=True, count=counter.count, window_start=counter.window_start)
        finally:
            counter.users -= 1

    def peek(self, key: str) -> int:
        counter = self._counters.get(key)
        return counter.count if counter is not None else 0


class InMemoryRegisteredQuotaStore(InMemoryCounterStore):
    """Reference registered-quota store backed by a tier table.

    Real deployments put the counters behind a database with a conditional
    increment; this one is used for local runs and tests.
    """

    def __init__(self, tier_limits: dict[str, int], *, default_tier: str = "free") -> None:
        super().__init__()
        self._tier_limits = dict(tier_limits)
        self._default_tier = default_tier
        self._principal_tiers: dict[str, str] = {}

    @property
    def tiers(self) -> frozenset[str]:
        return frozenset(self._tier_limits)

    @property
    def default_tier(self) -> str:
        return self._default_tier

    def set_tier(self, principal_id: str, tier: str) -> None:
        self._principal_tiers[principal_id] = tier

    async def get_limit(self, principal_id: str) -> int:
        tier = self._principal_tiers.get(principal_id, self._default_tier)
        if tier not in self._tier_limits:
            raise LookupError(f"No quota configured for tier {tier!r}.")
        return self._tier_limits[tier]


class QuotaEnforcer:
    def __init__(
        self,
        *,
        anonymous_store: CounterStore,
        registered_store: RegisteredQuotaStore,
        anonymous_limit: int = 5,
        store_failure_retry_seconds: int = 60,
        clock: Callable[[], datetime] | None = None,
    ):
        self._anonymous_store = anonymous_store
        self._registered_store = registered_store
        self._anonymous_limit = anonymous_limit
        self._store_failure_retry_seconds = max(1, store_failure_retry_seconds)
        self._clock: Callable[[], datetime] = clock or (lambda: datetime.now(timezone.utc))

    @staticmethod
    def counter_key(principal: Principal) -> str:
        return f"{principal.kind.value}:{principal.id}"

    async def admit(self, principal: Principal) -> QuotaDecision:
        now = self._clock()
        window = window_start_for(now)
        key = self.counter_key(principal)

        if principal.is_anonymous:
            limit = self._anonymous_limit
            result = await self._anonymous_store.compare_and_increment(key, window, limit)
        else:
            try:
                limit = await self._registered_store.get_limit(principal.id)
                result = await self._registered_store.compare_and_increment(key, window, limit)
            except Exception as e:
                log.warning("quota_store_failed", principal_id=principal.id, error=str(e))
                quota_decisions_total.labels(principal_kind=principal.kind.value, decision="store_error").inc()
                return Denied(retry_after_seconds=self._store_failure_retry_seconds, reason="store_unavailable")

        if not result.admitted:
            retry_after = max(1, math.ceil((next_window_start(now) - now).total_seconds()))
            quota_decisions_total.labels(principal_kind=principal.kind.value, decision="denied").inc()
            log.info("quota_denied", principal_id=principal.id, count=result.count, limit=limit)
            return Denied(retry_after_seconds=retry_after)

        quota_decisions_total.labels(principal_kind=principal.kind.value, decision="admitted").inc()
        return Admitted(remaining=max(0, limit - result.count), reset_at=result.window_start + ONE_DAY)
