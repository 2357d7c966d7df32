from __future__ import annotations

import asyncio
import json
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

import httpx
import structlog

from .adapters import MalformedResponse, WirePayload, get_adapter
from .contracts import InvocationFailure, InvocationOutcome, InvocationSuccess
from .errors import ErrorKind
from .metrics import dispatch_attempts_total, dispatch_latency_seconds
from .registry import ProviderDescriptor

log = structlog.get_logger()

MAX_DISPATCH_ATTEMPTS = 2


class TransportError(Exception):
    """Connection-level failure: nothing reached the provider."""


class TransportTimeout(TransportError):
    pass


@dataclass(frozen=True)
class TransportResponse:
    status: int
    body: bytes


class ProviderTransport(Protocol):
    async def send(
        self, endpoint: str, credential: str, wire: WirePayload, timeout: float
    ) -> TransportResponse: ...


def auth_headers(scheme: str, credential: str) -> dict[str, str]:
    if scheme == "x-api-key":
        return {"x-api-key": credential}
    return {"Authorization": f"Bearer {credential}"}


class HttpxTransport:
    def __init__(self, *, client: httpx.AsyncClient | None = None, timeout_seconds: float = 60.0):
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    async def send(self, endpoint: str, credential: str, wire: WirePayload, timeout: float) -> TransportResponse:
        headers = {"Content-Type": "application/json", **wire.headers, **auth_headers(wire.auth_scheme, credential)}
        try:
            resp = await self._client.post(endpoint, json=wire.body, headers=headers, timeout=timeout)
        except httpx.TimeoutException as e:
            raise TransportTimeout(f"Timed out after {timeout}s.") from e
        except httpx.TransportError as e:
            raise TransportError(str(e) or type(e).__name__) from e
        return TransportResponse(status=resp.status_code, body=resp.content)

    async def close(self) -> None:
        await self._client.aclose()


class DispatchState(str, Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


def _error_message(status: int, body: bytes) -> str:
    try:
        data: Any = json.loads(body)
    except ValueError:
        data = None
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict) and isinstance(err.get("message"), str):
            return err["message"]
        if isinstance(err, str):
            return err
        if isinstance(data.get("message"), str):
            return data["message"]
    return f"Provider returned HTTP {status}."


class Dispatcher:
    """
    Sends one normalized request to one provider.

    Per call: pending -> in_flight -> succeeded | failed. Only connection-level
    failures are retried; timeouts and provider error responses fail at once.
    """

    def __init__(
        self,
        credentials: Callable[[str], str | None],
        *,
        transport: ProviderTransport | None = None,
        transports: dict[str, ProviderTransport] | None = None,
        timeout_seconds: float = 60.0,
        max_attempts: int = MAX_DISPATCH_ATTEMPTS,
        backoff_initial_seconds: float = 0.25,
        backoff_max_seconds: float = 2.0,
        sleeper: Callable[[float], Awaitable[None]] | None = None,
        clock: Callable[[], float] | None = None,
    ):
        self._credentials = credentials
        self._default_transport = transport
        self._transports: dict[str, ProviderTransport] = dict(transports or {})
        self._timeout_seconds = max(0.001, float(timeout_seconds))
        self._max_attempts = min(MAX_DISPATCH_ATTEMPTS, max(1, max_attempts))
        self._backoff_initial_seconds = max(0.0, backoff_initial_seconds)
        self._backoff_max_seconds = max(self._backoff_initial_seconds, backoff_max_seconds)
        self._sleep: Callable[[float], Awaitable[None]] = sleeper or asyncio.sleep
        self._clock: Callable[[], float] = clock or time.monotonic

    def transport_for(self, code: str) -> ProviderTransport:
        transport = self._transports.get(code)
        if transport is None:
            transport = self._default_transport or HttpxTransport(timeout_seconds=self._timeout_seconds)
            self._transports[code] = transport
        return transport

    async def close(self) -> None:
        closed: set[int] = set()
        for transport in [*self._transports.values(), self._default_transport]:
            close = getattr(transport, "close", None)
            if transport is None or id(transport) in closed or not callable(close):
                continue
            closed.add(id(transport))
            await close()

    def _compute_backoff(self, attempt_index: int) -> float:
        # attempt_index: 0-based retry count (0 for first retry)
        base = float(min(self._backoff_max_seconds, self._backoff_initial_seconds * (2**attempt_index)))
        jitter = float(random.uniform(0.0, min(0.25, base * 0.1))) if base > 0 else 0.0
        return base + jitter

    def _transition(self, provider: str, old: DispatchState, new: DispatchState, **kw: Any) -> DispatchState:
        log.debug("dispatch_transition", provider=provider, from_state=old.value, to_state=new.value, **kw)
        return new

    async def dispatch(self, wire: WirePayload, provider: ProviderDescriptor) -> InvocationOutcome:
        state = DispatchState.PENDING
        started = self._clock()
        code = provider.code

        def fail(kind: ErrorKind, message: str, status: int | None = None) -> InvocationFailure:
            nonlocal state
            state = self._transition(code, state, DispatchState.FAILED, kind=kind.value)
            dispatch_latency_seconds.labels(provider=code).observe(max(0.0, self._clock() - started))
            return InvocationFailure(kind=kind, message=message, provider_attempted=code, provider_status=status)

        credential = self._credentials(code)
        if not credential:
            return fail(ErrorKind.UNREACHABLE, f"No credential configured for {code!r}.")

        transport = self.transport_for(code)
        endpoint = provider.endpoint_for(wire.path)
        state = self._transition(code, state, DispatchState.IN_FLIGHT)
        attempts = 0
        while True:
            attempts += 1
            try:
                response = await asyncio.wait_for(
                    transport.send(endpoint, credential, wire, self._timeout_seconds),
                    timeout=self._timeout_seconds,
                )
            except (asyncio.TimeoutError, TransportTimeout):
                dispatch_attempts_total.labels(provider=code, result="timeout").inc()
                log.warning("dispatch_timeout", provider=code, timeout_seconds=self._timeout_seconds)
                return fail(ErrorKind.TIMEOUT, f"{code} did not answer within {self._timeout_seconds}s.")
            except TransportError as e:
                dispatch_attempts_total.labels(provider=code, result="transport_error").inc()
                log.warning("dispatch_transport_error", provider=code, attempt=attempts, error=str(e))
                if attempts >= self._max_attempts:
                    return fail(ErrorKind.UNREACHABLE, f"{code} unreachable after {attempts} attempts: {e}")
                await self._sleep(self._compute_backoff(attempts - 1))
                continue
            break

        if response.status >= 400:
            dispatch_attempts_total.labels(provider=code, result="rejected").inc()
            log.warning(
                "dispatch_provider_rejected",
                provider=code,
                status_code=response.status,
                body=response.body[:500].decode("utf-8", errors="replace"),
            )
            return fail(ErrorKind.PROVIDER_REJECTED, _error_message(response.status, response.body), response.status)

        dispatch_attempts_total.labels(provider=code, result="ok").inc()
        try:
            parsed = get_adapter(wire.schema_adapter).parse_response(
                wire.operation, json.loads(response.body), requested_model=wire.model
            )
        except (ValueError, MalformedResponse) as e:
            log.warning("dispatch_malformed_response", provider=code, error=str(e))
            return fail(ErrorKind.MALFORMED_RESPONSE, f"Unparseable response from {code}: {e}", response.status)

        latency_ms = int(max(0.0, self._clock() - started) * 1000)
        state = self._transition(code, state, DispatchState.SUCCEEDED)
        dispatch_latency_seconds.labels(provider=code).observe(latency_ms / 1000)
        return InvocationSuccess(
            provider_used=code,
            model_used=parsed.model,
            content=parsed.content,
            tokens_used=parsed.tokens_used,
            latency_ms=latency_ms,
        )
