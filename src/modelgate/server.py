import asyncio
import os
import time
from collections.abc import Awaitable
from contextlib import asynccontextmanager
from typing import TypeVar

import structlog

from .api_models import (
    AnalyticsResponse,
    InvokeRequestBody,
    InvokeResponseBody,
    LoginRequestBody,
    RegisterRequestBody,
    SessionResponse,
    make_error_response,
)
from .config import GatewayConfig
from .errors import (
    AccountError,
    AuthError,
    ConfigurationError,
    DispatchError,
    ErrorKind,
    GatewayError,
    QuotaError,
    RoutingError,
    ValidationError,
)
from .http_security import WWW_AUTHENTICATE, install_middlewares, parse_bearer_token
from .logging import configure_logging
from .metrics import maybe_start_metrics, server_errors_total, server_request_latency_seconds, server_requests_total
from .pipeline import InvocationPipeline

log = structlog.get_logger()

T = TypeVar("T")

DISPATCH_STATUS = {
    ErrorKind.TIMEOUT: 504,
    ErrorKind.UNREACHABLE: 502,
    ErrorKind.PROVIDER_REJECTED: 502,
    ErrorKind.MALFORMED_RESPONSE: 502,
}

CLIENT_CLOSED_REQUEST = 499


class ClientDisconnected(Exception):
    pass


async def run_until_disconnect(request, work: Awaitable[T], *, poll_seconds: float) -> T:
    """Await `work`, cancelling it if the client goes away first."""
    task = asyncio.ensure_future(work)
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=poll_seconds)
            if done:
                return task.result()
            if await request.is_disconnected():
                log.info("client_disconnected", path=request.url.path)
                raise ClientDisconnected()
    finally:
        if not task.done():
            task.cancel()


def create_app(cfg: GatewayConfig | None = None, pipeline: InvocationPipeline | None = None):
    try:
        from fastapi import FastAPI, Query, Request
        from fastapi.exceptions import RequestValidationError
        from fastapi.responses import JSONResponse
    except ImportError as e:  # pragma: no cover
        raise RuntimeError('Install the "server" extra: pip install -e ".[server]"') from e

    cfg = cfg or GatewayConfig()
    pipeline = pipeline or InvocationPipeline.from_config(cfg)
    configure_logging(
        level=cfg.log_level,
        fmt=cfg.log_format,
        secrets=[*cfg.secrets(), *pipeline.registry.secrets()],
    )

    def _request_id(request) -> str | None:
        return getattr(getattr(request, "state", None), "request_id", None)

    def _observe(path: str, status_code: int, started_at: float) -> None:
        server_requests_total.labels(path=path, status=str(status_code)).inc()
        server_request_latency_seconds.labels(path=path).observe(max(0.0, time.monotonic() - started_at))

    def _error(request, exc: GatewayError, status_code: int, headers: dict[str, str] | None = None, **extra):
        server_errors_total.labels(kind=exc.kind.value).inc()
        server_requests_total.labels(path=request.url.path, status=str(status_code)).inc()
        return JSONResponse(
            status_code=status_code,
            headers=headers,
            content=make_error_response(
                kind=exc.kind.value, message=exc.message, request_id=_request_id(request), **extra
            ),
        )

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        maybe_start_metrics(enable=cfg.enable_metrics, bind=cfg.metrics_bind, port=cfg.metrics_port)
        try:
            yield
        finally:
            await pipeline.aclose()

    app = FastAPI(
        title="modelgate",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if cfg.enable_api_docs else None,
        redoc_url="/redoc" if cfg.enable_api_docs else None,
        openapi_url="/openapi.json" if cfg.enable_api_docs else None,
    )
    app.state.pipeline = pipeline
    install_middlewares(app, cfg=cfg)

    @app.exception_handler(AuthError)
    async def _auth_error_handler(request, exc: AuthError):
        challenge = WWW_AUTHENTICATE
        if exc.kind is ErrorKind.AUTH_INVALID:
            challenge += ', error="invalid_token"'
        return _error(request, exc, 401, headers={"WWW-Authenticate": challenge})

    @app.exception_handler(QuotaError)
    async def _quota_error_handler(request, exc: QuotaError):
        return _error(
            request,
            exc,
            429,
            headers={"Retry-After": str(exc.retry_after_seconds)},
            retry_after_seconds=exc.retry_after_seconds,
        )

    @app.exception_handler(RoutingError)
    async def _routing_error_handler(request, exc: RoutingError):
        return _error(request, exc, 400, provider=exc.provider)

    @app.exception_handler(ValidationError)
    async def _validation_error_handler(request, exc: ValidationError):
        return _error(request, exc, 400)

    @app.exception_handler(AccountError)
    async def _account_error_handler(request, exc: AccountError):
        return _error(request, exc, 409)

    @app.exception_handler(DispatchError)
    async def _dispatch_error_handler(request, exc: DispatchError):
        return _error(
            request,
            exc,
            DISPATCH_STATUS.get(exc.kind, 502),
            provider=exc.provider,
            provider_status=exc.provider_status,
        )

    @app.exception_handler(RequestValidationError)
    async def _request_validation_handler(request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        loc = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"{loc}: {first.get('msg')}" if loc else str(first.get("msg", "Invalid request body."))
        return _error(request, ValidationError(ErrorKind.INVALID_PAYLOAD, message), 400)

    @app.exception_handler(ConfigurationError)
    async def _config_error_handler(request, exc: ConfigurationError):
        log.error("configuration_error", error=str(exc))
        server_errors_total.labels(kind="configuration_error").inc()
        return JSONResponse(
            status_code=500,
            content=make_error_response(
                kind="configuration_error",
                message="Gateway is misconfigured.",
                request_id=_request_id(request),
            ),
        )

    @app.exception_handler(ClientDisconnected)
    async def _disconnected_handler(request, _exc: ClientDisconnected):
        server_requests_total.labels(path=request.url.path, status=str(CLIENT_CLOSED_REQUEST)).inc()
        return JSONResponse(
            status_code=CLIENT_CLOSED_REQUEST,
            content=make_error_response(
                kind="client_disconnected", message="Client closed request.", request_id=_request_id(request)
            ),
        )

    @app.get("/healthz")
    async def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/v1/auth/anonymous", response_model=SessionResponse)
    async def anonymous_session():
        started_at = time.monotonic()
        session = pipeline.issue_anonymous()
        _observe("/v1/auth/anonymous", 200, started_at)
        return SessionResponse.build(session.token, session.principal)

    def _accounts():
        if pipeline.accounts is None:
            raise ConfigurationError("Account registration is not configured.")
        return pipeline.accounts

    @app.post("/v1/auth/register", response_model=SessionResponse, status_code=201)
    async def register(body: RegisterRequestBody):
        started_at = time.monotonic()
        token, principal = await _accounts().register(body.email, body.password, body.subscription_tier)
        _observe("/v1/auth/register", 201, started_at)
        return SessionResponse.build(token, principal)

    @app.post("/v1/auth/login", response_model=SessionResponse)
    async def login(body: LoginRequestBody):
        started_at = time.monotonic()
        token, principal = await _accounts().login(body.email, body.password)
        _observe("/v1/auth/login", 200, started_at)
        return SessionResponse.build(token, principal)

    @app.get("/v1/analytics", response_model=AnalyticsResponse)
    async def analytics(request: Request, hours: int = Query(24, ge=1, le=720)):
        started_at = time.monotonic()
        principal = pipeline.identity.resolve(parse_bearer_token(request.headers.get("authorization")))
        if pipeline.analytics is None:
            raise ConfigurationError("Analytics are not configured.")
        summary = pipeline.analytics.summary(principal_id=principal.id, hours=hours)
        _observe("/v1/analytics", 200, started_at)
        return AnalyticsResponse.from_summary(summary)

    @app.post("/v1/invoke", response_model=InvokeResponseBody)
    async def invoke(request: Request, body: InvokeRequestBody):
        started_at = time.monotonic()
        credential = parse_bearer_token(request.headers.get("authorization"))
        outcome = await run_until_disconnect(
            request,
            pipeline.invoke(credential, body.to_request(), request_id=_request_id(request)),
            poll_seconds=cfg.disconnect_poll_seconds,
        )
        _observe("/v1/invoke", 200, started_at)
        return InvokeResponseBody.from_outcome(outcome)

    return app


def main() -> None:  # pragma: no cover
    try:
        import uvicorn
    except ImportError as e:
        raise RuntimeError('Install the "server" extra: pip install -e ".[server]"') from e

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    uvicorn.run("modelgate.server:create_app", factory=True, host=host, port=port)


if __name__ == "__main__":  # pragma: no cover
    main()
