from __future__ import annotations

import asyncio
import re
import uuid

import structlog

from .api_models import make_error_response

WWW_AUTHENTICATE = 'Bearer realm="modelgate"'

_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{8,128}$")


def coerce_request_id(value: str | None) -> str:
    if value and _REQUEST_ID_RE.fullmatch(value):
        return value
    return uuid.uuid4().hex


def parse_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) != 2:
        return None
    scheme, token = parts[0].strip(), parts[1].strip()
    if scheme.lower() != "bearer" or not token:
        return None
    return token


def _is_protected_path(path: str) -> bool:
    return path.startswith("/v1/")


def install_middlewares(app, *, cfg) -> None:
    """
    Install hardening middleware based on cfg.

    Kept as a helper to keep `server.py` lean and tests isolated.
    """
    from fastapi.responses import JSONResponse
    from starlette.middleware.base import BaseHTTPMiddleware
    from starlette.requests import Request

    def _too_large(request: Request) -> JSONResponse:
        return JSONResponse(
            status_code=413,
            content=make_error_response(
                kind="invalid_payload",
                message="Request body too large.",
                request_id=getattr(request.state, "request_id", None),
            ),
        )

    class RequestIdMiddleware(BaseHTTPMiddleware):
        async def dispatch(self, request: Request, call_next):
            request_id = coerce_request_id(request.headers.get("x-request-id"))
            request.state.request_id = request_id
            structlog.contextvars.bind_contextvars(request_id=request_id)
            response = None
            try:
                response = await call_next(request)
            finally:
                structlog.contextvars.clear_contextvars()
            if response is not None:
                response.headers.setdefault("X-Request-Id", request_id)
            return response

    class SecurityHeadersMiddleware(BaseHTTPMiddleware):
        async def dispatch(self, request: Request, call_next):
            response = await call_next(request)
            response.headers.setdefault("X-Content-Type-Options", "nosniff")
            response.headers.setdefault("X-Frame-Options", "DENY")
            response.headers.setdefault("Referrer-Policy", "no-referrer")
            response.headers.setdefault("Cross-Origin-Resource-Policy", "same-site")
            if getattr(cfg, "enable_api_docs", True) is False:
                response.headers.setdefault("X-Robots-Tag", "noindex, nofollow")
            if _is_protected_path(request.url.path):
                # Session tokens and completions must not be cached.
                response.headers.setdefault("Cache-Control", "no-store")
                response.headers.setdefault("Pragma", "no-cache")
            return response

    class MaxBodySizeMiddleware(BaseHTTPMiddleware):
        async def dispatch(self, request: Request, call_next):
            limit = int(getattr(cfg, "max_request_body_bytes", 0) or 0)
            if limit > 0 and request.method in ("POST", "PUT", "PATCH") and _is_protected_path(request.url.path):
                content_length = request.headers.get("content-length")
                if content_length and content_length.isdigit() and int(content_length) > limit:
                    return _too_large(request)
                body = await request.body()
                if len(body) > limit:
                    return _too_large(request)
            return await call_next(request)

    class ConcurrencyLimitMiddleware(BaseHTTPMiddleware):
        def __init__(self, app_):
            super().__init__(app_)
            self._sem = asyncio.Semaphore(max(1, int(getattr(cfg, "max_inflight_requests", 1) or 1)))

        async def dispatch(self, request: Request, call_next):
            if not _is_protected_path(request.url.path):
                return await call_next(request)
            if self._sem.locked():
                return JSONResponse(
                    status_code=503,
                    headers={"Retry-After": "1"},
                    content=make_error_response(
                        kind="server_busy",
                        message="Server is busy. Try again later.",
                        request_id=getattr(request.state, "request_id", None),
                    ),
                )
            await self._sem.acquire()
            try:
                return await call_next(request)
            finally:
                self._sem.release()

    app.add_middleware(MaxBodySizeMiddleware)
    app.add_middleware(ConcurrencyLimitMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    # Must be outermost to ensure `X-Request-Id` is set even when inner middleware short-circuits.
    app.add_middleware(RequestIdMiddleware)

    allowed_hosts: list[str] = list(getattr(cfg, "allowed_hosts", []) or [])
    if allowed_hosts:
        from starlette.middleware.trustedhost import TrustedHostMiddleware

        app.add_middleware(TrustedHostMiddleware, allowed_hosts=allowed_hosts)

    cors_allow_origins: list[str] = list(getattr(cfg, "cors_allow_origins", []) or [])
    if cors_allow_origins:
        from fastapi.middleware.cors import CORSMiddleware

        allow_credentials = bool(getattr(cfg, "cors_allow_credentials", False))
        if allow_credentials and "*" in cors_allow_origins:
            raise ValueError("ALLOWED_ORIGINS cannot include '*' when CORS_ALLOW_CREDENTIALS=true.")
        app.add_middleware(
            CORSMiddleware,
            allow_origins=cors_allow_origins,
            allow_credentials=allow_credentials,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["Authorization", "Content-Type", "X-Request-Id"],
            max_age=600,
        )
