from __future__ import annotations

import asyncio
import re
import secrets as secrets_module
import uuid

import structlog


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


def constant_time_equals(a: str, b: str) -> bool:
    return secrets_module.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def _is_protected_path(path: str) -> bool:
    return path.startswith("/api/")


def install_middlewares(app, *, cfg) -> None:
    """
    Install request-id, security headers, body-size and concurrency limits,
    trusted hosts and CORS based on cfg.
    """
    from fastapi.responses import JSONResponse
    from starlette.middleware.base import BaseHTTPMiddleware
    from starlette.requests import Request

    from .metrics import server_errors_total
    from .schemas import make_error_response

    def _reject(request: Request, status_code: int, message: str, type_: str) -> JSONResponse:
        server_errors_total.labels(type=type_).inc()
        return JSONResponse(
            status_code=status_code,
            content=make_error_response(
                message=message,
                type=type_,
                code=getattr(request.state, "request_id", None),
            ).model_dump(),
        )

    class RequestIdMiddleware(BaseHTTPMiddleware):
        async def dispatch(self, request: Request, call_next):
            request_id = coerce_request_id(request.headers.get("x-request-id"))
            request.state.request_id = request_id
            structlog.contextvars.bind_contextvars(request_id=request_id)
            try:
                response = await call_next(request)
            finally:
                structlog.contextvars.clear_contextvars()
            response.headers.setdefault("X-Request-Id", request_id)
            return response

    class SecurityHeadersMiddleware(BaseHTTPMiddleware):
        async def dispatch(self, request: Request, call_next):
            response = await call_next(request)
            response.headers.setdefault("X-Content-Type-Options", "nosniff")
            response.headers.setdefault("X-Frame-Options", "DENY")
            response.headers.setdefault("Referrer-Policy", "no-referrer")
            response.headers.setdefault("X-Permitted-Cross-Domain-Policies", "none")
            if getattr(cfg, "enable_api_docs", True) is False:
                response.headers.setdefault("X-Robots-Tag", "noindex, nofollow")
            if _is_protected_path(request.url.path):
                # The stream route sets its own "no-cache, no-transform".
                response.headers.setdefault("Cache-Control", "no-store")
            return response

    class MaxBodySizeMiddleware(BaseHTTPMiddleware):
        async def dispatch(self, request: Request, call_next):
            limit = int(getattr(cfg, "max_request_body_bytes", 0) or 0)
            if limit > 0 and request.method in ("POST", "PUT", "PATCH") and _is_protected_path(
                request.url.path
            ):
                content_length = request.headers.get("content-length")
                if content_length and content_length.isdigit() and int(content_length) > limit:
                    return _reject(request, 413, "Request body too large.", "invalid_request_error")
                body = await request.body()
                if len(body) > limit:
                    return _reject(request, 413, "Request body too large.", "invalid_request_error")
            return await call_next(request)

    class ConcurrencyLimitMiddleware(BaseHTTPMiddleware):
        def __init__(self, app_):
            super().__init__(app_)
            self._sem = asyncio.Semaphore(max(1, int(getattr(cfg, "max_inflight_requests", 1) or 1)))

        async def dispatch(self, request: Request, call_next):
            if not _is_protected_path(request.url.path):
                return await call_next(request)
            if self._sem.locked():
                return _reject(request, 429, "Server is busy. Try again later.", "rate_limit_error")
            await self._sem.acquire()
            try:
                response = await call_next(request)
            except BaseException:
                self._sem.release()
                raise

            # Streaming bodies outlive call_next; hold the slot until the body is done.
            body_iterator = response.body_iterator
            sem = self._sem

            async def _release_when_done():
                try:
                    async for chunk in body_iterator:
                        yield chunk
                finally:
                    sem.release()

            response.body_iterator = _release_when_done()
            return response

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
            raise ValueError("CORS_ALLOW_ORIGINS cannot include '*' when CORS_ALLOW_CREDENTIALS=true.")
        app.add_middleware(
            CORSMiddleware,
            allow_origins=cors_allow_origins,
            allow_credentials=allow_credentials,
            allow_methods=["POST", "OPTIONS"],
            allow_headers=["Authorization", "Content-Type", "X-Request-Id"],
            max_age=600,
        )
