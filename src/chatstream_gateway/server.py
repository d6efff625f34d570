from __future__ import annotations

import json
import os
from collections.abc import Awaitable, Callable, Mapping
from contextlib import asynccontextmanager

import httpx
import structlog
from pydantic import ValidationError
from starlette.requests import Request

from .adapters import ProviderAdapter, build_adapters
from .config import GatewayConfig
from .credential_store import CredentialStore, JsonCredentialStore
from .credentials import CredentialResolver
from .errors import AuthenticationError, InvalidRequestError, UserResolutionError
from .files import FilePreprocessor
from .http_security import install_middlewares
from .identity import IdentityProvider, StaticTokenIdentityProvider
from .logging import configure_logging
from .metrics import maybe_start_metrics, server_errors_total, server_requests_total
from .orchestrator import ChatOrchestrator
from .routing import ProviderKind
from .schemas import CompletionRequest, make_error_response
from .search import ExaSearchClient, WebSearchService
from .stores import FileStore, InMemoryFileStore, InMemoryUserStore, UserStore

log = structlog.get_logger()

STREAM_PATH = "/api/chat/stream"

STREAM_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "Access-Control-Allow-Origin": "*",
}


def _validation_message(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        msg = str(err.get("msg", "invalid value")).removeprefix("Value error, ")
        parts.append(f"{loc}: {msg}" if loc else msg)
    return "; ".join(parts) or "Invalid request."


def create_app(
    cfg: GatewayConfig | None = None,
    *,
    identity: IdentityProvider | None = None,
    users: UserStore | None = None,
    credential_store: CredentialStore | None = None,
    files: FileStore | None = None,
    adapters: Mapping[ProviderKind, ProviderAdapter] | None = None,
    search: WebSearchService | None = None,
    http_client: httpx.AsyncClient | None = None,
    sleeper: Callable[[float], Awaitable[None]] | None = None,
):
    try:
        from fastapi import FastAPI
        from fastapi.responses import JSONResponse, StreamingResponse
    except ImportError as e:  # pragma: no cover
        raise RuntimeError('Install the "server" extra: pip install -e ".[server]"') from e

    cfg = cfg or GatewayConfig()
    configure_logging(level=cfg.log_level, fmt=cfg.log_format, secrets=cfg.log_secrets())

    owns_client = http_client is None
    client = http_client or httpx.AsyncClient(
        timeout=httpx.Timeout(cfg.upstream_timeout_seconds, connect=10.0),
        follow_redirects=True,
    )

    resolver: CredentialResolver | None = None
    if cfg.encryption_key:
        resolver = CredentialResolver(credential_store or JsonCredentialStore(cfg.credentials_path), cfg.encryption_key)
    else:
        log.warning("credentials_disabled", reason="CREDENTIALS_FERNET_KEY is not set")

    if search is None and cfg.exa_api_key:
        search = ExaSearchClient(
            client,
            api_key=cfg.exa_api_key,
            base_url=cfg.exa_base_url,
            num_results=cfg.web_search_results,
        )

    identity = identity or StaticTokenIdentityProvider(cfg.auth_tokens)
    orchestrator = ChatOrchestrator(
        users=users or InMemoryUserStore(),
        credentials=resolver,
        files=FilePreprocessor(
            files or InMemoryFileStore(),
            client,
            max_concurrency=cfg.attachment_concurrency,
            fetch_timeout_seconds=cfg.attachment_fetch_timeout_seconds,
            max_bytes=cfg.attachment_max_bytes,
            allowed_hosts=cfg.attachment_allowed_hosts,
        ),
        adapters=adapters or build_adapters(cfg, client, sleeper=sleeper),
        search=search,
        default_temperature=cfg.default_temperature,
        max_output_tokens=cfg.max_output_tokens,
        stream_idle_timeout_seconds=cfg.stream_idle_timeout_seconds,
        stream_total_timeout_seconds=cfg.stream_total_timeout_seconds,
    )

    def _request_id(request) -> str | None:
        return getattr(getattr(request, "state", None), "request_id", None)

    def _error(request, status_code: int, message: str, type_: str) -> JSONResponse:
        server_errors_total.labels(type=type_).inc()
        server_requests_total.labels(path=request.url.path, status=str(status_code)).inc()
        return JSONResponse(
            status_code=status_code,
            content=make_error_response(message=message, type=type_, code=_request_id(request)).model_dump(),
        )

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        maybe_start_metrics(enable=cfg.enable_metrics, bind=cfg.metrics_bind, port=cfg.metrics_port)
        try:
            yield
        finally:
            if owns_client:
                await client.aclose()

    app = FastAPI(
        title="chatstream-gateway",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if cfg.enable_api_docs else None,
        redoc_url="/redoc" if cfg.enable_api_docs else None,
        openapi_url="/openapi.json" if cfg.enable_api_docs else None,
    )
    app.state.orchestrator = orchestrator
    install_middlewares(app, cfg=cfg)

    @app.exception_handler(AuthenticationError)
    async def _auth_error_handler(request, exc: AuthenticationError):
        resp = _error(request, 401, exc.user_message, "authentication_error")
        resp.headers["WWW-Authenticate"] = 'Bearer realm="chatstream-gateway"'
        return resp

    @app.exception_handler(InvalidRequestError)
    async def _invalid_request_handler(request, exc: InvalidRequestError):
        return _error(request, 400, str(exc), "invalid_request_error")

    @app.exception_handler(UserResolutionError)
    async def _user_resolution_handler(request, exc: UserResolutionError):
        return _error(request, 500, exc.user_message, "api_error")

    @app.get("/healthz")
    async def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.post(STREAM_PATH)
    async def chat_stream(request: Request):
        # Identity is checked before the body is parsed or anything else runs.
        auth_id = await identity.authenticate(request.headers)
        if not auth_id:
            raise AuthenticationError("Missing or invalid authentication token.")

        try:
            payload = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise InvalidRequestError("Request body must be valid JSON.") from e
        try:
            req = CompletionRequest.model_validate(payload)
        except ValidationError as e:
            raise InvalidRequestError(_validation_message(e)) from e

        if len(req.messages) > cfg.max_messages:
            raise InvalidRequestError("Too many messages.")
        total_chars = sum(len(m.content) for m in req.messages)
        if total_chars > cfg.max_total_message_chars:
            raise InvalidRequestError("Message content too large.")

        turn = await orchestrator.begin(auth_id, req)
        server_requests_total.labels(path=STREAM_PATH, status="200").inc()
        return StreamingResponse(turn.frames(), media_type="text/plain; charset=utf-8", headers=STREAM_HEADERS)

    return app


app = create_app()


def main() -> None:  # pragma: no cover
    try:
        import uvicorn
    except ImportError as e:
        raise RuntimeError('Install the "server" extra: pip install -e ".[server]"') from e

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    uvicorn.run("chatstream_gateway.server:app", host=host, port=port)


if __name__ == "__main__":  # pragma: no cover
    main()
