import httpx
import pytest

from chatstream_gateway.config import GatewayConfig
from chatstream_gateway.contracts import NormalizedChunk
from chatstream_gateway.credential_store import InMemoryCredentialStore
from chatstream_gateway.crypto import encrypt_secret, generate_key
from chatstream_gateway.routing import ProviderKind
from chatstream_gateway.stores import InMemoryUserStore, UserRecord
from chatstream_gateway.wire import decode_frame

ENC_KEY = generate_key()
BODY = {"model": "gpt-4o", "messages": [{"role": "user", "content": "hi"}]}
AUTH = {"Authorization": "Bearer tok_1"}


class FakeAdapter:
    supports_grounding = False

    def __init__(self, chunks=None):
        self.chunks = chunks or [NormalizedChunk(content="Hel"), NormalizedChunk(content="lo"), NormalizedChunk(is_complete=True)]
        self.calls = []

    async def stream_response(self, req, api_key):
        self.calls.append((req, api_key))
        for chunk in self.chunks:
            yield chunk


def _app(adapter, *, with_key=True, **cfg_overrides):
    pytest.importorskip("fastapi")
    from chatstream_gateway.server import create_app

    store = InMemoryCredentialStore()
    if with_key:
        store.put_encrypted("user_1", "openai", encrypt_secret(ENC_KEY, "sk-live"))
    cfg = GatewayConfig(
        enable_metrics=False,
        encryption_key=ENC_KEY,
        auth_tokens={"tok_1": "auth_1"},
        exa_api_key=None,
        **cfg_overrides,
    )

    def no_network(request: httpx.Request) -> httpx.Response:  # pragma: no cover
        raise AssertionError(f"unexpected outbound call to {request.url}")

    return create_app(
        cfg,
        users=InMemoryUserStore([UserRecord(id="user_1", auth_id="auth_1")]),
        credential_store=store,
        adapters={kind: adapter for kind in ProviderKind},
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(no_network)),
    )


def _client(app) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_streams_wire_frames_with_transport_headers():
    adapter = FakeAdapter()
    async with _client(_app(adapter)) as client:
        resp = await client.post("/api/chat/stream", headers=AUTH, json=BODY)

    assert resp.status_code == 200
    assert resp.headers["content-type"] == "text/plain; charset=utf-8"
    assert resp.headers["cache-control"] == "no-cache, no-transform"
    assert resp.headers["access-control-allow-origin"] == "*"
    assert resp.headers.get("X-Request-Id")

    frames = [decode_frame(line) for line in resp.text.split("\n") if line]
    assert [f.kind for f in frames] == ["metadata", "content", "content", "done"]
    assert "".join(f.payload for f in frames if f.kind == "content") == "Hello"
    assert frames[-1].payload == {"type": "done", "length": 5}
    assert adapter.calls[0][1] == "sk-live"


@pytest.mark.asyncio
async def test_unauthenticated_request_is_401_before_anything_else():
    adapter = FakeAdapter()
    async with _client(_app(adapter)) as client:
        resp = await client.post("/api/chat/stream", headers={"X-Request-Id": "req_12345678"}, json=BODY)
        bad_token = await client.post("/api/chat/stream", headers={"Authorization": "Bearer nope"}, json=BODY)
        bad_body = await client.post("/api/chat/stream", json={"messages": []})

    assert resp.status_code == 401
    assert resp.headers.get("WWW-Authenticate", "").lower().startswith("bearer")
    assert resp.json()["error"]["code"] == "req_12345678"
    assert resp.json()["error"]["type"] == "authentication_error"
    assert bad_token.status_code == 401
    assert bad_body.status_code == 401
    assert adapter.calls == []


@pytest.mark.asyncio
async def test_invalid_body_is_400_after_authentication():
    adapter = FakeAdapter()
    async with _client(_app(adapter, max_messages=2)) as client:
        empty = await client.post("/api/chat/stream", headers=AUTH, json={"messages": []})
        not_json = await client.post(
            "/api/chat/stream", headers={**AUTH, "Content-Type": "application/json"}, content=b"{nope"
        )
        too_many = await client.post(
            "/api/chat/stream",
            headers=AUTH,
            json={"messages": [{"role": "user", "content": str(i)} for i in range(3)]},
        )

    assert empty.status_code == 400
    assert "Messages array is required" in empty.json()["error"]["message"]
    assert not_json.status_code == 400
    assert too_many.status_code == 400
    assert too_many.json()["error"]["message"] == "Too many messages."
    assert adapter.calls == []


@pytest.mark.asyncio
async def test_missing_credential_is_a_single_error_frame():
    adapter = FakeAdapter()
    async with _client(_app(adapter, with_key=False)) as client:
        resp = await client.post("/api/chat/stream", headers=AUTH, json=BODY)

    assert resp.status_code == 200
    assert resp.text == 'f:{"error":"No API key found for openai. Please add one in Settings."}\n'
    assert adapter.calls == []


@pytest.mark.asyncio
async def test_request_body_limit_is_413():
    async with _client(_app(FakeAdapter(), max_request_body_bytes=60)) as client:
        payload = b'{"messages":[{"role":"user","content":"' + (b"x" * 200) + b'"}]}'
        resp = await client.post(
            "/api/chat/stream",
            headers={**AUTH, "Content-Type": "application/json"},
            content=payload,
        )

    assert resp.status_code == 413
    assert resp.json()["error"]["type"] == "invalid_request_error"


@pytest.mark.asyncio
async def test_healthz_and_security_headers():
    async with _client(_app(FakeAdapter())) as client:
        resp = await client.get("/healthz", headers={"X-Request-Id": "req_12345678"})

    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}
    assert resp.headers.get("X-Request-Id") == "req_12345678"
    assert resp.headers.get("X-Content-Type-Options") == "nosniff"
    assert resp.headers.get("X-Frame-Options") == "DENY"
    assert resp.headers.get("Referrer-Policy") == "no-referrer"


@pytest.mark.asyncio
async def test_cors_preflight_allows_post():
    async with _client(_app(FakeAdapter(), cors_allow_origins=["https://app.test"])) as client:
        resp = await client.options(
            "/api/chat/stream",
            headers={"Origin": "https://app.test", "Access-Control-Request-Method": "POST"},
        )

    assert resp.status_code in (200, 204)
    assert resp.headers.get("access-control-allow-origin") == "https://app.test"
