import json

import httpx
import pytest

from chatstream_gateway.adapters import AnthropicAdapter
from chatstream_gateway.contracts import ChatTurnMessage, ImagePart, ProviderRequest, TextPart
from chatstream_gateway.errors import ProviderAuthError, ProviderUnavailableError, RequestTimeoutError


def _event(name: str, payload: dict) -> str:
    return f"event: {name}\ndata: {json.dumps(payload)}\n\n"


BODY = "".join(
    [
        _event("message_start", {"type": "message_start", "message": {"usage": {"input_tokens": 11, "output_tokens": 1}}}),
        _event("content_block_start", {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}}),
        _event("ping", {"type": "ping"}),
        _event("content_block_delta", {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hel"}}),
        _event("content_block_delta", {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "lo"}}),
        _event("content_block_stop", {"type": "content_block_stop", "index": 0}),
        _event("message_delta", {"type": "message_delta", "delta": {"stop_reason": "end_turn"}, "usage": {"output_tokens": 4}}),
        _event("message_stop", {"type": "message_stop"}),
    ]
).encode("utf-8")


def _adapter(handler):
    async def _no_sleep(_delay: float) -> None:
        return None

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return AnthropicAdapter(client, base_url="https://api.anthropic.test/v1", max_output_tokens=1024, sleeper=_no_sleep)


@pytest.mark.asyncio
async def test_request_shape_and_stream():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, content=BODY)

    req = ProviderRequest(
        model="claude-3-5-sonnet-20241022",
        messages=[
            ChatTurnMessage(role="system", content="be brief"),
            ChatTurnMessage(role="user", content="hi"),
        ],
        temperature=0.7,
    )
    chunks = [c async for c in _adapter(handler).stream_response(req, "sk-ant-test")]

    assert seen["url"] == "https://api.anthropic.test/v1/messages"
    assert seen["headers"]["x-api-key"] == "sk-ant-test"
    assert seen["headers"]["anthropic-version"] == "2023-06-01"
    assert seen["body"]["system"] == "be brief"
    assert seen["body"]["messages"] == [{"role": "user", "content": "hi"}]
    assert seen["body"]["max_tokens"] == 1024
    assert seen["body"]["temperature"] == 0.7

    assert "".join(c.content for c in chunks) == "Hello"
    assert chunks[-1].is_complete
    assert chunks[-1].token_usage.input_tokens == 11
    assert chunks[-1].token_usage.output_tokens == 4
    assert chunks[-1].token_usage.total_tokens == 15


@pytest.mark.asyncio
async def test_image_parts_become_base64_blocks():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, content=_event("message_stop", {"type": "message_stop"}).encode())

    msg = ChatTurnMessage(role="user", content=[TextPart(text="describe"), ImagePart(mime_type="image/jpeg", data_b64="QUJD")])
    req = ProviderRequest(model="claude-3-haiku", messages=[msg])
    [c async for c in _adapter(handler).stream_response(req, "k")]

    blocks = seen["body"]["messages"][0]["content"]
    assert blocks[1] == {"type": "image", "source": {"type": "base64", "media_type": "image/jpeg", "data": "QUJD"}}


@pytest.mark.asyncio
async def test_overloaded_error_event_is_unavailable():
    body = _event("error", {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}}).encode()

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=body)

    req = ProviderRequest(model="claude-3-haiku", messages=[ChatTurnMessage(role="user", content="hi")])
    with pytest.raises(ProviderUnavailableError) as info:
        [c async for c in _adapter(handler).stream_response(req, "k")]
    assert info.value.user_message.startswith("Anthropic API is currently unavailable")


@pytest.mark.asyncio
async def test_invalid_key_maps_to_auth_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"type": "error", "error": {"type": "authentication_error"}})

    req = ProviderRequest(model="claude-3-haiku", messages=[ChatTurnMessage(role="user", content="hi")])
    with pytest.raises(ProviderAuthError):
        [c async for c in _adapter(handler).stream_response(req, "bad")]


@pytest.mark.asyncio
async def test_read_timeout_is_retried_then_reported():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        raise httpx.ReadTimeout("upstream too slow", request=request)

    req = ProviderRequest(model="claude-3-haiku", messages=[ChatTurnMessage(role="user", content="hi")])
    with pytest.raises(RequestTimeoutError):
        [c async for c in _adapter(handler).stream_response(req, "k")]
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_timeout_before_first_chunk_recovers_on_retry():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if len(calls) == 1:
            raise httpx.ConnectTimeout("connect timed out", request=request)
        return httpx.Response(200, content=BODY)

    req = ProviderRequest(model="claude-3-haiku", messages=[ChatTurnMessage(role="user", content="hi")])
    chunks = [c async for c in _adapter(handler).stream_response(req, "k")]
    assert "".join(c.content for c in chunks) == "Hello"
    assert len(calls) == 2
