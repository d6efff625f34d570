import json

import httpx
import pytest

from chatstream_gateway.adapters import LlamaAdapter
from chatstream_gateway.adapters.llama import build_prompt
from chatstream_gateway.contracts import ChatTurnMessage, ImagePart, ProviderRequest, TextPart
from chatstream_gateway.errors import ProviderUnavailableError


def _ndjson(*events) -> bytes:
    return "".join(json.dumps(e) + "\n" for e in events).encode("utf-8")


def _adapter(handler):
    async def _no_sleep(_delay: float) -> None:
        return None

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return LlamaAdapter(client, base_url="https://ollama.test", max_output_tokens=512, sleeper=_no_sleep)


def test_build_prompt_ends_with_open_assistant_turn():
    prompt = build_prompt(
        [
            ChatTurnMessage(role="user", content="hi"),
            ChatTurnMessage(role="assistant", content="hello"),
            ChatTurnMessage(role="user", content="how are you"),
        ]
    )
    assert prompt == "User: hi\n\nAssistant: hello\n\nUser: how are you\n\nAssistant:"


@pytest.mark.asyncio
async def test_generate_request_and_ndjson_stream():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            content=_ndjson(
                {"response": "Hel", "done": False},
                {"response": "lo", "done": False},
                {"response": "", "done": True, "prompt_eval_count": 6, "eval_count": 2},
            ),
        )

    msg = ChatTurnMessage(role="user", content=[TextPart(text="see"), ImagePart(mime_type="image/png", data_b64="AAAA")])
    req = ProviderRequest(
        model="llama3.1",
        messages=[ChatTurnMessage(role="system", content="sys"), msg],
        temperature=0.7,
    )
    chunks = [c async for c in _adapter(handler).stream_response(req, "ollama-key")]

    assert seen["url"] == "https://ollama.test/api/generate"
    assert seen["auth"] == "Bearer ollama-key"
    body = seen["body"]
    assert body["prompt"] == "User: see\n\nAssistant:"
    assert body["system"] == "sys"
    assert body["images"] == ["AAAA"]
    assert body["options"] == {"num_predict": 512, "temperature": 0.7}

    assert "".join(c.content for c in chunks) == "Hello"
    assert chunks[-1].is_complete
    assert chunks[-1].token_usage.total_tokens == 8


@pytest.mark.asyncio
async def test_error_line_is_unavailable():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=_ndjson({"error": "model not loaded"}))

    req = ProviderRequest(model="llama3.1", messages=[ChatTurnMessage(role="user", content="hi")])
    with pytest.raises(ProviderUnavailableError):
        [c async for c in _adapter(handler).stream_response(req, "k")]
