from __future__ import annotations

import json
from typing import Any

from ..contracts import ImagePart, NormalizedChunk, ProviderRequest, TextPart, TokenUsage
from ..errors import ProviderAuthError, ProviderRateLimitError, ProviderUnavailableError
from ..routing import ProviderKind
from .base import ProviderAdapter, StreamParser, UpstreamRequest, sse_data, usage_from_counts

ANTHROPIC_VERSION = "2023-06-01"


class AnthropicStreamParser(StreamParser):
    """Messages API SSE events.

    `message_start` carries input tokens, `content_block_delta` the text,
    `message_delta` the running output token count, `message_stop` ends the
    message. `event:` and `ping` lines carry nothing we need.
    """

    def __init__(self, provider: str):
        super().__init__(provider)
        self._input_tokens = 0
        self._output_tokens = 0

    def _usage(self) -> TokenUsage:
        return usage_from_counts(self._input_tokens, self._output_tokens)

    def feed(self, line: str) -> list[NormalizedChunk]:
        data = sse_data(line)
        if data is None:
            return []
        event = json.loads(data)
        kind = event.get("type")

        if kind == "message_start":
            usage = (event.get("message") or {}).get("usage") or {}
            self._input_tokens = int(usage.get("input_tokens") or 0)
            self._output_tokens = int(usage.get("output_tokens") or 0)
            return []
        if kind == "content_block_delta":
            delta = event.get("delta") or {}
            text = delta.get("text") if delta.get("type") in (None, "text_delta") else None
            if text:
                return [NormalizedChunk(content=text, token_usage=self._usage())]
            return []
        if kind == "message_delta":
            usage = event.get("usage") or {}
            if "output_tokens" in usage:
                self._output_tokens = int(usage["output_tokens"] or 0)
            if "input_tokens" in usage and usage["input_tokens"]:
                self._input_tokens = int(usage["input_tokens"])
            return [NormalizedChunk(token_usage=self._usage())]
        if kind == "message_stop":
            return [NormalizedChunk(token_usage=self._usage(), is_complete=True)]
        if kind == "error":
            raise self._stream_error(event.get("error") or {})
        return []

    def _stream_error(self, error: dict[str, Any]) -> Exception:
        body = json.dumps(error)[:2000]
        error_type = str(error.get("type", ""))
        if error_type == "rate_limit_error":
            return ProviderRateLimitError("Upstream rate limited mid-stream.", provider=self.provider, body=body)
        if error_type in ("authentication_error", "permission_error"):
            return ProviderAuthError("Upstream rejected credentials mid-stream.", provider=self.provider, body=body)
        return ProviderUnavailableError(f"Upstream stream error: {error_type or 'unknown'}.", provider=self.provider, body=body)


class AnthropicAdapter(ProviderAdapter):
    kind = ProviderKind.ANTHROPIC

    @staticmethod
    def convert_content(content: str | list) -> Any:
        if isinstance(content, str):
            return content
        blocks: list[dict[str, Any]] = []
        for part in content:
            if isinstance(part, TextPart):
                blocks.append({"type": "text", "text": part.text})
            elif isinstance(part, ImagePart):
                blocks.append(
                    {
                        "type": "image",
                        "source": {"type": "base64", "media_type": part.mime_type, "data": part.data_b64},
                    }
                )
        return blocks

    def build_request(self, req: ProviderRequest, api_key: str) -> UpstreamRequest:
        payload: dict[str, Any] = {
            "model": req.model,
            "max_tokens": req.max_output_tokens or self._max_output_tokens,
            "messages": [
                {"role": m.role, "content": self.convert_content(m.content)} for m in req.chat_messages()
            ],
            "stream": True,
        }
        system = req.system_text()
        if system:
            payload["system"] = system
        temperature = self.temperature_for(req)
        if temperature is not None:
            payload["temperature"] = temperature
        headers = {
            "x-api-key": api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }
        return UpstreamRequest(url=f"{self._base_url}/messages", headers=headers, json=payload)

    def new_parser(self) -> StreamParser:
        return AnthropicStreamParser(self.provider)
