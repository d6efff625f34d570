from __future__ import annotations

import json
from typing import Any

from ..contracts import ChatTurnMessage, ImagePart, NormalizedChunk, ProviderRequest, TextPart, TokenUsage
from ..errors import ProviderRateLimitError, ProviderUnavailableError, QuotaOrBillingError
from ..routing import ProviderKind
from .base import ProviderAdapter, StreamParser, UpstreamRequest, sse_data, usage_from_counts


class OpenAIStreamParser(StreamParser):
    """Chat Completions SSE: `data: {chunk}` lines terminated by `data: [DONE]`.

    With `stream_options.include_usage` the usage arrives in a final chunk
    with empty `choices`, after the one carrying `finish_reason`, so
    completion is only signalled at `[DONE]` (or end of body).
    """

    def __init__(self, provider: str):
        super().__init__(provider)
        self._usage: TokenUsage | None = None
        self._finished = False

    def feed(self, line: str) -> list[NormalizedChunk]:
        data = sse_data(line)
        if data is None:
            return []
        if data == "[DONE]":
            return [NormalizedChunk(token_usage=self._usage, is_complete=True)]

        event = json.loads(data)
        if event.get("error"):
            raise self._stream_error(event["error"])

        out: list[NormalizedChunk] = []
        usage = event.get("usage")
        if usage:
            self._usage = usage_from_counts(
                usage.get("prompt_tokens"), usage.get("completion_tokens"), usage.get("total_tokens")
            )

        choices = event.get("choices") or []
        if choices:
            choice = choices[0]
            text = (choice.get("delta") or {}).get("content")
            if text:
                out.append(NormalizedChunk(content=text, token_usage=self._usage))
            if choice.get("finish_reason"):
                self._finished = True
        elif usage:
            out.append(NormalizedChunk(token_usage=self._usage))
        return out

    def finish(self) -> list[NormalizedChunk]:
        if self._finished:
            return [NormalizedChunk(token_usage=self._usage, is_complete=True)]
        return []

    def _stream_error(self, error: Any) -> Exception:
        body = json.dumps(error)[:2000]
        code = str(error.get("code") or error.get("type") or "") if isinstance(error, dict) else ""
        if "quota" in code or "billing" in code:
            return QuotaOrBillingError("Upstream quota exhausted mid-stream.", provider=self.provider, body=body)
        if "rate_limit" in code:
            return ProviderRateLimitError("Upstream rate limited mid-stream.", provider=self.provider, body=body)
        return ProviderUnavailableError("Upstream reported a stream error.", provider=self.provider, body=body)


class OpenAIAdapter(ProviderAdapter):
    """OpenAI Chat Completions; also the base for OpenAI-compatible providers."""

    kind = ProviderKind.OPENAI

    def endpoint(self) -> str:
        return f"{self._base_url}/chat/completions"

    def extra_headers(self) -> dict[str, str]:
        return {}

    def convert_content(self, content: str | list) -> Any:
        if isinstance(content, str):
            return content
        parts: list[dict[str, Any]] = []
        for part in content:
            if isinstance(part, TextPart):
                parts.append({"type": "text", "text": part.text})
            elif isinstance(part, ImagePart):
                parts.append({"type": "image_url", "image_url": {"url": part.data_uri, "detail": "auto"}})
        return parts

    def convert_messages(self, messages: list[ChatTurnMessage]) -> list[dict[str, Any]]:
        return [{"role": m.role, "content": self.convert_content(m.content)} for m in messages]

    def build_request(self, req: ProviderRequest, api_key: str) -> UpstreamRequest:
        payload: dict[str, Any] = {
            "model": req.model,
            "messages": self.convert_messages(req.messages),
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        temperature = self.temperature_for(req)
        if temperature is not None:
            payload["temperature"] = temperature
        headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
            **self.extra_headers(),
        }
        return UpstreamRequest(url=self.endpoint(), headers=headers, json=payload)

    def new_parser(self) -> StreamParser:
        return OpenAIStreamParser(self.provider)


class DeepSeekAdapter(OpenAIAdapter):
    """OpenAI-compatible, text-only: image parts are described instead of sent."""

    kind = ProviderKind.DEEPSEEK

    def convert_content(self, content: str | list) -> Any:
        if isinstance(content, str):
            return content
        texts: list[str] = []
        for part in content:
            if isinstance(part, TextPart):
                texts.append(part.text)
            elif isinstance(part, ImagePart):
                texts.append(f"[Image attached: {part.name or part.mime_type} - images are not supported by this model]")
        return "\n\n".join(texts)


class OpenRouterAdapter(OpenAIAdapter):
    kind = ProviderKind.OPENROUTER

    def __init__(self, *args: Any, referer: str = "", title: str = "", **kwargs: Any):
        super().__init__(*args, **kwargs)
        self._referer = referer
        self._title = title

    def extra_headers(self) -> dict[str, str]:
        headers: dict[str, str] = {}
        if self._referer:
            headers["HTTP-Referer"] = self._referer
        if self._title:
            headers["X-Title"] = self._title
        return headers
