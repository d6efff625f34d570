from __future__ import annotations

import json
from typing import Any

from ..contracts import (
    ChatTurnMessage,
    GroundingMetadata,
    GroundingSource,
    ImagePart,
    NormalizedChunk,
    ProviderRequest,
    TextPart,
    TokenUsage,
)
from ..errors import ProviderRequestError, ProviderUnavailableError
from ..routing import ProviderKind
from .base import ProviderAdapter, StreamParser, UpstreamRequest, sse_data, usage_from_counts


def grounding_from_metadata(metadata: dict[str, Any]) -> GroundingMetadata | None:
    sources: list[GroundingSource] = []
    for item in metadata.get("groundingChunks") or []:
        web = item.get("web") or {}
        uri = web.get("uri")
        if uri:
            sources.append(GroundingSource(title=web.get("title") or uri, url=uri))
    return GroundingMetadata(sources=tuple(sources)) if sources else None


class GeminiStreamParser(StreamParser):
    """`streamGenerateContent?alt=sse` events, one GenerateContentResponse per `data:` line."""

    def __init__(self, provider: str):
        super().__init__(provider)
        self._usage: TokenUsage | None = None
        self._grounding_sent = False

    def feed(self, line: str) -> list[NormalizedChunk]:
        data = sse_data(line)
        if data is None:
            return []
        event = json.loads(data)
        if event.get("error"):
            raise ProviderUnavailableError(
                "Upstream reported a stream error.", provider=self.provider, body=json.dumps(event["error"])[:2000]
            )

        usage = event.get("usageMetadata")
        if usage:
            self._usage = usage_from_counts(
                usage.get("promptTokenCount"), usage.get("candidatesTokenCount"), usage.get("totalTokenCount")
            )

        candidates = event.get("candidates")
        if not isinstance(candidates, list) or not candidates:
            block_reason = (event.get("promptFeedback") or {}).get("blockReason")
            if block_reason:
                raise ProviderRequestError(f"Prompt blocked: {block_reason}.", provider=self.provider)
            return [NormalizedChunk(token_usage=self._usage)] if usage else []

        candidate = candidates[0]
        parts = (candidate.get("content") or {}).get("parts") or []
        text = "".join(p["text"] for p in parts if isinstance(p.get("text"), str) and not p.get("thought"))

        grounding = None
        if not self._grounding_sent and candidate.get("groundingMetadata"):
            grounding = grounding_from_metadata(candidate["groundingMetadata"])
            self._grounding_sent = grounding is not None

        finished = bool(candidate.get("finishReason"))
        if not text and grounding is None and not finished and not usage:
            return []
        return [
            NormalizedChunk(content=text, token_usage=self._usage, is_complete=finished, grounding=grounding)
        ]


class GeminiAdapter(ProviderAdapter):
    """Gemini Developer API. The API key travels as the `key` query parameter."""

    kind = ProviderKind.GEMINI
    supports_grounding = True

    @staticmethod
    def convert_message(msg: ChatTurnMessage) -> dict[str, Any]:
        role = "model" if msg.role == "assistant" else "user"
        if isinstance(msg.content, str):
            return {"role": role, "parts": [{"text": msg.content}]}
        parts: list[dict[str, Any]] = []
        for part in msg.content:
            if isinstance(part, TextPart):
                parts.append({"text": part.text})
            elif isinstance(part, ImagePart):
                parts.append({"inlineData": {"mimeType": part.mime_type, "data": part.data_b64}})
        return {"role": role, "parts": parts}

    @staticmethod
    def search_tool(model: str) -> dict[str, Any]:
        if model.startswith("gemini-1"):
            return {"googleSearchRetrieval": {}}
        return {"google_search": {}}

    def build_request(self, req: ProviderRequest, api_key: str) -> UpstreamRequest:
        payload: dict[str, Any] = {"contents": [self.convert_message(m) for m in req.chat_messages()]}

        system = req.system_text()
        if system:
            payload["systemInstruction"] = {"parts": [{"text": system}]}

        generation_config: dict[str, Any] = {"maxOutputTokens": req.max_output_tokens or self._max_output_tokens}
        temperature = self.temperature_for(req)
        if temperature is not None:
            generation_config["temperature"] = temperature
        payload["generationConfig"] = generation_config

        if req.grounding:
            payload["tools"] = [self.search_tool(req.model)]

        return UpstreamRequest(
            url=f"{self._base_url}/models/{req.model}:streamGenerateContent",
            headers={"Content-Type": "application/json"},
            json=payload,
            params={"alt": "sse", "key": api_key},
        )

    def new_parser(self) -> StreamParser:
        return GeminiStreamParser(self.provider)
