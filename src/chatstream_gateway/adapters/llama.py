from __future__ import annotations

import json
from typing import Any

from ..contracts import ChatTurnMessage, ImagePart, NormalizedChunk, ProviderRequest, TextPart
from ..errors import ProviderUnavailableError
from ..routing import ProviderKind
from .base import ProviderAdapter, StreamParser, UpstreamRequest, usage_from_counts

_ROLE_LABELS = {"user": "User", "assistant": "Assistant"}


def build_prompt(messages: list[ChatTurnMessage]) -> str:
    """Flatten the conversation into one prompt ending with an open assistant turn."""
    lines = [f"{_ROLE_LABELS.get(m.role, m.role.capitalize())}: {m.text()}" for m in messages]
    lines.append("Assistant:")
    return "\n\n".join(lines)


class LlamaStreamParser(StreamParser):
    """Newline-delimited JSON objects: `{"response": "...", "done": false}` ... `{"done": true, ...counts}`."""

    def feed(self, line: str) -> list[NormalizedChunk]:
        line = line.strip()
        if not line:
            return []
        event = json.loads(line)
        if event.get("error"):
            raise ProviderUnavailableError(
                "Upstream reported a stream error.", provider=self.provider, body=str(event["error"])[:2000]
            )
        text = event.get("response") or ""
        if event.get("done"):
            usage = usage_from_counts(event.get("prompt_eval_count"), event.get("eval_count"))
            return [NormalizedChunk(content=text, token_usage=usage, is_complete=True)]
        return [NormalizedChunk(content=text)] if text else []


class LlamaAdapter(ProviderAdapter):
    """Llama-family models over an Ollama-compatible `/api/generate` endpoint.

    The conversation is sent as a single concatenated prompt, with attached
    images as a separate base64 list.
    """

    kind = ProviderKind.META

    def build_request(self, req: ProviderRequest, api_key: str) -> UpstreamRequest:
        chat = req.chat_messages()
        images: list[str] = []
        flattened: list[ChatTurnMessage] = []
        for m in chat:
            if isinstance(m.content, list):
                images.extend(p.data_b64 for p in m.content if isinstance(p, ImagePart))
                text = "\n\n".join(p.text for p in m.content if isinstance(p, TextPart))
                flattened.append(ChatTurnMessage(role=m.role, content=text))
            else:
                flattened.append(m)

        options: dict[str, Any] = {"num_predict": req.max_output_tokens or self._max_output_tokens}
        temperature = self.temperature_for(req)
        if temperature is not None:
            options["temperature"] = temperature

        payload: dict[str, Any] = {
            "model": req.model,
            "prompt": build_prompt(flattened),
            "stream": True,
            "options": options,
        }
        system = req.system_text()
        if system:
            payload["system"] = system
        if images:
            payload["images"] = images

        headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}
        return UpstreamRequest(url=f"{self._base_url}/api/generate", headers=headers, json=payload)

    def new_parser(self) -> StreamParser:
        return LlamaStreamParser(self.provider)
