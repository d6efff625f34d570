from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal, Union


@dataclass(frozen=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0


@dataclass(frozen=True)
class GroundingSource:
    title: str
    url: str
    snippet: str | None = None


@dataclass(frozen=True)
class GroundingMetadata:
    sources: tuple[GroundingSource, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        out: list[dict[str, str]] = []
        for s in self.sources:
            item = {"title": s.title, "url": s.url}
            if s.snippet:
                item["snippet"] = s.snippet
            out.append(item)
        return {"sources": out}


@dataclass(frozen=True)
class NormalizedChunk:
    """Provider-agnostic unit of streamed output."""

    content: str = ""
    token_usage: TokenUsage | None = None
    is_complete: bool = False
    grounding: GroundingMetadata | None = None


@dataclass(frozen=True)
class TextPart:
    text: str
    type: Literal["text"] = "text"


@dataclass(frozen=True)
class ImagePart:
    mime_type: str
    data_b64: str
    name: str = ""
    type: Literal["image"] = "image"

    @property
    def data_uri(self) -> str:
        return f"data:{self.mime_type};base64,{self.data_b64}"


ContentPart = Union[TextPart, ImagePart]


@dataclass(frozen=True)
class ChatTurnMessage:
    """One message of the normalized conversation.

    `content` is a plain string, or a list of parts for the final user turn
    when attachments were processed.
    """

    role: str
    content: str | list[ContentPart]

    def text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        return "\n\n".join(p.text for p in self.content if isinstance(p, TextPart))


@dataclass(frozen=True)
class ProviderRequest:
    model: str
    messages: list[ChatTurnMessage]
    grounding: bool = False
    temperature: float | None = None
    max_output_tokens: int | None = None

    def system_text(self) -> str | None:
        parts = [m.text() for m in self.messages if m.role == "system" and m.text()]
        return "\n\n".join(parts).strip() or None

    def chat_messages(self) -> list[ChatTurnMessage]:
        return [m for m in self.messages if m.role != "system"]
