"""Client-facing line protocol.

Each frame is one line, `<tag>:<json>\\n`:

    f:{"messageId": "..."}          metadata (also errors and grounding)
    0:"text"                        content delta
    d:{"type":"done","length":N}    terminal success

Split a body on "\\n" only: content is JSON-encoded, so a literal newline
never appears inside a frame.
"""

from __future__ import annotations

import json
import secrets
import string
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any, Literal

from .contracts import GroundingMetadata, NormalizedChunk

METADATA_TAG = "f"
CONTENT_TAG = "0"
DONE_TAG = "d"

FrameKind = Literal["metadata", "content", "done"]

_TAG_KINDS: dict[str, FrameKind] = {METADATA_TAG: "metadata", CONTENT_TAG: "content", DONE_TAG: "done"}
_ID_ALPHABET = string.ascii_lowercase + string.digits


def _dumps(payload: Any) -> str:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


def metadata_frame(payload: dict[str, Any]) -> str:
    return f"{METADATA_TAG}:{_dumps(payload)}\n"


def content_frame(text: str) -> str:
    return f"{CONTENT_TAG}:{_dumps(text)}\n"


def error_frame(message: str) -> str:
    return metadata_frame({"error": message})


def done_frame(length: int) -> str:
    return f"{DONE_TAG}:{_dumps({'type': 'done', 'length': length})}\n"


def new_message_id() -> str:
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"msg-{int(time.time() * 1000)}-{suffix}"


@dataclass(frozen=True)
class WireFrame:
    kind: FrameKind
    payload: Any


def decode_frame(line: str) -> WireFrame:
    tag, sep, body = line.rstrip("\n").partition(":")
    kind = _TAG_KINDS.get(tag)
    if not sep or kind is None:
        raise ValueError(f"Not a wire frame: {line[:40]!r}")
    return WireFrame(kind=kind, payload=json.loads(body))


class WireEncoder:
    """Turns a NormalizedChunk stream into wire frames, one chunk at a time.

    Frames are yielded as soon as each chunk is seen; the next chunk is not
    requested until the consumer has taken the previous frame. Upstream
    exceptions propagate to the caller, which owns the error frame.
    """

    def __init__(self, message_id: str | None = None):
        self.message_id = message_id or new_message_id()
        self.length = 0
        self.content_chunks = 0
        self.grounding: GroundingMetadata | None = None
        self.completed = False

    async def frames(self, chunks: AsyncIterator[NormalizedChunk]) -> AsyncIterator[str]:
        yield metadata_frame({"messageId": self.message_id})

        async for chunk in chunks:
            if chunk.content:
                self.content_chunks += 1
                self.length += len(chunk.content)
                yield content_frame(chunk.content)

            # First grounding payload wins; later ones are ignored.
            if chunk.grounding is not None and self.grounding is None:
                self.grounding = chunk.grounding

            if chunk.is_complete:
                self.completed = True
                break

        if self.grounding is not None:
            yield metadata_frame({"grounding": self.grounding.to_dict()})
        yield done_frame(self.length)
