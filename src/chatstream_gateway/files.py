from __future__ import annotations

import asyncio
import base64
from collections.abc import Sequence

import httpx
import structlog

from .contracts import ContentPart, ImagePart, TextPart
from .errors import FileProcessingError
from .metrics import attachments_total
from .schemas import AttachmentRef
from .stores import FileStore

log = structlog.get_logger()

_SIZE_UNITS = ("Bytes", "KB", "MB", "GB")


def format_file_size(size: int) -> str:
    if size <= 0:
        return "0 Bytes"
    value = float(size)
    i = 0
    while value >= 1024 and i < len(_SIZE_UNITS) - 1:
        value /= 1024
        i += 1
    text = f"{value:.2f}".rstrip("0").rstrip(".")
    return f"{text} {_SIZE_UNITS[i]}"


def _is_image(mime_type: str) -> bool:
    return mime_type.startswith("image/")


def _is_text(mime_type: str) -> bool:
    return mime_type == "text/plain" or "text/" in mime_type


class FilePreprocessor:
    """Turns attachment references into content parts, one part per reference.

    Each attachment is handled independently: a failure produces a
    placeholder text part for that item and never aborts the batch.
    """

    def __init__(
        self,
        files: FileStore,
        client: httpx.AsyncClient,
        *,
        max_concurrency: int = 4,
        fetch_timeout_seconds: float = 30,
        max_bytes: int = 20 * 1024 * 1024,
        allowed_hosts: Sequence[str] | None = None,
    ):
        self._files = files
        self._client = client
        self._max_concurrency = max(1, max_concurrency)
        self._timeout = fetch_timeout_seconds
        self._max_bytes = max_bytes
        self._allowed_hosts = {h.lower() for h in allowed_hosts or ()}

    async def process(self, refs: Sequence[AttachmentRef]) -> list[ContentPart]:
        if not refs:
            return []
        sem = asyncio.Semaphore(self._max_concurrency)

        async def _bounded(ref: AttachmentRef) -> ContentPart:
            async with sem:
                return await self._process_one(ref)

        # gather keeps input order regardless of completion order
        return list(await asyncio.gather(*(_bounded(r) for r in refs)))

    async def _process_one(self, ref: AttachmentRef) -> ContentPart:
        try:
            part = await self._convert(ref)
        except Exception as e:
            attachments_total.labels(kind="unknown", status="error").inc()
            log.warning("attachment_failed", name=ref.name, file_id=ref.id, error=str(e))
            return TextPart(text=f"[File: {ref.name} - could not process]")
        return part

    async def _resolve(self, ref: AttachmentRef) -> tuple[str, str, int, str | None]:
        if ref.url or not ref.id:
            return ref.name, ref.mime_type, ref.size, ref.url
        record = await self._files.get_file(ref.id)
        if record is None:
            raise FileProcessingError(f"File not found: {ref.id}")
        return record.name or ref.name, record.mime_type or ref.mime_type, record.size, record.url

    async def _convert(self, ref: AttachmentRef) -> ContentPart:
        name, mime_type, size, url = await self._resolve(ref)

        if not url:
            attachments_total.labels(kind="unavailable", status="ok").inc()
            return TextPart(
                text=f"[File attached: {name} ({mime_type}, {format_file_size(size)}) - preview not available]"
            )

        if _is_image(mime_type):
            raw = await self._fetch(url)
            attachments_total.labels(kind="image", status="ok").inc()
            log.debug("attachment_image", name=name, mime_type=mime_type, bytes=len(raw))
            return ImagePart(mime_type=mime_type, data_b64=base64.b64encode(raw).decode("ascii"), name=name)

        if _is_text(mime_type):
            raw = await self._fetch(url)
            attachments_total.labels(kind="text", status="ok").inc()
            log.debug("attachment_text", name=name, bytes=len(raw))
            return TextPart(text=f"File: {name}\n\n{raw.decode('utf-8', errors='replace')}")

        attachments_total.labels(kind="reference", status="ok").inc()
        return TextPart(text=f"[File attached: {name} ({mime_type}, {format_file_size(size)})]")

    def _check_url(self, url: str) -> httpx.URL:
        try:
            parsed = httpx.URL(url)
        except httpx.InvalidURL as e:
            raise FileProcessingError("Invalid file URL") from e
        if parsed.scheme not in ("http", "https") or not parsed.host:
            raise FileProcessingError("Only http and https file URLs are fetched")
        if self._allowed_hosts and parsed.host.lower() not in self._allowed_hosts:
            raise FileProcessingError(f"File host not allowed: {parsed.host}")
        return parsed

    async def _fetch(self, url: str) -> bytes:
        # Redirects are not followed so the host check cannot be bypassed.
        async with self._client.stream(
            "GET", self._check_url(url), timeout=self._timeout, follow_redirects=False
        ) as resp:
            if resp.status_code >= 300:
                raise FileProcessingError(f"Failed to fetch file: HTTP {resp.status_code}")
            buf = bytearray()
            async for chunk in resp.aiter_bytes():
                buf.extend(chunk)
                if len(buf) > self._max_bytes:
                    raise FileProcessingError(f"File exceeds {self._max_bytes} bytes")
            return bytes(buf)
