from __future__ import annotations

import asyncio
import random
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, ClassVar

import httpx
import structlog

from ..contracts import NormalizedChunk, ProviderRequest, TokenUsage
from ..errors import (
    ProviderAuthError,
    ProviderError,
    ProviderRateLimitError,
    ProviderRequestError,
    ProviderUnavailableError,
    QuotaOrBillingError,
    NetworkError,
    RequestTimeoutError,
)
from ..metrics import upstream_retries_total
from ..routing import ProviderKind, accepts_temperature

log = structlog.get_logger()

_QUOTA_MARKERS = ("quota", "billing", "insufficient", "credit")
_MAX_ERROR_BODY_CHARS = 2000


@dataclass(frozen=True)
class UpstreamRequest:
    url: str
    headers: dict[str, str]
    json: dict[str, Any]
    params: dict[str, str] = field(default_factory=dict)


def sse_data(line: str) -> str | None:
    """Payload of an SSE `data:` line, or None for any other line."""
    if not line.startswith("data:"):
        return None
    raw = line[len("data:") :].strip()
    return raw or None


def usage_from_counts(input_tokens: Any, output_tokens: Any, total_tokens: Any = None) -> TokenUsage:
    inp = int(input_tokens or 0)
    out = int(output_tokens or 0)
    total = int(total_tokens) if total_tokens else inp + out
    return TokenUsage(input_tokens=inp, output_tokens=out, total_tokens=total)


class StreamParser(ABC):
    """Incremental parser for one upstream response body, fed line by line."""

    def __init__(self, provider: str):
        self.provider = provider

    @abstractmethod
    def feed(self, line: str) -> list[NormalizedChunk]: ...

    def finish(self) -> list[NormalizedChunk]:
        return []


def error_for_status(provider: str, status_code: int, body: str, headers: httpx.Headers) -> ProviderError:
    lowered = body.lower()
    if status_code in (401, 403):
        return ProviderAuthError(f"Upstream rejected credentials ({status_code}).", provider=provider, status_code=status_code, body=body)
    if status_code == 402:
        return QuotaOrBillingError("Upstream reported a billing problem.", provider=provider, status_code=status_code, body=body)
    if status_code == 429:
        if any(m in lowered for m in _QUOTA_MARKERS):
            return QuotaOrBillingError("Upstream quota exhausted.", provider=provider, status_code=status_code, body=body)
        retry_after = headers.get("retry-after")
        retry_seconds = int(retry_after) if retry_after and retry_after.isdigit() else None
        return ProviderRateLimitError(
            "Upstream rate limited the request.",
            retry_after_seconds=retry_seconds,
            provider=provider,
            status_code=status_code,
            body=body,
        )
    if status_code >= 500:
        return ProviderUnavailableError(f"Upstream error {status_code}.", provider=provider, status_code=status_code, body=body)
    if status_code == 400 and ("api key" in lowered or "api_key" in lowered):
        return ProviderAuthError("Upstream rejected the API key.", provider=provider, status_code=status_code, body=body)
    return ProviderRequestError(f"Upstream error {status_code}.", provider=provider, status_code=status_code, body=body)


def _is_retryable(err: ProviderError) -> bool:
    return isinstance(err, (ProviderRateLimitError, ProviderUnavailableError))


class ProviderAdapter(ABC):
    """One upstream provider family.

    Subclasses shape the outbound request and supply a stream parser; the
    base class owns the HTTP call, status mapping and retries. Retries only
    happen before the first chunk has been yielded.
    """

    kind: ClassVar[ProviderKind]
    supports_grounding: ClassVar[bool] = False

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        base_url: str,
        timeout_seconds: float = 60,
        max_attempts: int = 3,
        backoff_initial_seconds: float = 0.5,
        backoff_max_seconds: float = 8.0,
        max_output_tokens: int = 4096,
        sleeper: Callable[[float], Awaitable[None]] | None = None,
    ):
        self._client = client
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = timeout_seconds
        self._max_attempts = max(1, max_attempts)
        self._backoff_initial_seconds = max(0.0, backoff_initial_seconds)
        self._backoff_max_seconds = max(self._backoff_initial_seconds, backoff_max_seconds)
        self._max_output_tokens = max_output_tokens
        self._sleep: Callable[[float], Awaitable[None]] = sleeper or asyncio.sleep

    @property
    def provider(self) -> str:
        return self.kind.value

    @abstractmethod
    def build_request(self, req: ProviderRequest, api_key: str) -> UpstreamRequest: ...

    @abstractmethod
    def new_parser(self) -> StreamParser: ...

    def temperature_for(self, req: ProviderRequest) -> float | None:
        if req.temperature is None or not accepts_temperature(req.model):
            return None
        return req.temperature

    def _compute_backoff(self, attempt_index: int) -> float:
        base = float(min(self._backoff_max_seconds, self._backoff_initial_seconds * (2**attempt_index)))
        jitter = float(random.uniform(0.0, min(0.25, base * 0.1))) if base > 0 else 0.0
        return base + jitter

    async def _retry_pause(self, attempt: int, reason: str, retry_after: int | None = None) -> None:
        upstream_retries_total.labels(provider=self.provider, reason=reason).inc()
        delay = self._compute_backoff(attempt)
        if retry_after is not None:
            delay = min(float(retry_after), self._backoff_max_seconds)
        log.info("upstream_retry", provider=self.provider, attempt=attempt + 1, reason=reason, delay=round(delay, 3))
        await self._sleep(delay)

    async def stream_response(self, req: ProviderRequest, api_key: str) -> AsyncIterator[NormalizedChunk]:
        upstream = self.build_request(req, api_key)
        timeout = httpx.Timeout(self._timeout_seconds, connect=min(10.0, self._timeout_seconds))
        yielded = False

        for attempt in range(self._max_attempts):
            last_attempt = attempt >= self._max_attempts - 1
            try:
                async with self._client.stream(
                    "POST",
                    upstream.url,
                    params=upstream.params or None,
                    headers=upstream.headers,
                    json=upstream.json,
                    timeout=timeout,
                ) as resp:
                    if resp.status_code >= 400:
                        body = (await resp.aread()).decode("utf-8", errors="replace")[:_MAX_ERROR_BODY_CHARS]
                        err = error_for_status(self.provider, resp.status_code, body, resp.headers)
                        log.warning(
                            "provider_error_response",
                            provider=self.provider,
                            status_code=resp.status_code,
                            body=body[:500],
                        )
                        if _is_retryable(err) and not last_attempt:
                            retry_after = getattr(err, "retry_after_seconds", None)
                            await self._retry_pause(attempt, f"http_{resp.status_code}", retry_after)
                            continue
                        raise err

                    parser = self.new_parser()
                    async for line in resp.aiter_lines():
                        if not line:
                            continue
                        try:
                            chunks = parser.feed(line)
                        except ProviderError:
                            raise
                        except (ValueError, KeyError, TypeError, AttributeError) as e:
                            raise ProviderUnavailableError(
                                "Malformed upstream stream payload.", provider=self.provider
                            ) from e
                        for chunk in chunks:
                            yielded = True
                            yield chunk
                            if chunk.is_complete:
                                return
                    for chunk in parser.finish():
                        yielded = True
                        yield chunk
                        if chunk.is_complete:
                            return
                    return
            except httpx.TimeoutException as e:
                if yielded or last_attempt:
                    raise RequestTimeoutError(f"{self.provider} request timed out.") from e
                await self._retry_pause(attempt, "timeout")
            except httpx.TransportError as e:
                if yielded or last_attempt:
                    raise NetworkError(f"{self.provider} request failed: {type(e).__name__}.") from e
                await self._retry_pause(attempt, "transport")

        raise ProviderUnavailableError("Upstream request failed after retries.", provider=self.provider)  # pragma: no cover
