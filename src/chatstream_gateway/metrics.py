from __future__ import annotations

import time
from collections.abc import Callable

import structlog
from prometheus_client import Counter, Histogram, start_http_server

from .contracts import TokenUsage

log = structlog.get_logger()

server_requests_total = Counter(
    "server_requests_total",
    "Total HTTP requests handled by server",
    labelnames=["path", "status"],
)

server_errors_total = Counter(
    "server_errors_total",
    "Total errors returned before a stream started",
    labelnames=["type"],
)

requests_total = Counter(
    "gateway_requests_total",
    "Chat turns handled, by terminal outcome",
    labelnames=["provider", "status"],
)

stream_errors_total = Counter(
    "gateway_errors_total",
    "Chat turns terminated with an error frame",
    labelnames=["type"],
)

time_to_first_token_seconds = Histogram(
    "gateway_time_to_first_token_seconds",
    "Time from dispatch to the first content chunk",
    buckets=[0.1, 0.25, 0.5, 1, 2, 5, 10, 30],
    labelnames=["provider"],
)

stream_duration_seconds = Histogram(
    "gateway_stream_duration_seconds",
    "Upstream stream duration",
    buckets=[0.5, 1, 2, 5, 10, 30, 60, 120, 300],
    labelnames=["provider"],
)

tokens_total = Counter(
    "gateway_tokens_total",
    "Tokens reported by upstream providers",
    labelnames=["provider", "direction"],
)

tokens_per_second = Histogram(
    "gateway_tokens_per_second",
    "Output token throughput per completed stream",
    buckets=[1, 5, 10, 25, 50, 100, 200, 500],
    labelnames=["provider"],
)

attachments_total = Counter(
    "gateway_attachments_total",
    "Attachments preprocessed",
    labelnames=["kind", "status"],
)

upstream_retries_total = Counter(
    "upstream_retries_total",
    "Upstream call retries",
    labelnames=["provider", "reason"],
)


def maybe_start_metrics(*, enable: bool, bind: str, port: int) -> None:
    if not enable:
        return
    start_http_server(port, addr=bind)


class TokenMeter:
    """Running token stats and throughput for one request."""

    def __init__(self, provider: str, *, clock: Callable[[], float] | None = None):
        self.provider = provider
        self._clock: Callable[[], float] = clock or time.monotonic
        self._started = self._clock()
        self.usage = TokenUsage()
        self.tokens_per_second = 0.0

    def elapsed(self) -> float:
        return max(0.0, self._clock() - self._started)

    def update(self, usage: TokenUsage) -> None:
        # Providers may resend partial counters; keep each field non-decreasing.
        self.usage = TokenUsage(
            input_tokens=max(self.usage.input_tokens, usage.input_tokens),
            output_tokens=max(self.usage.output_tokens, usage.output_tokens),
            total_tokens=max(self.usage.total_tokens, usage.total_tokens),
        )
        elapsed = self.elapsed()
        if elapsed > 0:
            self.tokens_per_second = self.usage.output_tokens / elapsed

    def finish(self) -> None:
        elapsed = self.elapsed()
        if elapsed > 0:
            self.tokens_per_second = self.usage.output_tokens / elapsed
            stream_duration_seconds.labels(provider=self.provider).observe(elapsed)
        if self.usage.total_tokens or self.usage.output_tokens:
            tokens_total.labels(provider=self.provider, direction="input").inc(self.usage.input_tokens)
            tokens_total.labels(provider=self.provider, direction="output").inc(self.usage.output_tokens)
            tokens_per_second.labels(provider=self.provider).observe(self.tokens_per_second)
        log.info(
            "token_stats",
            provider=self.provider,
            input_tokens=self.usage.input_tokens,
            output_tokens=self.usage.output_tokens,
            total_tokens=self.usage.total_tokens,
            tokens_per_second=round(self.tokens_per_second, 2),
            elapsed_seconds=round(elapsed, 3),
        )
