from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping

import httpx

from ..config import GatewayConfig
from ..routing import ProviderKind
from .anthropic import AnthropicAdapter
from .base import ProviderAdapter, StreamParser, UpstreamRequest
from .gemini import GeminiAdapter
from .llama import LlamaAdapter
from .openai import DeepSeekAdapter, OpenAIAdapter, OpenRouterAdapter

ADAPTER_CLASSES: Mapping[ProviderKind, type[ProviderAdapter]] = {
    ProviderKind.OPENAI: OpenAIAdapter,
    ProviderKind.ANTHROPIC: AnthropicAdapter,
    ProviderKind.GEMINI: GeminiAdapter,
    ProviderKind.DEEPSEEK: DeepSeekAdapter,
    ProviderKind.META: LlamaAdapter,
    ProviderKind.OPENROUTER: OpenRouterAdapter,
}


def build_adapters(
    cfg: GatewayConfig,
    client: httpx.AsyncClient,
    *,
    sleeper: Callable[[float], Awaitable[None]] | None = None,
) -> dict[ProviderKind, ProviderAdapter]:
    adapters: dict[ProviderKind, ProviderAdapter] = {}
    for kind, cls in ADAPTER_CLASSES.items():
        kwargs = {}
        if kind is ProviderKind.OPENROUTER:
            kwargs = {"referer": cfg.openrouter_referer, "title": cfg.openrouter_title}
        adapters[kind] = cls(
            client,
            base_url=cfg.base_url_for(kind.value),
            timeout_seconds=cfg.timeout_for(kind.value),
            max_attempts=cfg.upstream_max_attempts,
            backoff_initial_seconds=cfg.upstream_backoff_initial_seconds,
            backoff_max_seconds=cfg.upstream_backoff_max_seconds,
            max_output_tokens=cfg.max_output_tokens,
            sleeper=sleeper,
            **kwargs,
        )
    return adapters


__all__ = [
    "ADAPTER_CLASSES",
    "AnthropicAdapter",
    "DeepSeekAdapter",
    "GeminiAdapter",
    "LlamaAdapter",
    "OpenAIAdapter",
    "OpenRouterAdapter",
    "ProviderAdapter",
    "StreamParser",
    "UpstreamRequest",
    "build_adapters",
]
