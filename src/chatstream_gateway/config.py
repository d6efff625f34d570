from __future__ import annotations

import os

from pydantic import BaseModel, Field


def _parse_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [v.strip() for v in value.split(",") if v.strip()]


def _parse_pairs(value: str | None, sep: str) -> dict[str, str]:
    out: dict[str, str] = {}
    for item in _parse_csv(value):
        key, found, val = item.partition(sep)
        if found and key.strip() and val.strip():
            out[key.strip()] = val.strip()
    return out


def _parse_timeouts(value: str | None) -> dict[str, float]:
    return {k.lower(): float(v) for k, v in _parse_pairs(value, "=").items()}


def _default_base_urls() -> dict[str, str]:
    return {
        "openai": os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1"),
        "anthropic": os.getenv("ANTHROPIC_BASE_URL", "https://api.anthropic.com/v1"),
        "gemini": os.getenv("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta"),
        "deepseek": os.getenv("DEEPSEEK_BASE_URL", "https://api.deepseek.com/v1"),
        "meta": os.getenv("LLAMA_BASE_URL", "https://ollama.com"),
        "openrouter": os.getenv("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1"),
    }


class GatewayConfig(BaseModel):
    # Credentials
    credentials_path: str = Field(default_factory=lambda: os.getenv("CREDENTIALS_PATH", "credentials.json"))
    encryption_key: str | None = Field(default_factory=lambda: os.getenv("CREDENTIALS_FERNET_KEY"))

    # Identity: "token:auth_id,token2:auth_id2"
    auth_tokens: dict[str, str] = Field(default_factory=lambda: _parse_pairs(os.getenv("AUTH_TOKENS"), ":"))

    # Upstream providers
    provider_base_urls: dict[str, str] = Field(default_factory=_default_base_urls)
    upstream_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("UPSTREAM_TIMEOUT_SECONDS", "60"))
    )
    # Per-provider overrides: "anthropic=120,gemini=45"
    provider_timeouts: dict[str, float] = Field(default_factory=lambda: _parse_timeouts(os.getenv("PROVIDER_TIMEOUTS")))
    upstream_max_attempts: int = Field(default_factory=lambda: int(os.getenv("UPSTREAM_MAX_ATTEMPTS", "3")))
    upstream_backoff_initial_seconds: float = Field(
        default_factory=lambda: float(os.getenv("UPSTREAM_BACKOFF_INITIAL_SECONDS", "0.5"))
    )
    upstream_backoff_max_seconds: float = Field(
        default_factory=lambda: float(os.getenv("UPSTREAM_BACKOFF_MAX_SECONDS", "8.0"))
    )
    max_output_tokens: int = Field(default_factory=lambda: int(os.getenv("MAX_OUTPUT_TOKENS", "4096")))
    default_temperature: float = Field(default_factory=lambda: float(os.getenv("DEFAULT_TEMPERATURE", "0.7")))
    openrouter_referer: str = Field(default_factory=lambda: os.getenv("OPENROUTER_REFERER", "https://lll.chat"))
    openrouter_title: str = Field(default_factory=lambda: os.getenv("OPENROUTER_TITLE", "lll.chat"))

    # Stream deadlines
    stream_idle_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("STREAM_IDLE_TIMEOUT_SECONDS", "60"))
    )
    stream_total_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("STREAM_TOTAL_TIMEOUT_SECONDS", "300"))
    )

    # Attachments
    attachment_fetch_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("ATTACHMENT_FETCH_TIMEOUT_SECONDS", "30"))
    )
    attachment_max_bytes: int = Field(
        default_factory=lambda: int(os.getenv("ATTACHMENT_MAX_BYTES", str(20 * 1024 * 1024)))
    )
    attachment_concurrency: int = Field(default_factory=lambda: int(os.getenv("ATTACHMENT_CONCURRENCY", "4")))
    # Empty means any host; only http and https URLs are fetched either way.
    attachment_allowed_hosts: list[str] = Field(
        default_factory=lambda: _parse_csv(os.getenv("ATTACHMENT_ALLOWED_HOSTS"))
    )

    # Web search fallback for providers without native grounding
    exa_api_key: str | None = Field(default_factory=lambda: os.getenv("EXA_API_KEY"))
    exa_base_url: str = Field(default_factory=lambda: os.getenv("EXA_BASE_URL", "https://api.exa.ai"))
    web_search_results: int = Field(default_factory=lambda: int(os.getenv("WEB_SEARCH_RESULTS", "5")))

    # Observability
    enable_metrics: bool = Field(
        default_factory=lambda: os.getenv("ENABLE_METRICS", "false").lower() == "true"
    )
    metrics_bind: str = Field(default_factory=lambda: os.getenv("METRICS_BIND", "127.0.0.1"))
    metrics_port: int = Field(default_factory=lambda: int(os.getenv("METRICS_PORT", "9109")))
    log_level: str = Field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    log_format: str = Field(default_factory=lambda: os.getenv("LOG_FORMAT", "json"))

    # Server hardening
    enable_api_docs: bool = Field(
        default_factory=lambda: os.getenv("ENABLE_API_DOCS", "false").lower() == "true"
    )
    allowed_hosts: list[str] = Field(default_factory=lambda: _parse_csv(os.getenv("ALLOWED_HOSTS")))
    cors_allow_origins: list[str] = Field(
        default_factory=lambda: _parse_csv(os.getenv("CORS_ALLOW_ORIGINS", "*"))
    )
    cors_allow_credentials: bool = Field(
        default_factory=lambda: os.getenv("CORS_ALLOW_CREDENTIALS", "false").lower() == "true"
    )
    max_request_body_bytes: int = Field(
        default_factory=lambda: int(os.getenv("MAX_REQUEST_BODY_BYTES", str(1024 * 1024)))
    )
    max_inflight_requests: int = Field(default_factory=lambda: int(os.getenv("MAX_INFLIGHT_REQUESTS", "32")))
    max_messages: int = Field(default_factory=lambda: int(os.getenv("MAX_MESSAGES", "200")))
    max_total_message_chars: int = Field(
        default_factory=lambda: int(os.getenv("MAX_TOTAL_MESSAGE_CHARS", "400000"))
    )

    def base_url_for(self, provider: str) -> str:
        return self.provider_base_urls[provider].rstrip("/")

    def timeout_for(self, provider: str) -> float:
        return self.provider_timeouts.get(provider, self.upstream_timeout_seconds)

    def log_secrets(self) -> list[str]:
        return [s for s in (self.encryption_key, self.exa_api_key, *self.auth_tokens.keys()) if s]
