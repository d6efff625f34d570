from __future__ import annotations

import asyncio

import httpx


class GatewayError(Exception):
    """Base error for gateway failures."""

    user_message = "Failed to generate response"


class ConfigurationError(GatewayError):
    pass


class InvalidRequestError(GatewayError):
    """Request body rejected before any response is started."""


class AuthenticationError(GatewayError):
    """Caller has no valid identity. Rejected before any other work."""

    user_message = "Unauthorized"


class UserResolutionError(GatewayError):
    user_message = "Failed to get or create user"


class CredentialMissingError(GatewayError):
    def __init__(self, provider: str):
        super().__init__(f"No API key stored for provider {provider!r}")
        self.provider = provider
        self.user_message = f"No API key found for {provider}. Please add one in Settings."


class CredentialDecryptionError(GatewayError):
    """Stored ciphertext could not be decrypted (wrong key or corrupted value)."""


class CredentialResolverError(GatewayError):
    """Credential store lookup failed."""


class FileProcessingError(GatewayError):
    """One attachment could not be turned into a content part. Always recovered locally."""


class RequestTimeoutError(GatewayError):
    """Upstream call or stream deadline exceeded."""

    user_message = "Network error. Please check your connection and try again."


class ProviderError(GatewayError):
    """Non-success outcome of an upstream provider call.

    `body` holds the raw upstream error body for server-side diagnostics only;
    it is never copied into `user_message`.
    """

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        status_code: int | None = None,
        body: str | None = None,
    ):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code
        self.body = body


class ProviderAuthError(ProviderError):
    user_message = "Invalid API key. Please check your API key in Settings."


class ProviderRateLimitError(ProviderError):
    user_message = "Rate limit exceeded. Please wait a moment and try again."

    def __init__(self, message: str = "Rate limited", *, retry_after_seconds: int | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after_seconds = retry_after_seconds


class QuotaOrBillingError(ProviderError):
    user_message = "API quota exceeded or billing issue. Please check your account."


class ProviderUnavailableError(ProviderError):
    """Upstream repeatedly failed or returned malformed data."""

    @property
    def user_message(self) -> str:  # type: ignore[override]
        name = _PROVIDER_DISPLAY_NAMES.get(self.provider, self.provider.capitalize())
        return f"{name} API is currently unavailable. Please try again later or switch to a different model."


class ProviderRequestError(ProviderError):
    """Upstream rejected the request shape (4xx other than auth/quota/rate limit)."""


class NetworkError(GatewayError):
    user_message = "Network error. Please check your connection and try again."


_PROVIDER_DISPLAY_NAMES = {
    "openai": "OpenAI",
    "anthropic": "Anthropic",
    "gemini": "Gemini",
    "deepseek": "DeepSeek",
    "meta": "Llama",
    "openrouter": "OpenRouter",
}


def classify_error(exc: BaseException) -> tuple[str, str]:
    """Map any exception to `(error_type, user_message)` for the client.

    The message never includes exception text or upstream bodies.
    """
    if isinstance(exc, CredentialMissingError):
        return "credential_missing", exc.user_message
    if isinstance(exc, QuotaOrBillingError):
        return "quota_or_billing", exc.user_message
    if isinstance(exc, ProviderRateLimitError):
        return "rate_limited", exc.user_message
    if isinstance(exc, ProviderAuthError):
        return "provider_auth", exc.user_message
    if isinstance(exc, ProviderUnavailableError):
        return "provider_unavailable", exc.user_message
    if isinstance(exc, (RequestTimeoutError, NetworkError)):
        return "network", exc.user_message
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError, asyncio.TimeoutError)):
        return "network", NetworkError.user_message
    return "unknown", GatewayError.user_message
