from __future__ import annotations

from collections.abc import Mapping
from typing import Protocol

from .http_security import constant_time_equals, parse_bearer_token


class IdentityProvider(Protocol):
    async def authenticate(self, headers: Mapping[str, str]) -> str | None:
        """Return the caller's external auth id, or None when unauthenticated."""
        ...


class StaticTokenIdentityProvider:
    """Maps opaque bearer tokens to auth ids from a fixed table (AUTH_TOKENS)."""

    def __init__(self, tokens: Mapping[str, str]):
        self._tokens = dict(tokens)

    async def authenticate(self, headers: Mapping[str, str]) -> str | None:
        token = parse_bearer_token(headers.get("authorization"))
        if not token:
            return None
        match: str | None = None
        # Compare against every entry so timing does not depend on position.
        for candidate, auth_id in self._tokens.items():
            if constant_time_equals(token, candidate):
                match = auth_id
        return match
