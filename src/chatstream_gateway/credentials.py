from __future__ import annotations

import structlog

from .credential_store import CredentialStore
from .crypto import decrypt_secret
from .errors import CredentialResolverError

log = structlog.get_logger()


class CredentialResolver:
    """Looks up and decrypts a user's API key for one provider.

    A missing key is an expected outcome and returns None. Store failures and
    undecryptable ciphertext raise. Nothing is cached between calls.
    """

    def __init__(self, store: CredentialStore, encryption_key: str):
        self._store = store
        self._encryption_key = encryption_key

    async def resolve(self, user_id: str, provider: str) -> str | None:
        try:
            token = await self._store.get_credential(user_id, provider)
        except Exception as e:
            log.error("credential_lookup_failed", user_id=user_id, provider=provider, error=type(e).__name__)
            raise CredentialResolverError(f"Credential lookup failed for provider {provider!r}.") from e

        if not token:
            log.info("credential_missing", user_id=user_id, provider=provider)
            return None

        secret = decrypt_secret(self._encryption_key, token)
        if not secret:
            log.info("credential_empty", user_id=user_id, provider=provider)
            return None
        return secret
