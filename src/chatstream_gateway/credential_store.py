from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Protocol, cast

from .crypto import encrypt_secret


class CredentialStore(Protocol):
    async def get_credential(self, user_id: str, provider: str) -> str | None:
        """Return the encrypted key for `(user_id, provider)`, or None."""
        ...


class InMemoryCredentialStore:
    def __init__(self, encrypted: dict[tuple[str, str], str] | None = None):
        self._encrypted = dict(encrypted or {})

    async def get_credential(self, user_id: str, provider: str) -> str | None:
        return self._encrypted.get((user_id, provider))

    def put_encrypted(self, user_id: str, provider: str, token: str) -> None:
        self._encrypted[(user_id, provider)] = token


class JsonCredentialStore:
    """
    Encrypted-at-rest credential store backed by one JSON file.

    Layout: `{"<user_id>": {"<provider>": "<fernet token>"}}`. Only ciphertext
    is ever written; the file is re-read on every lookup, off the event loop.
    """

    def __init__(self, path: str):
        self.path = Path(path)

    def _load(self) -> dict[str, dict[str, str]]:
        if not self.path.exists():
            return {}
        payload = json.loads(self.path.read_text(encoding="utf-8"))
        if not isinstance(payload, dict):
            raise ValueError("Credential file must contain a JSON object.")
        return cast(dict[str, dict[str, str]], payload)

    async def get_credential(self, user_id: str, provider: str) -> str | None:
        data = await asyncio.to_thread(self._load)
        token = (data.get(user_id) or {}).get(provider)
        return token if isinstance(token, str) and token else None

    def put_credential(self, user_id: str, provider: str, api_key: str, *, encryption_key: str) -> None:
        data = self._load()
        data.setdefault(user_id, {})[provider] = encrypt_secret(encryption_key, api_key)
        self.path.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")
