"""Interfaces to the document store that owns users and uploaded files.

The gateway only reads from these collaborators (plus get-or-create for
users). In-memory implementations back the default app and the tests.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class UserRecord:
    id: str
    auth_id: str


@dataclass(frozen=True)
class FileRecord:
    id: str
    name: str
    mime_type: str
    size: int
    url: str | None = None


class UserStore(Protocol):
    async def get_by_auth_id(self, auth_id: str) -> UserRecord | None: ...

    async def create(self, auth_id: str) -> UserRecord: ...


class FileStore(Protocol):
    async def get_file(self, file_id: str) -> FileRecord | None: ...


class InMemoryUserStore:
    def __init__(self, users: list[UserRecord] | None = None):
        self._by_auth_id = {u.auth_id: u for u in users or []}

    async def get_by_auth_id(self, auth_id: str) -> UserRecord | None:
        return self._by_auth_id.get(auth_id)

    async def create(self, auth_id: str) -> UserRecord:
        user = self._by_auth_id.get(auth_id)
        if user is None:
            user = UserRecord(id=f"user_{uuid.uuid4().hex[:16]}", auth_id=auth_id)
            self._by_auth_id[auth_id] = user
        return user


class InMemoryFileStore:
    def __init__(self, files: list[FileRecord] | None = None):
        self._files = {f.id: f for f in files or []}

    async def get_file(self, file_id: str) -> FileRecord | None:
        return self._files.get(file_id)

    def add(self, record: FileRecord) -> None:
        self._files[record.id] = record
