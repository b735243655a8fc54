from __future__ import annotations

from dataclasses import replace
from typing import Dict, List

from .errors import ConflictError, NotFoundError
from .models import User


class UserStore:
    """In-memory user table used when SQLite durability is disabled."""

    def __init__(self) -> None:
        self._users: Dict[str, User] = {}

    async def create(self, username: str, password_hash: str, *, email: str | None = None, at_ms: int) -> User:
        if username in self._users:
            raise ConflictError("Username already taken")
        user = User(
            username=username,
            password_hash=password_hash,
            email=email,
            last_seen_ms=at_ms,
            created_at_ms=at_ms,
            updated_at_ms=at_ms,
        )
        self._users[username] = user
        return replace(user)

    async def get(self, username: str) -> User | None:
        user = self._users.get(username)
        return replace(user) if user is not None else None

    async def set_presence(self, username: str, online: bool, at_ms: int) -> User:
        user = self._users.get(username)
        if user is None:
            raise NotFoundError("unknown user")
        user.is_online = online
        user.last_seen_ms = at_ms
        user.updated_at_ms = at_ms
        return replace(user)

    async def touch_last_seen(self, username: str, at_ms: int) -> User:
        user = self._users.get(username)
        if user is None:
            raise NotFoundError("unknown user")
        user.last_seen_ms = at_ms
        user.updated_at_ms = at_ms
        return replace(user)

    async def list_all(self) -> List[User]:
        return [replace(self._users[name]) for name in sorted(self._users)]
