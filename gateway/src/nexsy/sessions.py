from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Callable, Dict

from .models import _now_ms

DEFAULT_SESSION_TTL_MS = 7 * 24 * 60 * 60 * 1000


@dataclass
class Session:
    token: str
    username: str
    expires_at_ms: int


def new_token() -> str:
    return f"st_{secrets.token_urlsafe(24)}"


class SessionStore:
    """Tracks bearer tokens in memory; expired tokens are dropped on lookup."""

    def __init__(self, ttl_ms: int = DEFAULT_SESSION_TTL_MS, *, now_func: Callable[[], int] = _now_ms) -> None:
        self._ttl_ms = ttl_ms
        self._now = now_func
        self._by_token: Dict[str, Session] = {}

    async def create(self, username: str) -> Session:
        session = Session(token=new_token(), username=username, expires_at_ms=self._now() + self._ttl_ms)
        self._by_token[session.token] = session
        return session

    async def get(self, token: str) -> Session | None:
        session = self._by_token.get(token)
        if session is None:
            return None
        if session.expires_at_ms <= self._now():
            await self.invalidate(session)
            return None
        return session

    async def invalidate(self, session: Session) -> None:
        self._by_token.pop(session.token, None)
