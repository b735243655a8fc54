from __future__ import annotations

import sqlite3
from typing import Callable

from .models import _now_ms
from .sessions import DEFAULT_SESSION_TTL_MS, Session, new_token
from .sqlite_backend import SQLiteBackend


class SQLiteSessionStore:
    """Durable session store backed by SQLite."""

    def __init__(
        self,
        backend: SQLiteBackend,
        ttl_ms: int = DEFAULT_SESSION_TTL_MS,
        *,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self._backend = backend
        self._ttl_ms = ttl_ms
        self._now = now_func

    async def create(self, username: str) -> Session:
        session = Session(token=new_token(), username=username, expires_at_ms=self._now() + self._ttl_ms)

        def _insert(conn: sqlite3.Connection) -> None:
            conn.execute(
                "INSERT INTO sessions (token, username, expires_at_ms) VALUES (?, ?, ?)",
                (session.token, session.username, session.expires_at_ms),
            )

        await self._backend.run(_insert)
        return session

    async def get(self, token: str) -> Session | None:
        def _select(conn: sqlite3.Connection) -> sqlite3.Row | None:
            return conn.execute(
                "SELECT token, username, expires_at_ms FROM sessions WHERE token=?", (token,)
            ).fetchone()

        row = await self._backend.run(_select)
        if row is None:
            return None
        session = Session(token=row[0], username=row[1], expires_at_ms=row[2])
        if session.expires_at_ms <= self._now():
            await self.invalidate(session)
            return None
        return session

    async def invalidate(self, session: Session) -> None:
        def _delete(conn: sqlite3.Connection) -> None:
            conn.execute("DELETE FROM sessions WHERE token=?", (session.token,))

        await self._backend.run(_delete)
