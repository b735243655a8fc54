from __future__ import annotations

import sqlite3
from typing import List

from .errors import ConflictError, NotFoundError
from .models import User
from .sqlite_backend import SQLiteBackend

_COLUMNS = "username, email, password_hash, is_online, last_seen_ms, created_at_ms, updated_at_ms"


def _row_to_user(row: sqlite3.Row) -> User:
    return User(
        username=row[0],
        email=row[1],
        password_hash=row[2],
        is_online=bool(row[3]),
        last_seen_ms=row[4],
        created_at_ms=row[5],
        updated_at_ms=row[6],
    )


class SQLiteUserStore:
    """Durable user table backed by SQLite."""

    def __init__(self, backend: SQLiteBackend) -> None:
        self._backend = backend

    async def create(self, username: str, password_hash: str, *, email: str | None = None, at_ms: int) -> User:
        def _insert(conn: sqlite3.Connection) -> bool:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO users (username, email, password_hash, last_seen_ms, is_online, created_at_ms, updated_at_ms)
                VALUES (?, ?, ?, ?, 0, ?, ?)
                """,
                (username, email, password_hash, at_ms, at_ms, at_ms),
            )
            return cursor.rowcount == 1

        if not await self._backend.run(_insert):
            raise ConflictError("Username already taken")
        return User(
            username=username,
            password_hash=password_hash,
            email=email,
            last_seen_ms=at_ms,
            created_at_ms=at_ms,
            updated_at_ms=at_ms,
        )

    async def get(self, username: str) -> User | None:
        def _select(conn: sqlite3.Connection) -> sqlite3.Row | None:
            return conn.execute(f"SELECT {_COLUMNS} FROM users WHERE username=?", (username,)).fetchone()

        row = await self._backend.run(_select)
        return _row_to_user(row) if row is not None else None

    async def set_presence(self, username: str, online: bool, at_ms: int) -> User:
        return await self._update(
            username,
            "UPDATE users SET is_online=?, last_seen_ms=?, updated_at_ms=? WHERE username=?",
            (int(online), at_ms, at_ms, username),
        )

    async def touch_last_seen(self, username: str, at_ms: int) -> User:
        return await self._update(
            username,
            "UPDATE users SET last_seen_ms=?, updated_at_ms=? WHERE username=?",
            (at_ms, at_ms, username),
        )

    async def list_all(self) -> List[User]:
        def _select(conn: sqlite3.Connection) -> list[sqlite3.Row]:
            return conn.execute(f"SELECT {_COLUMNS} FROM users ORDER BY username ASC").fetchall()

        return [_row_to_user(row) for row in await self._backend.run(_select)]

    async def _update(self, username: str, statement: str, params: tuple) -> User:
        def _apply(conn: sqlite3.Connection) -> sqlite3.Row | None:
            cursor = conn.execute(statement, params)
            if cursor.rowcount == 0:
                return None
            return conn.execute(f"SELECT {_COLUMNS} FROM users WHERE username=?", (username,)).fetchone()

        row = await self._backend.run(_apply)
        if row is None:
            raise NotFoundError("unknown user")
        return _row_to_user(row)
