from __future__ import annotations

import sqlite3
from typing import List

from . import lifecycle
from .errors import NotFoundError
from .models import DELIVERED, SEEN, SENT, DeletedMessage, Message, new_message_id
from .sqlite_backend import SQLiteBackend

_COLUMNS = (
    "id, sender, receiver, text, status, delivered_at_ms, seen_at_ms, "
    "is_deleted, deleted_at_ms, created_at_ms, updated_at_ms"
)


def _row_to_message(row: sqlite3.Row) -> Message:
    return Message(
        id=row[0],
        sender=row[1],
        receiver=row[2],
        text=row[3],
        status=row[4],
        delivered_at_ms=row[5],
        seen_at_ms=row[6],
        is_deleted=bool(row[7]),
        deleted_at_ms=row[8],
        created_at_ms=row[9],
        updated_at_ms=row[10],
    )


def _row_to_archive(row: sqlite3.Row) -> DeletedMessage:
    return DeletedMessage(
        id=row[0],
        original_message_id=row[1],
        sender=row[2],
        receiver=row[3],
        text=row[4],
        sent_at_ms=row[5],
        deleted_at_ms=row[6],
    )


def _write_state(conn: sqlite3.Connection, message: Message) -> None:
    conn.execute(
        """
        UPDATE messages
        SET status=?, delivered_at_ms=?, seen_at_ms=?, is_deleted=?, deleted_at_ms=?, updated_at_ms=?
        WHERE id=?
        """,
        (
            message.status,
            message.delivered_at_ms,
            message.seen_at_ms,
            int(message.is_deleted),
            message.deleted_at_ms,
            message.updated_at_ms,
            message.id,
        ),
    )


class SQLiteMessageStore:
    """Durable message table and deletion archive backed by SQLite."""

    def __init__(self, backend: SQLiteBackend) -> None:
        self._backend = backend

    async def insert(self, sender: str, receiver: str, text: str, at_ms: int) -> Message:
        message = Message(
            id=new_message_id(),
            sender=sender,
            receiver=receiver,
            text=text,
            status=SENT,
            created_at_ms=at_ms,
            updated_at_ms=at_ms,
        )

        def _insert(conn: sqlite3.Connection) -> None:
            conn.execute(
                """
                INSERT INTO messages (id, sender, receiver, text, status, is_deleted, created_at_ms, updated_at_ms)
                VALUES (?, ?, ?, ?, ?, 0, ?, ?)
                """,
                (message.id, sender, receiver, text, SENT, at_ms, at_ms),
            )

        await self._backend.run(_insert)
        return message

    async def get(self, message_id: str) -> Message | None:
        def _select(conn: sqlite3.Connection) -> sqlite3.Row | None:
            return conn.execute(
                f"SELECT {_COLUMNS} FROM messages WHERE id=? AND is_deleted=0", (message_id,)
            ).fetchone()

        row = await self._backend.run(_select)
        return _row_to_message(row) if row is not None else None

    async def mark_delivered(self, message_id: str, at_ms: int) -> Message | None:
        def _apply(conn: sqlite3.Connection) -> tuple[bool, Message | None]:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(
                    f"SELECT {_COLUMNS} FROM messages WHERE id=? AND is_deleted=0", (message_id,)
                ).fetchone()
                if row is None:
                    conn.commit()
                    return False, None
                message = _row_to_message(row)
                if message.status != SENT:
                    conn.commit()
                    return True, None
                updated = lifecycle.advance(message, DELIVERED, at_ms)
                _write_state(conn, updated)
                conn.commit()
                return True, updated
            except Exception:
                conn.rollback()
                raise

        found, updated = await self._backend.run(_apply)
        if not found:
            raise NotFoundError("message not found")
        return updated

    async def mark_seen(self, sender: str, receiver: str, at_ms: int) -> List[Message]:
        def _apply(conn: sqlite3.Connection) -> List[Message]:
            conn.execute("BEGIN IMMEDIATE")
            try:
                rows = conn.execute(
                    f"""
                    SELECT {_COLUMNS} FROM messages
                    WHERE sender=? AND receiver=? AND is_deleted=0 AND status IN (?, ?)
                    ORDER BY created_at_ms ASC, rowid ASC
                    """,
                    (sender, receiver, SENT, DELIVERED),
                ).fetchall()
                updated = [lifecycle.advance(_row_to_message(row), SEEN, at_ms) for row in rows]
                for message in updated:
                    _write_state(conn, message)
                conn.commit()
                return updated
            except Exception:
                conn.rollback()
                raise

        return await self._backend.run(_apply)

    async def soft_delete(self, message_id: str, at_ms: int) -> Message:
        def _apply(conn: sqlite3.Connection) -> Message | None:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(
                    f"SELECT {_COLUMNS} FROM messages WHERE id=? AND is_deleted=0", (message_id,)
                ).fetchone()
                if row is None:
                    conn.commit()
                    return None
                deleted = lifecycle.soft_delete(_row_to_message(row), at_ms)
                _write_state(conn, deleted)
                conn.commit()
                return deleted
            except Exception:
                conn.rollback()
                raise

        deleted = await self._backend.run(_apply)
        if deleted is None:
            raise NotFoundError("message not found")
        return deleted

    async def archive(self, message: Message, at_ms: int) -> DeletedMessage:
        def _insert(conn: sqlite3.Connection) -> int:
            cursor = conn.execute(
                """
                INSERT INTO deleted_messages (original_message_id, sender, receiver, text, sent_at_ms, deleted_at_ms)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (message.id, message.sender, message.receiver, message.text, message.created_at_ms, at_ms),
            )
            return int(cursor.lastrowid)

        record_id = await self._backend.run(_insert)
        return DeletedMessage(
            id=record_id,
            original_message_id=message.id,
            sender=message.sender,
            receiver=message.receiver,
            text=message.text,
            sent_at_ms=message.created_at_ms,
            deleted_at_ms=at_ms,
        )

    async def archived(self, original_message_id: str) -> List[DeletedMessage]:
        def _select(conn: sqlite3.Connection) -> list[sqlite3.Row]:
            return conn.execute(
                """
                SELECT id, original_message_id, sender, receiver, text, sent_at_ms, deleted_at_ms
                FROM deleted_messages WHERE original_message_id=? ORDER BY id ASC
                """,
                (original_message_id,),
            ).fetchall()

        return [_row_to_archive(row) for row in await self._backend.run(_select)]

    async def list_for_user(self, username: str) -> List[Message]:
        def _select(conn: sqlite3.Connection) -> list[sqlite3.Row]:
            return conn.execute(
                f"""
                SELECT {_COLUMNS} FROM messages
                WHERE (sender=? OR receiver=?) AND is_deleted=0
                ORDER BY created_at_ms ASC, rowid ASC
                """,
                (username, username),
            ).fetchall()

        return [_row_to_message(row) for row in await self._backend.run(_select)]

    async def list_conversation(self, user_a: str, user_b: str) -> List[Message]:
        def _select(conn: sqlite3.Connection) -> list[sqlite3.Row]:
            return conn.execute(
                f"""
                SELECT {_COLUMNS} FROM messages
                WHERE ((sender=? AND receiver=?) OR (sender=? AND receiver=?)) AND is_deleted=0
                ORDER BY created_at_ms ASC, rowid ASC
                """,
                (user_a, user_b, user_b, user_a),
            ).fetchall()

        return [_row_to_message(row) for row in await self._backend.run(_select)]
