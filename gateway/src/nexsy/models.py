from __future__ import annotations

import secrets
import time
from dataclasses import dataclass
from typing import Any

SENT = "sent"
DELIVERED = "delivered"
SEEN = "seen"

STATUSES = (SENT, DELIVERED, SEEN)


def _now_ms() -> int:
    return int(time.time() * 1000)


def new_message_id() -> str:
    return f"m_{secrets.token_hex(12)}"


@dataclass
class User:
    username: str
    password_hash: str
    email: str | None = None
    is_online: bool = False
    last_seen_ms: int = 0
    created_at_ms: int = 0
    updated_at_ms: int = 0

    def to_wire(self) -> dict[str, Any]:
        return {
            "username": self.username,
            "isOnline": self.is_online,
            "lastSeen": self.last_seen_ms,
        }


@dataclass(frozen=True)
class Message:
    """A single 1:1 chat message and its delivery state."""

    id: str
    sender: str
    receiver: str
    text: str
    status: str = SENT
    delivered_at_ms: int | None = None
    seen_at_ms: int | None = None
    is_deleted: bool = False
    deleted_at_ms: int | None = None
    created_at_ms: int = 0
    updated_at_ms: int = 0

    def to_wire(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "sender": self.sender,
            "receiver": self.receiver,
            "text": self.text,
            "status": self.status,
            "createdAt": self.created_at_ms,
            "deliveredAt": self.delivered_at_ms,
            "seenAt": self.seen_at_ms,
        }


@dataclass(frozen=True)
class DeletedMessage:
    """Archived copy of a message taken when it was deleted."""

    id: int
    original_message_id: str
    sender: str
    receiver: str
    text: str
    sent_at_ms: int
    deleted_at_ms: int
