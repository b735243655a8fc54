from __future__ import annotations

from typing import Dict, List

from . import lifecycle
from .errors import NotFoundError
from .models import DELIVERED, SEEN, SENT, DeletedMessage, Message, new_message_id


class MessageStore:
    """In-memory message table plus the deleted-message archive.

    Read paths never return soft-deleted records; the records themselves are
    kept so the archive and audit views stay consistent.
    """

    def __init__(self) -> None:
        self._messages: Dict[str, Message] = {}
        self._archive: List[DeletedMessage] = []

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
        self._messages[message.id] = message
        return message

    async def get(self, message_id: str) -> Message | None:
        message = self._messages.get(message_id)
        if message is None or message.is_deleted:
            return None
        return message

    async def mark_delivered(self, message_id: str, at_ms: int) -> Message | None:
        """Move a sent message to delivered; returns None when nothing changed."""

        message = self._messages.get(message_id)
        if message is None or message.is_deleted:
            raise NotFoundError("message not found")
        if message.status != SENT:
            return None
        updated = lifecycle.advance(message, DELIVERED, at_ms)
        self._messages[message_id] = updated
        return updated

    async def mark_seen(self, sender: str, receiver: str, at_ms: int) -> List[Message]:
        updated: List[Message] = []
        for message_id, message in self._messages.items():
            if message.sender != sender or message.receiver != receiver or message.is_deleted:
                continue
            if not lifecycle.can_advance(message.status, SEEN):
                continue
            seen = lifecycle.advance(message, SEEN, at_ms)
            self._messages[message_id] = seen
            updated.append(seen)
        return updated

    async def soft_delete(self, message_id: str, at_ms: int) -> Message:
        message = self._messages.get(message_id)
        if message is None or message.is_deleted:
            raise NotFoundError("message not found")
        deleted = lifecycle.soft_delete(message, at_ms)
        self._messages[message_id] = deleted
        return deleted

    async def archive(self, message: Message, at_ms: int) -> DeletedMessage:
        record = DeletedMessage(
            id=len(self._archive) + 1,
            original_message_id=message.id,
            sender=message.sender,
            receiver=message.receiver,
            text=message.text,
            sent_at_ms=message.created_at_ms,
            deleted_at_ms=at_ms,
        )
        self._archive.append(record)
        return record

    async def archived(self, original_message_id: str) -> List[DeletedMessage]:
        return [record for record in self._archive if record.original_message_id == original_message_id]

    async def list_for_user(self, username: str) -> List[Message]:
        return [
            message
            for message in self._messages.values()
            if not message.is_deleted and username in (message.sender, message.receiver)
        ]

    async def list_conversation(self, user_a: str, user_b: str) -> List[Message]:
        pair = {user_a, user_b}
        return [
            message
            for message in self._messages.values()
            if not message.is_deleted and {message.sender, message.receiver} == pair
        ]
