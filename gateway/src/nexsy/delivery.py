"""Message delivery engine.

Handlers never write to a socket. Each returns the notifications the event
produced and the transport fans them out, so the whole state machine can
be driven without a network layer.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, Hashable, List, Set

from .broadcaster import PresenceBroadcaster
from .errors import ChatError, NotFoundError, PersistenceError, ValidationError
from .models import _now_ms
from .notifications import Notification, error, to, to_all
from .presence import PresenceRegistry

logger = logging.getLogger(__name__)

Handler = Callable[[Hashable, Dict[str, Any]], Awaitable[List[Notification]]]

_FAILURE_MESSAGES = {
    "registerUser": "Failed to register user",
    "send_message": "Failed to send message",
    "mark_messages_seen": "Failed to mark messages as seen",
    "message_delivered": "Failed to update message status",
    "delete_message": "Failed to delete message",
    "update_last_seen": "Failed to update last seen",
}


def _required(payload: Dict[str, Any], *fields: str, message: str) -> tuple:
    values = []
    for field in fields:
        value = payload.get(field)
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(message)
        values.append(value)
    return tuple(values)


class DeliveryEngine:
    def __init__(
        self,
        registry: PresenceRegistry,
        users,
        messages,
        *,
        broadcaster: PresenceBroadcaster | None = None,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self.registry = registry
        self.users = users
        self.messages = messages
        self.broadcaster = broadcaster or PresenceBroadcaster(registry, users)
        self._now = now_func
        self._deleting: Set[str] = set()
        self._handlers: Dict[str, Handler] = {
            "registerUser": self.register,
            "send_message": self.send,
            "mark_messages_seen": self.mark_seen,
            "message_delivered": self.mark_delivered,
            "typing": self.typing,
            "stop_typing": self.stop_typing,
            "delete_message": self.delete,
            "update_last_seen": self.update_last_seen,
        }

    async def dispatch(self, connection: Hashable, event: str, payload: Any) -> List[Notification]:
        """Run one inbound event; failures become an ``error`` for ``connection``."""

        handler = self._handlers.get(event)
        try:
            if handler is None:
                raise ValidationError("unknown event")
            if not isinstance(payload, dict):
                raise ValidationError("payload must be an object")
            return await handler(connection, payload)
        except PersistenceError:
            logger.exception("persistence failure while handling %s", event)
            return [error(connection, _FAILURE_MESSAGES.get(event, "Request failed"), code="server_error")]
        except ChatError as exc:
            logger.info("rejected %s: %s", event, exc.message)
            return [error(connection, exc.message, code=exc.code)]
        except Exception:
            logger.exception("unexpected failure while handling %s", event)
            return [error(connection, _FAILURE_MESSAGES.get(event, "Request failed"), code="server_error")]

    async def register(self, connection: Hashable, payload: Dict[str, Any]) -> List[Notification]:
        (username,) = _required(payload, "username", message="username required")
        if await self.users.get(username) is None:
            raise NotFoundError("unknown user")

        went_offline = self.registry.register(connection, username)
        now_ms = self._now()
        failed = False
        for identity, online in ((went_offline, False), (username, True)):
            if identity is None:
                continue
            try:
                await self.users.set_presence(identity, online, now_ms)
            except PersistenceError:
                logger.exception("failed to persist presence for %s", identity)
                failed = True
        logger.info("user %s registered a connection", username)
        if failed:
            # The registry is already updated; publish it without the roster.
            return [
                self.broadcaster.online_users(),
                error(connection, _FAILURE_MESSAGES["registerUser"], code="server_error"),
            ]
        return await self.broadcaster.presence_changed()

    async def disconnect(self, connection: Hashable) -> List[Notification]:
        """Handle a closed transport; never raises."""

        identity = self.registry.unregister(connection)
        if identity is None:
            return []
        logger.info("user %s went offline", identity)
        try:
            await self.users.set_presence(identity, False, self._now())
            return await self.broadcaster.presence_changed()
        except Exception:
            logger.exception("failed to persist offline transition for %s", identity)
            return [self.broadcaster.online_users()]

    async def send(self, connection: Hashable, payload: Dict[str, Any]) -> List[Notification]:
        sender, receiver, text = _required(payload, "sender", "receiver", "text", message="Missing message data")
        for username in (sender, receiver):
            if await self.users.get(username) is None:
                raise NotFoundError("unknown user")

        message = await self.messages.insert(sender, receiver, text, self._now())
        receiver_conns = self.registry.connections_for(receiver)
        if receiver_conns:
            delivered = await self.messages.mark_delivered(message.id, self._now())
            if delivered is not None:
                message = delivered
        logger.debug("message %s from %s to %s is %s", message.id, sender, receiver, message.status)

        body = message.to_wire()
        notifications: List[Notification] = []
        if receiver_conns:
            notifications.append(to(receiver_conns, "receive_message", body))
        sender_conns = self.registry.connections_for(sender) | {connection}
        notifications.append(to(sender_conns, "message_sent", body))
        return notifications

    async def mark_seen(self, connection: Hashable, payload: Dict[str, Any]) -> List[Notification]:
        sender, receiver = _required(payload, "sender", "receiver", message="sender and receiver required")
        updated = await self.messages.mark_seen(sender, receiver, self._now())
        if not updated:
            return []
        targets = self.registry.connections_for(sender)
        if not targets:
            return []
        body = {"sender": sender, "receiver": receiver, "messages": [m.to_wire() for m in updated]}
        return [to(targets, "messages_seen", body)]

    async def mark_delivered(self, connection: Hashable, payload: Dict[str, Any]) -> List[Notification]:
        (message_id,) = _required(payload, "messageId", message="messageId required")
        updated = await self.messages.mark_delivered(message_id, self._now())
        if updated is None:
            return []
        targets = self.registry.connections_for(updated.sender)
        if not targets:
            return []
        body = {"messageId": updated.id, "status": updated.status, "deliveredAt": updated.delivered_at_ms}
        return [to(targets, "message_status_updated", body)]

    async def typing(self, connection: Hashable, payload: Dict[str, Any]) -> List[Notification]:
        return self._relay_typing("typing", payload)

    async def stop_typing(self, connection: Hashable, payload: Dict[str, Any]) -> List[Notification]:
        return self._relay_typing("stop_typing", payload)

    def _relay_typing(self, event: str, payload: Dict[str, Any]) -> List[Notification]:
        sender, receiver = _required(payload, "sender", "receiver", message="sender and receiver required")
        targets = self.registry.connections_for(receiver)
        if not targets:
            return []
        return [to(targets, event, {"sender": sender, "receiver": receiver})]

    async def delete(self, connection: Hashable, payload: Dict[str, Any]) -> List[Notification]:
        (message_id,) = _required(payload, "messageId", message="messageId required")
        if message_id in self._deleting:
            raise NotFoundError("message not found")
        self._deleting.add(message_id)
        try:
            message = await self.messages.get(message_id)
            if message is None:
                raise NotFoundError("message not found")
            now_ms = self._now()
            # Archive before soft-deleting; the two writes are not atomic.
            # A retry after a failed soft delete reuses the earlier archive record.
            if not await self.messages.archived(message_id):
                await self.messages.archive(message, now_ms)
            await self.messages.soft_delete(message_id, now_ms)
        finally:
            self._deleting.discard(message_id)
        logger.info("message %s deleted", message_id)
        return [self.notify_all("message_deleted", {"messageId": message_id})]

    async def update_last_seen(self, connection: Hashable, payload: Dict[str, Any]) -> List[Notification]:
        (username,) = _required(payload, "username", message="username required")
        await self.users.touch_last_seen(username, self._now())
        return [await self.broadcaster.all_users()]

    def notify_all(self, event: str, payload: Any) -> Notification:
        # Deletions reach every connection, not only the two participants.
        return to_all(event, payload)
