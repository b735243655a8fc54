"""Status transitions for messages.

Every status change made by a store goes through :func:`advance`, so the
sent -> delivered -> seen ordering is enforced in exactly one place.
"""

from __future__ import annotations

from dataclasses import replace

from .errors import InvalidTransition
from .models import DELIVERED, SEEN, SENT, Message

_RANK = {SENT: 0, DELIVERED: 1, SEEN: 2}


def can_advance(current: str, target: str) -> bool:
    if current not in _RANK or target not in _RANK:
        return False
    return _RANK[target] > _RANK[current]


def advance(message: Message, target: str, now_ms: int) -> Message:
    """Return ``message`` moved to ``target``, stamping the matching timestamp.

    ``delivered_at_ms`` is only stamped on the sent -> delivered step; a
    message that jumps straight from sent to seen keeps it unset.
    """

    if message.is_deleted:
        raise InvalidTransition("message is deleted")
    if not can_advance(message.status, target):
        raise InvalidTransition(f"cannot move message from {message.status} to {target}")

    changes: dict[str, object] = {"status": target, "updated_at_ms": now_ms}
    if target == DELIVERED:
        changes["delivered_at_ms"] = now_ms
    elif target == SEEN:
        changes["seen_at_ms"] = now_ms
    return replace(message, **changes)


def soft_delete(message: Message, now_ms: int) -> Message:
    if message.is_deleted:
        raise InvalidTransition("message is already deleted")
    return replace(message, is_deleted=True, deleted_at_ms=now_ms, updated_at_ms=now_ms)
