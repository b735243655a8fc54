from __future__ import annotations

from .notifications import Notification, to_all
from .presence import PresenceRegistry


class PresenceBroadcaster:
    """Publishes online-user and roster views derived from presence state."""

    def __init__(self, registry: PresenceRegistry, users) -> None:
        self._registry = registry
        self._users = users

    def online_users(self) -> Notification:
        return to_all("onlineUsers", sorted(self._registry.online_identities()))

    async def all_users(self) -> Notification:
        users = await self._users.list_all()
        return to_all("allUsers", [user.to_wire() for user in users])

    async def presence_changed(self) -> list[Notification]:
        return [self.online_users(), await self.all_users()]
