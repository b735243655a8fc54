from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List

from .notifications import Notification

Sender = Callable[[dict], None]


@dataclass(eq=False)
class ClientConnection:
    """Handle for one live duplex channel; hashed by identity."""

    send: Sender
    conn_id: str = field(default_factory=lambda: f"c_{secrets.token_hex(8)}")

    def deliver(self, frame: dict) -> None:
        self.send(frame)


class ConnectionHub:
    """Tracks open connections and fans notifications out to them."""

    def __init__(self) -> None:
        self._connections: Dict[str, ClientConnection] = {}

    def open(self, send: Sender, *, conn_id: str | None = None) -> ClientConnection:
        connection = ClientConnection(send=send) if conn_id is None else ClientConnection(send=send, conn_id=conn_id)
        self._connections[connection.conn_id] = connection
        return connection

    def close(self, connection: ClientConnection) -> None:
        self._connections.pop(connection.conn_id, None)

    def is_open(self, connection: ClientConnection) -> bool:
        return self._connections.get(connection.conn_id) is connection

    def connections(self) -> List[ClientConnection]:
        return list(self._connections.values())

    def deliver(self, notifications: Iterable[Notification]) -> None:
        for notification in notifications:
            frame = notification.frame()
            if notification.is_broadcast:
                targets: Iterable[ClientConnection] = self.connections()
            else:
                targets = [conn for conn in notification.targets if self.is_open(conn)]
            for connection in targets:
                connection.deliver(frame)
