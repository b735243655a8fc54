from __future__ import annotations

from typing import Dict, FrozenSet, Hashable, Set

Connection = Hashable


class PresenceRegistry:
    """Bidirectional index between identities and their live connections.

    One identity may own several connections (tabs, devices); each
    connection belongs to at most one identity. All mutations are
    synchronous so a handler never observes a half-updated registry.
    """

    def __init__(self) -> None:
        self._identity_by_conn: Dict[Connection, str] = {}
        self._conns_by_identity: Dict[str, Set[Connection]] = {}

    def register(self, connection: Connection, identity: str) -> str | None:
        """Associate ``connection`` with ``identity``.

        Returns the previous identity when the connection was moved away from
        it and that identity has no connections left, else ``None``.
        """

        previous = self._identity_by_conn.get(connection)
        if previous == identity:
            return None
        went_offline = self.unregister(connection) if previous is not None else None
        self._identity_by_conn[connection] = identity
        self._conns_by_identity.setdefault(identity, set()).add(connection)
        return went_offline

    def unregister(self, connection: Connection) -> str | None:
        """Drop ``connection``; returns its identity if that was its last one."""

        identity = self._identity_by_conn.pop(connection, None)
        if identity is None:
            return None
        conns = self._conns_by_identity.get(identity)
        if conns is None:
            return identity
        conns.discard(connection)
        if conns:
            return None
        self._conns_by_identity.pop(identity, None)
        return identity

    def identity_for(self, connection: Connection) -> str | None:
        return self._identity_by_conn.get(connection)

    def connections_for(self, identity: str) -> FrozenSet[Connection]:
        return frozenset(self._conns_by_identity.get(identity, ()))

    def is_online(self, identity: str) -> bool:
        return bool(self._conns_by_identity.get(identity))

    def online_identities(self) -> Set[str]:
        return {identity for identity, conns in self._conns_by_identity.items() if conns}
