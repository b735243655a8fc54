from __future__ import annotations

from dataclasses import dataclass
from typing import Any, FrozenSet, Hashable, Iterable


@dataclass(frozen=True)
class Notification:
    """An outbound event. ``targets=None`` addresses every open connection."""

    event: str
    payload: Any
    targets: FrozenSet[Hashable] | None = None

    @property
    def is_broadcast(self) -> bool:
        return self.targets is None

    def frame(self) -> dict[str, Any]:
        return {"v": 1, "t": self.event, "body": self.payload}


def to(targets: Iterable[Hashable], event: str, payload: Any) -> Notification:
    return Notification(event=event, payload=payload, targets=frozenset(targets))


def to_all(event: str, payload: Any) -> Notification:
    return Notification(event=event, payload=payload, targets=None)


def error(target: Hashable, message: str, *, code: str = "error") -> Notification:
    return to((target,), "error", {"code": code, "message": message})
