"""Two-party chat server: presence tracking and message delivery."""

from .delivery import DeliveryEngine
from .hub import ClientConnection, ConnectionHub
from .messages import MessageStore
from .models import DELIVERED, SEEN, SENT, DeletedMessage, Message, User
from .notifications import Notification
from .presence import PresenceRegistry
from .server import main, simulate
from .users import UserStore

__all__ = [
    "DeliveryEngine",
    "ClientConnection",
    "ConnectionHub",
    "MessageStore",
    "DELIVERED",
    "SEEN",
    "SENT",
    "DeletedMessage",
    "Message",
    "User",
    "Notification",
    "PresenceRegistry",
    "main",
    "simulate",
    "UserStore",
]
