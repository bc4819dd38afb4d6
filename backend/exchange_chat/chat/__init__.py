"""Exchange chat rooms: gateway, registry, presence and message store."""

from .gateway import ChatGateway, ConnectionState, GatewayConnection
from .presence import PresenceBroadcaster
from .registry import RoomHandle, RoomMember, RoomRegistry
from .schemas import ChatMessage
from .store import MessageStore

__all__ = [
    "ChatGateway",
    "ConnectionState",
    "GatewayConnection",
    "PresenceBroadcaster",
    "RoomHandle",
    "RoomMember",
    "RoomRegistry",
    "ChatMessage",
    "MessageStore",
]
