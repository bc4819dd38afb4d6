"""Pydantic schemas for chat messages and WebSocket frames.

Every frame exchanged over the chat socket is a JSON object with a ``type``
key. Field names are camelCase on the wire.

Inbound (client -> server):
    join            {exchangeId, since?}
    leave           {exchangeId}
    send_message    {exchangeId, content, images, clientId?}
    typing          {exchangeId, isTyping?}

Outbound (server -> client):
    connected        {userId, sessionId}
    left             {exchangeId}
    history          {exchangeId, messages, isRecovery}
    message_received {id, exchangeId, senderId, content, images, createdAt, clientId}
    typing_changed   {exchangeId, userId, isTyping}
    error            {code, message, clientId?}
"""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Frame types used on the chat socket."""
    # inbound
    JOIN = "join"
    LEAVE = "leave"
    SEND_MESSAGE = "send_message"
    TYPING = "typing"
    # outbound
    CONNECTED = "connected"
    LEFT = "left"
    HISTORY = "history"
    MESSAGE_RECEIVED = "message_received"
    TYPING_CHANGED = "typing_changed"
    ERROR = "error"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ChatMessage(BaseModel):
    """A persisted chat message.

    Attributes:
        id: Server-assigned unique identifier.
        exchangeId: Exchange (room) the message belongs to.
        senderId: One of the exchange's two participants.
        content: Plain text, may be empty when images are attached.
        images: URLs of already-uploaded images, in order.
        createdAt: Server timestamp (UTC); authoritative ordering key.
        clientId: Temporary id the sender used for its optimistic entry.
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Unique message ID")
    exchangeId: str = Field(..., description="Exchange this message belongs to")
    senderId: str = Field(..., description="User ID of the sender")
    content: str = Field(default="", description="Message text")
    images: List[str] = Field(default_factory=list, description="Image URLs")
    createdAt: datetime = Field(default_factory=utcnow, description="Server timestamp (UTC)")
    clientId: Optional[str] = Field(default=None, description="Sender correlation id")


class JoinInput(BaseModel):
    exchangeId: str = Field(..., min_length=1)
    since: Optional[datetime] = Field(default=None, description="Replay only messages after this time")


class LeaveInput(BaseModel):
    exchangeId: str = Field(..., min_length=1)


class SendMessageInput(BaseModel):
    """Client request to post a message. The server adds id, senderId and createdAt."""
    exchangeId: str = Field(..., min_length=1)
    content: str = Field(default="")
    images: List[str] = Field(default_factory=list)
    clientId: Optional[str] = Field(default=None)


class TypingInput(BaseModel):
    exchangeId: str = Field(..., min_length=1)
    isTyping: bool = Field(default=True)


# =============================================================================
# Outbound frame builders
# =============================================================================


def message_received_event(message: ChatMessage) -> dict:
    return {"type": EventType.MESSAGE_RECEIVED.value, **message.model_dump(mode="json")}


def typing_changed_event(exchange_id: str, user_id: str, is_typing: bool) -> dict:
    return {
        "type": EventType.TYPING_CHANGED.value,
        "exchangeId": exchange_id,
        "userId": user_id,
        "isTyping": is_typing,
    }


def history_event(exchange_id: str, messages: List[ChatMessage], is_recovery: bool) -> dict:
    return {
        "type": EventType.HISTORY.value,
        "exchangeId": exchange_id,
        "messages": [m.model_dump(mode="json") for m in messages],
        "isRecovery": is_recovery,
    }


def error_event(code: str, message: str, client_id: Optional[str] = None) -> dict:
    event = {"type": EventType.ERROR.value, "code": code, "message": message}
    if client_id is not None:
        event["clientId"] = client_id
    return event
