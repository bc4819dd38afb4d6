"""Chat gateway: per-connection state machine and room event handling.

The gateway owns the Room Registry, Presence Broadcaster and Message Store for
its lifetime. Transports (the WebSocket router) authenticate a user, open a
:class:`GatewayConnection`, feed it inbound frames through
:meth:`ChatGateway.handle_frame` and call :meth:`ChatGateway.disconnect` when
the transport goes away.

Connection states:
    CONNECTING -> AUTHENTICATED -> ROOM_JOINED -> (ROOM_JOINED | DISCONNECTED)

Ordering:
    A message is appended and offered to every room member while holding the
    room lock, so all members observe messages in store order. Fan-out itself
    never waits on a recipient (see :mod:`exchange_chat.chat.outbox`).
"""
import asyncio
import logging
import uuid
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional

from pydantic import ValidationError

from exchange_chat.errors import ChatError, ConnectionLost, Forbidden, InvalidArgument, NotFound
from exchange_chat.exchanges import ExchangeDirectory, Participants

from .outbox import Outbox, SendFn
from .presence import PresenceBroadcaster
from .registry import RoomRegistry
from .schemas import (
    ChatMessage,
    EventType,
    JoinInput,
    LeaveInput,
    SendMessageInput,
    TypingInput,
    error_event,
    history_event,
    message_received_event,
)
from .store import MessageStore

logger = logging.getLogger(__name__)

# Default per-session outbound buffer size
OUTBOX_SIZE = 256


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    ROOM_JOINED = "room_joined"
    DISCONNECTED = "disconnected"


class GatewayConnection:
    """Server-side state of one client connection.

    Attributes:
        session_id: Unique id of this connection.
        user_id: Authenticated user.
        state: Current ConnectionState.
        exchange_id: Room joined, if any.
        outbox: Outbound event buffer drained by the transport's writer task.
    """

    def __init__(self, user_id: str, outbox: Outbox, session_id: Optional[str] = None) -> None:
        self.session_id = session_id or str(uuid.uuid4())
        self.user_id = user_id
        self.outbox = outbox
        self.state = ConnectionState.AUTHENTICATED
        self.exchange_id: Optional[str] = None
        # exchange_id -> participants, looked up once per connection
        self.participants: Dict[str, Participants] = {}

    def is_joined(self, exchange_id: str) -> bool:
        return self.state == ConnectionState.ROOM_JOINED and self.exchange_id == exchange_id

    def send_error(self, error: ChatError, client_id: Optional[str] = None) -> None:
        self.outbox.offer(error_event(error.code, error.message, client_id))


class ChatGateway:
    """Relays chat and typing events between the sessions of exchange rooms."""

    def __init__(
        self,
        store: MessageStore,
        registry: RoomRegistry,
        presence: PresenceBroadcaster,
        exchanges: ExchangeDirectory,
        outbox_size: int = OUTBOX_SIZE,
        sweep_interval: float = 10.0,
    ) -> None:
        self.store = store
        self.registry = registry
        self.presence = presence
        self.exchanges = exchanges
        self.outbox_size = outbox_size
        self.sweep_interval = sweep_interval
        self._sweeper: Optional[asyncio.Task] = None

    # =========================================================================
    # Lifetime
    # =========================================================================

    def start(self) -> None:
        """Start the typing sweeper on the running event loop."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self.presence.run_sweeper(self.sweep_interval))
            logger.info("[Gateway] Typing sweeper started (every %ss)", self.sweep_interval)

    async def stop(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None

    # =========================================================================
    # Connections
    # =========================================================================

    def open_connection(
        self,
        user_id: str,
        send: SendFn,
        on_overflow: Optional[Callable[[], None]] = None,
    ) -> GatewayConnection:
        """Create the state for an authenticated transport connection."""
        session_id = str(uuid.uuid4())
        outbox = Outbox(send, maxsize=self.outbox_size, on_overflow=on_overflow, name=session_id)
        connection = GatewayConnection(user_id, outbox, session_id=session_id)
        logger.info("[Gateway] User %s connected as session %s", user_id, session_id)
        return connection

    async def _participants(self, connection: GatewayConnection, exchange_id: str) -> Participants:
        cached = connection.participants.get(exchange_id)
        if cached is None:
            cached = await self.exchanges.get_participants(exchange_id)
            connection.participants[exchange_id] = cached
        return cached

    async def join(
        self,
        connection: GatewayConnection,
        exchange_id: str,
        since: Optional[datetime] = None,
    ) -> List[ChatMessage]:
        """Join a room and queue its history ahead of any live events.

        The outbox is registered (held) before the history snapshot is read,
        so nothing published in between is lost; messages that appear both
        in the snapshot and in the live queue are delivered once.

        Raises:
            NotFound: Unknown exchange.
            Forbidden: User is not a participant.
            ConnectionLost: The connection is already closed.
        """
        if connection.state == ConnectionState.DISCONNECTED:
            raise ConnectionLost("Connection is closed")
        if connection.exchange_id is not None and connection.exchange_id != exchange_id:
            await self.leave(connection)

        participants = await self._participants(connection, exchange_id)
        outbox = connection.outbox
        outbox.hold()
        try:
            await self.registry.join(
                exchange_id,
                connection.user_id,
                connection.session_id,
                outbox,
                participants=participants,
            )
        except ChatError:
            outbox.release()
            raise

        try:
            history = await self.store.list_since(exchange_id, since)
        except ChatError:
            await self.registry.leave(exchange_id, connection.session_id)
            outbox.release()
            raise

        connection.state = ConnectionState.ROOM_JOINED
        connection.exchange_id = exchange_id
        outbox.release(
            leading=[history_event(exchange_id, history, is_recovery=since is not None)],
            skip_message_ids={m.id for m in history},
        )
        logger.info(
            "[Gateway] Session %s joined exchange %s, replaying %d message(s) since=%s",
            connection.session_id, exchange_id, len(history), since,
        )
        return history

    async def leave(self, connection: GatewayConnection) -> None:
        """Leave the current room, if any."""
        exchange_id = connection.exchange_id
        if exchange_id is None:
            return
        await self.registry.leave(exchange_id, connection.session_id)
        if not self.registry.sessions_of(exchange_id, connection.user_id):
            self.presence.clear_typing(exchange_id, connection.user_id)
        if not self.registry.room_size(exchange_id):
            self.store.forget(exchange_id)
        connection.exchange_id = None
        if connection.state == ConnectionState.ROOM_JOINED:
            connection.state = ConnectionState.AUTHENTICATED

    async def disconnect(self, connection: GatewayConnection) -> None:
        """Implicit leave on transport close. Idempotent."""
        if connection.state == ConnectionState.DISCONNECTED:
            return
        await self.leave(connection)
        connection.state = ConnectionState.DISCONNECTED
        connection.outbox.close()
        logger.info("[Gateway] Session %s (user %s) disconnected", connection.session_id, connection.user_id)

    # =========================================================================
    # Room events
    # =========================================================================

    def _fan_out(self, exchange_id: str, event: dict, exclude_user_id: Optional[str] = None) -> int:
        delivered = 0
        for member in self.registry.recipients(exchange_id, exclude_user_id=exclude_user_id):
            if member.outbox.offer(event):
                delivered += 1
            else:
                logger.warning(
                    "[Gateway] Dropped %s for slow session %s in exchange %s",
                    event.get("type"), member.session_id, exchange_id,
                )
        return delivered

    async def _persist_and_fan_out(self, sender_id: str, request: SendMessageInput) -> ChatMessage:
        async with self.registry.room_lock(request.exchangeId):
            message = await self.store.append(
                request.exchangeId,
                sender_id,
                request.content,
                request.images,
                client_id=request.clientId,
            )
            delivered = self._fan_out(request.exchangeId, message_received_event(message))
        logger.info(
            "[Gateway] Message %s from %s fanned out to %d session(s) in exchange %s",
            message.id, sender_id, delivered, request.exchangeId,
        )
        return message

    async def send_message(
        self, connection: GatewayConnection, request: SendMessageInput
    ) -> Optional[ChatMessage]:
        """Persist a message and fan it out to every session in the room.

        Failures are reported to the sending connection only; they never
        close it. A message whose append has started is persisted even if the
        sender disconnects meanwhile.
        """
        if not connection.is_joined(request.exchangeId):
            connection.send_error(
                Forbidden(f"Not joined to exchange {request.exchangeId}"), request.clientId
            )
            return None
        try:
            return await asyncio.shield(self._persist_and_fan_out(connection.user_id, request))
        except ChatError as e:
            logger.warning(
                "[Gateway] send_message from %s rejected: %s (%s)", connection.user_id, e.message, e.code
            )
            connection.send_error(e, request.clientId)
            return None

    async def typing(self, connection: GatewayConnection, request: TypingInput) -> bool:
        """Update typing presence; the event skips the sending user's sessions."""
        if not connection.is_joined(request.exchangeId):
            connection.send_error(Forbidden(f"Not joined to exchange {request.exchangeId}"))
            return False
        if request.isTyping:
            return self.presence.set_typing(request.exchangeId, connection.user_id)
        return self.presence.clear_typing(request.exchangeId, connection.user_id)

    # =========================================================================
    # Frame dispatch
    # =========================================================================

    async def handle_frame(self, connection: GatewayConnection, data: dict) -> None:
        """Dispatch one inbound frame.

        Raises:
            Forbidden, NotFound: From ``join``; these are fatal to the
                connection and left to the transport to handle.
        """
        frame_type = data.get("type") if isinstance(data, dict) else None
        try:
            if frame_type == EventType.JOIN.value:
                request = JoinInput(**data)
                try:
                    await self.join(connection, request.exchangeId, request.since)
                except (Forbidden, NotFound):
                    raise
                except ChatError as e:
                    logger.warning("[Gateway] Join of %s failed: %s", request.exchangeId, e.message)
                    connection.send_error(e)
            elif frame_type == EventType.LEAVE.value:
                request = LeaveInput(**data)
                if connection.exchange_id == request.exchangeId:
                    await self.leave(connection)
                connection.outbox.offer({"type": EventType.LEFT.value, "exchangeId": request.exchangeId})
            elif frame_type == EventType.SEND_MESSAGE.value:
                await self.send_message(connection, SendMessageInput(**data))
            elif frame_type == EventType.TYPING.value:
                await self.typing(connection, TypingInput(**data))
            else:
                connection.send_error(InvalidArgument(f"Unknown frame type: {frame_type}"))
        except ValidationError as e:
            logger.debug("[Gateway] Malformed %s frame: %s", frame_type, e)
            client_id = data.get("clientId") if isinstance(data, dict) else None
            connection.send_error(InvalidArgument(f"Malformed {frame_type} frame"), client_id)
