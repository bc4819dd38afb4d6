"""Client-side chat session for one user in one exchange.

Keeps a WebSocket connection to the chat gateway alive, joins the exchange
room on every (re)connect, dispatches inbound events to registered handlers
and feeds messages into the :class:`~exchange_chat.client.timeline.Timeline`.

Sending never blocks the caller: :meth:`ChatClientSession.send_message` adds
an optimistic entry and queues the frame; the outcome arrives later as a
confirmed message (placeholder resolved) or an error (placeholder retracted).

On a dropped connection the session reconnects with exponential backoff and
rejoins with ``since`` set to the newest confirmed message, so the replay
covers exactly the gap. Sends still queued when the connection dropped fail
with ``connection_lost``; sends already transmitted are settled by the
replay, which either contains them or proves they were not persisted.
A join the server could not complete is treated like a lost connection:
the transport is dropped and the next attempt joins again. Only a 401 or
403 handshake ends the session; other handshake failures back off and retry.
"""
import asyncio
import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import urlencode

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake, WebSocketException

from exchange_chat.chat.schemas import ChatMessage, EventType
from exchange_chat.config import AppConfig, get_config
from exchange_chat.errors import ChatError, ConnectionLost, InvalidArgument, error_from_code

from .timeline import OptimisticEntry, Timeline, normalize_body

logger = logging.getLogger(__name__)

# Errors that end the session instead of triggering a reconnect
FATAL_CODES = {"forbidden", "not_found", "unauthenticated"}

# Handshake statuses meaning the token was refused; anything else is retried
REJECTED_STATUSES = {401, 403}

Handler = Callable[[Any], None]


def _handshake_status(error: InvalidHandshake) -> Optional[int]:
    """HTTP status of a rejected handshake, if the server sent one."""
    response = getattr(error, "response", None)
    status = getattr(response, "status_code", None)
    if status is None:
        status = getattr(error, "status_code", None)
    return status


class ChatClientSession:
    """Connection lifecycle, event dispatch and emitters for one exchange."""

    def __init__(
        self,
        url: str,
        token: str,
        exchange_id: str,
        user_id: str,
        *,
        connect: Optional[Callable[[str], Awaitable[Any]]] = None,
        reconnect_attempts: int = 5,
        reconnect_base_delay: float = 0.5,
        reconnect_max_delay: float = 10.0,
        typing_window: float = 2.0,
        typing_debounce: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.url = url
        self.token = token
        self.exchange_id = exchange_id
        self.user_id = user_id
        self.timeline = Timeline(exchange_id, user_id)
        self._connect = connect or websockets.connect
        self.reconnect_attempts = reconnect_attempts
        self.reconnect_base_delay = reconnect_base_delay
        self.reconnect_max_delay = reconnect_max_delay
        self.typing_window = typing_window
        self.typing_debounce = typing_debounce
        self._clock = clock

        self._handlers: Dict[str, List[Handler]] = {
            "message": [], "typing": [], "error": [], "history": [],
        }
        self._outgoing: Optional[asyncio.Queue] = None
        self._joined: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None
        self._transport = None
        self._closing = False
        self._fatal: Optional[ChatError] = None
        self._has_joined_before = False
        self._awaiting_replay = False
        self._join_failed = False
        self._last_typing_emit: Optional[float] = None
        # user_id -> local deadline of their typing indicator
        self._peer_typing: Dict[str, float] = {}
        self.session_id: Optional[str] = None

    @classmethod
    def from_config(
        cls,
        url: str,
        token: str,
        exchange_id: str,
        user_id: str,
        config: Optional[AppConfig] = None,
        **kwargs: Any,
    ) -> "ChatClientSession":
        """Build a session using the configured reconnect and typing timings."""
        config = config or get_config()
        return cls(
            url,
            token,
            exchange_id,
            user_id,
            reconnect_attempts=config.client.reconnect_attempts,
            reconnect_base_delay=config.client.reconnect_base_delay,
            reconnect_max_delay=config.client.reconnect_max_delay,
            typing_window=config.chat.typing_window_seconds,
            typing_debounce=config.chat.typing_debounce_seconds,
            **kwargs,
        )

    # =========================================================================
    # Subscriptions
    # =========================================================================

    def on_message(self, handler: Callable[[ChatMessage], None]) -> Callable[[ChatMessage], None]:
        self._handlers["message"].append(handler)
        return handler

    def on_typing(self, handler: Callable[[dict], None]) -> Callable[[dict], None]:
        self._handlers["typing"].append(handler)
        return handler

    def on_error(self, handler: Callable[[ChatError], None]) -> Callable[[ChatError], None]:
        self._handlers["error"].append(handler)
        return handler

    def on_history(self, handler: Callable[[List[ChatMessage]], None]) -> Callable[[List[ChatMessage]], None]:
        self._handlers["history"].append(handler)
        return handler

    def _emit(self, kind: str, payload: Any) -> None:
        for handler in list(self._handlers[kind]):
            try:
                handler(payload)
            except Exception:
                logger.exception("[Client] %s handler failed", kind)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def connected(self) -> bool:
        return self._joined is not None and self._joined.is_set()

    @property
    def fatal_error(self) -> Optional[ChatError]:
        return self._fatal

    async def start(self) -> None:
        """Start the connection loop in the background."""
        if self._task is not None:
            return
        self._outgoing = asyncio.Queue()
        self._joined = asyncio.Event()
        self._closing = False
        self._task = asyncio.create_task(self._run())

    async def wait_joined(self, timeout: Optional[float] = None) -> None:
        await asyncio.wait_for(self._joined.wait(), timeout)

    async def close(self) -> None:
        """Leave the room and stop reconnecting."""
        self._closing = True
        transport = self._transport
        if transport is not None:
            try:
                await transport.send(json.dumps({"type": EventType.LEAVE.value, "exchangeId": self.exchange_id}))
                await transport.close()
            except (ConnectionClosed, OSError):
                pass
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    def _socket_url(self) -> str:
        separator = "&" if "?" in self.url else "?"
        return f"{self.url}{separator}{urlencode({'token': self.token})}"

    def _backoff(self, attempt: int) -> float:
        return min(self.reconnect_base_delay * (2 ** attempt), self.reconnect_max_delay)

    async def _run(self) -> None:
        attempt = 0
        while not self._closing:
            try:
                transport = await self._connect(self._socket_url())
            except InvalidHandshake as e:
                if _handshake_status(e) in REJECTED_STATUSES:
                    logger.error(f"[Client] Connection refused by server: {e}")
                    self._stop_fatally(error_from_code("unauthenticated", "Connection refused"))
                    return
                failure = e
            except (OSError, asyncio.TimeoutError, WebSocketException) as e:
                failure = e
            else:
                if await self._serve(transport):
                    attempt = 0
                if self._closing or self._fatal is not None:
                    return
                self._on_connection_lost()
                failure = "transport closed"

            if attempt >= self.reconnect_attempts:
                logger.error(f"[Client] Failed to connect after {attempt} attempts: {failure}")
                self._give_up()
                return
            delay = self._backoff(attempt)
            attempt += 1
            logger.info(f"[Client] Reconnecting in {delay}s (attempt {attempt}/{self.reconnect_attempts})...")
            await asyncio.sleep(delay)

    async def _serve(self, transport) -> bool:
        """Join the room over ``transport`` and dispatch until it closes.

        Returns:
            True if the room was joined on this transport.
        """
        self._transport = transport
        self._join_failed = False
        joined = False
        join = {"type": EventType.JOIN.value, "exchangeId": self.exchange_id}
        if self._has_joined_before:
            latest = self.timeline.latest_confirmed_at()
            if latest is not None:
                join["since"] = latest.isoformat()
            self._awaiting_replay = True
        pump = asyncio.create_task(self._pump(transport))
        try:
            await transport.send(json.dumps(join))
            while True:
                raw = await transport.recv()
                try:
                    self._dispatch(json.loads(raw))
                except ValueError as e:
                    logger.warning(f"[Client] Dropping malformed frame: {e}")
                joined = joined or self._joined.is_set()
                if self._join_failed:
                    # Drop the transport; the reconnect joins again
                    await transport.close()
                    break
        except (ConnectionClosed, ConnectionError) as e:
            logger.info(f"[Client] Transport closed: {e}")
        finally:
            pump.cancel()
            self._joined.clear()
            self._transport = None
        return joined

    async def _pump(self, transport) -> None:
        """Write queued frames once the room is joined."""
        await self._joined.wait()
        try:
            while True:
                frame, temp_id = await self._outgoing.get()
                await transport.send(json.dumps(frame))
                if temp_id is not None:
                    self.timeline.mark_transmitted(temp_id)
        except (ConnectionClosed, ConnectionError):
            # The receive loop notices the same failure and ends the session
            return

    def _on_connection_lost(self) -> None:
        # Typing frames are dropped; queued sends fail below
        while not self._outgoing.empty():
            self._outgoing.get_nowait()
        for entry in self.timeline.fail_untransmitted():
            self._emit_send_failure(entry, "Connection lost before the message was sent")

    def _give_up(self) -> None:
        for entry in self.timeline.fail_untransmitted() + self.timeline.expire_transmitted():
            self._emit_send_failure(entry, "Unable to reach the chat server")
        self._stop_fatally(ConnectionLost("Unable to reach the chat server"))

    def _stop_fatally(self, error: ChatError) -> None:
        self._fatal = error
        self._emit("error", error)

    def _emit_send_failure(self, entry: OptimisticEntry, message: str) -> None:
        self._emit("error", ConnectionLost(message, client_id=entry.id))

    # =========================================================================
    # Inbound dispatch
    # =========================================================================

    def _dispatch(self, event: dict) -> None:
        event_type = event.get("type")
        if event_type == EventType.CONNECTED.value:
            self.session_id = event.get("sessionId")
        elif event_type == EventType.HISTORY.value:
            self._handle_history(event)
        elif event_type == EventType.MESSAGE_RECEIVED.value:
            payload = {k: v for k, v in event.items() if k != "type"}
            message = ChatMessage(**payload)
            if message.exchangeId != self.exchange_id:
                return
            self.timeline.apply_confirmed(message)
            self._emit("message", message)
        elif event_type == EventType.TYPING_CHANGED.value:
            self._handle_typing(event)
        elif event_type == EventType.ERROR.value:
            self._handle_error(event)
        else:
            logger.debug("[Client] Ignoring %s frame", event_type)

    def _handle_history(self, event: dict) -> None:
        if event.get("exchangeId", self.exchange_id) != self.exchange_id:
            return
        messages = [ChatMessage(**m) for m in event.get("messages", [])]
        self.timeline.apply_history(messages)
        if self._awaiting_replay:
            # Anything sent on the dropped connection and absent from the
            # replay was never persisted
            for entry in self.timeline.expire_transmitted():
                self._emit_send_failure(entry, "Message was not delivered")
            self._awaiting_replay = False
        self._has_joined_before = True
        self._joined.set()
        self._emit("history", messages)

    def _handle_typing(self, event: dict) -> None:
        user_id = event.get("userId")
        if event.get("exchangeId") != self.exchange_id or user_id == self.user_id:
            return
        if event.get("isTyping"):
            self._peer_typing[user_id] = self._clock() + self.typing_window
        else:
            self._peer_typing.pop(user_id, None)
        self._emit("typing", event)

    def _handle_error(self, event: dict) -> None:
        client_id = event.get("clientId")
        error = error_from_code(event.get("code", "chat_error"), event.get("message", ""), client_id)
        if client_id is not None:
            self.timeline.fail(client_id)
        elif error.code in FATAL_CODES:
            logger.error(f"[Client] Fatal error from server: {error.message}")
            self._fatal = error
        elif not self._joined.is_set():
            logger.warning(f"[Client] Join failed ({error.code}), reconnecting")
            self._join_failed = True
        self._emit("error", error)

    # =========================================================================
    # Outbound emitters
    # =========================================================================

    def send_message(self, content: str, images: Optional[List[str]] = None) -> OptimisticEntry:
        """Echo a message locally and queue it for sending.

        Returns immediately; confirmation or failure is delivered through
        the timeline and the ``on_message`` / ``on_error`` handlers.

        Raises:
            InvalidArgument: If both content and images are empty.
            ConnectionLost: If the session has stopped for good.
        """
        if self._outgoing is None or self._fatal is not None:
            raise ConnectionLost("Chat session is not running")
        content, images = normalize_body(content, images)
        if not content and not images:
            raise InvalidArgument("Message must have content or images")
        entry = self.timeline.add_optimistic(content, images)
        frame = {
            "type": EventType.SEND_MESSAGE.value,
            "exchangeId": self.exchange_id,
            "content": entry.content,
            "images": entry.images,
            "clientId": entry.id,
        }
        self._outgoing.put_nowait((frame, entry.id))
        return entry

    def emit_typing(self) -> bool:
        """Signal typing, at most once per debounce window.

        Returns:
            True if a typing frame was queued.
        """
        if not self.connected:
            return False
        now = self._clock()
        if self._last_typing_emit is not None and now - self._last_typing_emit < self.typing_debounce:
            return False
        self._last_typing_emit = now
        self._outgoing.put_nowait(({"type": EventType.TYPING.value, "exchangeId": self.exchange_id}, None))
        return True

    def is_peer_typing(self, user_id: str) -> bool:
        deadline = self._peer_typing.get(user_id)
        return deadline is not None and self._clock() < deadline
