"""Per-session outbound event buffer.

Fan-out never awaits a recipient: events are offered to each session's
Outbox, and a writer task per session drains it to the socket. A slow
recipient therefore only delays itself. When a session's buffer is full it is
considered too slow to keep up; the outbox closes and the overflow callback
lets the transport drop the connection, after which the client reconnects and
catches up through history replay.

While a room join is in progress the outbox is *held*: live events queue up
but are not written, so the history snapshot can be placed in front of them
and messages present in both can be dropped from the live queue.
"""
import asyncio
import logging
from collections import deque
from typing import Awaitable, Callable, Deque, Iterable, Optional, Set

logger = logging.getLogger(__name__)

SendFn = Callable[[dict], Awaitable[None]]


class Outbox:
    """Bounded FIFO of outbound events for one session."""

    def __init__(
        self,
        send: SendFn,
        maxsize: int = 256,
        on_overflow: Optional[Callable[[], None]] = None,
        name: str = "",
    ) -> None:
        self._send = send
        self._maxsize = maxsize
        self._on_overflow = on_overflow
        self.name = name
        self._buffer: Deque[dict] = deque()
        self._wakeup = asyncio.Event()
        self._held = False
        self._closed = False
        self._drain_on_close = False
        self.overflowed = False
        self.delivered = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._buffer)

    def offer(self, event: dict) -> bool:
        """Queue an event without blocking.

        Returns:
            False if the outbox is closed or just overflowed.
        """
        if self._closed:
            return False
        if len(self._buffer) >= self._maxsize:
            logger.warning("[Outbox] %s overflowed (%d queued); dropping session", self.name, len(self._buffer))
            self.overflowed = True
            self.close()
            if self._on_overflow is not None:
                self._on_overflow()
            return False
        self._buffer.append(event)
        self._wakeup.set()
        return True

    def hold(self) -> None:
        """Stop writing queued events until :meth:`release`."""
        self._held = True

    def release(self, leading: Iterable[dict] = (), skip_message_ids: Optional[Set[str]] = None) -> None:
        """Resume writing, first sending ``leading`` events.

        Queued ``message_received`` events whose id is in ``skip_message_ids``
        are discarded since the leading events already carry them.
        """
        if skip_message_ids:
            self._buffer = deque(
                event for event in self._buffer
                if not (event.get("type") == "message_received" and event.get("id") in skip_message_ids)
            )
        for event in reversed(list(leading)):
            self._buffer.appendleft(event)
        self._held = False
        self._wakeup.set()

    def close(self, drain: bool = False) -> None:
        """Stop accepting events.

        Args:
            drain: If True the writer sends what is already queued before
                stopping; otherwise queued events are discarded.
        """
        self._closed = True
        self._drain_on_close = drain
        if not drain:
            self._buffer.clear()
        self._held = False
        self._wakeup.set()

    async def _safe_send(self, event: dict) -> bool:
        try:
            await self._send(event)
            return True
        except Exception as e:
            logger.debug("[Outbox] %s send failed: %s", self.name, e)
            return False

    async def run(self) -> None:
        """Writer loop; returns when the outbox is closed or sending fails."""
        while True:
            while self._buffer and not self._held:
                if self._closed and not self._drain_on_close:
                    return
                event = self._buffer.popleft()
                if not await self._safe_send(event):
                    self.close()
                    return
                self.delivered += 1
            if self._closed:
                return
            self._wakeup.clear()
            if (self._buffer and not self._held) or self._closed:
                continue
            await self._wakeup.wait()
