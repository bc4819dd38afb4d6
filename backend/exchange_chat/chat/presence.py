"""Ephemeral "is typing" presence for exchange rooms.

Typing state is never persisted. Each typing signal pushes the user's
deadline ``window`` seconds into the future; once the deadline passes the user
reads as not typing, whether or not a stop signal ever arrived. Broadcasts are
debounced so a fast typist produces at most one event per ``debounce``
seconds while the deadline keeps being refreshed.

A background sweeper only bounds memory and announces expiries; correctness
of :meth:`PresenceBroadcaster.is_typing` does not depend on it.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Tuple

from .registry import RoomRegistry
from .schemas import typing_changed_event

logger = logging.getLogger(__name__)

# Matches the client's local decay so both sides agree on the expiry window
TYPING_WINDOW_SECONDS = 2.0

TYPING_DEBOUNCE_SECONDS = 0.5


@dataclass
class TypingState:
    deadline: float
    last_broadcast: float


class PresenceBroadcaster:
    """Per-room, per-user typing state with self-expiry."""

    def __init__(
        self,
        registry: RoomRegistry,
        window: float = TYPING_WINDOW_SECONDS,
        debounce: float = TYPING_DEBOUNCE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._registry = registry
        self.window = window
        self.debounce = debounce
        self._clock = clock
        # exchange_id -> {user_id -> TypingState}
        self._states: Dict[str, Dict[str, TypingState]] = {}

    def _broadcast(self, exchange_id: str, user_id: str, is_typing: bool) -> int:
        """Offer a typing_changed event to every other user's sessions."""
        event = typing_changed_event(exchange_id, user_id, is_typing)
        delivered = 0
        for member in self._registry.recipients(exchange_id, exclude_user_id=user_id):
            if member.outbox.offer(event):
                delivered += 1
        return delivered

    def set_typing(self, exchange_id: str, user_id: str) -> bool:
        """Refresh the user's typing deadline, broadcasting if not debounced.

        Returns:
            True if a typing_changed event was broadcast.
        """
        now = self._clock()
        room = self._states.setdefault(exchange_id, {})
        state = room.get(user_id)
        was_typing = state is not None and now < state.deadline
        should_broadcast = not was_typing or now - state.last_broadcast >= self.debounce

        if state is None:
            state = room[user_id] = TypingState(deadline=now, last_broadcast=now)
        state.deadline = now + self.window
        if should_broadcast:
            state.last_broadcast = now
            self._broadcast(exchange_id, user_id, True)
        return should_broadcast

    def clear_typing(self, exchange_id: str, user_id: str) -> bool:
        """Explicit stop signal. Broadcasts only if the user was typing."""
        state = self._pop(exchange_id, user_id)
        if state is None or self._clock() >= state.deadline:
            return False
        self._broadcast(exchange_id, user_id, False)
        return True

    def is_typing(self, exchange_id: str, user_id: str) -> bool:
        state = self._states.get(exchange_id, {}).get(user_id)
        return state is not None and self._clock() < state.deadline

    def typing_users(self, exchange_id: str) -> List[str]:
        now = self._clock()
        return [
            user_id for user_id, state in self._states.get(exchange_id, {}).items()
            if now < state.deadline
        ]

    def _pop(self, exchange_id: str, user_id: str):
        room = self._states.get(exchange_id)
        if room is None:
            return None
        state = room.pop(user_id, None)
        if not room:
            del self._states[exchange_id]
        return state

    def sweep(self) -> List[Tuple[str, str]]:
        """Remove expired states and return their (exchange_id, user_id) keys."""
        now = self._clock()
        expired = [
            (exchange_id, user_id)
            for exchange_id, room in self._states.items()
            for user_id, state in room.items()
            if now >= state.deadline
        ]
        for exchange_id, user_id in expired:
            self._pop(exchange_id, user_id)
        return expired

    def tracked_count(self) -> int:
        return sum(len(room) for room in self._states.values())

    async def run_sweeper(self, interval: float) -> None:
        """Periodically sweep, announcing each expiry as isTyping=false."""
        while True:
            await asyncio.sleep(interval)
            expired = self.sweep()
            for exchange_id, user_id in expired:
                self._broadcast(exchange_id, user_id, False)
            if expired:
                logger.debug("[Presence] Swept %d expired typing state(s)", len(expired))
