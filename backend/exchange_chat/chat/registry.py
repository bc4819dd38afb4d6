"""Room registry: which sessions are currently in which exchange room.

A room is keyed by exchange id and may only contain sessions of the
exchange's two participants. Each room has its own asyncio.Lock, the single
mutation path for its membership, so unrelated exchanges never contend.

Thread Safety:
    Designed for a single event loop. It is NOT thread-safe for concurrent
    access from multiple threads.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Dict, List, Optional, Set

from exchange_chat.errors import Forbidden
from exchange_chat.exchanges import ExchangeDirectory, Participants

from .outbox import Outbox

logger = logging.getLogger(__name__)


@dataclass
class RoomMember:
    """One connected session inside a room."""
    user_id: str
    session_id: str
    outbox: Outbox


@dataclass(frozen=True)
class RoomHandle:
    """Returned by :meth:`RoomRegistry.join`; identifies a membership."""
    exchange_id: str
    user_id: str
    session_id: str


class RoomRegistry:
    """Tracks active room memberships per exchange."""

    def __init__(self, exchanges: ExchangeDirectory) -> None:
        self._exchanges = exchanges
        # exchange_id -> {session_id -> RoomMember}
        self._rooms: Dict[str, Dict[str, RoomMember]] = {}
        # exchange_id -> lock serializing membership changes and fan-out
        self._locks: Dict[str, asyncio.Lock] = {}
        # exchange_id -> coroutines holding or waiting on the room lock
        self._lock_users: Dict[str, int] = {}

    @asynccontextmanager
    async def room_lock(self, exchange_id: str) -> AsyncIterator[None]:
        """Hold the lock that serializes mutations of one room.

        The lock is discarded once the room is empty and nobody holds or
        waits on it, so only active rooms keep one.
        """
        lock = self._locks.get(exchange_id)
        if lock is None:
            lock = self._locks[exchange_id] = asyncio.Lock()
        self._lock_users[exchange_id] = self._lock_users.get(exchange_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._lock_users[exchange_id] - 1
            if remaining:
                self._lock_users[exchange_id] = remaining
            else:
                del self._lock_users[exchange_id]
                if exchange_id not in self._rooms:
                    del self._locks[exchange_id]

    def has_lock(self, exchange_id: str) -> bool:
        return exchange_id in self._locks

    async def join(
        self,
        exchange_id: str,
        user_id: str,
        session_id: str,
        outbox: Outbox,
        participants: Optional[Participants] = None,
    ) -> RoomHandle:
        """Add a session to a room after checking the user is a participant.

        Joining again with the same session id is a no-op.

        Args:
            exchange_id: Room to join.
            user_id: Authenticated user of the session.
            session_id: Connection identifier.
            outbox: Where fan-out for this session is delivered.
            participants: Cached participant lookup; fetched when omitted.

        Raises:
            NotFound: If the exchange does not exist.
            Forbidden: If the user is not one of the exchange's participants.
        """
        if participants is None:
            participants = await self._exchanges.get_participants(exchange_id)
        if not participants.contains(user_id):
            logger.warning(
                "[Registry] Rejected join of user %s to exchange %s (not a participant)",
                user_id, exchange_id,
            )
            raise Forbidden(f"User {user_id} is not a participant of exchange {exchange_id}")

        handle = RoomHandle(exchange_id=exchange_id, user_id=user_id, session_id=session_id)
        async with self.room_lock(exchange_id):
            room = self._rooms.setdefault(exchange_id, {})
            if session_id in room:
                return handle
            room[session_id] = RoomMember(user_id=user_id, session_id=session_id, outbox=outbox)
        logger.info(
            "[Registry] Session %s (user %s) joined exchange %s; %d session(s) in room",
            session_id, user_id, exchange_id, self.room_size(exchange_id),
        )
        return handle

    async def leave(self, exchange_id: str, session_id: str) -> Optional[RoomMember]:
        """Remove a session from a room. No-op if it is not a member."""
        async with self.room_lock(exchange_id):
            room = self._rooms.get(exchange_id)
            if not room:
                return None
            member = room.pop(session_id, None)
            if not room:
                del self._rooms[exchange_id]
        if member is not None:
            logger.info("[Registry] Session %s left exchange %s", session_id, exchange_id)
        return member

    def members_of(self, exchange_id: str) -> Set[str]:
        """Session ids currently in the room (empty set if none)."""
        return set(self._rooms.get(exchange_id, {}))

    def recipients(self, exchange_id: str, exclude_user_id: Optional[str] = None) -> List[RoomMember]:
        """Members to deliver a room event to, optionally skipping one user."""
        return [
            member for member in self._rooms.get(exchange_id, {}).values()
            if member.user_id != exclude_user_id
        ]

    def sessions_of(self, exchange_id: str, user_id: str) -> List[str]:
        return [
            member.session_id for member in self._rooms.get(exchange_id, {}).values()
            if member.user_id == user_id
        ]

    def room_size(self, exchange_id: str) -> int:
        return len(self._rooms.get(exchange_id, {}))

    def active_rooms(self) -> List[str]:
        return list(self._rooms)
