"""DuckDB-based chat message store.

This module provides append-only persistence for exchange chat messages using
DuckDB. Messages are returned ordered by their server-assigned ``createdAt``.

Database Schema:
    chat_messages table:
        - id: Message UUID (primary key)
        - seq: Insertion sequence, tie-breaker for identical timestamps
        - exchange_id: Exchange (room) identifier
        - sender_id: Participant who sent the message
        - content: Message text
        - images: Ordered list of image URLs
        - created_at: Server timestamp (naive UTC)
        - client_id: Sender correlation id (optional)

Ordering:
    Appends are serialized per exchange so that ``createdAt`` is strictly
    increasing within an exchange. Appends to different exchanges do not
    wait on each other. The store keeps one lock and the newest timestamp
    for every exchange appended to until :meth:`MessageStore.forget` drops
    them when the exchange goes idle.

Thread Safety:
    Queries run in worker threads, each on its own cursor of the shared
    connection, so the event loop is never blocked on disk I/O.
"""
import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

import duckdb

from exchange_chat.errors import Forbidden, InvalidArgument, TransientStoreFailure
from exchange_chat.exchanges import ExchangeDirectory

from .schemas import ChatMessage

logger = logging.getLogger(__name__)

# Default page size for message history pagination
DEFAULT_PAGE_SIZE = 50

# Maximum page size to prevent abuse
MAX_PAGE_SIZE = 100

# Smallest step DuckDB TIMESTAMP can represent
_TICK = timedelta(microseconds=1)

_SELECT_COLUMNS = "id, exchange_id, sender_id, content, images, created_at, client_id"


def _to_db_time(value: datetime) -> datetime:
    """Convert to naive UTC for storage. Naive input is taken as UTC."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _from_db_time(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc)


def _row_to_message(row) -> ChatMessage:
    return ChatMessage(
        id=row[0],
        exchangeId=row[1],
        senderId=row[2],
        content=row[3] or "",
        images=list(row[4] or []),
        createdAt=_from_db_time(row[5]),
        clientId=row[6],
    )


class MessageStore:
    """Append-only message persistence for exchange chat rooms.

    Attributes:
        max_content_length: Longest accepted message text.
        max_images: Largest accepted number of images per message.
    """

    def __init__(
        self,
        exchanges: ExchangeDirectory,
        db_path: str = "exchange_chat.duckdb",
        max_content_length: int = 4000,
        max_images: int = 10,
    ) -> None:
        """Initialize the store, creating the schema if needed.

        Args:
            exchanges: Directory used to authorize senders.
            db_path: Path to the DuckDB file, or ":memory:".
            max_content_length: Longest accepted message text.
            max_images: Largest accepted number of images per message.
        """
        self._exchanges = exchanges
        self._db_path = db_path
        self.max_content_length = max_content_length
        self.max_images = max_images
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        # exchange_id -> lock guarding created_at assignment
        self._locks: Dict[str, asyncio.Lock] = {}
        # exchange_id -> created_at of the newest stored message
        self._last_created: Dict[str, datetime] = {}
        # exchange_id -> appends holding or waiting on its lock
        self._appending: Dict[str, int] = {}
        self._initialize_db()

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        """Get the DuckDB connection, creating if needed."""
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        """Create the chat_messages table, sequence and index (idempotent)."""
        conn = self._get_connection()
        conn.execute("CREATE SEQUENCE IF NOT EXISTS chat_messages_seq START 1")
        conn.execute("""
            CREATE TABLE IF NOT EXISTS chat_messages (
                id VARCHAR PRIMARY KEY,
                seq BIGINT DEFAULT nextval('chat_messages_seq'),
                exchange_id VARCHAR NOT NULL,
                sender_id VARCHAR NOT NULL,
                content VARCHAR NOT NULL,
                images VARCHAR[],
                created_at TIMESTAMP NOT NULL,
                client_id VARCHAR
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_chat_messages_exchange
            ON chat_messages(exchange_id, created_at)
        """)

    def _run(self, sql: str, params: list, fetch: str = "all"):
        """Execute on a fresh cursor (called from a worker thread)."""
        cursor = self._get_connection().cursor()
        try:
            result = cursor.execute(sql, params)
            if fetch == "one":
                return result.fetchone()
            if fetch == "all":
                return result.fetchall()
            return None
        finally:
            cursor.close()

    async def _query(self, sql: str, params: list, fetch: str = "all"):
        try:
            return await asyncio.to_thread(self._run, sql, params, fetch)
        except duckdb.Error as e:
            logger.error("[Store] Query failed: %s", e)
            raise TransientStoreFailure("Message store unavailable")

    def _lock_for(self, exchange_id: str) -> asyncio.Lock:
        lock = self._locks.get(exchange_id)
        if lock is None:
            lock = self._locks[exchange_id] = asyncio.Lock()
        return lock

    def _validate_body(self, content: str, images: List[str]) -> Tuple[str, List[str]]:
        content = (content or "").strip()
        images = [url for url in (images or []) if url]
        if not content and not images:
            raise InvalidArgument("Message must have content or images")
        if len(content) > self.max_content_length:
            raise InvalidArgument(
                f"Message content exceeds {self.max_content_length} characters"
            )
        if len(images) > self.max_images:
            raise InvalidArgument(f"At most {self.max_images} images per message")
        return content, images

    async def _next_created_at(self, exchange_id: str) -> datetime:
        """Return a timestamp strictly after the exchange's newest message.

        Must be called with the exchange lock held.
        """
        last = self._last_created.get(exchange_id)
        if last is None:
            row = await self._query(
                "SELECT max(created_at) FROM chat_messages WHERE exchange_id = ?",
                [exchange_id],
                fetch="one",
            )
            if row and row[0] is not None:
                last = row[0]
        now = _to_db_time(datetime.now(timezone.utc))
        if last is not None and now <= last:
            now = last + _TICK
        return now

    async def append(
        self,
        exchange_id: str,
        sender_id: str,
        content: str,
        images: Optional[List[str]] = None,
        client_id: Optional[str] = None,
    ) -> ChatMessage:
        """Persist a message and return it with its server id and timestamp.

        Raises:
            NotFound: If the exchange does not exist.
            Forbidden: If ``sender_id`` is not one of its participants.
            InvalidArgument: If the body is empty or over the limits.
            TransientStoreFailure: If the database is unavailable.
        """
        participants = await self._exchanges.get_participants(exchange_id)
        if not participants.contains(sender_id):
            raise Forbidden(f"User {sender_id} is not a participant of exchange {exchange_id}")
        content, images = self._validate_body(content, images or [])

        message_id = str(uuid.uuid4())
        self._appending[exchange_id] = self._appending.get(exchange_id, 0) + 1
        try:
            async with self._lock_for(exchange_id):
                created_at = await self._next_created_at(exchange_id)
                await self._query(
                    """
                    INSERT INTO chat_messages
                        (id, exchange_id, sender_id, content, images, created_at, client_id)
                    VALUES (?, ?, ?, ?, CAST(? AS VARCHAR[]), ?, ?)
                    """,
                    [message_id, exchange_id, sender_id, content, images, created_at, client_id],
                    fetch="none",
                )
                self._last_created[exchange_id] = created_at
        finally:
            remaining = self._appending[exchange_id] - 1
            if remaining:
                self._appending[exchange_id] = remaining
            else:
                del self._appending[exchange_id]

        logger.debug("[Store] Appended %s to exchange %s", message_id, exchange_id)
        return ChatMessage(
            id=message_id,
            exchangeId=exchange_id,
            senderId=sender_id,
            content=content,
            images=images,
            createdAt=_from_db_time(created_at),
            clientId=client_id,
        )

    async def list_since(
        self, exchange_id: str, cursor: Optional[datetime] = None
    ) -> List[ChatMessage]:
        """Get messages of an exchange in ascending ``createdAt`` order.

        Args:
            exchange_id: The exchange ID.
            cursor: If given, only messages created strictly after it.

        Returns:
            List of messages, oldest first.
        """
        if cursor is None:
            rows = await self._query(
                f"""
                SELECT {_SELECT_COLUMNS} FROM chat_messages
                WHERE exchange_id = ?
                ORDER BY created_at, seq
                """,
                [exchange_id],
            )
        else:
            rows = await self._query(
                f"""
                SELECT {_SELECT_COLUMNS} FROM chat_messages
                WHERE exchange_id = ? AND created_at > ?
                ORDER BY created_at, seq
                """,
                [exchange_id, _to_db_time(cursor)],
            )
        return [_row_to_message(row) for row in rows]

    async def list_page(
        self, exchange_id: str, page: int = 1, limit: int = DEFAULT_PAGE_SIZE
    ) -> Tuple[List[ChatMessage], int]:
        """Get one page of history, newest page first, each page oldest-first.

        Args:
            exchange_id: The exchange ID.
            page: 1-based page number counted from the most recent messages.
            limit: Page size, capped at MAX_PAGE_SIZE.

        Returns:
            Tuple of (messages, total message count).
        """
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        page = max(1, page)
        rows = await self._query(
            f"""
            SELECT {_SELECT_COLUMNS} FROM chat_messages
            WHERE exchange_id = ?
            ORDER BY created_at DESC, seq DESC
            LIMIT ? OFFSET ?
            """,
            [exchange_id, limit, (page - 1) * limit],
        )
        total = await self.count(exchange_id)
        return [_row_to_message(row) for row in reversed(rows)], total

    async def count(self, exchange_id: str) -> int:
        row = await self._query(
            "SELECT count(*) FROM chat_messages WHERE exchange_id = ?",
            [exchange_id],
            fetch="one",
        )
        return int(row[0]) if row else 0

    def forget(self, exchange_id: str) -> None:
        """Drop the cached lock and newest timestamp of an idle exchange.

        Kept while an append is in flight; the next append re-reads the
        newest timestamp from the table.
        """
        if exchange_id in self._appending:
            return
        self._locks.pop(exchange_id, None)
        self._last_created.pop(exchange_id, None)

    def close(self) -> None:
        """Close the database connection."""
        if self._connection is not None:
            self._connection.close()
            self._connection = None
