"""DuckDB-backed ExchangeDirectory.

Reads the ``exchanges`` table that the exchange service keeps in the shared
chat database. Only the columns needed for room authorization are used:

    exchanges table:
        - id: Exchange identifier
        - requester_id: User who proposed the exchange
        - responder_id: User the exchange was proposed to
"""
import asyncio
import logging
from typing import Optional

import duckdb

from exchange_chat.errors import InvalidArgument, NotFound, TransientStoreFailure

from .base import ExchangeDirectory, Participants

logger = logging.getLogger(__name__)


class DuckDBExchangeDirectory(ExchangeDirectory):
    """Exchange lookups against a DuckDB database file."""

    def __init__(self, db_path: str = "exchange_chat.duckdb") -> None:
        self._db_path = db_path
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialize_db()

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        conn = self._get_connection()
        conn.execute("""
            CREATE TABLE IF NOT EXISTS exchanges (
                id VARCHAR PRIMARY KEY,
                requester_id VARCHAR NOT NULL,
                responder_id VARCHAR NOT NULL
            )
        """)

    def upsert(self, exchange_id: str, requester_id: str, responder_id: str) -> Participants:
        """Insert or replace an exchange row (seeding and tests only)."""
        if requester_id == responder_id:
            raise InvalidArgument("An exchange needs two distinct participants")
        conn = self._get_connection()
        conn.execute("DELETE FROM exchanges WHERE id = ?", [exchange_id])
        conn.execute(
            "INSERT INTO exchanges (id, requester_id, responder_id) VALUES (?, ?, ?)",
            [exchange_id, requester_id, responder_id],
        )
        return Participants(requester_id=requester_id, responder_id=responder_id)

    def _fetch(self, exchange_id: str):
        cursor = self._get_connection().cursor()
        try:
            return cursor.execute(
                "SELECT requester_id, responder_id FROM exchanges WHERE id = ?",
                [exchange_id],
            ).fetchone()
        finally:
            cursor.close()

    async def _lookup(self, exchange_id: str):
        try:
            return await asyncio.to_thread(self._fetch, exchange_id)
        except duckdb.Error as e:
            logger.error("Exchange lookup failed for %s: %s", exchange_id, e)
            raise TransientStoreFailure("Exchange lookup unavailable")

    async def get_participants(self, exchange_id: str) -> Participants:
        row = await self._lookup(exchange_id)
        if row is None:
            raise NotFound(f"Exchange {exchange_id} not found")
        return Participants(requester_id=row[0], responder_id=row[1])

    async def exchange_exists(self, exchange_id: str) -> bool:
        return await self._lookup(exchange_id) is not None

    def close(self) -> None:
        if self._connection is not None:
            self._connection.close()
            self._connection = None
