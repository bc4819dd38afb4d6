"""Exchange collaborator: participant lookups used for room authorization."""

from .base import ExchangeDirectory, Participants
from .duckdb_directory import DuckDBExchangeDirectory
from .memory import InMemoryExchangeDirectory

__all__ = [
    "ExchangeDirectory",
    "Participants",
    "DuckDBExchangeDirectory",
    "InMemoryExchangeDirectory",
]
