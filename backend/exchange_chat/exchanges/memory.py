"""In-memory ExchangeDirectory for tests and local development."""
from typing import Dict

from exchange_chat.errors import InvalidArgument, NotFound

from .base import ExchangeDirectory, Participants


class InMemoryExchangeDirectory(ExchangeDirectory):
    """Dictionary-backed exchange directory."""

    def __init__(self) -> None:
        self._exchanges: Dict[str, Participants] = {}

    def add(self, exchange_id: str, requester_id: str, responder_id: str) -> Participants:
        """Register an exchange between two distinct users."""
        if requester_id == responder_id:
            raise InvalidArgument("An exchange needs two distinct participants")
        participants = Participants(requester_id=requester_id, responder_id=responder_id)
        self._exchanges[exchange_id] = participants
        return participants

    def remove(self, exchange_id: str) -> None:
        self._exchanges.pop(exchange_id, None)

    async def get_participants(self, exchange_id: str) -> Participants:
        try:
            return self._exchanges[exchange_id]
        except KeyError:
            raise NotFound(f"Exchange {exchange_id} not found")

    async def exchange_exists(self, exchange_id: str) -> bool:
        return exchange_id in self._exchanges
