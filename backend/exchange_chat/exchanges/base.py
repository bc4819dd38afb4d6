"""Abstract ExchangeDirectory interface.

The exchange lifecycle (creation, status transitions, persistence) lives in
another service. The chat subsystem only needs to know whether an exchange
exists and who its two participants are, so every back-end implements this
read-only interface.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class Participants:
    """The two users of an exchange.

    Attributes:
        requester_id: User who proposed the exchange.
        responder_id: User the exchange was proposed to.
    """
    requester_id: str
    responder_id: str

    def contains(self, user_id: str) -> bool:
        return user_id in (self.requester_id, self.responder_id)


class ExchangeDirectory(ABC):
    """Read-only view of exchanges used for room authorization."""

    @abstractmethod
    async def get_participants(self, exchange_id: str) -> Participants:
        """Return the participants of ``exchange_id``.

        Raises:
            NotFound: If the exchange does not exist.
        """

    @abstractmethod
    async def exchange_exists(self, exchange_id: str) -> bool:
        """Return True if ``exchange_id`` is a known exchange."""
