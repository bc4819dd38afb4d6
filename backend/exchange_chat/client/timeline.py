"""Optimistic timeline reconciliation for one exchange chat.

A rendered chat merges three sources: history replayed on (re)join, live
confirmed messages, and the local user's optimistic entries that the server
has not confirmed yet. Entries are a tagged variant (:class:`Confirmed` or
:class:`OptimisticEntry`) and the render order is produced by the pure
:func:`merge_timeline`.

Matching a confirmation to its placeholder:
    1. By ``clientId`` when the server echoes one.
    2. Otherwise, for messages without a ``clientId``, by sender + equal
       content and images, oldest placeholder first.
    A confirmation carrying someone else's ``clientId`` (for example the same
    user's other device) never resolves a local placeholder.

A placeholder is always removed before its confirmed message is inserted, so
the same message is never shown twice.
"""
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Union

from exchange_chat.chat.schemas import ChatMessage, utcnow


def normalize_body(content: Optional[str], images: Optional[Iterable[str]]):
    """Apply the same body normalization the server applies on append."""
    return (content or "").strip(), [url for url in (images or []) if url]


@dataclass(frozen=True)
class Confirmed:
    """A server-confirmed message in the timeline."""
    message: ChatMessage
    optimistic: bool = field(default=False, init=False)

    @property
    def id(self) -> str:
        return self.message.id

    @property
    def created_at(self) -> datetime:
        return self.message.createdAt

    @property
    def content(self) -> str:
        return self.message.content


@dataclass
class OptimisticEntry:
    """A locally echoed message awaiting server confirmation.

    Attributes:
        id: Temporary client id, also sent to the server as ``clientId``.
        created_at: Client-local time; replaced by the server's on confirm.
        transmitted: True once the send frame was handed to the transport.
    """
    id: str
    exchange_id: str
    sender_id: str
    content: str
    images: List[str]
    created_at: datetime
    transmitted: bool = False
    optimistic: bool = field(default=True, init=False)

    def matches(self, message: ChatMessage) -> bool:
        return (
            message.senderId == self.sender_id
            and message.content == self.content
            and list(message.images) == self.images
        )


TimelineEntry = Union[Confirmed, OptimisticEntry]


def _sort_key(entry: TimelineEntry):
    # Confirmed before optimistic on equal timestamps, then by id
    return (entry.created_at, entry.optimistic, entry.id)


def merge_timeline(
    confirmed: Iterable[ChatMessage], optimistic: Iterable[OptimisticEntry]
) -> List[TimelineEntry]:
    """Merge confirmed messages and outstanding placeholders by createdAt."""
    entries: List[TimelineEntry] = [Confirmed(m) for m in confirmed]
    entries.extend(optimistic)
    return sorted(entries, key=_sort_key)


class Timeline:
    """Reconciled message list of one exchange as seen by one user."""

    def __init__(
        self,
        exchange_id: str,
        user_id: str,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.exchange_id = exchange_id
        self.user_id = user_id
        self._clock = clock
        # message id -> confirmed message
        self._confirmed: Dict[str, ChatMessage] = {}
        # temp id -> placeholder, in send order
        self._optimistic: "OrderedDict[str, OptimisticEntry]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._confirmed) + len(self._optimistic)

    def add_optimistic(self, content: str, images: Optional[List[str]] = None) -> OptimisticEntry:
        content, images = normalize_body(content, images)
        entry = OptimisticEntry(
            id=f"temp-{uuid.uuid4()}",
            exchange_id=self.exchange_id,
            sender_id=self.user_id,
            content=content,
            images=images,
            created_at=self._clock(),
        )
        self._optimistic[entry.id] = entry
        return entry

    def mark_transmitted(self, temp_id: str) -> None:
        entry = self._optimistic.get(temp_id)
        if entry is not None:
            entry.transmitted = True

    def _match(self, message: ChatMessage) -> Optional[OptimisticEntry]:
        if message.senderId != self.user_id:
            return None
        if message.clientId is not None:
            return self._optimistic.get(message.clientId)
        for entry in self._optimistic.values():
            if entry.matches(message):
                return entry
        return None

    def apply_confirmed(self, message: ChatMessage) -> Optional[OptimisticEntry]:
        """Insert a confirmed message, resolving its placeholder if any.

        Returns:
            The placeholder that was resolved, or None.
        """
        if message.exchangeId != self.exchange_id:
            return None
        resolved = self._match(message)
        if resolved is not None:
            del self._optimistic[resolved.id]
        self._confirmed.setdefault(message.id, message)
        return resolved

    def apply_history(self, messages: Iterable[ChatMessage]) -> List[OptimisticEntry]:
        resolved = []
        for message in messages:
            entry = self.apply_confirmed(message)
            if entry is not None:
                resolved.append(entry)
        return resolved

    def fail(self, temp_id: str) -> Optional[OptimisticEntry]:
        """Retract a placeholder whose send failed. No automatic retry."""
        return self._optimistic.pop(temp_id, None)

    def fail_untransmitted(self) -> List[OptimisticEntry]:
        """Retract placeholders that never reached the transport."""
        return self._retract(lambda entry: not entry.transmitted)

    def expire_transmitted(self) -> List[OptimisticEntry]:
        """Retract transmitted placeholders after a replay did not confirm them."""
        return self._retract(lambda entry: entry.transmitted)

    def _retract(self, predicate) -> List[OptimisticEntry]:
        retracted = [entry for entry in self._optimistic.values() if predicate(entry)]
        for entry in retracted:
            del self._optimistic[entry.id]
        return retracted

    def outstanding(self) -> List[OptimisticEntry]:
        return list(self._optimistic.values())

    def confirmed(self) -> List[ChatMessage]:
        return sorted(self._confirmed.values(), key=lambda m: (m.createdAt, m.id))

    def latest_confirmed_at(self) -> Optional[datetime]:
        if not self._confirmed:
            return None
        return max(m.createdAt for m in self._confirmed.values())

    def entries(self) -> List[TimelineEntry]:
        """Render-ready, ordered, duplicate-free entries."""
        return merge_timeline(self._confirmed.values(), self._optimistic.values())
