"""Client side of exchange chat: connection session and optimistic timeline."""
from .session import ChatClientSession
from .timeline import Confirmed, OptimisticEntry, Timeline, TimelineEntry, merge_timeline

__all__ = [
    "ChatClientSession",
    "Confirmed",
    "OptimisticEntry",
    "Timeline",
    "TimelineEntry",
    "merge_timeline",
]
