"""Expose domain models."""
from .match import MatchRecord, channel_id_for
from .queue_entry import RECENT_PEERS_LIMIT, QueueEntry, remember_peer

__all__ = [
    "MatchRecord",
    "QueueEntry",
    "RECENT_PEERS_LIMIT",
    "channel_id_for",
    "remember_peer",
]
