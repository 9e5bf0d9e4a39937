"""Queue entry model."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

RECENT_PEERS_LIMIT = 3


def remember_peer(recent_peers: Iterable[str], peer_id: str, limit: int = RECENT_PEERS_LIMIT) -> tuple[str, ...]:
    """Return the recent-peer list after a call with ``peer_id`` ended.

    The newest peer goes first, an older occurrence of the same peer is dropped
    and the list is cut to ``limit`` entries.
    """

    updated = [peer_id, *(peer for peer in recent_peers if peer != peer_id)]
    return tuple(updated[:limit])


def normalize_recent_peers(recent_peers: Iterable[str], limit: int = RECENT_PEERS_LIMIT) -> tuple[str, ...]:
    """Drop duplicates and blanks while keeping newest-first order."""

    seen: list[str] = []
    for peer in recent_peers:
        if peer and peer not in seen:
            seen.append(peer)
    return tuple(seen[:limit])


@dataclass(frozen=True, slots=True)
class QueueEntry:
    """A participant waiting to be matched."""

    id: str
    joined_at: int
    recent_peers: tuple[str, ...] = field(default_factory=tuple)

    def remembers(self, participant_id: str) -> bool:
        return participant_id in self.recent_peers

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "joined_at": self.joined_at,
            "recent_peers": list(self.recent_peers),
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "QueueEntry":
        return cls(
            id=str(record["id"]),
            joined_at=int(record["joined_at"]),
            recent_peers=tuple(record.get("recent_peers") or ()),
        )
