"""Match record model."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

DEFAULT_CHANNEL_PREFIX = "channel_"


def channel_id_for(match_id: str, prefix: str = DEFAULT_CHANNEL_PREFIX) -> str:
    """Derive the media channel name both participants join."""

    return f"{prefix}{match_id}"


@dataclass(frozen=True, slots=True)
class MatchRecord:
    """A resolved pairing of two participants."""

    id: str
    participant_a: str
    participant_b: str
    channel_id: str
    created_at: int

    def __post_init__(self) -> None:
        if self.participant_a == self.participant_b:
            raise ValueError(f"match {self.id} pairs {self.participant_a} with itself")

    @property
    def participants(self) -> tuple[str, str]:
        return (self.participant_a, self.participant_b)

    def involves(self, participant_id: str) -> bool:
        return participant_id in self.participants

    def peer_of(self, participant_id: str) -> str:
        """Return the other participant of the match."""

        if participant_id == self.participant_a:
            return self.participant_b
        if participant_id == self.participant_b:
            return self.participant_a
        raise KeyError(participant_id)

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "participant_a": self.participant_a,
            "participant_b": self.participant_b,
            "channel_id": self.channel_id,
            "created_at": self.created_at,
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "MatchRecord":
        return cls(
            id=str(record["id"]),
            participant_a=str(record["participant_a"]),
            participant_b=str(record["participant_b"]),
            channel_id=str(record["channel_id"]),
            created_at=int(record["created_at"]),
        )
