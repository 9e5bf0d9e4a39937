"""Schemas for the waiting queue and match records."""
from __future__ import annotations

from pydantic import BaseModel, Field

from ..models.match import MatchRecord


class EnqueueRequest(BaseModel):
    participant_id: str = Field(..., min_length=1)
    recent_peers: list[str] = Field(
        default_factory=list,
        description="Participants met most recently, newest first; only the first three are kept",
    )


class MatchView(BaseModel):
    match_id: str
    participant_a: str
    participant_b: str
    channel_id: str
    created_at: int

    @classmethod
    def from_record(cls, record: MatchRecord) -> "MatchView":
        return cls(
            match_id=record.id,
            participant_a=record.participant_a,
            participant_b=record.participant_b,
            channel_id=record.channel_id,
            created_at=record.created_at,
        )


class EnqueueResponse(BaseModel):
    participant_id: str
    matched: bool
    match: MatchView | None = None


class DequeueResponse(BaseModel):
    removed: bool


class ReleaseResponse(BaseModel):
    released: bool
    peer_id: str | None = None
    recent_peers: list[str] = Field(
        default_factory=list,
        description="Recent-peer list to send with the next enqueue, newest first",
    )
