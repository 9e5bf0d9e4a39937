"""Match collection helpers."""
from __future__ import annotations

import logging
from typing import Mapping

from ..db.store import TransactionalStore
from ..models.match import MatchRecord

MATCHES_COLLECTION = "matches"

logger = logging.getLogger(__name__)


def records_from_snapshot(snapshot: Mapping[str, Mapping]) -> list[MatchRecord]:
    """Decode match records, oldest first."""

    records: list[MatchRecord] = []
    for key, raw in snapshot.items():
        try:
            records.append(MatchRecord.from_record(raw))
        except (KeyError, TypeError, ValueError):
            logger.warning("Ignoring malformed match record %s", key)
    return sorted(records, key=lambda record: (record.created_at, record.id))


def find_for(snapshot: Mapping[str, Mapping], participant_id: str) -> MatchRecord | None:
    """Return the first match naming ``participant_id``."""

    for record in records_from_snapshot(snapshot):
        if record.involves(participant_id):
            return record
    return None


async def save(store: TransactionalStore, record: MatchRecord) -> None:
    await store.write(MATCHES_COLLECTION, record.id, record.to_record())


async def delete(store: TransactionalStore, match_id: str) -> bool:
    return await store.delete(MATCHES_COLLECTION, match_id)


async def get_for(store: TransactionalStore, participant_id: str) -> MatchRecord | None:
    """Look up the participant's current match."""

    return find_for(await store.read(MATCHES_COLLECTION), participant_id)
