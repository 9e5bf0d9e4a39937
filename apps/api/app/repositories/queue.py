"""Queue collection helpers."""
from __future__ import annotations

import logging
from typing import Mapping

from ..db.store import Snapshot, TransactionalStore
from ..models.queue_entry import QueueEntry

QUEUE_COLLECTION = "queue"

logger = logging.getLogger(__name__)


def entries_from_snapshot(snapshot: Mapping[str, Mapping]) -> dict[str, QueueEntry]:
    """Decode raw queue records keyed by participant id, skipping malformed ones."""

    entries: dict[str, QueueEntry] = {}
    for key, record in snapshot.items():
        try:
            entry = QueueEntry.from_record(record)
        except (KeyError, TypeError, ValueError):
            logger.warning("Ignoring malformed queue record %s", key)
            continue
        entries[entry.id] = entry
    return entries


async def add_entry(store: TransactionalStore, entry: QueueEntry) -> None:
    """Insert or replace the participant's queue entry."""

    await store.write(QUEUE_COLLECTION, entry.id, entry.to_record())


async def remove_entry(store: TransactionalStore, participant_id: str) -> bool:
    """Delete the participant's entry; returns False when it was already gone."""

    return await store.delete(QUEUE_COLLECTION, participant_id)


async def get_entries(store: TransactionalStore) -> dict[str, QueueEntry]:
    snapshot: Snapshot = await store.read(QUEUE_COLLECTION)
    return entries_from_snapshot(snapshot)
