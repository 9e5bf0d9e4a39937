"""Pairing rule for the waiting queue.

``attempt_match`` is the body of the queue transaction. It is re-run from
scratch on every conflict retry, so it must stay free of I/O and must not
mutate its input.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping

from ..models.queue_entry import QueueEntry


@dataclass(frozen=True, slots=True)
class Pairing:
    triggering_id: str
    candidate_id: str

    @property
    def participants(self) -> tuple[str, str]:
        return (self.triggering_id, self.candidate_id)


def is_excluded(first: QueueEntry, second: QueueEntry) -> bool:
    """True when either participant remembers the other as a recent peer."""

    return first.remembers(second.id) or second.remembers(first.id)


def order_entries(entries: Iterable[QueueEntry]) -> list[QueueEntry]:
    """Oldest first; participant id breaks ties on ``joined_at``."""

    return sorted(entries, key=lambda entry: (entry.joined_at, entry.id))


def find_candidate(queue: Mapping[str, QueueEntry], trigger: QueueEntry) -> QueueEntry | None:
    for entry in order_entries(queue.values()):
        if entry.id == trigger.id:
            continue
        if is_excluded(trigger, entry):
            continue
        return entry
    return None


def attempt_match(
    queue: Mapping[str, QueueEntry],
    triggering_id: str,
) -> tuple[dict[str, QueueEntry], Pairing | None]:
    """Try to pair ``triggering_id`` with the oldest eligible waiting participant.

    Returns the queue after the attempt and the pairing, if any. On success
    exactly the triggering entry and its candidate are removed; otherwise the
    queue is returned unchanged.
    """

    remaining = dict(queue)
    trigger = remaining.get(triggering_id)
    if trigger is None:
        return remaining, None

    candidate = find_candidate(remaining, trigger)
    if candidate is None:
        return remaining, None

    del remaining[trigger.id]
    del remaining[candidate.id]
    return remaining, Pairing(triggering_id=trigger.id, candidate_id=candidate.id)
