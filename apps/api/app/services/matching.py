"""Queue membership, match publication and match notification."""
from __future__ import annotations

import asyncio
import logging
import time
from contextlib import suppress
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable
from uuid import uuid4

from ..db.store import Snapshot, Subscription, TransactionalStore, TransientStoreError
from ..models.match import DEFAULT_CHANNEL_PREFIX, MatchRecord, channel_id_for
from ..models.queue_entry import QueueEntry, normalize_recent_peers, remember_peer
from ..repositories import matches as matches_repo
from ..repositories import queue as queue_repo
from .matchmaking import Pairing, attempt_match

logger = logging.getLogger(__name__)

MatchCallback = Callable[[MatchRecord], Awaitable[None]]
Unsubscribe = Callable[[], Awaitable[None]]


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(slots=True)
class MatchRelease:
    """Outcome of ending a call: the peer met and the updated recent-peer list."""

    released: bool
    peer_id: str | None
    recent_peers: tuple[str, ...]


class MatchPublishFailure(RuntimeError):
    """Both participants left the queue but their match record was never written."""

    def __init__(self, pairing: Pairing) -> None:
        super().__init__(
            f"Match between {pairing.triggering_id} and {pairing.candidate_id} could not be published"
        )
        self.pairing = pairing


class MatchPublisher:
    """Write the match record for a committed pairing."""

    def __init__(
        self,
        store: TransactionalStore,
        *,
        channel_prefix: str = DEFAULT_CHANNEL_PREFIX,
        id_factory: Callable[[], str] = lambda: uuid4().hex,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self._store = store
        self._channel_prefix = channel_prefix
        self._id_factory = id_factory
        self._clock = clock

    async def publish(self, pairing: Pairing) -> MatchRecord:
        match_id = self._id_factory()
        record = MatchRecord(
            id=match_id,
            participant_a=pairing.triggering_id,
            participant_b=pairing.candidate_id,
            channel_id=channel_id_for(match_id, self._channel_prefix),
            created_at=self._clock(),
        )
        try:
            await matches_repo.save(self._store, record)
        except TransientStoreError as exc:
            # No repair path: both entries are already gone from the queue.
            logger.error(
                "Match publish failed for %s and %s: %s",
                pairing.triggering_id,
                pairing.candidate_id,
                exc,
            )
            raise MatchPublishFailure(pairing) from exc
        logger.info("Published match %s on %s", record.id, record.channel_id)
        return record


class MatchListener:
    """Watch the match collection and fire ``callback`` once for this participant."""

    def __init__(self, store: TransactionalStore, participant_id: str, callback: MatchCallback) -> None:
        self._store = store
        self._participant_id = participant_id
        self._callback = callback
        self._subscription: Subscription | None = None
        self._task: asyncio.Task[None] | None = None
        self._notified = False

    @property
    def notified(self) -> bool:
        return self._notified

    async def start(self) -> None:
        self._subscription = await self._store.subscribe(matches_repo.MATCHES_COLLECTION)
        self._task = asyncio.create_task(self._run(self._subscription))

    async def stop(self) -> None:
        if self._subscription is not None:
            await self._subscription.close()
        task = self._task
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task

    async def wait(self) -> None:
        """Block until the listener has finished."""

        if self._task is not None:
            await self._task

    async def _run(self, subscription: Subscription) -> None:
        try:
            async for snapshot in subscription:
                record = matches_repo.find_for(snapshot, self._participant_id)
                if record is None or self._notified:
                    continue
                self._notified = True
                await self._notify(record)
                break
        except TransientStoreError as exc:
            logger.warning("Match subscription for %s ended: %s", self._participant_id, exc)
        finally:
            await subscription.close()

    async def _notify(self, record: MatchRecord) -> None:
        try:
            await self._callback(record)
        except Exception:  # noqa: BLE001 - a broken callback must not leak out of the listener task
            logger.exception("Match callback for %s failed", self._participant_id)


class MatchService:
    """Collaborator-facing operations on the queue and match collections."""

    def __init__(
        self,
        store: TransactionalStore,
        *,
        publisher: MatchPublisher | None = None,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self._store = store
        self._publisher = publisher or MatchPublisher(store)
        self._clock = clock

    @property
    def store(self) -> TransactionalStore:
        return self._store

    async def enqueue(self, participant_id: str, recent_peers: Iterable[str] = ()) -> MatchRecord | None:
        """Join the queue and immediately try to pair.

        Returns the published match when this attempt paired the participant;
        otherwise the participant stays queued until another join pairs them.
        """

        entry = QueueEntry(
            id=participant_id,
            joined_at=self._clock(),
            recent_peers=normalize_recent_peers(recent_peers),
        )
        await queue_repo.add_entry(self._store, entry)
        logger.info("Participant %s joined the queue", participant_id)
        return await self.attempt(participant_id)

    async def attempt(self, participant_id: str) -> MatchRecord | None:
        """Run one matchmaking transaction triggered by ``participant_id``."""

        outcome: dict[str, Pairing | None] = {"pairing": None}

        def resolve(snapshot: Snapshot) -> Snapshot | None:
            entries = queue_repo.entries_from_snapshot(snapshot)
            remaining, pairing = attempt_match(entries, participant_id)
            outcome["pairing"] = pairing
            if pairing is None:
                return None
            consumed = entries.keys() - remaining.keys()
            return {key: record for key, record in snapshot.items() if key not in consumed}

        result = await self._store.transact(queue_repo.QUEUE_COLLECTION, resolve)
        pairing = outcome["pairing"]
        if not result.committed or pairing is None:
            logger.debug("No eligible partner for %s yet", participant_id)
            return None
        return await self._publisher.publish(pairing)

    async def dequeue(self, participant_id: str) -> bool:
        removed = await queue_repo.remove_entry(self._store, participant_id)
        if removed:
            logger.info("Participant %s left the queue", participant_id)
        return removed

    async def subscribe_to_match(self, participant_id: str, callback: MatchCallback) -> Unsubscribe:
        """Start listening for a match naming ``participant_id``.

        The callback runs at most once. The returned coroutine function tears
        the subscription down and is safe to call after the match arrived.
        """

        listener = MatchListener(self._store, participant_id, callback)
        await listener.start()
        return listener.stop

    async def current_match(self, participant_id: str) -> MatchRecord | None:
        return await matches_repo.get_for(self._store, participant_id)

    async def release_match(self, participant_id: str, recent_peers: Iterable[str] = ()) -> MatchRelease:
        """Delete the participant's match record; a second call is a no-op.

        ``recent_peers`` is the caller's list before the call. When a match is
        found its peer is moved to the front so the next enqueue skips them.
        """

        recent = normalize_recent_peers(recent_peers)
        record = await matches_repo.get_for(self._store, participant_id)
        if record is None:
            return MatchRelease(released=False, peer_id=None, recent_peers=recent)

        peer_id = record.peer_of(participant_id)
        removed = await matches_repo.delete(self._store, record.id)
        if removed:
            logger.info("Released match %s for %s", record.id, participant_id)
        return MatchRelease(released=removed, peer_id=peer_id, recent_peers=remember_peer(recent, peer_id))
