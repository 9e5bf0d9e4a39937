"""Transactional key-value store contract and the in-process adapter.

Collections are flat mappings of record key to a JSON-compatible dict. All
queue mutation goes through :meth:`TransactionalStore.transact`, an optimistic
read-compute-write cycle that only commits when the collection was not written
since the snapshot was read. Deletions count as writes.
"""
from __future__ import annotations

import asyncio
import logging
import random
from copy import deepcopy
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, Optional, Protocol

logger = logging.getLogger(__name__)

Record = Dict[str, Any]
Snapshot = Dict[str, Record]
Mutator = Callable[[Snapshot], Optional[Snapshot]]


class TransientStoreError(RuntimeError):
    """Raised when the store cannot be read, written or a transaction keeps conflicting."""


@dataclass(slots=True)
class TransactionResult:
    committed: bool
    snapshot: Snapshot


class Subscription(Protocol):
    def __aiter__(self) -> AsyncIterator[Snapshot]: ...

    async def close(self) -> None: ...


class TransactionalStore(Protocol):
    async def read(self, collection: str) -> Snapshot: ...

    async def transact(self, collection: str, fn: Mutator) -> TransactionResult: ...

    async def write(self, collection: str, key: str, value: Record) -> None: ...

    async def delete(self, collection: str, key: str) -> bool: ...

    async def subscribe(self, collection: str) -> Subscription: ...

    async def close(self) -> None: ...


@dataclass(slots=True)
class RetryPolicy:
    """Bounded exponential backoff for conflicting transactions."""

    max_attempts: int = 8
    base_delay: float = 0.01
    max_delay: float = 0.2

    def delay(self, attempt: int) -> float:
        """Return the jittered sleep before retry number ``attempt`` (zero based)."""

        ceiling = min(self.max_delay, self.base_delay * (2**attempt))
        return random.uniform(ceiling / 2, ceiling) if ceiling > 0 else 0.0


class _MemorySubscription:
    """Queue-backed stream of full collection snapshots."""

    def __init__(self, store: "InMemoryStore", collection: str) -> None:
        self._store = store
        self._collection = collection
        self._queue: asyncio.Queue[Snapshot | None] = asyncio.Queue()
        self._closed = False

    def push(self, snapshot: Snapshot) -> None:
        if not self._closed:
            self._queue.put_nowait(snapshot)

    def __aiter__(self) -> AsyncIterator[Snapshot]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Snapshot]:
        while True:
            snapshot = await self._queue.get()
            if snapshot is None:
                return
            yield snapshot

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._store._subscribers.get(self._collection, set()).discard(self)
        self._queue.put_nowait(None)


class InMemoryStore:
    """Single-process store with per-collection version counters."""

    def __init__(self, retry: RetryPolicy | None = None) -> None:
        self._retry = retry or RetryPolicy()
        self._collections: Dict[str, Snapshot] = {}
        self._versions: Dict[str, int] = {}
        self._subscribers: Dict[str, set[_MemorySubscription]] = {}
        self._lock = asyncio.Lock()

    async def read(self, collection: str) -> Snapshot:
        async with self._lock:
            return deepcopy(self._collections.get(collection, {}))

    async def transact(self, collection: str, fn: Mutator) -> TransactionResult:
        for attempt in range(self._retry.max_attempts):
            async with self._lock:
                version = self._versions.get(collection, 0)
                snapshot = deepcopy(self._collections.get(collection, {}))

            updated = fn(deepcopy(snapshot))
            # Other writers may run between the read and the commit.
            await asyncio.sleep(0)

            async with self._lock:
                if self._versions.get(collection, 0) != version:
                    logger.debug("Transaction on %s conflicted (attempt %s)", collection, attempt + 1)
                else:
                    if updated is None:
                        return TransactionResult(committed=False, snapshot=snapshot)
                    self._replace(collection, deepcopy(updated))
                    return TransactionResult(committed=True, snapshot=deepcopy(updated))

            await asyncio.sleep(self._retry.delay(attempt))

        raise TransientStoreError(
            f"Transaction on {collection} did not commit after {self._retry.max_attempts} attempts"
        )

    async def write(self, collection: str, key: str, value: Record) -> None:
        async with self._lock:
            records = dict(self._collections.get(collection, {}))
            records[key] = deepcopy(value)
            self._replace(collection, records)

    async def delete(self, collection: str, key: str) -> bool:
        async with self._lock:
            records = self._collections.get(collection, {})
            if key not in records:
                return False
            remaining = {name: value for name, value in records.items() if name != key}
            self._replace(collection, remaining)
            return True

    async def subscribe(self, collection: str) -> _MemorySubscription:
        async with self._lock:
            subscription = _MemorySubscription(self, collection)
            self._subscribers.setdefault(collection, set()).add(subscription)
            subscription.push(deepcopy(self._collections.get(collection, {})))
            return subscription

    async def close(self) -> None:
        for subscribers in list(self._subscribers.values()):
            for subscription in list(subscribers):
                await subscription.close()

    def _replace(self, collection: str, records: Snapshot) -> None:
        """Install a new collection state; caller holds the lock."""

        self._collections[collection] = records
        self._versions[collection] = self._versions.get(collection, 0) + 1
        for subscription in self._subscribers.get(collection, set()):
            subscription.push(deepcopy(records))
