"""Redis-backed transactional store.

Each collection is a hash whose fields are record keys and whose values are
JSON documents. Transactions use WATCH/MULTI/EXEC; every committed change is
announced on a pub/sub channel so subscribers can re-read the collection.
"""
from __future__ import annotations

import asyncio
import json
import logging
from copy import deepcopy
from typing import AsyncIterator

import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError

from .store import Mutator, Record, RetryPolicy, Snapshot, TransactionResult, TransientStoreError

logger = logging.getLogger(__name__)

REDIS_COLLECTION_KEY = "matchcall:{collection}"  # hash: record key -> JSON record
REDIS_CHANGES_CHANNEL = "matchcall:{collection}:changed"  # pub/sub: one message per committed change


def collection_key(collection: str) -> str:
    return REDIS_COLLECTION_KEY.format(collection=collection)


def changes_channel(collection: str) -> str:
    return REDIS_CHANGES_CHANNEL.format(collection=collection)


def _decode(raw: dict[str, str]) -> Snapshot:
    snapshot: Snapshot = {}
    for key, value in raw.items():
        try:
            snapshot[key] = json.loads(value)
        except (json.JSONDecodeError, TypeError):
            logger.warning("Skipping undecodable record %s", key)
    return snapshot


class RedisSubscription:
    """Yield the full collection each time a change is announced."""

    def __init__(self, store: "RedisStore", collection: str, pubsub: redis.client.PubSub) -> None:
        self._store = store
        self._collection = collection
        self._pubsub = pubsub
        self._closed = False

    def __aiter__(self) -> AsyncIterator[Snapshot]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Snapshot]:
        yield await self._store.read(self._collection)
        while not self._closed:
            try:
                message = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            except RedisError as exc:
                if self._closed:
                    return
                raise TransientStoreError(f"Subscription to {self._collection} failed: {exc}") from exc
            if message is None:
                continue
            yield await self._store.read(self._collection)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._pubsub.unsubscribe(changes_channel(self._collection))
            await self._pubsub.aclose()
        except RedisError as exc:
            logger.warning("Error closing subscription to %s: %s", self._collection, exc)


class RedisStore:
    """Store adapter over a Redis server."""

    def __init__(self, client: redis.Redis, retry: RetryPolicy | None = None) -> None:
        self._client = client
        self._retry = retry or RetryPolicy()

    @classmethod
    def from_url(cls, url: str, retry: RetryPolicy | None = None) -> "RedisStore":
        logger.info("Using Redis store at %s", url)
        return cls(redis.from_url(url, decode_responses=True), retry=retry)

    async def read(self, collection: str) -> Snapshot:
        try:
            raw = await self._client.hgetall(collection_key(collection))
        except RedisError as exc:
            raise TransientStoreError(f"Reading {collection} failed: {exc}") from exc
        return _decode(raw)

    async def transact(self, collection: str, fn: Mutator) -> TransactionResult:
        key = collection_key(collection)
        for attempt in range(self._retry.max_attempts):
            try:
                async with self._client.pipeline(transaction=True) as pipe:
                    await pipe.watch(key)
                    snapshot = _decode(await pipe.hgetall(key))
                    updated = fn(deepcopy(snapshot))

                    pipe.multi()
                    if updated is not None:
                        removed = [name for name in snapshot if name not in updated]
                        changed = {
                            name: json.dumps(value)
                            for name, value in updated.items()
                            if snapshot.get(name) != value
                        }
                        if removed:
                            pipe.hdel(key, *removed)
                        if changed:
                            pipe.hset(key, mapping=changed)
                        if removed or changed:
                            pipe.publish(changes_channel(collection), "transact")
                    # An empty EXEC still fails if the key was written after WATCH.
                    await pipe.execute()
            except WatchError:
                logger.debug("Transaction on %s conflicted (attempt %s)", collection, attempt + 1)
                await asyncio.sleep(self._retry.delay(attempt))
                continue
            except RedisError as exc:
                raise TransientStoreError(f"Transaction on {collection} failed: {exc}") from exc

            if updated is None:
                return TransactionResult(committed=False, snapshot=snapshot)
            return TransactionResult(committed=True, snapshot=updated)

        raise TransientStoreError(
            f"Transaction on {collection} did not commit after {self._retry.max_attempts} attempts"
        )

    async def write(self, collection: str, key: str, value: Record) -> None:
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.hset(collection_key(collection), key, json.dumps(value))
                pipe.publish(changes_channel(collection), "write")
                await pipe.execute()
        except RedisError as exc:
            raise TransientStoreError(f"Writing {collection}/{key} failed: {exc}") from exc

    async def delete(self, collection: str, key: str) -> bool:
        try:
            removed = await self._client.hdel(collection_key(collection), key)
            if removed:
                await self._client.publish(changes_channel(collection), "delete")
        except RedisError as exc:
            raise TransientStoreError(f"Deleting {collection}/{key} failed: {exc}") from exc
        return bool(removed)

    async def subscribe(self, collection: str) -> RedisSubscription:
        pubsub = self._client.pubsub()
        try:
            # Subscribe before the first read so no change falls in between.
            await pubsub.subscribe(changes_channel(collection))
        except RedisError as exc:
            raise TransientStoreError(f"Subscribing to {collection} failed: {exc}") from exc
        return RedisSubscription(self, collection, pubsub)

    async def close(self) -> None:
        await self._client.aclose()
