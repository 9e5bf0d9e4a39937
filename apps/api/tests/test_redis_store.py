"""Tests for the Redis store adapter against an in-memory Redis stand-in."""
from __future__ import annotations

import json

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import WatchError

from app.db.redis_store import RedisStore, changes_channel, collection_key
from app.db.store import RetryPolicy, TransientStoreError


class DummyPipeline:
    def __init__(self, client: "DummyRedis") -> None:
        self.client = client
        self.ops: list[tuple] = []

    async def __aenter__(self) -> "DummyPipeline":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        return False

    async def watch(self, key: str) -> None:
        self.client.watched.append(key)

    async def hgetall(self, key: str) -> dict[str, str]:
        return dict(self.client.hashes.get(key, {}))

    def multi(self) -> None:
        self.ops.clear()

    def hdel(self, key: str, *fields: str) -> "DummyPipeline":
        self.ops.append(("hdel", key, fields))
        return self

    def hset(self, key: str, field: str | None = None, value: str | None = None, mapping=None) -> "DummyPipeline":
        self.ops.append(("hset", key, mapping or {field: value}))
        return self

    def publish(self, channel: str, message: str) -> "DummyPipeline":
        self.ops.append(("publish", channel, message))
        return self

    async def execute(self) -> list:
        if self.client.conflicts:
            self.client.conflicts -= 1
            raise WatchError("Watched variable changed.")
        for op, key, payload in self.ops:
            if op == "hdel":
                for field in payload:
                    self.client.hashes.get(key, {}).pop(field, None)
            elif op == "hset":
                self.client.hashes.setdefault(key, {}).update(payload)
            else:
                self.client.published.append((key, payload))
        return [True] * len(self.ops)


class DummyRedis:
    def __init__(self) -> None:
        self.hashes: dict[str, dict[str, str]] = {}
        self.published: list[tuple[str, str]] = []
        self.watched: list[str] = []
        self.conflicts = 0
        self.down = False

    def pipeline(self, transaction: bool = True) -> DummyPipeline:
        return DummyPipeline(self)

    async def hgetall(self, key: str) -> dict[str, str]:
        if self.down:
            raise RedisConnectionError("Connection refused")
        return dict(self.hashes.get(key, {}))

    async def hdel(self, key: str, *fields: str) -> int:
        bucket = self.hashes.get(key, {})
        return sum(1 for field in fields if bucket.pop(field, None) is not None)

    async def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, message))
        return 1


def _store(client: DummyRedis, max_attempts: int = 4) -> RedisStore:
    return RedisStore(client, retry=RetryPolicy(max_attempts=max_attempts, base_delay=0, max_delay=0))


def _seed(client: DummyRedis, collection: str, records: dict[str, dict]) -> None:
    client.hashes[collection_key(collection)] = {key: json.dumps(value) for key, value in records.items()}


@pytest.mark.asyncio
async def test_transact_removes_consumed_records_and_announces_change():
    client = DummyRedis()
    _seed(client, "queue", {"u1": {"id": "u1"}, "u2": {"id": "u2"}, "u3": {"id": "u3"}})
    store = _store(client)

    result = await store.transact("queue", lambda snapshot: {"u3": snapshot["u3"]})

    assert result.committed
    assert await store.read("queue") == {"u3": {"id": "u3"}}
    assert client.watched == [collection_key("queue")]
    assert client.published == [(changes_channel("queue"), "transact")]


@pytest.mark.asyncio
async def test_transact_replays_after_watch_error():
    client = DummyRedis()
    _seed(client, "queue", {"u1": {"id": "u1"}})
    client.conflicts = 1
    store = _store(client)
    calls = 0

    def add_u2(snapshot):
        nonlocal calls
        calls += 1
        return {**snapshot, "u2": {"id": "u2"}}

    result = await store.transact("queue", add_u2)

    assert result.committed
    assert calls == 2
    assert set(await store.read("queue")) == {"u1", "u2"}


@pytest.mark.asyncio
async def test_transact_raises_after_attempt_ceiling():
    client = DummyRedis()
    client.conflicts = 10
    store = _store(client, max_attempts=3)

    with pytest.raises(TransientStoreError):
        await store.transact("queue", lambda snapshot: snapshot)

    assert client.conflicts == 7


@pytest.mark.asyncio
async def test_aborted_transaction_writes_nothing():
    client = DummyRedis()
    _seed(client, "queue", {"u1": {"id": "u1"}})
    store = _store(client)

    result = await store.transact("queue", lambda snapshot: None)

    assert not result.committed
    assert result.snapshot == {"u1": {"id": "u1"}}
    assert client.published == []


@pytest.mark.asyncio
async def test_write_and_delete_publish_changes():
    client = DummyRedis()
    store = _store(client)

    await store.write("matches", "m1", {"id": "m1"})
    assert await store.read("matches") == {"m1": {"id": "m1"}}

    assert await store.delete("matches", "m1") is True
    assert await store.delete("matches", "m1") is False
    assert [message for _, message in client.published] == ["write", "delete"]


@pytest.mark.asyncio
async def test_connection_failures_surface_as_transient_errors():
    client = DummyRedis()
    client.down = True
    store = _store(client)

    with pytest.raises(TransientStoreError):
        await store.read("queue")


@pytest.mark.asyncio
async def test_undecodable_records_are_skipped():
    client = DummyRedis()
    client.hashes[collection_key("queue")] = {"u1": json.dumps({"id": "u1"}), "bad": "{not json"}
    store = _store(client)

    assert await store.read("queue") == {"u1": {"id": "u1"}}
