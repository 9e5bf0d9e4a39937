"""Tests for the queue, match and token endpoints."""
from __future__ import annotations

import pytest
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

from app.db.session import get_match_service
from app.db.store import InMemoryStore, RetryPolicy, TransientStoreError
from app.main import app
from app.repositories import queue as queue_repo
from app.services import rtc
from app.services.matching import MatchService


class UnavailableStore(InMemoryStore):
    async def write(self, collection, key, value):
        raise TransientStoreError("store down")


@pytest.fixture
def service():
    service = MatchService(InMemoryStore(retry=RetryPolicy(base_delay=0, max_delay=0)))
    app.dependency_overrides[get_match_service] = lambda: service
    yield service
    app.dependency_overrides.clear()


@pytest.mark.asyncio
async def test_enqueue_match_lookup_and_release(service):
    transport = ASGITransport(app=app)

    async with AsyncClient(transport=transport, base_url="http://testserver") as client:
        first = await client.post("/api/queue", json={"participant_id": "u1"})
        second = await client.post("/api/queue", json={"participant_id": "u2", "recent_peers": ["u9"]})
        lookup = await client.get("/api/matches/u1")
        released = await client.delete("/api/matches/u1", params={"recent_peers": ["u5", "u2"]})
        released_again = await client.delete("/api/matches/u2")
        missing = await client.get("/api/matches/u1")

    assert first.status_code == 200
    assert first.json() == {"participant_id": "u1", "matched": False, "match": None}

    body = second.json()
    assert body["matched"] is True
    assert body["match"]["participant_a"] == "u2"
    assert body["match"]["participant_b"] == "u1"
    assert body["match"]["channel_id"] == f"channel_{body['match']['match_id']}"

    assert lookup.json() == body["match"]
    assert released.json() == {"released": True, "peer_id": "u2", "recent_peers": ["u2", "u5"]}
    assert released_again.json() == {"released": False, "peer_id": None, "recent_peers": []}
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_dequeue_endpoint(service):
    transport = ASGITransport(app=app)

    async with AsyncClient(transport=transport, base_url="http://testserver") as client:
        await client.post("/api/queue", json={"participant_id": "u1"})
        removed = await client.delete("/api/queue/u1")
        removed_again = await client.delete("/api/queue/u1")

    assert removed.json() == {"removed": True}
    assert removed_again.json() == {"removed": False}


@pytest.mark.asyncio
async def test_enqueue_validation_and_store_outage():
    app.dependency_overrides[get_match_service] = lambda: MatchService(UnavailableStore())
    transport = ASGITransport(app=app)
    try:
        async with AsyncClient(transport=transport, base_url="http://testserver") as client:
            invalid = await client.post("/api/queue", json={"participant_id": ""})
            outage = await client.post("/api/queue", json={"participant_id": "u1"})
    finally:
        app.dependency_overrides.clear()

    assert invalid.status_code == 422
    assert outage.status_code == 503


@pytest.mark.asyncio
async def test_token_endpoint(monkeypatch):
    monkeypatch.setattr(rtc.config.settings, "agora_app_id", "0123456789abcdef0123456789abcdef")
    monkeypatch.setattr(rtc.config.settings, "agora_app_certificate", "secret-certificate")
    monkeypatch.setattr(rtc.config.settings, "require_signed_tokens", False)
    transport = ASGITransport(app=app)

    async with AsyncClient(transport=transport, base_url="http://testserver") as client:
        response = await client.post("/api/rtc/token", json={"channel_id": "channel_abc", "uid": 0})
        invalid = await client.post("/api/rtc/token", json={"channel_id": "channel_abc", "uid": -1})

    body = response.json()
    assert response.status_code == 200
    assert body["signed"] is True
    assert body["expires_in"] == 3600
    assert rtc.verify_token(body["token"], "secret-certificate", "channel_abc", 0)
    assert invalid.status_code == 422


@pytest.mark.asyncio
async def test_token_endpoint_reports_misconfiguration(monkeypatch):
    monkeypatch.setattr(rtc.config.settings, "agora_app_certificate", "")
    monkeypatch.setattr(rtc.config.settings, "require_signed_tokens", True)
    transport = ASGITransport(app=app)

    async with AsyncClient(transport=transport, base_url="http://testserver") as client:
        response = await client.post("/api/rtc/token", json={"channel_id": "channel_abc"})

    assert response.status_code == 500
    assert response.json() == {"detail": "Token issuance is not configured"}


def test_match_socket_delivers_match(service):
    with TestClient(app) as client:
        with client.websocket_connect("/api/matches/u1/ws") as ws:
            assert ws.receive_json() == {"type": "subscribed", "participant_id": "u1"}

            client.post("/api/queue", json={"participant_id": "u1"})
            paired = client.post("/api/queue", json={"participant_id": "u2"}).json()

            message = ws.receive_json()
            assert message["type"] == "matched"
            assert message["match"] == paired["match"]


def test_match_socket_cancel_leaves_queue(service):
    with TestClient(app) as client:
        client.post("/api/queue", json={"participant_id": "u1"})

        with client.websocket_connect("/api/matches/u1/ws") as ws:
            assert ws.receive_json()["type"] == "subscribed"
            ws.send_json({"type": "cancel"})
            ws.receive()

        removed = client.delete("/api/queue/u1").json()

    assert removed == {"removed": False}


def test_match_socket_disconnect_leaves_queue(service):
    with TestClient(app) as client:
        client.post("/api/queue", json={"participant_id": "u1"})

        with client.websocket_connect("/api/matches/u1/ws") as ws:
            assert ws.receive_json()["type"] == "subscribed"

        removed = client.delete("/api/queue/u1").json()

    assert removed == {"removed": False}
