"""Tests for the HTTP surface."""

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from app import app
from backend import InMemoryRoomStore
from room_manager import RoomManager


@pytest_asyncio.fixture
async def client():
    original = app.state.room_manager
    app.state.room_manager = RoomManager(InMemoryRoomStore())
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.state.room_manager = original


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert isinstance(body["timestamp"], int)


@pytest.mark.asyncio
async def test_create_room_with_defaults(client):
    response = await client.post("/rooms")
    assert response.status_code == 201
    body = response.json()
    assert len(body["roomId"]) == 10
    room = body["room"]
    assert room["id"] == body["roomId"]
    assert room["settings"] == {
        "focusSec": 1500,
        "breakSec": 300,
        "longBreakSec": 900,
        "longBreakEvery": 4,
        "mode": "collab",
    }
    assert room["timer"]["running"] is False
    assert room["timer"]["remainingSecWhenPaused"] == 1500
    assert room["hostId"] is None
    assert room["participants"] == []


@pytest.mark.asyncio
async def test_create_room_with_settings(client):
    response = await client.post("/rooms", json={"settings": {"focusSec": 1200, "mode": "host"}})
    assert response.status_code == 201
    room = response.json()["room"]
    assert room["settings"]["focusSec"] == 1200
    assert room["settings"]["breakSec"] == 300
    assert room["settings"]["mode"] == "host"
    assert room["timer"]["remainingSecWhenPaused"] == 1200


@pytest.mark.asyncio
async def test_create_room_rejects_bad_settings(client):
    response = await client.post("/rooms", json={"settings": {"focusSec": 0}})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_get_room_state(client):
    room_id = (await client.post("/rooms")).json()["roomId"]

    response = await client.get(f"/rooms/{room_id}/state")
    assert response.status_code == 200
    assert response.json()["id"] == room_id

    missing = await client.get("/rooms/nope/state")
    assert missing.status_code == 404
    assert missing.json()["detail"] == "Room not found"
