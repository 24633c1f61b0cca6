"""End-to-end checks over a real WebSocket."""

import pytest
from fastapi.testclient import TestClient

from app import app
from backend import InMemoryRoomStore
from gateway import CommandGateway
from room_manager import RoomManager


@pytest.fixture
def client():
    original = (app.state.room_manager, app.state.gateway)
    manager = RoomManager(InMemoryRoomStore())
    app.state.room_manager = manager
    app.state.gateway = CommandGateway(manager)
    with TestClient(app) as c:
        yield c
    app.state.room_manager, app.state.gateway = original


def test_join_and_share_state(client):
    room_id = client.post("/rooms").json()["roomId"]

    with client.websocket_connect("/ws") as ann, client.websocket_connect("/ws") as bob:
        assert ann.receive_json()["type"] == "connected"
        assert bob.receive_json()["type"] == "connected"

        ann.send_json({"type": "join_room", "roomId": room_id, "name": "Ann", "uniqueId": "person-a"})
        state = ann.receive_json()
        assert state["type"] == "room_state"
        assert [p["name"] for p in state["room"]["participants"]] == ["Ann"]

        bob.send_json({"type": "join_room", "roomId": room_id, "name": "ANN", "uniqueId": "person-b"})
        error = bob.receive_json()
        assert error["type"] == "error"
        assert error["code"] == "NAME_TAKEN"

        bob.send_json({"type": "join_room", "roomId": room_id, "name": "Bob", "uniqueId": "person-b"})
        assert bob.receive_json()["type"] == "room_state"
        seen_by_ann = ann.receive_json()
        assert seen_by_ann["type"] == "room_state"
        assert [p["name"] for p in seen_by_ann["room"]["participants"]] == ["Ann", "Bob"]

        bob.send_json({"type": "timer_start"})
        update = ann.receive_json()
        assert update["type"] == "timer_update"
        assert update["timer"]["running"] is True


def test_rejects_non_json_frames(client):
    with client.websocket_connect("/ws") as ws:
        ws.receive_json()
        ws.send_text("not json")
        error = ws.receive_json()
        assert error["code"] == "INVALID_PAYLOAD"

        ws.send_json({"type": "timer_pause"})
        assert ws.receive_json()["code"] == "NOT_JOINED"


class ClosingStore(InMemoryRoomStore):
    def __init__(self):
        super().__init__()
        self.closed = False

    async def close(self) -> None:
        self.closed = True
        await super().close()


def test_shutdown_closes_room_store():
    original = (app.state.room_manager, app.state.gateway)
    store = ClosingStore()
    manager = RoomManager(store)
    app.state.room_manager = manager
    app.state.gateway = CommandGateway(manager)
    try:
        with TestClient(app) as c:
            assert c.get("/health").status_code == 200
            assert not store.closed
        assert store.closed
    finally:
        app.state.room_manager, app.state.gateway = original
