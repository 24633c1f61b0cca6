import pytest

from backend import InMemoryRoomStore
from gateway import CommandGateway
from room_manager import RoomManager


class FakeClock:
    """Millisecond clock the tests move by hand."""

    def __init__(self, now: int = 1_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeConnection:
    """Stands in for a WebSocket: records every frame sent to it."""

    def __init__(self):
        self.sent = []
        self.closed = False

    async def send_json(self, data) -> None:
        if self.closed:
            raise RuntimeError("connection closed")
        self.sent.append(data)

    def of_type(self, event_type: str) -> list:
        return [m for m in self.sent if m.get("type") == event_type]

    def last(self, event_type: str) -> dict:
        messages = self.of_type(event_type)
        assert messages, f"no {event_type} frame received, got {[m.get('type') for m in self.sent]}"
        return messages[-1]

    def clear(self) -> None:
        self.sent.clear()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryRoomStore:
    return InMemoryRoomStore()


@pytest.fixture
def manager(store, clock) -> RoomManager:
    return RoomManager(store, clock=clock, retry_backoff=0)


@pytest.fixture
def gateway(manager, clock) -> CommandGateway:
    return CommandGateway(manager, clock=clock)
