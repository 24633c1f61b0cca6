"""Tests for the room stores."""

import pytest

from backend import InMemoryRoomStore, RedisRoomStore, create_room_store, serialize_room
from schemas.rooms import Participant, Room


class FakeRedis:
    """The handful of redis.asyncio calls the store makes."""

    def __init__(self):
        self.data = {}
        self.expiry = {}
        self.closed = False

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        self.data[key] = value
        self.expiry[key] = ex
        return True

    async def delete(self, key):
        return 1 if self.data.pop(key, None) is not None else 0

    async def aclose(self):
        self.closed = True


class ManualClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def _room(room_id="r1") -> Room:
    return Room(id=room_id, created_at=1, participants=[Participant(id="c1", unique_id="a", name="Ann")])


@pytest.mark.asyncio
async def test_memory_store_round_trip():
    store = InMemoryRoomStore()
    await store.set("r1", _room(), ttl_seconds=60)
    assert await store.get("r1") == _room()
    assert await store.get("other") is None


@pytest.mark.asyncio
async def test_memory_store_hands_out_copies():
    store = InMemoryRoomStore()
    await store.set("r1", _room(), ttl_seconds=60)
    first = await store.get("r1")
    first.participants.clear()
    second = await store.get("r1")
    assert len(second.participants) == 1


@pytest.mark.asyncio
async def test_memory_store_expires_rooms():
    clock = ManualClock()
    store = InMemoryRoomStore(clock=clock)
    await store.set("r1", _room(), ttl_seconds=10)
    clock.now += 9
    assert await store.get("r1") is not None
    clock.now += 1
    assert await store.get("r1") is None


@pytest.mark.asyncio
async def test_memory_store_write_refreshes_expiry():
    clock = ManualClock()
    store = InMemoryRoomStore(clock=clock)
    await store.set("r1", _room(), ttl_seconds=10)
    clock.now += 8
    await store.set("r1", _room(), ttl_seconds=10)
    clock.now += 8
    assert await store.get("r1") is not None


@pytest.mark.asyncio
async def test_memory_store_delete():
    store = InMemoryRoomStore()
    await store.set("r1", _room(), ttl_seconds=60)
    await store.delete("r1")
    await store.delete("r1")
    assert await store.get("r1") is None


@pytest.mark.asyncio
async def test_redis_store_uses_room_key_and_ttl():
    client = FakeRedis()
    store = RedisRoomStore(client)
    await store.set("r1", _room(), ttl_seconds=86400)

    assert client.expiry["room:state:r1"] == 86400
    assert '"createdAt":1' in client.data["room:state:r1"]
    assert await store.get("r1") == _room()


@pytest.mark.asyncio
async def test_redis_store_missing_and_corrupt_documents():
    client = FakeRedis()
    store = RedisRoomStore(client)
    assert await store.get("r1") is None

    client.data["room:state:r1"] = '{"id": "r1"}'
    assert await store.get("r1") is None


@pytest.mark.asyncio
async def test_redis_store_delete_and_close():
    client = FakeRedis()
    store = RedisRoomStore(client)
    client.data["room:state:r1"] = serialize_room(_room())
    await store.delete("r1")
    assert "room:state:r1" not in client.data
    await store.close()
    assert client.closed


def test_create_room_store_picks_backend():
    assert isinstance(create_room_store(None), InMemoryRoomStore)
    assert isinstance(create_room_store("redis://localhost:6379/0"), RedisRoomStore)
