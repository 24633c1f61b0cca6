import asyncio
import time
from typing import Dict, Optional, Protocol, Tuple

import redis.asyncio as redis
from pydantic import ValidationError

from constants import REDIS_URL
from logging_config import get_logger
from redis_keys import REDIS_ROOM_KEY
from schemas.rooms import Room

logger = get_logger(__name__)


class RoomStore(Protocol):
    async def get(self, room_id: str) -> Optional[Room]:
        ...

    async def set(self, room_id: str, room: Room, ttl_seconds: int) -> None:
        ...

    async def delete(self, room_id: str) -> None:
        ...

    async def close(self) -> None:
        ...


def serialize_room(room: Room) -> str:
    return room.model_dump_json(by_alias=True)


def deserialize_room(room_id: str, data: str) -> Optional[Room]:
    try:
        return Room.model_validate_json(data)
    except ValidationError as e:
        logger.error(f"Stored document for room {room_id} is invalid: {e}")
        return None


class RedisRoomStore:
    def __init__(self, redis_client):
        self.redis_client = redis_client
        logger.info("Initializing RedisRoomStore")

    async def get(self, room_id: str) -> Optional[Room]:
        key = REDIS_ROOM_KEY.format(slug=room_id)
        data = await self.redis_client.get(key)
        if not data:
            logger.debug(f"Room {room_id} not found in Redis")
            return None
        logger.debug(f"Room {room_id} retrieved from Redis")
        return deserialize_room(room_id, data)

    async def set(self, room_id: str, room: Room, ttl_seconds: int) -> None:
        key = REDIS_ROOM_KEY.format(slug=room_id)
        await self.redis_client.set(key, serialize_room(room), ex=ttl_seconds)
        logger.debug(f"Room {room_id} saved to Redis with TTL {ttl_seconds} seconds")

    async def delete(self, room_id: str) -> None:
        key = REDIS_ROOM_KEY.format(slug=room_id)
        deleted = await self.redis_client.delete(key)
        logger.debug(f"Room {room_id} deleted from Redis: {deleted}")

    async def close(self) -> None:
        await self.redis_client.aclose()


class InMemoryRoomStore:
    """Process-local store holding serialized rooms with an expiry.

    Documents are kept as JSON so that every ``get`` hands out a fresh copy,
    and each call yields to the event loop once, which gives concurrent
    read-modify-write cycles the same interleaving points they have against
    Redis.
    """

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._rooms: Dict[str, Tuple[str, float]] = {}

    async def get(self, room_id: str) -> Optional[Room]:
        await asyncio.sleep(0)
        entry = self._rooms.get(room_id)
        if entry is None:
            return None
        data, expires_at = entry
        if expires_at <= self._clock():
            logger.debug(f"Room {room_id} expired in memory store")
            del self._rooms[room_id]
            return None
        return deserialize_room(room_id, data)

    async def set(self, room_id: str, room: Room, ttl_seconds: int) -> None:
        await asyncio.sleep(0)
        self._rooms[room_id] = (serialize_room(room), self._clock() + ttl_seconds)

    async def delete(self, room_id: str) -> None:
        await asyncio.sleep(0)
        self._rooms.pop(room_id, None)

    async def close(self) -> None:
        self._rooms.clear()


def create_room_store(redis_url: Optional[str] = REDIS_URL):
    if redis_url:
        logger.info("Using Redis room store")
        return RedisRoomStore(redis.from_url(redis_url, decode_responses=True))
    logger.warning("No REDIS_URL configured, using in-memory room store (not for production!)")
    return InMemoryRoomStore()


room_store = create_room_store()
