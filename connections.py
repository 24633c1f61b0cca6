import asyncio
from typing import Dict, Optional, Protocol, Set

from logging_config import get_logger

logger = get_logger(__name__)


class Sender(Protocol):
    async def send_json(self, data) -> None:
        ...


class ConnectionRegistry:
    """Live connections of this process and the rooms they broadcast to.

    Two views are kept on purpose: ``connections`` is every socket that has
    been accepted and not yet torn down, ``rooms`` only holds sockets that
    finished joining. A socket can be in the first and not yet in the second
    while its join is in flight.
    """

    def __init__(self):
        # Format: {connection_id: sender}
        self.connections: Dict[str, Sender] = {}
        self.disconnected: Set[str] = set()
        # Format: {room_id: {connection_id}}
        self.rooms: Dict[str, Set[str]] = {}

    def register(self, connection_id: str, sender: Sender) -> None:
        self.connections[connection_id] = sender
        self.disconnected.discard(connection_id)
        logger.debug(f"Registered connection {connection_id} ({len(self.connections)} live)")

    def mark_disconnected(self, connection_id: str) -> None:
        if connection_id in self.connections:
            self.disconnected.add(connection_id)

    def unregister(self, connection_id: str) -> None:
        self.connections.pop(connection_id, None)
        self.disconnected.discard(connection_id)
        for room_id in list(self.rooms):
            self.leave_group(room_id, connection_id)
        logger.debug(f"Unregistered connection {connection_id} ({len(self.connections)} live)")

    def is_alive(self, connection_id: str) -> bool:
        return connection_id in self.connections and connection_id not in self.disconnected

    def join_group(self, room_id: str, connection_id: str) -> None:
        self.rooms.setdefault(room_id, set()).add(connection_id)

    def leave_group(self, room_id: str, connection_id: str) -> None:
        members = self.rooms.get(room_id)
        if members is None:
            return
        members.discard(connection_id)
        if not members:
            del self.rooms[room_id]
            logger.debug(f"No more local connections in room {room_id}")

    def group_members(self, room_id: str) -> Set[str]:
        return set(self.rooms.get(room_id, ()))

    async def send(self, connection_id: str, message: dict) -> bool:
        sender = self.connections.get(connection_id)
        if sender is None or connection_id in self.disconnected:
            return False
        try:
            await sender.send_json(message)
            return True
        except Exception as e:
            # Connection might be closed, its own disconnect handler cleans up
            logger.warning(f"Error sending to connection {connection_id}: {e}")
            self.mark_disconnected(connection_id)
            return False

    async def broadcast(self, room_id: str, message: dict, exclude: Optional[str] = None) -> int:
        targets = [conn_id for conn_id in self.group_members(room_id) if conn_id != exclude]
        if not targets:
            return 0
        results = await asyncio.gather(
            *(self.send(conn_id, message) for conn_id in targets),
            return_exceptions=True,
        )
        delivered = sum(1 for result in results if result is True)
        logger.debug(f"Broadcast {message.get('type')} to {delivered}/{len(targets)} connections in room {room_id}")
        return delivered
