from typing import List

from connections import ConnectionRegistry
from logging_config import get_logger
from room_manager import RoomManager
from schemas.events import ServerEvent, server_message

logger = get_logger(__name__)


class PresenceReconciler:
    """Drops stored participants whose connection is really gone.

    Disconnect handling and store writes do not interleave cleanly, so the
    stored roster can hold connections that died while another write was in
    flight. A participant missing from the room's broadcast group is only
    evicted after the raw registry confirms it is dead; a socket that is
    registered but still joining must survive.
    """

    def __init__(self, manager: RoomManager, registry: ConnectionRegistry):
        self.manager = manager
        self.registry = registry

    async def find_stale(self, room_id: str) -> List[str]:
        room = await self.manager.get_room(room_id)
        if not room:
            return []
        members = self.registry.group_members(room_id)
        stale = []
        for participant in room.participants:
            if participant.id in members:
                continue
            if self.registry.is_alive(participant.id):
                logger.debug(f"Connection {participant.id} is alive but not yet in room {room_id}, keeping it")
                continue
            stale.append(participant.id)
        return stale

    async def reconcile(self, room_id: str) -> List[str]:
        stale = await self.find_stale(room_id)
        if not stale:
            return []

        logger.info(f"Removing {len(stale)} stale participants from room {room_id}: {stale}")
        participants = await self.manager.remove_participants(room_id, stale)
        await self.registry.broadcast(
            room_id,
            server_message(
                ServerEvent.PARTICIPANTS_UPDATE,
                participants=[p.to_wire() for p in participants],
            ),
        )
        return stale
