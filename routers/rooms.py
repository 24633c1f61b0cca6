from fastapi import APIRouter, Depends, HTTPException, Request
from schemas.rooms import CreateRoomRequest, CreateRoomResponse, HealthResponse, Room
import random
import string
from typing import Optional
from constants import ROOM_ID_LENGTH
from room_manager import RoomManager
from timer_machine import now_ms
from logging_config import get_logger

logger = get_logger(__name__)

rooms_router = APIRouter(tags=["rooms"])


def get_manager(request: Request) -> RoomManager:
    return request.app.state.room_manager


def generate_random_slug(length: int = ROOM_ID_LENGTH) -> str:
    return ''.join(random.choices(string.ascii_letters + string.digits, k=length))


@rooms_router.get("/health", response_model=HealthResponse)
async def health():
    return HealthResponse(status="ok", timestamp=now_ms())


@rooms_router.post("/rooms", status_code=201, response_model=CreateRoomResponse, response_model_by_alias=True)
async def create_room(
    request: Request,
    body: Optional[CreateRoomRequest] = None,
    manager: RoomManager = Depends(get_manager),
):
    # Body: { "settings": { "focusSec": 1500, "breakSec": 300, "longBreakSec": 900, "longBreakEvery": 4, "mode": "collab" } }
    # Response 201: { "roomId": "V1StGXR8_Z", "room": { ...full room state... } }
    client_host = request.client.host if request.client else 'unknown'
    settings = body.settings if body else None
    room_id = generate_random_slug()
    logger.info(f"Room creation request from {client_host}, room_id: {room_id}")

    try:
        room = await manager.create_room(room_id, settings)
    except Exception as e:
        logger.error(f"Error creating room: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to create room")

    return CreateRoomResponse(room_id=room_id, room=room)


@rooms_router.get("/rooms/{room_id}/state", response_model=Room, response_model_by_alias=True)
async def get_room_state(room_id: str, manager: RoomManager = Depends(get_manager)):
    """Full room state, used by clients for hydration before the socket is up."""
    try:
        room = await manager.get_room(room_id)
    except Exception as e:
        logger.error(f"Error getting room {room_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to get room state")

    if not room:
        logger.info(f"Room state request failed: Room {room_id} not found")
        raise HTTPException(status_code=404, detail="Room not found")
    return room
