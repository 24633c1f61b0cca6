"""Messages exchanged over the room WebSocket.

Every frame is a JSON object with a ``type`` field; the remaining fields are
the payload described by the models below.
"""
from enum import Enum
from typing import List, Optional

from pydantic import Field

from constants import MAX_MESSAGE_LENGTH, MAX_TODO_LENGTH
from schemas.rooms import CamelModel, Phase, RoomSettingsUpdate


class ClientEvent(str, Enum):
    JOIN_ROOM = "join_room"
    LEAVE_ROOM = "leave_room"
    UPDATE_NAME = "update_name"
    TIMER_START = "timer_start"
    TIMER_PAUSE = "timer_pause"
    TIMER_RESET = "timer_reset"
    TIMER_SKIP = "timer_skip"
    UPDATE_SETTINGS = "update_settings"
    SEND_MESSAGE = "send_message"
    TODO_ADD = "todo_add"
    TODO_UPDATE = "todo_update"
    TODO_DELETE = "todo_delete"
    TODO_REORDER = "todo_reorder"
    TODO_SET_ACTIVE = "todo_set_active"
    TODO_SET_VISIBILITY = "todo_set_visibility"


class ServerEvent(str, Enum):
    CONNECTED = "connected"
    ROOM_STATE = "room_state"
    TIMER_UPDATE = "timer_update"
    PARTICIPANTS_UPDATE = "participants_update"
    NEW_MESSAGE = "new_message"
    TODOS_UPDATE = "todos_update"
    ERROR = "error"


class ErrorCode(str, Enum):
    NAME_TAKEN = "NAME_TAKEN"
    ROOM_NOT_FOUND = "ROOM_NOT_FOUND"
    NOT_AUTHORIZED = "NOT_AUTHORIZED"
    NOT_JOINED = "NOT_JOINED"
    INVALID_PAYLOAD = "INVALID_PAYLOAD"
    UNKNOWN_COMMAND = "UNKNOWN_COMMAND"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class SkipSource(str, Enum):
    MANUAL = "manual"
    AUTO = "auto"


class JoinRoomPayload(CamelModel):
    room_id: str = Field(min_length=1)
    name: Optional[str] = None
    unique_id: str = Field(min_length=1)


class UpdateNamePayload(CamelModel):
    name: str


class EmptyPayload(CamelModel):
    pass


class TimerCommandPayload(CamelModel):
    timestamp: Optional[int] = None


class ExpectedTimer(CamelModel):
    phase: Phase
    phase_ends_at: Optional[int] = None
    running: bool


class TimerSkipPayload(CamelModel):
    source: SkipSource = SkipSource.MANUAL
    timestamp: Optional[int] = None
    expected: Optional[ExpectedTimer] = None


class UpdateSettingsPayload(RoomSettingsUpdate):
    timestamp: Optional[int] = None

    def changes(self) -> dict:
        changes = super().changes()
        changes.pop("timestamp", None)
        return changes


class SendMessagePayload(CamelModel):
    text: str = Field(max_length=MAX_MESSAGE_LENGTH)


class TodoAddPayload(CamelModel):
    text: str = Field(max_length=MAX_TODO_LENGTH)
    client_id: Optional[str] = None  # correlation id echoed back in todos_update


class TodoUpdatePayload(CamelModel):
    todo_id: str = Field(min_length=1)
    text: Optional[str] = Field(None, max_length=MAX_TODO_LENGTH)
    completed: Optional[bool] = None


class TodoDeletePayload(CamelModel):
    todo_id: str = Field(min_length=1)


class TodoReorderPayload(CamelModel):
    todo_ids: List[str]


class TodoSetActivePayload(CamelModel):
    todo_id: Optional[str] = None


class TodoSetVisibilityPayload(CamelModel):
    is_public: bool


def server_message(event: ServerEvent, **fields) -> dict:
    return {"type": event.value, **fields}


def error_message(message: str, code: Optional[ErrorCode] = None) -> dict:
    if code is None:
        return server_message(ServerEvent.ERROR, message=message)
    return server_message(ServerEvent.ERROR, message=message, code=code.value)
