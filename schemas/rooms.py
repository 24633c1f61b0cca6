from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model serialized with camelCase keys on the wire and in the store."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class Phase(str, Enum):
    FOCUS = "focus"
    BREAK = "break"
    LONG_BREAK = "long_break"


PHASE_LABELS = {
    Phase.FOCUS: "Focus",
    Phase.BREAK: "Break",
    Phase.LONG_BREAK: "Long Break",
}


class RoomMode(str, Enum):
    COLLAB = "collab"
    HOST = "host"


class ActivityType(str, Enum):
    TIMER_START = "timer_start"
    TIMER_PAUSE = "timer_pause"
    TIMER_RESET = "timer_reset"
    TIMER_SKIP = "timer_skip"
    JOIN = "join"
    LEAVE = "leave"


class RoomSettings(CamelModel):
    focus_sec: int = Field(1500, ge=1)
    break_sec: int = Field(300, ge=1)
    long_break_sec: int = Field(900, ge=1)
    long_break_every: int = Field(4, ge=1)
    mode: RoomMode = RoomMode.COLLAB


class RoomSettingsUpdate(CamelModel):
    focus_sec: Optional[int] = Field(None, ge=1)
    break_sec: Optional[int] = Field(None, ge=1)
    long_break_sec: Optional[int] = Field(None, ge=1)
    long_break_every: Optional[int] = Field(None, ge=1)
    mode: Optional[RoomMode] = None

    def changes(self) -> dict:
        return self.model_dump(exclude_unset=True, exclude_none=True)


class TimerState(CamelModel):
    running: bool = False
    phase: Phase = Phase.FOCUS
    phase_ends_at: Optional[int] = None  # epoch ms, only while running
    remaining_sec_when_paused: int = 0
    cycle_count: int = 0
    last_updated_at: int = 0  # logical clock of the last accepted mutation


class Participant(CamelModel):
    id: str  # connection id
    unique_id: str  # persistent user id, shared across tabs
    name: str


class ChatMessage(CamelModel):
    id: str
    sender_id: str
    sender_name: str
    text: str
    timestamp: int


class TodoItem(CamelModel):
    id: str
    text: str
    completed: bool = False
    created_at: int


class UserTodos(CamelModel):
    user_id: str
    user_name: str
    todos: List[TodoItem] = Field(default_factory=list)
    active_todo_id: Optional[str] = None
    is_public: bool = True


class ActivityLog(CamelModel):
    model_config = ConfigDict(frozen=True)

    id: str
    type: ActivityType
    actor_id: str
    actor_name: str
    timestamp: int
    details: Optional[str] = None


class Room(CamelModel):
    id: str
    settings: RoomSettings = Field(default_factory=RoomSettings)
    timer: TimerState = Field(default_factory=TimerState)
    host_id: Optional[str] = None
    created_at: int
    participants: List[Participant] = Field(default_factory=list)
    messages: List[ChatMessage] = Field(default_factory=list)
    user_todos: Dict[str, UserTodos] = Field(default_factory=dict)
    history: List[ActivityLog] = Field(default_factory=list)


class CreateRoomRequest(CamelModel):
    settings: Optional[RoomSettingsUpdate] = None


class CreateRoomResponse(CamelModel):
    room_id: str
    room: Room


class HealthResponse(BaseModel):
    status: str
    timestamp: int
