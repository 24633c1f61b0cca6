"""Room aggregate lifecycle: fetch, mutate in memory, persist.

Every public operation reads the full room document, changes it and writes
it back. A missing room (expired TTL, bad link) is an ordinary outcome and is
reported with a sentinel (``None``, ``[]`` or an unsuccessful result), never
an exception. Store failures do propagate; the gateway logs and drops them.
"""
import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

import timer_machine
from backend import RoomStore
from constants import (
    ANONYMOUS_NAME,
    MAX_HISTORY,
    MAX_MESSAGES,
    MAX_TODOS_PER_USER,
    REMOVE_RETRY_BACKOFF_SECONDS,
    ROOM_TTL_SECONDS,
)
from logging_config import get_logger
from schemas.rooms import (
    PHASE_LABELS,
    ActivityLog,
    ActivityType,
    ChatMessage,
    Participant,
    Room,
    RoomSettings,
    RoomSettingsUpdate,
    TimerState,
    TodoItem,
    UserTodos,
)
from timer_machine import OrderingPolicy, SkipGuard, TimestampOrdering, Transition

logger = get_logger(__name__)

ROOM_NOT_FOUND = "Room not found"
NAME_TAKEN = "Name already taken in this room"


@dataclass
class JoinResult:
    success: bool
    participants: List[Participant] = field(default_factory=list)
    error: Optional[str] = None
    join_logged: bool = False


@dataclass
class NameResult:
    success: bool
    participants: List[Participant] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class TodoChange:
    user_todos: Dict[str, UserTodos]
    todo: TodoItem


def is_anonymous(name: str) -> bool:
    return name.strip().lower() == ANONYMOUS_NAME.lower()


def name_taken(participants: Iterable[Participant], person_id: str, name: str) -> bool:
    if is_anonymous(name):
        return False
    wanted = name.strip().lower()
    return any(p.name.lower() == wanted and p.unique_id != person_id for p in participants)


def _new_id() -> str:
    return uuid.uuid4().hex[:12]


class RoomManager:
    def __init__(
        self,
        store: RoomStore,
        ordering: Optional[OrderingPolicy] = None,
        clock=timer_machine.now_ms,
        ttl_seconds: int = ROOM_TTL_SECONDS,
        retry_backoff: float = REMOVE_RETRY_BACKOFF_SECONDS,
    ):
        self.store = store
        self.ordering = ordering or TimestampOrdering()
        self.clock = clock
        self.ttl_seconds = ttl_seconds
        self.retry_backoff = retry_backoff

    async def create_room(
        self,
        room_id: str,
        settings: Optional[RoomSettingsUpdate] = None,
        host_id: Optional[str] = None,
    ) -> Room:
        full_settings = RoomSettings()
        if settings is not None:
            full_settings = full_settings.model_copy(update=settings.changes())
        room = Room(
            id=room_id,
            settings=full_settings,
            timer=timer_machine.initial_timer(full_settings),
            host_id=host_id,
            created_at=self.clock(),
        )
        await self.save_room(room)
        logger.info(f"Room {room_id} created with settings {full_settings.model_dump(mode='json')}")
        return room

    async def get_room(self, room_id: str) -> Optional[Room]:
        return await self.store.get(room_id)

    async def save_room(self, room: Room) -> None:
        await self.store.set(room.id, room, self.ttl_seconds)

    async def start_timer(self, room_id, actor_id, actor_name, timestamp=None) -> Optional[TimerState]:
        return await self._timer_command(
            room_id, ActivityType.TIMER_START, actor_id, actor_name, timestamp,
            lambda room, now: timer_machine.start(room.timer, now),
        )

    async def pause_timer(self, room_id, actor_id, actor_name, timestamp=None) -> Optional[TimerState]:
        return await self._timer_command(
            room_id, ActivityType.TIMER_PAUSE, actor_id, actor_name, timestamp,
            lambda room, now: timer_machine.pause(room.timer, room.settings, now),
        )

    async def reset_timer(self, room_id, actor_id, actor_name, timestamp=None) -> Optional[TimerState]:
        return await self._timer_command(
            room_id, ActivityType.TIMER_RESET, actor_id, actor_name, timestamp,
            lambda room, now: timer_machine.reset(room.timer, room.settings),
        )

    async def skip_phase(
        self,
        room_id: str,
        actor_id: str,
        actor_name: str,
        guard: Optional[SkipGuard] = None,
        timestamp: Optional[int] = None,
        record: bool = True,
    ) -> Optional[TimerState]:
        """Advance to the next phase.

        With a ``guard`` the skip only happens if the live timer still matches
        it; otherwise nothing is written or logged and the current timer is
        returned. ``record=False`` skips the activity entry (used for
        automatic end-of-phase transitions).
        """
        return await self._timer_command(
            room_id, ActivityType.TIMER_SKIP, actor_id, actor_name, timestamp,
            lambda room, now: timer_machine.skip(room.timer, room.settings),
            guard=guard,
            record=record,
        )

    async def _timer_command(
        self,
        room_id: str,
        activity: ActivityType,
        actor_id: str,
        actor_name: str,
        timestamp: Optional[int],
        transition,
        guard: Optional[SkipGuard] = None,
        record: bool = True,
    ) -> Optional[TimerState]:
        room = await self.get_room(room_id)
        if not room:
            logger.debug(f"{activity.value} ignored: room {room_id} not found")
            return None

        if not timer_machine.guard_matches(room.timer, guard):
            logger.info(f"{activity.value} in room {room_id} rejected: timer no longer matches guard")
            return room.timer

        command_ts = timestamp if timestamp is not None else self.clock()
        before = room.timer
        accepted = self.ordering.accepts(command_ts, before.last_updated_at)
        if accepted:
            result: Transition = transition(room, command_ts)
            if result.changed:
                room.timer = result.timer.model_copy(update={"last_updated_at": command_ts})
        else:
            logger.warning(
                f"{activity.value} in room {room_id} by {actor_name} is stale "
                f"(ts={command_ts} < lastUpdatedAt={before.last_updated_at}), state unchanged"
            )

        if not record and room.timer == before:
            return room.timer

        if record:
            details = self._describe(activity, before, room.timer)
            if not accepted:
                details = f"{details} (superseded)"
            self._append_history(room, activity, actor_id, actor_name, details, command_ts)

        await self.save_room(room)
        logger.info(f"{activity.value} in room {room_id} by {actor_name}: running={room.timer.running} phase={room.timer.phase.value}")
        return room.timer

    @staticmethod
    def _describe(activity: ActivityType, before: TimerState, after: TimerState) -> str:
        if activity == ActivityType.TIMER_SKIP:
            if after.phase != before.phase:
                return f"skipped to {PHASE_LABELS[after.phase]}"
            return "skipped phase"
        return PHASE_LABELS[before.phase]

    async def update_settings(
        self,
        room_id: str,
        settings: RoomSettingsUpdate,
        timestamp: Optional[int] = None,
    ) -> Optional[RoomSettings]:
        room = await self.get_room(room_id)
        if not room:
            return None

        command_ts = timestamp if timestamp is not None else self.clock()
        if not self.ordering.accepts(command_ts, room.timer.last_updated_at):
            logger.warning(f"Settings update in room {room_id} is stale (ts={command_ts}), ignored")
            return room.settings

        room.settings = room.settings.model_copy(update=settings.changes())
        result = timer_machine.apply_settings(room.timer, room.settings)
        room.timer = result.timer.model_copy(update={"last_updated_at": command_ts})
        await self.save_room(room)
        logger.info(f"Settings updated in room {room_id}: {settings.changes()}")
        return room.settings

    async def add_participant(self, room_id: str, connection_id: str, person_id: str, name: str) -> JoinResult:
        room = await self.get_room(room_id)
        if not room:
            return JoinResult(success=False, error=ROOM_NOT_FOUND)

        if any(p.id == connection_id for p in room.participants):
            logger.debug(f"Connection {connection_id} already in room {room_id}, treating join as reconnect")
            return JoinResult(success=True, participants=room.participants)

        if name_taken(room.participants, person_id, name):
            logger.warning(f"Join rejected in room {room_id}: name '{name}' already taken")
            return JoinResult(success=False, error=NAME_TAKEN, participants=room.participants)

        room.participants.append(Participant(id=connection_id, unique_id=person_id, name=name))
        if room.host_id is None:
            room.host_id = connection_id
        self._ensure_user_todos(room, person_id, name)

        join_logged = not is_anonymous(name)
        if join_logged:
            self._append_history(room, ActivityType.JOIN, person_id, name)

        await self.save_room(room)
        logger.info(f"{name} ({connection_id}) joined room {room_id}, now {len(room.participants)} participants")
        return JoinResult(success=True, participants=room.participants, join_logged=join_logged)

    async def remove_participant(self, room_id: str, connection_id: str, retries: int = 3) -> List[Participant]:
        """Remove one connection, verifying the write survived concurrent writers.

        Returns the best-known participant list whether or not the removal
        stuck; callers must not assume success.
        """
        for attempt in range(retries):
            room = await self.get_room(room_id)
            if not room:
                return []

            if not any(p.id == connection_id for p in room.participants):
                logger.debug(f"Participant {connection_id} already removed from {room_id}")
                return room.participants

            self._drop_participants(room, {connection_id})
            await self.save_room(room)

            verify_room = await self.get_room(room_id)
            if not verify_room:
                return []
            if not any(p.id == connection_id for p in verify_room.participants):
                logger.debug(f"Removed {connection_id} from {room_id}, now {len(verify_room.participants)} participants")
                return verify_room.participants

            logger.warning(
                f"Race detected removing {connection_id} from {room_id}, "
                f"retry {attempt + 1}/{retries}"
            )
            await asyncio.sleep(self.retry_backoff * (attempt + 1))

        logger.warning(f"Failed to remove {connection_id} from {room_id} after {retries} retries")
        final_room = await self.get_room(room_id)
        return final_room.participants if final_room else []

    async def remove_participants(self, room_id: str, connection_ids: Iterable[str]) -> List[Participant]:
        stale = set(connection_ids)
        room = await self.get_room(room_id)
        if not room:
            return []
        if not stale or not any(p.id in stale for p in room.participants):
            return room.participants
        self._drop_participants(room, stale)
        await self.save_room(room)
        logger.info(f"Removed {len(stale)} stale connections from room {room_id}")
        return room.participants

    @staticmethod
    def _drop_participants(room: Room, connection_ids: set) -> None:
        room.participants = [p for p in room.participants if p.id not in connection_ids]
        if room.host_id in connection_ids:
            room.host_id = room.participants[0].id if room.participants else None

    async def update_participant_name(self, room_id: str, connection_id: str, person_id: str, new_name: str) -> NameResult:
        room = await self.get_room(room_id)
        if not room:
            return NameResult(success=False, error=ROOM_NOT_FOUND)

        if name_taken(room.participants, person_id, new_name):
            logger.warning(f"Rename of {connection_id} in room {room_id} rejected: '{new_name}' already taken")
            return NameResult(success=False, error=NAME_TAKEN, participants=room.participants)

        room.participants = [
            p.model_copy(update={"name": new_name}) if p.unique_id == person_id else p
            for p in room.participants
        ]
        if person_id in room.user_todos:
            room.user_todos[person_id].user_name = new_name

        await self.save_room(room)
        return NameResult(success=True, participants=room.participants)

    async def record_activity(
        self,
        room_id: str,
        activity: ActivityType,
        actor_id: str,
        actor_name: str,
        details: Optional[str] = None,
    ) -> Optional[Room]:
        room = await self.get_room(room_id)
        if not room:
            return None
        self._append_history(room, activity, actor_id, actor_name, details)
        await self.save_room(room)
        return room

    def _append_history(
        self,
        room: Room,
        activity: ActivityType,
        actor_id: str,
        actor_name: str,
        details: Optional[str] = None,
        timestamp: Optional[int] = None,
    ) -> None:
        entry = ActivityLog(
            id=_new_id(),
            type=activity,
            actor_id=actor_id,
            actor_name=actor_name,
            timestamp=timestamp if timestamp is not None else self.clock(),
            details=details,
        )
        room.history = [entry] + room.history[:MAX_HISTORY - 1]

    async def add_message(self, room_id: str, sender_id: str, sender_name: str, text: str) -> Optional[ChatMessage]:
        room = await self.get_room(room_id)
        if not room:
            return None
        message = ChatMessage(
            id=f"{sender_id}-{_new_id()}",
            sender_id=sender_id,
            sender_name=sender_name,
            text=text.strip(),
            timestamp=self.clock(),
        )
        room.messages.append(message)
        if len(room.messages) > MAX_MESSAGES:
            room.messages = room.messages[-MAX_MESSAGES:]
        await self.save_room(room)
        return message

    @staticmethod
    def _ensure_user_todos(room: Room, user_id: str, user_name: str) -> UserTodos:
        user_todos = room.user_todos.get(user_id)
        if user_todos is None:
            user_todos = UserTodos(user_id=user_id, user_name=user_name)
            room.user_todos[user_id] = user_todos
        elif not is_anonymous(user_name):
            user_todos.user_name = user_name
        return user_todos

    async def add_todo(self, room_id: str, user_id: str, user_name: str, text: str) -> Optional[TodoChange]:
        room = await self.get_room(room_id)
        if not room:
            return None
        user_todos = self._ensure_user_todos(room, user_id, user_name)
        if len(user_todos.todos) >= MAX_TODOS_PER_USER:
            logger.warning(f"Todo limit reached for {user_id} in room {room_id}")
            return None

        todo = TodoItem(id=f"{user_id}-{_new_id()}", text=text.strip(), created_at=self.clock())
        user_todos.todos.append(todo)
        await self.save_room(room)
        return TodoChange(user_todos=room.user_todos, todo=todo)

    async def update_todo(
        self,
        room_id: str,
        user_id: str,
        todo_id: str,
        text: Optional[str] = None,
        completed: Optional[bool] = None,
    ) -> Optional[Dict[str, UserTodos]]:
        room = await self.get_room(room_id)
        if not room or user_id not in room.user_todos:
            return None
        user_todos = room.user_todos[user_id]
        todo = next((t for t in user_todos.todos if t.id == todo_id), None)
        if todo is None:
            return None

        if text is not None and text.strip():
            todo.text = text.strip()
        if completed is not None:
            todo.completed = completed
            if completed and user_todos.active_todo_id == todo_id:
                user_todos.active_todo_id = None

        await self.save_room(room)
        return room.user_todos

    async def delete_todo(self, room_id: str, user_id: str, todo_id: str) -> Optional[Dict[str, UserTodos]]:
        room = await self.get_room(room_id)
        if not room or user_id not in room.user_todos:
            return None
        user_todos = room.user_todos[user_id]
        user_todos.todos = [t for t in user_todos.todos if t.id != todo_id]
        if user_todos.active_todo_id == todo_id:
            user_todos.active_todo_id = None
        await self.save_room(room)
        return room.user_todos

    async def reorder_todos(self, room_id: str, user_id: str, todo_ids: List[str]) -> Optional[Dict[str, UserTodos]]:
        room = await self.get_room(room_id)
        if not room or user_id not in room.user_todos:
            return None
        user_todos = room.user_todos[user_id]
        by_id = {t.id: t for t in user_todos.todos}
        ordered = [by_id.pop(todo_id) for todo_id in todo_ids if todo_id in by_id]
        # ids the client did not mention keep their relative order at the end
        ordered.extend(t for t in user_todos.todos if t.id in by_id)
        user_todos.todos = ordered
        await self.save_room(room)
        return room.user_todos

    async def set_active_todo(self, room_id: str, user_id: str, todo_id: Optional[str]) -> Optional[Dict[str, UserTodos]]:
        room = await self.get_room(room_id)
        if not room or user_id not in room.user_todos:
            return None
        user_todos = room.user_todos[user_id]
        if todo_id is not None:
            todo = next((t for t in user_todos.todos if t.id == todo_id), None)
            if todo is None or todo.completed:
                logger.debug(f"Cannot activate todo {todo_id} for {user_id} in room {room_id}")
                return None
        user_todos.active_todo_id = todo_id
        await self.save_room(room)
        return room.user_todos

    async def set_todo_visibility(
        self,
        room_id: str,
        user_id: str,
        is_public: bool,
        user_name: str = ANONYMOUS_NAME,
    ) -> Optional[Dict[str, UserTodos]]:
        room = await self.get_room(room_id)
        if not room:
            return None
        user_todos = self._ensure_user_todos(room, user_id, user_name)
        user_todos.is_public = is_public
        await self.save_room(room)
        return room.user_todos
