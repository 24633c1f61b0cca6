"""Command handling for room connections.

The gateway is transport agnostic: ``app.py`` feeds it decoded JSON frames
from a WebSocket, tests feed it dicts directly. Each connection gets a
``ConnectionSession`` that is passed explicitly into every handler.
"""
import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Set

from pydantic import ValidationError

import timer_machine
from connections import ConnectionRegistry, Sender
from constants import ANONYMOUS_NAME, AUTO_SKIP_GRACE_MS
from logging_config import get_logger
from presence import PresenceReconciler
from room_manager import NAME_TAKEN, RoomManager, is_anonymous
from schemas.events import (
    ClientEvent,
    EmptyPayload,
    ErrorCode,
    JoinRoomPayload,
    SendMessagePayload,
    ServerEvent,
    SkipSource,
    TimerCommandPayload,
    TimerSkipPayload,
    TodoAddPayload,
    TodoDeletePayload,
    TodoReorderPayload,
    TodoSetActivePayload,
    TodoSetVisibilityPayload,
    TodoUpdatePayload,
    UpdateNamePayload,
    UpdateSettingsPayload,
    error_message,
    server_message,
)
from schemas.rooms import ActivityType, Room, RoomMode, TimerState, UserTodos

logger = get_logger(__name__)


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    JOINING = "joining"
    JOINED = "joined"


@dataclass
class ConnectionSession:
    connection_id: str
    state: SessionState = SessionState.DISCONNECTED
    room_id: Optional[str] = None
    person_id: str = ""
    display_name: str = ANONYMOUS_NAME


def _wire_todos(user_todos: Dict[str, UserTodos]) -> dict:
    return {user_id: todos.to_wire() for user_id, todos in user_todos.items()}


class CommandGateway:
    def __init__(
        self,
        manager: RoomManager,
        registry: Optional[ConnectionRegistry] = None,
        clock=timer_machine.now_ms,
        auto_skip_grace_ms: int = AUTO_SKIP_GRACE_MS,
    ):
        self.manager = manager
        self.registry = registry or ConnectionRegistry()
        self.presence = PresenceReconciler(manager, self.registry)
        self.clock = clock
        self.auto_skip_grace_ms = auto_skip_grace_ms
        self._tasks: Set[asyncio.Task] = set()
        # Format: {connection_id: task finishing its last leave_room}
        self._departures: Dict[str, asyncio.Task] = {}
        self._handlers = {
            ClientEvent.JOIN_ROOM: (JoinRoomPayload, self._join_room),
            ClientEvent.LEAVE_ROOM: (EmptyPayload, self._leave_room),
            ClientEvent.UPDATE_NAME: (UpdateNamePayload, self._update_name),
            ClientEvent.TIMER_START: (TimerCommandPayload, self._timer_start),
            ClientEvent.TIMER_PAUSE: (TimerCommandPayload, self._timer_pause),
            ClientEvent.TIMER_RESET: (TimerCommandPayload, self._timer_reset),
            ClientEvent.TIMER_SKIP: (TimerSkipPayload, self._timer_skip),
            ClientEvent.UPDATE_SETTINGS: (UpdateSettingsPayload, self._update_settings),
            ClientEvent.SEND_MESSAGE: (SendMessagePayload, self._send_message),
            ClientEvent.TODO_ADD: (TodoAddPayload, self._todo_add),
            ClientEvent.TODO_UPDATE: (TodoUpdatePayload, self._todo_update),
            ClientEvent.TODO_DELETE: (TodoDeletePayload, self._todo_delete),
            ClientEvent.TODO_REORDER: (TodoReorderPayload, self._todo_reorder),
            ClientEvent.TODO_SET_ACTIVE: (TodoSetActivePayload, self._todo_set_active),
            ClientEvent.TODO_SET_VISIBILITY: (TodoSetVisibilityPayload, self._todo_set_visibility),
        }

    async def connect(self, connection_id: str, sender: Sender) -> ConnectionSession:
        self.registry.register(connection_id, sender)
        session = ConnectionSession(connection_id=connection_id)
        await self.registry.send(
            connection_id,
            server_message(ServerEvent.CONNECTED, connectionId=connection_id, timestamp=self.clock()),
        )
        logger.info(f"Client connected: {connection_id}")
        return session

    async def disconnect(self, session: ConnectionSession) -> None:
        logger.info(f"Client disconnected: {session.connection_id}")
        self.registry.mark_disconnected(session.connection_id)
        try:
            departure = self._detach(session)
            if departure is not None:
                await self._finish_departure(*departure)
        finally:
            self.registry.unregister(session.connection_id)

    def schedule(self, coro) -> asyncio.Task:
        task = asyncio.create_task(self._run_logged(coro))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @staticmethod
    async def _run_logged(coro) -> None:
        try:
            await coro
        except Exception as e:
            logger.error(f"Background room task failed: {e}", exc_info=True)

    async def handle(self, session: ConnectionSession, message: dict) -> None:
        event_type = message.get("type") if isinstance(message, dict) else None
        try:
            event = ClientEvent(event_type)
        except ValueError:
            logger.warning(f"Unknown command {event_type!r} from {session.connection_id}")
            await self._error(session, f"Unknown command: {event_type}", ErrorCode.UNKNOWN_COMMAND)
            return

        payload_model, handler = self._handlers[event]
        try:
            payload = payload_model.model_validate({k: v for k, v in message.items() if k != "type"})
        except ValidationError as e:
            logger.warning(f"Invalid {event.value} payload from {session.connection_id}: {e.errors()}")
            await self._error(session, f"Invalid {event.value} payload", ErrorCode.INVALID_PAYLOAD)
            return

        if event != ClientEvent.JOIN_ROOM and session.room_id is None:
            await self._error(session, "Join a room first", ErrorCode.NOT_JOINED)
            return

        try:
            await handler(session, payload)
        except Exception as e:
            logger.error(f"Error handling {event.value} from {session.connection_id} in room {session.room_id}: {e}", exc_info=True)
            if event in (ClientEvent.JOIN_ROOM, ClientEvent.UPDATE_NAME):
                await self._error(session, f"Failed to {event.value.replace('_', ' ')}", ErrorCode.INTERNAL_ERROR)

    async def _error(self, session: ConnectionSession, message: str, code: Optional[ErrorCode] = None) -> None:
        await self.registry.send(session.connection_id, error_message(message, code))

    async def _join_room(self, session: ConnectionSession, payload: JoinRoomPayload) -> None:
        pending = self._departures.pop(session.connection_id, None)
        if pending is not None:
            await pending

        if session.room_id is not None and session.room_id != payload.room_id:
            departure = self._detach(session)
            if departure is not None:
                await self._finish_departure(*departure)

        previous_state = session.state
        session.state = SessionState.JOINING
        room = await self.manager.get_room(payload.room_id)
        if not room:
            session.state = previous_state
            logger.info(f"Join rejected: room {payload.room_id} not found")
            await self._error(session, "Room not found", ErrorCode.ROOM_NOT_FOUND)
            return

        name = (payload.name or "").strip() or ANONYMOUS_NAME
        result = await self.manager.add_participant(payload.room_id, session.connection_id, payload.unique_id, name)
        if not result.success:
            session.state = previous_state
            if result.error == NAME_TAKEN:
                await self._error(session, result.error, ErrorCode.NAME_TAKEN)
            else:
                await self._error(session, result.error or "Failed to join room", ErrorCode.ROOM_NOT_FOUND)
            return

        self.registry.join_group(payload.room_id, session.connection_id)
        session.room_id = payload.room_id
        # a repeat join keeps the stored identity, not the one in this payload
        me = next((p for p in result.participants if p.id == session.connection_id), None)
        session.person_id = me.unique_id if me else payload.unique_id
        session.display_name = me.name if me else name
        session.state = SessionState.JOINED

        await self.presence.reconcile(payload.room_id)

        room = await self.manager.get_room(payload.room_id)
        if not room:
            return
        await self.registry.send(session.connection_id, self._room_state(room))
        if result.join_logged:
            await self.registry.broadcast(room.id, self._room_state(room), exclude=session.connection_id)
        else:
            await self.registry.broadcast(room.id, self._participants(room), exclude=session.connection_id)
        logger.info(f"{session.display_name} ({session.connection_id}) joined room {room.id}")

    async def _leave_room(self, session: ConnectionSession, payload: EmptyPayload) -> None:
        departure = self._detach(session)
        if departure is not None:
            task = self.schedule(self._finish_departure(*departure))
            self._departures[session.connection_id] = task
            task.add_done_callback(lambda t: self._forget_departure(session.connection_id, t))

    def _forget_departure(self, connection_id: str, task: asyncio.Task) -> None:
        if self._departures.get(connection_id) is task:
            del self._departures[connection_id]

    def _detach(self, session: ConnectionSession) -> Optional[tuple]:
        if session.room_id is None:
            return None
        departure = (session.room_id, session.connection_id, session.person_id, session.display_name)
        self.registry.leave_group(session.room_id, session.connection_id)
        session.room_id = None
        session.state = SessionState.DISCONNECTED
        return departure

    async def _finish_departure(self, room_id: str, connection_id: str, person_id: str, display_name: str) -> None:
        room = await self.manager.get_room(room_id)
        was_present = room is not None and any(p.id == connection_id for p in room.participants)

        participants = await self.manager.remove_participant(room_id, connection_id)
        removed = was_present and not any(p.id == connection_id for p in participants)

        if removed:
            room = await self.manager.record_activity(room_id, ActivityType.LEAVE, person_id, display_name)
            if room:
                await self.registry.broadcast(room_id, self._room_state(room))
        logger.info(f"{display_name} ({connection_id}) left room {room_id}, {len(participants)} participants remain")
        await self.registry.broadcast(
            room_id,
            server_message(ServerEvent.PARTICIPANTS_UPDATE, participants=[p.to_wire() for p in participants]),
        )

    async def _update_name(self, session: ConnectionSession, payload: UpdateNamePayload) -> None:
        name = payload.name.strip()
        if not name:
            await self._error(session, "Name cannot be empty", ErrorCode.INVALID_PAYLOAD)
            return

        room_id = session.room_id
        result = await self.manager.update_participant_name(room_id, session.connection_id, session.person_id, name)
        if not result.success:
            if result.error == NAME_TAKEN:
                await self._error(session, result.error, ErrorCode.NAME_TAKEN)
            else:
                await self._error(session, result.error or "Failed to update name", ErrorCode.ROOM_NOT_FOUND)
            return

        unmasked = is_anonymous(session.display_name) and not is_anonymous(name)
        session.display_name = name
        logger.info(f"{session.connection_id} changed name to '{name}' in room {room_id}")

        await self.registry.broadcast(
            room_id,
            server_message(ServerEvent.PARTICIPANTS_UPDATE, participants=[p.to_wire() for p in result.participants]),
        )
        room = await self.manager.get_room(room_id)
        if room:
            await self.registry.broadcast(room_id, self._todos(room.user_todos))

        if unmasked:
            room = await self.manager.record_activity(room_id, ActivityType.JOIN, session.person_id, name)
            if room:
                await self.registry.broadcast(room_id, self._room_state(room))

    def _command_time(self, timestamp: Optional[int], now: Optional[int] = None) -> int:
        now = self.clock() if now is None else now
        if timestamp is None:
            return now
        return min(timestamp, now)

    async def _authorized_room(self, session: ConnectionSession, denial: str) -> Optional[Room]:
        room = await self.manager.get_room(session.room_id)
        if not room:
            await self._error(session, "Room not found", ErrorCode.ROOM_NOT_FOUND)
            return None
        if room.settings.mode == RoomMode.HOST and room.host_id != session.connection_id:
            logger.warning(f"{session.connection_id} is not the host of room {room.id}, command rejected")
            await self._error(session, denial, ErrorCode.NOT_AUTHORIZED)
            return None
        return room

    async def _broadcast_timer(self, room_id: str, timer: Optional[TimerState], full_snapshot: bool) -> None:
        if timer is None:
            return
        await self.registry.broadcast(room_id, server_message(ServerEvent.TIMER_UPDATE, timer=timer.to_wire()))
        if full_snapshot:
            room = await self.manager.get_room(room_id)
            if room:
                await self.registry.broadcast(room_id, self._room_state(room))

    async def _timer_start(self, session: ConnectionSession, payload: TimerCommandPayload) -> None:
        if not await self._authorized_room(session, "Only the host can control the timer"):
            return
        timer = await self.manager.start_timer(
            session.room_id, session.person_id, session.display_name, self._command_time(payload.timestamp)
        )
        await self._broadcast_timer(session.room_id, timer, full_snapshot=True)

    async def _timer_pause(self, session: ConnectionSession, payload: TimerCommandPayload) -> None:
        if not await self._authorized_room(session, "Only the host can control the timer"):
            return
        timer = await self.manager.pause_timer(
            session.room_id, session.person_id, session.display_name, self._command_time(payload.timestamp)
        )
        await self._broadcast_timer(session.room_id, timer, full_snapshot=True)

    async def _timer_reset(self, session: ConnectionSession, payload: TimerCommandPayload) -> None:
        if not await self._authorized_room(session, "Only the host can control the timer"):
            return
        timer = await self.manager.reset_timer(
            session.room_id, session.person_id, session.display_name, self._command_time(payload.timestamp)
        )
        await self._broadcast_timer(session.room_id, timer, full_snapshot=True)

    async def _timer_skip(self, session: ConnectionSession, payload: TimerSkipPayload) -> None:
        room = await self._authorized_room(session, "Only the host can control the timer")
        if not room:
            return

        now = self.clock()
        timestamp = self._command_time(payload.timestamp, now)
        guard = None
        if payload.expected is not None:
            guard = timer_machine.SkipGuard(
                phase=payload.expected.phase,
                phase_ends_at=payload.expected.phase_ends_at,
                running=payload.expected.running,
            )

        if payload.source == SkipSource.AUTO:
            if not timer_machine.is_near_zero(room.timer, now, self.auto_skip_grace_ms):
                logger.info(
                    f"Auto skip from {session.connection_id} in room {room.id} ignored: "
                    f"{timer_machine.remaining_seconds(room.timer, now)}s still remaining"
                )
                return
            if guard is None:
                # the gate above ran on this snapshot; skip only if it is still current
                guard = timer_machine.SkipGuard(
                    phase=room.timer.phase,
                    phase_ends_at=room.timer.phase_ends_at,
                    running=room.timer.running,
                )
            timer = await self.manager.skip_phase(
                room.id, session.person_id, session.display_name, guard=guard, timestamp=timestamp, record=False
            )
            await self._broadcast_timer(room.id, timer, full_snapshot=False)
            return

        timer = await self.manager.skip_phase(
            room.id, session.person_id, session.display_name, guard=guard, timestamp=timestamp
        )
        await self._broadcast_timer(room.id, timer, full_snapshot=True)

    async def _update_settings(self, session: ConnectionSession, payload: UpdateSettingsPayload) -> None:
        if not await self._authorized_room(session, "Only the host can change settings"):
            return
        settings = await self.manager.update_settings(session.room_id, payload, self._command_time(payload.timestamp))
        if settings is None:
            return
        room = await self.manager.get_room(session.room_id)
        if room:
            await self.registry.broadcast(room.id, self._room_state(room))
            await self.registry.broadcast(room.id, server_message(ServerEvent.TIMER_UPDATE, timer=room.timer.to_wire()))

    async def _send_message(self, session: ConnectionSession, payload: SendMessagePayload) -> None:
        text = payload.text.strip()
        if not text:
            return
        message = await self.manager.add_message(session.room_id, session.connection_id, session.display_name, text)
        if message:
            await self.registry.broadcast(session.room_id, server_message(ServerEvent.NEW_MESSAGE, message=message.to_wire()))

    async def _todo_add(self, session: ConnectionSession, payload: TodoAddPayload) -> None:
        text = payload.text.strip()
        if not text:
            return
        change = await self.manager.add_todo(session.room_id, session.person_id, session.display_name, text)
        if change is None:
            return
        correlation = None
        if payload.client_id:
            correlation = {"clientId": payload.client_id, "todoId": change.todo.id}
        await self.registry.broadcast(session.room_id, self._todos(change.user_todos, correlation))

    async def _todo_update(self, session: ConnectionSession, payload: TodoUpdatePayload) -> None:
        user_todos = await self.manager.update_todo(
            session.room_id, session.person_id, payload.todo_id, text=payload.text, completed=payload.completed
        )
        if user_todos is not None:
            await self.registry.broadcast(session.room_id, self._todos(user_todos))

    async def _todo_delete(self, session: ConnectionSession, payload: TodoDeletePayload) -> None:
        user_todos = await self.manager.delete_todo(session.room_id, session.person_id, payload.todo_id)
        if user_todos is not None:
            await self.registry.broadcast(session.room_id, self._todos(user_todos))

    async def _todo_reorder(self, session: ConnectionSession, payload: TodoReorderPayload) -> None:
        user_todos = await self.manager.reorder_todos(session.room_id, session.person_id, payload.todo_ids)
        if user_todos is not None:
            await self.registry.broadcast(session.room_id, self._todos(user_todos))

    async def _todo_set_active(self, session: ConnectionSession, payload: TodoSetActivePayload) -> None:
        user_todos = await self.manager.set_active_todo(session.room_id, session.person_id, payload.todo_id)
        if user_todos is not None:
            await self.registry.broadcast(session.room_id, self._todos(user_todos))

    async def _todo_set_visibility(self, session: ConnectionSession, payload: TodoSetVisibilityPayload) -> None:
        user_todos = await self.manager.set_todo_visibility(
            session.room_id, session.person_id, payload.is_public, session.display_name
        )
        if user_todos is not None:
            await self.registry.broadcast(session.room_id, self._todos(user_todos))

    @staticmethod
    def _room_state(room: Room) -> dict:
        return server_message(ServerEvent.ROOM_STATE, room=room.to_wire())

    @staticmethod
    def _participants(room: Room) -> dict:
        return server_message(ServerEvent.PARTICIPANTS_UPDATE, participants=[p.to_wire() for p in room.participants])

    @staticmethod
    def _todos(user_todos: Dict[str, UserTodos], correlation: Optional[dict] = None) -> dict:
        if correlation is None:
            return server_message(ServerEvent.TODOS_UPDATE, userTodos=_wire_todos(user_todos))
        return server_message(ServerEvent.TODOS_UPDATE, userTodos=_wire_todos(user_todos), correlation=correlation)
