"""Pure phase/countdown logic for a room timer.

Nothing in here touches the store or the clock: every function takes the
current ``TimerState``, the room settings and a millisecond timestamp, and
returns a new ``TimerState`` (inputs are never mutated). Conflict resolution
between competing commands is decided by an ``OrderingPolicy``; the room
manager applies it before calling into these transitions.
"""
import math
import time
from dataclasses import dataclass
from typing import Optional, Protocol

from schemas.rooms import Phase, RoomSettings, TimerState


@dataclass(frozen=True)
class Transition:
    timer: TimerState
    changed: bool


@dataclass(frozen=True)
class SkipGuard:
    """Expected live state for a compare-and-swap skip."""
    phase: Phase
    phase_ends_at: Optional[int]
    running: bool


class OrderingPolicy(Protocol):
    def accepts(self, command_ts: int, last_updated_at: int) -> bool:
        ...


class TimestampOrdering:
    """Last-write-wins on command timestamps.

    Equal timestamps are accepted, so of two commands stamped with the same
    millisecond the one that arrives later is the one that sticks.
    """

    def accepts(self, command_ts: int, last_updated_at: int) -> bool:
        return command_ts >= last_updated_at


def now_ms() -> int:
    return int(time.time() * 1000)


def phase_duration(phase: Phase, settings: RoomSettings) -> int:
    if phase == Phase.FOCUS:
        return settings.focus_sec
    if phase == Phase.BREAK:
        return settings.break_sec
    return settings.long_break_sec


def initial_timer(settings: RoomSettings) -> TimerState:
    return TimerState(
        running=False,
        phase=Phase.FOCUS,
        phase_ends_at=None,
        remaining_sec_when_paused=settings.focus_sec,
        cycle_count=0,
        last_updated_at=0,
    )


def seconds_until(deadline_ms: int, now: int) -> int:
    return max(0, math.ceil((deadline_ms - now) / 1000))


def remaining_seconds(timer: TimerState, now: int) -> int:
    if not timer.running or timer.phase_ends_at is None:
        return timer.remaining_sec_when_paused
    return seconds_until(timer.phase_ends_at, now)


def start(timer: TimerState, now: int) -> Transition:
    if timer.running:
        return Transition(timer, False)
    updated = timer.model_copy(update={
        "running": True,
        "phase_ends_at": now + timer.remaining_sec_when_paused * 1000,
    })
    return Transition(updated, True)


def pause(timer: TimerState, settings: RoomSettings, now: int) -> Transition:
    if not timer.running:
        return Transition(timer, False)
    remaining = remaining_seconds(timer, now)
    # settings may have shrunk the phase while it was running
    remaining = min(remaining, phase_duration(timer.phase, settings))
    updated = timer.model_copy(update={
        "running": False,
        "phase_ends_at": None,
        "remaining_sec_when_paused": remaining,
    })
    return Transition(updated, True)


def reset(timer: TimerState, settings: RoomSettings) -> Transition:
    updated = timer.model_copy(update={
        "running": False,
        "phase_ends_at": None,
        "remaining_sec_when_paused": phase_duration(timer.phase, settings),
    })
    return Transition(updated, updated != timer)


def next_phase(timer: TimerState, settings: RoomSettings) -> tuple:
    """Return ``(phase, cycle_count)`` that a skip from ``timer`` lands on."""
    if timer.phase == Phase.FOCUS:
        cycle_count = timer.cycle_count + 1
        if cycle_count % settings.long_break_every == 0:
            return Phase.LONG_BREAK, cycle_count
        return Phase.BREAK, cycle_count
    return Phase.FOCUS, timer.cycle_count


def skip(timer: TimerState, settings: RoomSettings) -> Transition:
    phase, cycle_count = next_phase(timer, settings)
    updated = timer.model_copy(update={
        "running": False,
        "phase": phase,
        "phase_ends_at": None,
        "remaining_sec_when_paused": phase_duration(phase, settings),
        "cycle_count": cycle_count,
    })
    return Transition(updated, True)


def apply_settings(timer: TimerState, settings: RoomSettings) -> Transition:
    # a running phase keeps its deadline; new durations apply from the next phase
    if timer.running:
        return Transition(timer, False)
    duration = phase_duration(timer.phase, settings)
    if duration == timer.remaining_sec_when_paused:
        return Transition(timer, False)
    return Transition(timer.model_copy(update={"remaining_sec_when_paused": duration}), True)


def guard_matches(timer: TimerState, guard: Optional[SkipGuard]) -> bool:
    if guard is None:
        return True
    return (
        timer.phase == guard.phase
        and timer.running == guard.running
        and timer.phase_ends_at == guard.phase_ends_at
    )


def is_near_zero(timer: TimerState, now: int, grace_ms: int) -> bool:
    """True when an automatic end-of-phase skip is plausible at ``now``."""
    if timer.running and timer.phase_ends_at is not None:
        return timer.phase_ends_at - now <= grace_ms
    return timer.remaining_sec_when_paused <= 0
