"""Tests for the pure timer transitions."""

import pytest

import timer_machine
from schemas.rooms import Phase, RoomSettings, TimerState
from timer_machine import SkipGuard, TimestampOrdering


@pytest.fixture
def settings() -> RoomSettings:
    return RoomSettings(focus_sec=1500, break_sec=300, long_break_sec=900, long_break_every=4)


def test_initial_timer_is_paused_focus(settings):
    timer = timer_machine.initial_timer(settings)
    assert timer.running is False
    assert timer.phase == Phase.FOCUS
    assert timer.phase_ends_at is None
    assert timer.remaining_sec_when_paused == 1500
    assert timer.cycle_count == 0


def test_start_sets_deadline_from_remaining(settings):
    timer = timer_machine.initial_timer(settings)
    result = timer_machine.start(timer, now=0)
    assert result.changed is True
    assert result.timer.running is True
    assert result.timer.phase_ends_at == 1_500_000


def test_start_while_running_keeps_deadline(settings):
    running = timer_machine.start(timer_machine.initial_timer(settings), now=0).timer
    result = timer_machine.start(running, now=60_000)
    assert result.changed is False
    assert result.timer.phase_ends_at == 1_500_000


def test_start_does_not_mutate_input(settings):
    timer = timer_machine.initial_timer(settings)
    timer_machine.start(timer, now=0)
    assert timer.running is False
    assert timer.phase_ends_at is None


def test_pause_rounds_remaining_up(settings):
    running = timer_machine.start(timer_machine.initial_timer(settings), now=0).timer
    result = timer_machine.pause(running, settings, now=600_001)
    assert result.timer.running is False
    assert result.timer.phase_ends_at is None
    # 899.999s left rounds up to 900
    assert result.timer.remaining_sec_when_paused == 900


def test_pause_after_deadline_floors_at_zero(settings):
    running = timer_machine.start(timer_machine.initial_timer(settings), now=0).timer
    result = timer_machine.pause(running, settings, now=2_000_000)
    assert result.timer.remaining_sec_when_paused == 0


@pytest.mark.parametrize("remaining", [0, 1, 300, 1500])
def test_pause_when_paused_is_identity(settings, remaining):
    timer = TimerState(remaining_sec_when_paused=remaining, last_updated_at=42)
    result = timer_machine.pause(timer, settings, now=10_000)
    assert result.changed is False
    assert result.timer == timer


def test_pause_clamps_to_shrunk_duration():
    settings = RoomSettings(focus_sec=1500)
    running = timer_machine.start(timer_machine.initial_timer(settings), now=0).timer
    shorter = settings.model_copy(update={"focus_sec": 600})
    result = timer_machine.pause(running, shorter, now=1000)
    assert result.timer.remaining_sec_when_paused == 600


def test_reset_restores_phase_duration(settings):
    timer = TimerState(phase=Phase.BREAK, running=True, phase_ends_at=50_000, remaining_sec_when_paused=10)
    result = timer_machine.reset(timer, settings)
    assert result.timer.running is False
    assert result.timer.phase == Phase.BREAK
    assert result.timer.phase_ends_at is None
    assert result.timer.remaining_sec_when_paused == 300


def test_skip_cycle_law(settings):
    """Four focus skips land on Break, Break, Break, LongBreak; then back to Focus."""
    timer = timer_machine.initial_timer(settings)
    visited = []
    for _ in range(4):
        assert timer.phase == Phase.FOCUS
        timer = timer_machine.skip(timer, settings).timer
        visited.append((timer.phase, timer.cycle_count))
        if timer.phase == Phase.BREAK:
            timer = timer_machine.skip(timer, settings).timer
    assert visited == [
        (Phase.BREAK, 1),
        (Phase.BREAK, 2),
        (Phase.BREAK, 3),
        (Phase.LONG_BREAK, 4),
    ]
    timer = timer_machine.skip(timer, settings).timer
    assert timer.phase == Phase.FOCUS
    assert timer.cycle_count == 4
    assert timer.remaining_sec_when_paused == 1500


def test_consecutive_skips_from_focus(settings):
    timer = timer_machine.initial_timer(settings)
    phases = []
    for _ in range(5):
        timer = timer_machine.skip(timer, settings).timer
        phases.append((timer.phase, timer.cycle_count, timer.remaining_sec_when_paused))
    assert phases[0] == (Phase.BREAK, 1, 300)
    assert phases[1] == (Phase.FOCUS, 1, 1500)
    assert phases[2] == (Phase.BREAK, 2, 300)
    assert phases[3] == (Phase.FOCUS, 2, 1500)
    assert phases[4] == (Phase.BREAK, 3, 300)


def test_skip_from_long_break_returns_to_focus(settings):
    timer = TimerState(phase=Phase.LONG_BREAK, cycle_count=4, remaining_sec_when_paused=12)
    result = timer_machine.skip(timer, settings)
    assert result.timer.phase == Phase.FOCUS
    assert result.timer.cycle_count == 4
    assert result.timer.remaining_sec_when_paused == 1500


def test_skip_while_running_forces_pause(settings):
    running = timer_machine.start(timer_machine.initial_timer(settings), now=0).timer
    result = timer_machine.skip(running, settings)
    assert result.timer.running is False
    assert result.timer.phase_ends_at is None


def test_apply_settings_recomputes_when_paused():
    settings = RoomSettings(focus_sec=1200)
    timer = TimerState(phase=Phase.FOCUS, remaining_sec_when_paused=1500)
    result = timer_machine.apply_settings(timer, settings)
    assert result.changed is True
    assert result.timer.remaining_sec_when_paused == 1200


def test_apply_settings_leaves_running_timer_alone():
    settings = RoomSettings(focus_sec=1200)
    timer = TimerState(running=True, phase_ends_at=99_000, remaining_sec_when_paused=1500)
    result = timer_machine.apply_settings(timer, settings)
    assert result.changed is False
    assert result.timer.phase_ends_at == 99_000


def test_remaining_seconds(settings):
    assert timer_machine.remaining_seconds(TimerState(remaining_sec_when_paused=42), now=0) == 42
    running = TimerState(running=True, phase_ends_at=10_500)
    assert timer_machine.remaining_seconds(running, now=0) == 11
    assert timer_machine.remaining_seconds(running, now=20_000) == 0


def test_guard_matches_exactly():
    timer = TimerState(running=True, phase=Phase.FOCUS, phase_ends_at=5000)
    assert timer_machine.guard_matches(timer, None)
    assert timer_machine.guard_matches(timer, SkipGuard(Phase.FOCUS, 5000, True))
    assert not timer_machine.guard_matches(timer, SkipGuard(Phase.FOCUS, 5001, True))
    assert not timer_machine.guard_matches(timer, SkipGuard(Phase.BREAK, 5000, True))
    assert not timer_machine.guard_matches(timer, SkipGuard(Phase.FOCUS, 5000, False))


def test_is_near_zero_uses_grace_window():
    timer = TimerState(running=True, phase_ends_at=10_000)
    assert timer_machine.is_near_zero(timer, now=8_000, grace_ms=2000)
    assert timer_machine.is_near_zero(timer, now=12_000, grace_ms=2000)
    assert not timer_machine.is_near_zero(timer, now=7_999, grace_ms=2000)


def test_is_near_zero_when_paused():
    assert timer_machine.is_near_zero(TimerState(remaining_sec_when_paused=0), now=0, grace_ms=2000)
    assert not timer_machine.is_near_zero(TimerState(remaining_sec_when_paused=1), now=0, grace_ms=2000)


def test_timestamp_ordering_accepts_ties():
    ordering = TimestampOrdering()
    assert ordering.accepts(100, 100)
    assert ordering.accepts(101, 100)
    assert not ordering.accepts(99, 100)
