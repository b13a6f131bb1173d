"""Accrual engine: pure logic, no I/O.

All time values are integer epoch seconds. The current time is always
passed in so every transition is deterministic.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum

BASE62_CHARS = "0123456789abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ"

DEFAULT_SLEEP_GAP_SECONDS = 60
DEFAULT_MAX_STEP_SECONDS = 5


class TimerStatus(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"


class TimerAction(str, Enum):
    START = "start"
    CONTINUE = "continue"
    PAUSE = "pause"
    TICK = "tick"
    RESTORE = "restore"
    FORCE_PAUSE = "forcepause"
    DELETE = "delete"


@dataclass(frozen=True)
class TimerState:
    id: str
    status: TimerStatus
    accumulated_seconds: int
    last_event: int

    @property
    def running(self) -> bool:
        return self.status == TimerStatus.RUNNING


@dataclass(frozen=True)
class AccrualLimits:
    """Bounds applied to a single accrual step."""

    sleep_gap_seconds: int = DEFAULT_SLEEP_GAP_SECONDS
    max_step_seconds: int = DEFAULT_MAX_STEP_SECONDS


def base62_encode(value: int) -> str:
    """Shortest-form base-62 encoding. Zero encodes as ``t0``."""
    if value <= 0:
        return "t0"
    result = ""
    while value > 0:
        value, digit = divmod(value, 62)
        result = BASE62_CHARS[digit] + result
    return result


def capped_elapsed(last_event: int, now: int, limits: AccrualLimits = AccrualLimits()) -> int:
    """Seconds to credit for the interval ``[last_event, now]``.

    A gap larger than the sleep gap means the host was suspended or the
    process was gone, so nothing is credited. Otherwise the step is capped
    at ``max_step_seconds``.
    """
    gap = max(0, now - last_event)
    if gap > limits.sleep_gap_seconds:
        return 0
    return min(gap, limits.max_step_seconds)


def calculate(
        action: TimerAction,
        state: TimerState | None,
        now: int,
        limits: AccrualLimits = AccrualLimits(),
        new_id: str | None = None,
) -> TimerState:
    """Return the state that results from applying ``action`` at ``now``.

    Total: never raises. ``start`` ignores ``state`` and needs ``new_id``
    (falls back to the base-62 encoding of ``now``). Every other action
    on a missing state produces a fresh paused timer with that id so
    callers always receive a well-formed state.
    """
    if action == TimerAction.START or state is None:
        timer_id = new_id or base62_encode(now * 1000)
        if action == TimerAction.START:
            return TimerState(timer_id, TimerStatus.RUNNING, 0, now)
        return TimerState(timer_id, TimerStatus.PAUSED, 0, now)

    if action == TimerAction.CONTINUE:
        if state.running:
            return state
        return replace(state, status=TimerStatus.RUNNING, last_event=now)

    if action == TimerAction.PAUSE:
        if not state.running:
            return state
        credit = capped_elapsed(state.last_event, now, limits)
        return replace(
            state,
            status=TimerStatus.PAUSED,
            accumulated_seconds=state.accumulated_seconds + credit,
            last_event=now,
        )

    if action == TimerAction.TICK:
        if not state.running:
            return state
        credit = capped_elapsed(state.last_event, now, limits)
        return replace(state, accumulated_seconds=state.accumulated_seconds + credit, last_event=now)

    if action == TimerAction.RESTORE:
        # No backfill: time spent while the document was closed is not work.
        return replace(state, status=TimerStatus.RUNNING, last_event=now)

    if action == TimerAction.FORCE_PAUSE:
        return replace(state, status=TimerStatus.PAUSED)

    # DELETE: final snapshot, teardown is the caller's job
    return state
