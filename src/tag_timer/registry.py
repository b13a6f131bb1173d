"""Active-timer bookkeeping and the per-timer tick schedule.

Each running timer owns one APScheduler interval job. ``max_instances=1``
guarantees a timer never has two ticks in flight at once; ``coalesce``
folds ticks missed during a stall into one.
"""

from __future__ import annotations

from typing import Awaitable, Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from tag_timer.accrual import TimerState, base62_encode
from tag_timer.log import get_logger

log = get_logger(__name__)

TickCallback = Callable[[str], Awaitable[None]]


def _job_id(timer_id: str) -> str:
    return f"tick:{timer_id}"


class TimerRegistry:
    """In-memory state of every ticking timer, owned by one engine instance."""

    def __init__(self, tick_seconds: int = 1, scheduler: Optional[AsyncIOScheduler] = None):
        self.tick_seconds = tick_seconds
        self._scheduler = scheduler
        self._owns_scheduler = scheduler is None
        self._states: dict[str, TimerState] = {}
        self._started: set[str] = set()
        self._issued: set[str] = set()

    # ---- Scheduler ----

    @property
    def scheduler(self) -> AsyncIOScheduler:
        """Created lazily so it binds to the running event loop."""
        if self._scheduler is None:
            self._scheduler = AsyncIOScheduler()
        if self._owns_scheduler and not self._scheduler.running:
            self._scheduler.start()
        return self._scheduler

    def new_timer_id(self, now_ms: int) -> str:
        """Base-62 id from a millisecond timestamp, bumped until unused."""
        timer_id = base62_encode(now_ms)
        while timer_id in self._issued or timer_id in self._states:
            now_ms += 1
            timer_id = base62_encode(now_ms)
        self._issued.add(timer_id)
        return timer_id

    # ---- Core methods ----

    def start_ticking(self, timer_id: str, initial_state: TimerState, on_tick: TickCallback) -> bool:
        """Begin ticking ``timer_id``. Returns False if it was already active."""
        if timer_id in self._states:
            return False
        self.scheduler.add_job(
            on_tick,
            trigger=IntervalTrigger(seconds=self.tick_seconds),
            args=[timer_id],
            id=_job_id(timer_id),
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self._states[timer_id] = initial_state
        self._started.add(timer_id)
        self._issued.add(timer_id)
        log.debug(f"Scheduled ticks for timer {timer_id} every {self.tick_seconds}s")
        return True

    def stop_ticking(self, timer_id: str) -> Optional[TimerState]:
        """Cancel ticks for ``timer_id`` and return its last state, if any."""
        state = self._states.pop(timer_id, None)
        if state is None:
            return None
        if self._scheduler is not None and self._scheduler.get_job(_job_id(timer_id)) is not None:
            self._scheduler.remove_job(_job_id(timer_id))
        log.debug(f"Stopped ticks for timer {timer_id}")
        return state

    def get(self, timer_id: str) -> Optional[TimerState]:
        return self._states.get(timer_id)

    def update(self, timer_id: str, state: TimerState) -> None:
        if timer_id in self._states:
            self._states[timer_id] = state

    def is_active(self, timer_id: str) -> bool:
        return timer_id in self._states

    def started_this_session(self, timer_id: str) -> bool:
        return timer_id in self._started

    @property
    def active_ids(self) -> list[str]:
        return list(self._states)

    def snapshot_all(self) -> dict[str, TimerState]:
        return dict(self._states)

    def clear(self) -> None:
        """Stop every active timer and forget this session's starts."""
        for timer_id in list(self._states):
            self.stop_ticking(timer_id)
        self._started.clear()
        if self._owns_scheduler and self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
