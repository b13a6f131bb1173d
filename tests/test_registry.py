"""Tests for TimerRegistry bookkeeping and tick scheduling."""

import asyncio
from unittest.mock import MagicMock

import pytest

from tag_timer.accrual import TimerState, TimerStatus, base62_encode
from tag_timer.registry import TimerRegistry

from conftest import run


def state(timer_id: str = "abc", accumulated: int = 0) -> TimerState:
    return TimerState(timer_id, TimerStatus.RUNNING, accumulated, 100)


async def noop_tick(timer_id: str) -> None:
    pass


@pytest.fixture
def scheduler():
    scheduler = MagicMock()
    scheduler.add_job = MagicMock()
    scheduler.remove_job = MagicMock()
    scheduler.get_job = MagicMock(return_value=None)
    return scheduler


@pytest.fixture
def registry(scheduler):
    return TimerRegistry(tick_seconds=1, scheduler=scheduler)


class TestTicking:
    def test_start_schedules_one_job(self, registry, scheduler):
        assert registry.start_ticking("abc", state(), noop_tick)
        scheduler.add_job.assert_called_once()
        kwargs = scheduler.add_job.call_args.kwargs
        assert kwargs["id"] == "tick:abc"
        assert kwargs["args"] == ["abc"]
        assert kwargs["max_instances"] == 1
        assert kwargs["coalesce"] is True
        assert registry.is_active("abc")

    def test_start_is_idempotent(self, registry, scheduler):
        registry.start_ticking("abc", state(), noop_tick)
        assert not registry.start_ticking("abc", state(accumulated=9), noop_tick)
        assert scheduler.add_job.call_count == 1
        assert registry.get("abc").accumulated_seconds == 0

    def test_stop_returns_last_state(self, registry, scheduler):
        registry.start_ticking("abc", state(), noop_tick)
        registry.update("abc", state(accumulated=7))
        scheduler.get_job.return_value = object()

        stopped = registry.stop_ticking("abc")
        assert stopped.accumulated_seconds == 7
        scheduler.remove_job.assert_called_once_with("tick:abc")
        assert not registry.is_active("abc")

    def test_stop_unknown_is_noop(self, registry, scheduler):
        assert registry.stop_ticking("nope") is None
        scheduler.remove_job.assert_not_called()

    def test_update_ignores_inactive(self, registry):
        registry.update("ghost", state("ghost"))
        assert registry.get("ghost") is None

    def test_snapshot_is_a_copy(self, registry):
        registry.start_ticking("a", state("a"), noop_tick)
        registry.start_ticking("b", state("b"), noop_tick)
        snapshot = registry.snapshot_all()
        registry.stop_ticking("a")
        assert set(snapshot) == {"a", "b"}
        assert registry.active_ids == ["b"]

    def test_clear(self, registry):
        registry.start_ticking("a", state("a"), noop_tick)
        registry.clear()
        assert registry.active_ids == []
        assert not registry.started_this_session("a")

    def test_session_starts_survive_stop(self, registry):
        registry.start_ticking("a", state("a"), noop_tick)
        registry.stop_ticking("a")
        assert registry.started_this_session("a")


class TestTimerIds:
    def test_id_from_timestamp(self, registry):
        assert registry.new_timer_id(12345) == base62_encode(12345)

    def test_collision_bumps(self, registry):
        first = registry.new_timer_id(1_700_000_000_000)
        second = registry.new_timer_id(1_700_000_000_000)
        assert first != second
        assert second == base62_encode(1_700_000_000_001)

    def test_active_ids_are_not_reissued(self, registry):
        registry.start_ticking(base62_encode(500), state(base62_encode(500)), noop_tick)
        assert registry.new_timer_id(500) == base62_encode(501)


class TestRealScheduler:
    def test_ticks_fire_and_stop(self):
        async def scenario():
            registry = TimerRegistry(tick_seconds=1)
            seen = []
            fired = asyncio.Event()

            async def on_tick(timer_id):
                seen.append(timer_id)
                fired.set()

            registry.start_ticking("abc", state(), on_tick)
            await asyncio.wait_for(fired.wait(), timeout=5)
            registry.stop_ticking("abc")
            assert registry.scheduler.get_job("tick:abc") is None
            registry.clear()
            return seen

        assert run(scenario())[0] == "abc"
