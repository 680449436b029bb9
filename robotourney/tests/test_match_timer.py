"""
Tests for the server-side match timer.
Time is driven by a fake millisecond clock; ticks run every millisecond.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from robotourney.models.schemas import EventType
from robotourney.services.match_timer import MatchTimerService


class FakeClock:
    def __init__(self, now=1_000_000):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def broadcast():
    mock = AsyncMock()
    mock.publish = AsyncMock(return_value=1)
    return mock


@pytest.fixture
def timers(broadcast, clock):
    return MatchTimerService(broadcast, tick_seconds=0.001, clock=clock)


def pushed(broadcast):
    calls = broadcast.publish.call_args_list
    assert all(call.args[0] == EventType.TIMER_UPDATE for call in calls)
    return [call.args[1] for call in calls]


async def settle():
    await asyncio.sleep(0.02)


@pytest.mark.asyncio
async def test_start_broadcasts_running_timer(timers, broadcast):
    state = await timers.start("T", "F1", 150_000)

    assert state.is_running is True
    assert state.remaining == 150_000
    first = pushed(broadcast)[0]
    assert first.tournament_id == "T"
    assert first.field_id == "F1"
    assert first.is_running is True
    assert timers.is_ticking("T", "F1")
    await timers.shutdown()


@pytest.mark.asyncio
async def test_tick_counts_whole_seconds(timers, broadcast, clock):
    await timers.start("T", None, 5000)

    clock.now += 2500
    await settle()

    assert pushed(broadcast)[-1].remaining == 3000
    assert timers.get_state("T").remaining == 3000
    await timers.shutdown()


@pytest.mark.asyncio
async def test_timer_stops_at_zero(timers, broadcast, clock):
    await timers.start("T", None, 2000)

    clock.now += 10_000
    await settle()

    last = pushed(broadcast)[-1]
    assert last.remaining == 0
    assert last.is_running is False
    assert not timers.is_ticking("T")


@pytest.mark.asyncio
async def test_restart_supersedes_previous_task(timers):
    await timers.start("T", "F1", 60_000)
    first_task = timers.timers[("T", "F1")].task

    await timers.start("T", "F1", 30_000)
    second_task = timers.timers[("T", "F1")].task

    assert first_task is not second_task
    assert first_task.cancelled()
    assert not second_task.done()
    await timers.shutdown()


@pytest.mark.asyncio
async def test_pause_keeps_remaining_and_stops_pushes(timers, broadcast, clock):
    await timers.start("T", None, 10_000)
    clock.now += 4200
    await settle()

    paused = await timers.pause("T", None)
    assert paused.is_running is False
    assert paused.remaining == 6000
    assert paused.paused_at == clock.now

    count = broadcast.publish.call_count
    clock.now += 3000
    await settle()
    assert broadcast.publish.call_count == count
    assert not timers.is_ticking("T")


@pytest.mark.asyncio
async def test_resume_back_dates_start(timers, clock):
    state = await timers.start("T", None, 10_000, remaining=6000)

    assert state.remaining == 6000
    assert state.started_at == clock.now - 4000
    await timers.shutdown()


@pytest.mark.asyncio
async def test_reset_restores_full_duration(timers, broadcast, clock):
    await timers.start("T", "F2", 8000)
    clock.now += 3000
    await settle()

    state = await timers.reset("T", "F2", 8000)

    assert state.remaining == 8000
    assert state.is_running is False
    assert pushed(broadcast)[-1].remaining == 8000
    assert not timers.is_ticking("T", "F2")


@pytest.mark.asyncio
async def test_timers_are_independent_per_field(timers):
    await timers.start("T", "F1", 5000)
    await timers.start("T", "F2", 5000)
    await timers.pause("T", "F1")

    assert not timers.is_ticking("T", "F1")
    assert timers.is_ticking("T", "F2")
    await timers.shutdown()


@pytest.mark.asyncio
async def test_pause_unknown_timer(timers, broadcast):
    assert await timers.pause("T", "F9") is None
    broadcast.publish.assert_not_called()


@pytest.mark.asyncio
async def test_shutdown_cancels_everything(timers):
    await timers.start("T", "F1", 5000)
    await timers.start("U", None, 5000)

    await timers.shutdown()

    assert not timers.is_ticking("T", "F1")
    assert not timers.is_ticking("U")


def ticking_tasks():
    return [
        task for task in asyncio.all_tasks()
        if task.get_coro().__name__ == "_run" and not task.done()
    ]


@pytest.fixture
def slow_timers(clock):
    async def slow_publish(event, payload, sender=None):
        await asyncio.sleep(0.01)
        return 1

    broadcast = AsyncMock()
    broadcast.publish = AsyncMock(side_effect=slow_publish)
    return MatchTimerService(broadcast, tick_seconds=0.001, clock=clock)


@pytest.mark.asyncio
async def test_concurrent_starts_leave_one_ticking_task(slow_timers):
    await asyncio.gather(
        slow_timers.start("T", None, 150_000),
        slow_timers.start("T", None, 150_000),
    )

    assert len(ticking_tasks()) == 1
    assert ticking_tasks()[0] is slow_timers.timers[("T", None)].task

    await slow_timers.shutdown()
    await asyncio.sleep(0)
    assert ticking_tasks() == []


@pytest.mark.asyncio
async def test_reset_waits_for_start_in_flight(slow_timers):
    await asyncio.gather(
        slow_timers.start("T", "F1", 60_000),
        slow_timers.reset("T", "F1", 60_000),
    )

    assert ticking_tasks() == []
    assert slow_timers.get_state("T", "F1") is None


@pytest.mark.asyncio
async def test_reset_forgets_timer(timers, broadcast):
    await timers.start("T", "F1", 8000)
    await timers.reset("T", "F1", 8000)

    assert timers.timers == {}
    assert timers.get_state("T", "F1") is None
    assert pushed(broadcast)[-1].remaining == 8000

    # A later start creates a fresh timer
    state = await timers.start("T", "F1", 5000)
    assert state.remaining == 5000
    await timers.shutdown()
