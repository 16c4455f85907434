"""Tests for story_engine.budget.BudgetWait with a fake clock."""

import asyncio

import pytest

from story_engine.budget import BudgetWait
from story_engine.llm import GenerationCancelled


class FakeClock:
    """Seconds-valued clock; sleep() advances it instead of waiting."""

    def __init__(self) -> None:
        self.now = 100.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


def _wait(clock: FakeClock, wait_ms: int = 2500, **kwargs) -> BudgetWait:
    return BudgetWait(wait_ms, clock=clock, sleep=clock.sleep, **kwargs)


class TestBudgetWait:
    async def test_starts_waiting_for_user(self) -> None:
        wait = _wait(FakeClock())
        assert wait.state == "waiting_for_user"
        assert wait.time_remaining_ms == 2500
        assert not wait.done

    async def test_does_not_count_down_until_resolved(self) -> None:
        clock = FakeClock()
        wait = _wait(clock)
        clock.now += 10
        await asyncio.sleep(0)
        assert not wait.done
        assert wait.time_remaining_ms == 2500

    async def test_resolve_counts_down_to_completion(self) -> None:
        clock = FakeClock()
        wait = _wait(clock, tick_seconds=1.0)
        assert wait.resolve()
        assert wait.state == "waiting_for_timer"
        assert wait.deadline == pytest.approx(102.5)
        await asyncio.wait_for(wait, timeout=1)
        assert wait.done
        assert wait.time_remaining_ms == 0
        # Two full ticks, then the half-second remainder.
        assert clock.sleeps == pytest.approx([1.0, 1.0, 0.5])

    async def test_remaining_time_is_derived_from_deadline(self) -> None:
        clock = FakeClock()
        seen: list[int] = []
        wait = _wait(clock, wait_ms=2000, tick_seconds=1.0)
        wait._on_change = lambda: seen.append(wait.time_remaining_ms)

        async def slow_sleep(seconds: float) -> None:
            # The loop runs late: more time passes than was asked for.
            clock.now += seconds * 1.5
            await asyncio.sleep(0)

        wait._sleep = slow_sleep
        wait.resolve()
        await asyncio.wait_for(wait, timeout=1)
        assert seen[1:] == [2000, 500, 0]

    async def test_second_resolve_is_noop(self) -> None:
        wait = _wait(FakeClock())
        assert wait.resolve()
        assert not wait.resolve()
        await asyncio.wait_for(wait, timeout=1)

    async def test_reject_before_resolve_raises_cancelled(self) -> None:
        wait = _wait(FakeClock())
        assert wait.reject()
        with pytest.raises(GenerationCancelled):
            await wait

    async def test_reject_during_countdown_stops_timer(self) -> None:
        clock = FakeClock()
        wait = _wait(clock, wait_ms=60_000)
        wait.resolve()
        await asyncio.sleep(0)
        assert wait.reject()
        with pytest.raises(GenerationCancelled):
            await wait
        ticks = len(clock.sleeps)
        for _ in range(5):
            await asyncio.sleep(0)
        assert len(clock.sleeps) == ticks

    async def test_reject_after_completion_is_noop(self) -> None:
        wait = _wait(FakeClock(), wait_ms=0)
        wait.resolve()
        await asyncio.wait_for(wait, timeout=1)
        assert not wait.reject()

    async def test_zero_wait_completes_immediately_after_resolve(self) -> None:
        clock = FakeClock()
        wait = _wait(clock, wait_ms=0)
        wait.resolve()
        await asyncio.wait_for(wait, timeout=1)
        assert clock.sleeps == []
