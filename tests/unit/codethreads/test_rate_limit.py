"""Tests for the auto-resume scheduler."""

from __future__ import annotations

import asyncio

import pytest

from codethreads.coordinator.rate_limit import AutoResumeScheduler, format_retry_time


class FakeClock:
    def __init__(self, now: float) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestDeadlines:
    def test_deadline_is_timestamp_plus_cooldown(self) -> None:
        scheduler = AutoResumeScheduler(cooldown_seconds=300, clock=FakeClock(0))
        assert scheduler.deadline(1700000000) == 1700000300

    def test_delay_shrinks_with_elapsed_time(self) -> None:
        clock = FakeClock(1700000100)
        scheduler = AutoResumeScheduler(cooldown_seconds=300, clock=clock)
        assert scheduler.delay_for(1700000000) == 200
        clock.now = 1700000500
        assert scheduler.delay_for(1700000000) == 0
        assert scheduler.is_due(1700000000) is True

    def test_not_due_before_deadline(self) -> None:
        scheduler = AutoResumeScheduler(cooldown_seconds=300, clock=FakeClock(1700000299))
        assert scheduler.is_due(1700000000) is False

    def test_format_retry_time(self) -> None:
        assert format_retry_time(1700000300) == "2023-11-14 22:18 UTC"


class TestTimers:
    @pytest.mark.asyncio
    async def test_timer_fires_once(self) -> None:
        fired: list[str] = []

        async def _fire(thread_id: str) -> None:
            fired.append(thread_id)

        scheduler = AutoResumeScheduler(cooldown_seconds=0, clock=FakeClock(100))
        delay = scheduler.schedule("t1", 100, _fire)
        assert delay == 0
        assert scheduler.has_timer("t1")

        await scheduler.wait_all()

        assert fired == ["t1"]
        assert scheduler.pending() == []

    @pytest.mark.asyncio
    async def test_reschedule_replaces_previous_timer(self) -> None:
        fired: list[str] = []

        async def _fire(thread_id: str) -> None:
            fired.append(thread_id)

        scheduler = AutoResumeScheduler(cooldown_seconds=3600, clock=FakeClock(0))
        scheduler.schedule("t1", 0, _fire)
        first = scheduler._timers["t1"]
        scheduler.schedule("t1", 0, _fire)
        await asyncio.sleep(0)

        assert first.cancelled()
        assert scheduler.pending() == ["t1"]
        scheduler.cancel_all()
        assert fired == []

    @pytest.mark.asyncio
    async def test_cancel(self) -> None:
        async def _fire(thread_id: str) -> None:
            raise AssertionError("should not fire")

        scheduler = AutoResumeScheduler(cooldown_seconds=3600, clock=FakeClock(0))
        scheduler.schedule("t1", 0, _fire)
        assert scheduler.cancel("t1") is True
        assert scheduler.cancel("t1") is False
        assert scheduler.has_timer("t1") is False

    @pytest.mark.asyncio
    async def test_fire_errors_are_contained(self) -> None:
        async def _fire(thread_id: str) -> None:
            raise RuntimeError("boom")

        scheduler = AutoResumeScheduler(cooldown_seconds=0, clock=FakeClock(0))
        scheduler.schedule("t1", 0, _fire)
        await scheduler.wait_all()
        assert scheduler.pending() == []

    @pytest.mark.asyncio
    async def test_rearm_from_inside_fire(self) -> None:
        scheduler = AutoResumeScheduler(cooldown_seconds=3600, clock=FakeClock(0))
        calls: list[str] = []

        async def _fire(thread_id: str) -> None:
            calls.append(thread_id)
            scheduler.schedule(thread_id, 0, _fire)

        scheduler.cooldown_seconds = 0
        scheduler.schedule("t1", 0, _fire)
        scheduler.cooldown_seconds = 3600
        task = scheduler._timers["t1"]
        await task

        assert calls == ["t1"]
        assert scheduler.has_timer("t1")
        scheduler.cancel_all()
