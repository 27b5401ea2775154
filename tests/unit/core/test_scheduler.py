"""
Unit tests for TaskScheduler.
"""

import asyncio
import logging

import pytest

from fleetsync.core.scheduler import TaskScheduler


class TestTimers:
    """call_later / call_every / cancel."""

    @pytest.mark.asyncio
    async def test_call_later_fires_once(self) -> None:
        scheduler = TaskScheduler("test")
        calls: list[str] = []

        key = scheduler.call_later(0.01, lambda: calls.append("x"))
        assert scheduler.is_scheduled(key)

        await asyncio.sleep(0.05)

        assert calls == ["x"]
        assert not scheduler.is_scheduled(key)

    @pytest.mark.asyncio
    async def test_same_key_replaces_pending_timer(self) -> None:
        scheduler = TaskScheduler("test")
        calls: list[str] = []

        scheduler.call_later(0.01, lambda: calls.append("first"), key="flush")
        scheduler.call_later(0.02, lambda: calls.append("second"), key="flush")
        await asyncio.sleep(0.06)

        assert calls == ["second"]

    @pytest.mark.asyncio
    async def test_cancel(self) -> None:
        scheduler = TaskScheduler("test")
        calls: list[str] = []
        scheduler.call_later(0.01, lambda: calls.append("x"), key="k")

        assert scheduler.cancel("k") is True
        assert scheduler.cancel("k") is False
        await asyncio.sleep(0.03)

        assert calls == []

    @pytest.mark.asyncio
    async def test_call_every_repeats_until_cancelled(self) -> None:
        scheduler = TaskScheduler("test")
        ticks: list[int] = []

        scheduler.call_every(0.01, lambda: ticks.append(1), key="tick")
        await asyncio.sleep(0.065)
        scheduler.cancel("tick")
        count = len(ticks)
        await asyncio.sleep(0.03)

        assert count >= 3
        assert len(ticks) == count

    def test_call_every_requires_positive_interval(self) -> None:
        scheduler = TaskScheduler("test")
        with pytest.raises(ValueError):
            scheduler.call_every(0, lambda: None)

    @pytest.mark.asyncio
    async def test_coroutine_callbacks_are_spawned(self) -> None:
        scheduler = TaskScheduler("test")
        done = asyncio.Event()

        async def work() -> None:
            done.set()

        scheduler.call_later(0.0, work)
        await asyncio.wait_for(done.wait(), timeout=0.5)

    @pytest.mark.asyncio
    async def test_failing_callback_is_logged_and_series_continues(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        scheduler = TaskScheduler("test")
        ticks: list[int] = []

        def flaky() -> None:
            ticks.append(1)
            raise RuntimeError("tick failed")

        with caplog.at_level(logging.ERROR, logger="fleetsync.core.scheduler"):
            scheduler.call_every(0.01, flaky, key="flaky")
            await asyncio.sleep(0.05)
            scheduler.cancel_all()

        assert len(ticks) >= 2
        assert "tick failed" in caplog.text


class TestTeardown:
    """cancel_all / close."""

    @pytest.mark.asyncio
    async def test_cancel_all_cancels_timers_and_tasks(self) -> None:
        scheduler = TaskScheduler("test")
        calls: list[str] = []

        scheduler.call_later(0.01, lambda: calls.append("timer"))
        scheduler.call_every(0.01, lambda: calls.append("every"))
        task = scheduler.spawn(asyncio.sleep(10))
        assert scheduler.pending == 3

        scheduler.cancel_all()
        await asyncio.sleep(0.03)

        assert calls == []
        assert task.cancelled()
        assert scheduler.pending == 0

    @pytest.mark.asyncio
    async def test_cancel_all_skips_calling_task(self) -> None:
        scheduler = TaskScheduler("test")
        finished: list[bool] = []

        async def teardown_from_inside() -> None:
            scheduler.cancel_all()
            await asyncio.sleep(0)
            finished.append(True)

        task = scheduler.spawn(teardown_from_inside())
        await task

        assert finished == [True]

    @pytest.mark.asyncio
    async def test_closed_scheduler_rejects_new_work(self) -> None:
        scheduler = TaskScheduler("test")
        scheduler.close()

        with pytest.raises(RuntimeError):
            scheduler.call_later(0.01, lambda: None)
        coro = asyncio.sleep(0)
        with pytest.raises(RuntimeError):
            scheduler.spawn(coro)
        coro.close()
