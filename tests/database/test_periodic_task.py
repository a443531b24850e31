"""
Tests for PeriodicTask
"""

import asyncio

import pytest

from stat_tracker.database.periodic import PeriodicTask


class TestPeriodicTask:
    """Ticking, error tolerance and stopping."""

    def test_ticks_until_stopped(self):
        async def scenario():
            calls = []

            async def tick():
                calls.append(1)

            task = PeriodicTask("tick", 0.005, tick)
            task.start()
            assert task.running
            for _ in range(200):
                if len(calls) >= 3:
                    break
                await asyncio.sleep(0.005)
            await task.stop()

            assert not task.running
            count = len(calls)
            await asyncio.sleep(0.02)
            assert len(calls) == count
            assert count >= 3

        asyncio.run(scenario())

    def test_failing_tick_keeps_running(self, caplog):
        async def scenario():
            calls = []

            async def tick():
                calls.append(1)
                raise RuntimeError("tick failed")

            task = PeriodicTask("failing", 0.005, tick)
            task.start()
            for _ in range(200):
                if len(calls) >= 2:
                    break
                await asyncio.sleep(0.005)
            await task.stop()
            return len(calls)

        with caplog.at_level("ERROR"):
            assert asyncio.run(scenario()) >= 2
        assert "tick failed" in caplog.text

    def test_stop_waits_for_running_tick(self):
        async def scenario():
            finished = []
            started = asyncio.Event()

            async def slow_tick():
                started.set()
                await asyncio.sleep(0.02)
                finished.append(1)

            task = PeriodicTask("slow", 0.001, slow_tick)
            task.start()
            await started.wait()
            await task.stop()

            assert finished == [1]
            assert task.ticks == 1

        asyncio.run(scenario())

    def test_stop_before_start(self):
        async def scenario():
            task = PeriodicTask("idle", 1.0, lambda: None)
            await task.stop()
            assert not task.running

        asyncio.run(scenario())

    def test_invalid_interval(self):
        with pytest.raises(ValueError):
            PeriodicTask("bad", 0, lambda: None)
