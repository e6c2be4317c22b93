"""Tests for the periodic maintenance task."""

import asyncio
from unittest.mock import Mock

import pytest

from gatekeeper.security.maintenance import MaintenanceTask


class TestMaintenanceTask:
    """Test tick, start and stop."""

    def test_tick_runs_sweep(self):
        sweep = Mock(return_value={"expired_blocks": 2})
        task = MaintenanceTask(sweep, interval=60)

        assert task.tick(now=123.0) == {"expired_blocks": 2}
        sweep.assert_called_once_with(123.0)
        assert task.ticks == 1

    def test_tick_without_now_reads_injected_clock(self):
        sweep = Mock(return_value={})
        task = MaintenanceTask(sweep, interval=60, clock=lambda: 42.0)

        task.tick()

        sweep.assert_called_once_with(42.0)

    @pytest.mark.asyncio
    async def test_loop_ticks_until_stopped(self):
        sweep = Mock(return_value={})
        task = MaintenanceTask(sweep, interval=0.01)

        task.start()
        await asyncio.sleep(0.1)
        await task.stop()

        assert sweep.call_count >= 1
        assert task.task is None
        calls = sweep.call_count
        await asyncio.sleep(0.05)
        assert sweep.call_count == calls

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self):
        task = MaintenanceTask(Mock(return_value={}), interval=60)

        task.start()
        first = task.task
        task.start()

        assert task.task is first
        await task.stop()

    @pytest.mark.asyncio
    async def test_sweep_errors_do_not_kill_loop(self):
        calls = []

        def sweep(now):
            calls.append(now)
            if len(calls) == 1:
                raise RuntimeError("boom")
            return {}

        task = MaintenanceTask(sweep, interval=0.01)

        task.start()
        await asyncio.sleep(0.1)
        await task.stop()

        assert len(calls) >= 2

    @pytest.mark.asyncio
    async def test_stop_without_start(self):
        await MaintenanceTask(Mock(), interval=60).stop()
