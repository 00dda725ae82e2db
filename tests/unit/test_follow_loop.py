"""
Unit tests for the timed follow loop.
"""
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.domain.models import FollowOptions
from src.exceptions import APIError, FollowAbortedError, OperationalError
from src.execution.plan_executor import ExecutionReport
from src.follow.follow_loop import FollowLoop


@pytest.fixture
def service():
    """FollowService double returning no plans."""
    svc = MagicMock()
    svc.follow_agent = AsyncMock(return_value=[])
    return svc


@pytest.fixture
def executor():
    ex = MagicMock()
    ex.execute_plans = AsyncMock(side_effect=lambda agent_id, plans, **kwargs: ExecutionReport(agent_id=agent_id))
    return ex


@pytest.fixture
def source(pos):
    return AsyncMock(return_value=[pos()])


def _loop(service, executor, source, **kwargs):
    kwargs.setdefault("sleep", AsyncMock())
    return FollowLoop("agent-1", service, executor, source, **kwargs)


class TestFollowLoop:

    @pytest.mark.asyncio
    async def test_runs_bounded_cycles_with_sleep_between(self, service, executor, source):
        """Loop runs max_cycles passes and sleeps only between them."""
        sleep = AsyncMock()
        loop = _loop(service, executor, source, interval_seconds=30, max_cycles=3, sleep=sleep)

        results = await loop.run()

        assert [r.cycle for r in results] == [1, 2, 3]
        assert all(r.ok for r in results)
        assert source.await_count == 3
        assert executor.execute_plans.await_count == 3
        assert sleep.await_count == 2
        assert 0 <= sleep.await_args.args[0] <= 30
        assert loop.active is False

    @pytest.mark.asyncio
    async def test_options_and_risk_only_reach_every_pass(self, service, executor, source):
        """The same options object and risk_only flag are used on each cycle."""
        options = FollowOptions()
        loop = _loop(service, executor, source, options=options, max_cycles=2, risk_only=True)

        await loop.run()

        for call in service.follow_agent.await_args_list:
            assert call.args[2] is options
        for call in executor.execute_plans.await_args_list:
            assert call.kwargs["risk_only"] is True

    @pytest.mark.asyncio
    async def test_source_failure_skips_cycle_and_continues(self, service, executor, source, pos):
        """A failed source fetch is reported and the next cycle still runs."""
        source.side_effect = [APIError("feed down"), [pos()]]
        results = await _loop(service, executor, source, max_cycles=2).run()

        assert [r.ok for r in results] == [False, True]
        assert "feed down" in results[0].error
        assert service.follow_agent.await_count == 1

    @pytest.mark.asyncio
    async def test_pass_failure_continues(self, service, executor, source):
        """A domain error inside the pass becomes a failed cycle, not a crash."""
        service.follow_agent.side_effect = [FollowAbortedError("abort"), []]
        results = await _loop(service, executor, source, max_cycles=2).run()

        assert [r.ok for r in results] == [False, True]
        executor.execute_plans.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_execution_failure_halts_loop(self, service, executor, source):
        """A ledger failure while executing stops the loop."""
        executor.execute_plans.side_effect = OperationalError("ledger down")
        loop = _loop(service, executor, source, max_cycles=5)

        results = await loop.run()

        assert len(results) == 1
        assert loop.halted is True

    @pytest.mark.asyncio
    async def test_stop_from_callback_ends_loop(self, service, executor, source):
        """stop() called from on_cycle ends the loop after the current pass."""
        seen = []

        def on_cycle(result):
            seen.append(result.cycle)
            if result.cycle == 2:
                loop.stop()

        loop = _loop(service, executor, source, on_cycle=on_cycle)
        await loop.run()

        assert seen == [1, 2]
        assert loop.halted is False

    @pytest.mark.asyncio
    async def test_locks_do_not_accumulate(self, service, executor, source):
        """The shared lock registry is empty between cycles."""
        loop = _loop(service, executor, source, max_cycles=3)
        await loop.run()
        assert len(loop.locks) == 0

