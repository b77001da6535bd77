"""
Reconciliation Scheduler Tests.
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from reconciliation_engine.config import ReconciliationConfig
from reconciliation_engine.errors import NetworkError, ReconciliationFetchError
from reconciliation_engine.orchestrator import ReconciliationSummary
from reconciliation_engine.scheduler import ReconciliationScheduler

from .factories import NOW


def _summary(run_id="REC_1"):
    return ReconciliationSummary(run_id=run_id, started_at=NOW, completed_at=NOW)


def _orchestrator(*outcomes):
    orchestrator = MagicMock()
    orchestrator.run_reconciliation = AsyncMock(side_effect=list(outcomes))
    return orchestrator


class TestRunOnce:
    """Tests for a single scheduled pass."""

    @pytest.mark.asyncio
    async def test_success_recorded(self):
        orchestrator = _orchestrator(_summary())
        scheduler = ReconciliationScheduler(orchestrator, ReconciliationConfig(lookback_hours=24))

        summary = await scheduler.run_once()

        assert summary.run_id == "REC_1"
        assert scheduler.passes == 1
        assert scheduler.failures == 0
        assert scheduler.get_history() == [summary]
        orchestrator.run_reconciliation.assert_awaited_once_with(timedelta(hours=24))

    @pytest.mark.asyncio
    async def test_fetch_failure_counted(self, caplog):
        orchestrator = _orchestrator(ReconciliationFetchError("Exchange fetch failed"))
        scheduler = ReconciliationScheduler(orchestrator)

        assert await scheduler.run_once() is None
        assert scheduler.failures == 1
        assert scheduler.get_history() == []
        assert "0 processed, fetch failed" in caplog.text

    @pytest.mark.asyncio
    async def test_history_bounded(self):
        orchestrator = _orchestrator(*[_summary(f"REC_{i}") for i in range(5)])
        scheduler = ReconciliationScheduler(orchestrator, max_history=3)

        for _ in range(5):
            await scheduler.run_once()

        assert [s.run_id for s in scheduler.get_history()] == ["REC_2", "REC_3", "REC_4"]
        assert [s.run_id for s in scheduler.get_history(limit=1)] == ["REC_4"]


class TestRunLoop:
    """Tests for the periodic loop."""

    @pytest.mark.asyncio
    async def test_stops_when_event_set(self):
        stop = asyncio.Event()
        calls = []

        async def run_reconciliation(lookback):
            calls.append(lookback)
            if len(calls) == 2:
                stop.set()
            return _summary(f"REC_{len(calls)}")

        orchestrator = MagicMock()
        orchestrator.run_reconciliation = run_reconciliation
        scheduler = ReconciliationScheduler(orchestrator, ReconciliationConfig(interval_seconds=0.01))

        await asyncio.wait_for(scheduler.run(stop), timeout=5)

        assert scheduler.passes == 2

    @pytest.mark.asyncio
    async def test_failed_pass_does_not_stop_loop(self):
        stop = asyncio.Event()
        outcomes = [ReconciliationFetchError("Exchange fetch failed"), _summary()]

        async def run_reconciliation(lookback):
            outcome = outcomes.pop(0)
            if not outcomes:
                stop.set()
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        orchestrator = MagicMock()
        orchestrator.run_reconciliation = run_reconciliation
        scheduler = ReconciliationScheduler(orchestrator, ReconciliationConfig(interval_seconds=0.01))

        await asyncio.wait_for(scheduler.run(stop), timeout=5)

        assert scheduler.passes == 2
        assert scheduler.failures == 1
        assert len(scheduler.get_history()) == 1

    @pytest.mark.asyncio
    async def test_preset_stop_runs_nothing(self):
        stop = asyncio.Event()
        stop.set()
        orchestrator = _orchestrator()
        scheduler = ReconciliationScheduler(orchestrator)

        await scheduler.run(stop)

        assert scheduler.passes == 0
        orchestrator.run_reconciliation.assert_not_awaited()


class TestWithOrchestrator:
    """Scheduler driving the real orchestrator."""

    @pytest.mark.asyncio
    async def test_gateway_outage_is_a_failed_pass(self, orchestrator, gateway):
        gateway.fail_next("get_active_orders", NetworkError("down"))
        scheduler = ReconciliationScheduler(orchestrator)

        assert await scheduler.run_once() is None
        assert await scheduler.run_once() is not None
        assert scheduler.failures == 1
