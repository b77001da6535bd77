"""
Reconciliation Engine - Scheduler.

Runs a reconciliation pass every `interval_seconds` until stopped.
A failed pass is logged and the loop carries on.
"""

import asyncio
import logging
from datetime import timedelta
from typing import List, Optional

from .config import ReconciliationConfig
from .errors import ReconciliationEngineError, ReconciliationFetchError
from .orchestrator import ReconciliationOrchestrator, ReconciliationSummary


logger = logging.getLogger(__name__)


class ReconciliationScheduler:
    """
    Periodic reconciliation loop.

    Usage:
        stop = asyncio.Event()
        await ReconciliationScheduler(orchestrator, config).run(stop)
    """

    def __init__(
        self,
        orchestrator: ReconciliationOrchestrator,
        config: Optional[ReconciliationConfig] = None,
        max_history: int = 100,
    ):
        self._orchestrator = orchestrator
        self._config = config or ReconciliationConfig()
        self._history: List[ReconciliationSummary] = []
        self._max_history = max_history
        self._passes = 0
        self._failures = 0

    @property
    def passes(self) -> int:
        return self._passes

    @property
    def failures(self) -> int:
        return self._failures

    def get_history(self, limit: int = 10) -> List[ReconciliationSummary]:
        return self._history[-limit:]

    async def run_once(self) -> Optional[ReconciliationSummary]:
        """One pass; None when it failed."""
        self._passes += 1
        lookback = timedelta(hours=self._config.lookback_hours)
        try:
            summary = await self._orchestrator.run_reconciliation(lookback)
        except ReconciliationFetchError as e:
            self._failures += 1
            logger.error(f"Scheduled reconciliation: 0 processed, fetch failed ({e})")
            return None
        except ReconciliationEngineError as e:
            self._failures += 1
            logger.error(f"Scheduled reconciliation failed: {e}")
            return None

        self._history.append(summary)
        if len(self._history) > self._max_history:
            self._history.pop(0)
        logger.info(f"Scheduled reconciliation {summary.run_id}: {summary.describe()}")
        return summary

    async def run(self, stop_event: asyncio.Event) -> None:
        """Loop until `stop_event` is set."""
        logger.info(f"Reconciliation scheduler started (every {self._config.interval_seconds}s)")
        while not stop_event.is_set():
            await self.run_once()
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self._config.interval_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info(f"Reconciliation scheduler stopped after {self._passes} passes ({self._failures} failed)")
