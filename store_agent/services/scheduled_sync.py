"""
Background scheduler that keeps the embedding index in step with the domain data.
"""

import asyncio
from enum import Enum
from typing import List, Optional

from ..models.core import PerformanceMetrics, SyncReport
from ..utils.config import SyncConfig, config
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import utc_now
from .document_sync import DocumentSyncer

logger = get_logger(__name__)


class SchedulerState(str, Enum):
    UNINITIALIZED = 'uninitialized'
    INITIALIZING = 'initializing'
    RUNNING = 'running'
    STOPPED = 'stopped'


class ScheduledSync:
    """Runs DocumentSyncer.sync_all_data at startup, on an interval and on a short tick.

    The interval loop and the tick loop are independent; overlapping passes are
    skipped by the syncer's own running guard.
    """

    def __init__(self, syncer: DocumentSyncer, metrics: Optional[PerformanceMetrics] = None, sync_config: Optional[SyncConfig] = None):
        self.syncer = syncer
        self.metrics = metrics or PerformanceMetrics()
        self.config = sync_config or config.sync
        self.state = SchedulerState.UNINITIALIZED
        self._tasks: List[asyncio.Task] = []

    @property
    def is_running(self) -> bool:
        return self.state == SchedulerState.RUNNING

    async def start(self) -> None:
        """Validate the schedule and start the background tasks.

        Raises:
            ValueError: If the configured intervals are invalid
            RuntimeError: If the scheduler was already started
        """
        if self.state != SchedulerState.UNINITIALIZED:
            raise RuntimeError(f'Scheduler cannot start from state {self.state.value}')

        self.state = SchedulerState.INITIALIZING
        try:
            if self.config.interval_minutes <= 0:
                raise ValueError(f'Sync interval must be positive, got {self.config.interval_minutes}')
            if self.config.tick_minutes < 0:
                raise ValueError(f'Sync tick must not be negative, got {self.config.tick_minutes}')
        except ValueError:
            self.state = SchedulerState.UNINITIALIZED
            raise

        if self.config.run_on_startup:
            self._tasks.append(asyncio.create_task(self.run_once('startup'), name='sync-startup'))
        self._tasks.append(asyncio.create_task(self._loop('interval', self.config.interval_minutes * 60), name='sync-interval'))
        if self.config.tick_minutes:
            self._tasks.append(asyncio.create_task(self._loop('tick', self.config.tick_minutes * 60), name='sync-tick'))

        self.state = SchedulerState.RUNNING
        logger.info(f'Scheduled sync running (interval {self.config.interval_minutes} min, tick {self.config.tick_minutes} min)')

    async def _loop(self, trigger: str, period_seconds: float) -> None:
        while True:
            await asyncio.sleep(period_seconds)
            await self.run_once(trigger)

    async def run_once(self, trigger: str = 'manual') -> Optional[SyncReport]:
        """Run one full sync pass; failures are logged and never raised."""
        if self.state == SchedulerState.STOPPED:
            return None

        logger.info(f'Starting {trigger} sync')
        try:
            report = await self.syncer.sync_all_data()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(f'{trigger} sync failed')
            return None

        if report is None:
            logger.info(f'{trigger} sync skipped, previous run still in progress')
            return None

        self.metrics.record_sync_report(report, trigger, utc_now())
        if report.failed:
            logger.warning(f'{trigger} sync finished with failures: {sorted(report.failed)}')
        return report

    async def stop(self) -> None:
        """Cancel all scheduled work and wait for it to finish."""
        if self.state == SchedulerState.STOPPED:
            return

        self.state = SchedulerState.STOPPED
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info('Scheduled sync stopped')
