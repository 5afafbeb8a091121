"""
Expiry Sweeper - Periodic eviction of old scan tasks.

Tasks are evicted from both the active set and history once their reference
timestamp (completed_at, else started_at, else created_at) is older than the
expiry threshold. A RUNNING task is never evicted, however old it is.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog

from .task import ScanTask, TaskStatus, utcnow
from .task_store import TaskStore


@dataclass
class SweeperConfig:
    """Configuration for expiry sweeps"""
    expiry_hours: float = 24.0        # Age after which a task is evicted
    interval_seconds: float = 3600.0  # Time between sweeps


class ExpirySweeper:
    """
    Evicts expired tasks on a fixed schedule.

    Example:
        >>> sweeper = ExpirySweeper(store)
        >>> await sweeper.start()      # sweeps now, then every hour
        >>> evicted = await sweeper.manual_cleanup()
        >>> await sweeper.stop()
    """

    def __init__(
        self,
        store: TaskStore,
        config: Optional[SweeperConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize the sweeper.

        Args:
            store: Task store to sweep (its lock serializes the sweep)
            config: Sweep configuration (uses defaults if None)
            clock: UTC wall-clock source
        """
        self.store = store
        self.config = config or SweeperConfig()
        self._clock = clock or utcnow
        self._timer: Optional[asyncio.Task] = None
        self._next_run: Optional[datetime] = None
        self.total_evicted = 0

        self.logger = structlog.get_logger(__name__)

    @property
    def expiry(self) -> timedelta:
        return timedelta(hours=self.config.expiry_hours)

    @property
    def interval(self) -> timedelta:
        return timedelta(seconds=self.config.interval_seconds)

    def is_expired(self, task: ScanTask, now: datetime) -> bool:
        if task.status is TaskStatus.RUNNING:
            return False
        return now - task.reference_time > self.expiry

    async def sweep(self) -> int:
        """
        Run one sweep cycle.

        Returns:
            Number of tasks evicted
        """
        self.store.ensure_writable()
        async with self.store.lock:
            now = self._clock()
            evicted = self.store.evict(lambda task: self.is_expired(task, now))
            if evicted:
                self.store.commit()

        for task in evicted:
            self.logger.info(
                "task_expired",
                task_id=task.task_id,
                name=task.name,
                status=task.status.value,
                reference_time=task.reference_time.isoformat(),
            )

        if evicted:
            self.total_evicted += len(evicted)
            self.logger.info("sweep_complete", evicted=len(evicted))

        return len(evicted)

    async def manual_cleanup(self) -> int:
        """Trigger a sweep now and return the number of evicted tasks"""
        return await self.sweep()

    def next_cleanup_time(self) -> datetime:
        if self._next_run is not None and self.is_started:
            return self._next_run
        return self._clock() + self.interval

    @property
    def is_started(self) -> bool:
        return self._timer is not None and not self._timer.done()

    async def start(self) -> None:
        """Sweep once immediately, then schedule periodic sweeps"""
        await self.sweep()
        if not self.is_started:
            self._next_run = self._clock() + self.interval
            self._timer = asyncio.create_task(self._loop(), name="expiry-sweeper")
            self.logger.info("sweeper_started", interval_seconds=self.config.interval_seconds)

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.interval_seconds)
            try:
                await self.sweep()
            except Exception as e:
                self.logger.error("sweep_failed", error=str(e), exc_info=True)
            self._next_run = self._clock() + self.interval

    async def stop(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            await asyncio.gather(self._timer, return_exceptions=True)
            self._timer = None
            self._next_run = None
            self.logger.info("sweeper_stopped")
