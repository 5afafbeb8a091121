"""
Scan Manager - Wires the scan engine together and owns its lifecycle.

This is the entry point used by the CLI:
1. Builds the store, rate limiter, cache, NVD source and retrying client
2. Loads persisted state (applying restart recovery)
3. Starts the expiry sweeper
4. Exposes the orchestrator for task operations

Usage:
    async with ScanManager(settings) as manager:
        task_id = await manager.orchestrator.create_task(None, packages, config)
        await manager.orchestrator.wait_for_idle()
"""

from datetime import datetime
from typing import Optional

import structlog

from ..sources.base_source import VulnerabilitySource
from ..sources.cache import ResultCache
from ..sources.nvd_source import NvdSource
from ..sources.retrying_client import RetryingClient
from .notifier import NotificationDispatcher, Notifier
from .orchestrator import ScanOrchestrator
from .persistence import JsonFileBackend, PersistenceError, StateBackend, StateLockedError
from .rate_limiter import SlidingWindowRateLimiter
from .settings import Settings
from .sweeper import ExpirySweeper
from .task_store import TaskStore


class ScanManager:
    """
    Owns every long-lived component of the scan engine.

    Example:
        >>> manager = ScanManager(Settings.load("config.yaml"))
        >>> await manager.open()
        >>> print(manager.orchestrator.get_status())
        >>> await manager.close()
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        backend: Optional[StateBackend] = None,
        remote: Optional[VulnerabilitySource] = None,
        local: Optional[VulnerabilitySource] = None,
        notifier: Optional[Notifier] = None,
    ):
        """
        Initialize the manager.

        Args:
            settings: Engine settings (defaults if None)
            backend: State backend (a JSON file at settings.store.state_file if None)
            remote: Remote vulnerability source (NvdSource if None)
            local: Optional local replica preferred by the client
            notifier: Notification sink (structured log if None)
        """
        self.settings = settings or Settings()

        self.backend = backend or JsonFileBackend(self.settings.state_path)
        self.store = TaskStore(
            backend=self.backend,
            history_capacity=self.settings.store.history_capacity,
        )

        self.remote = remote or NvdSource(
            api_key=self.settings.nvd.api_key,
            timeout=self.settings.nvd.timeout,
            cve_api_url=self.settings.nvd.cve_api_url,
            cpe_api_url=self.settings.nvd.cpe_api_url,
        )
        self.rate_limiter = SlidingWindowRateLimiter(self.settings.rate_limit_config())
        self.cache = ResultCache(default_ttl=self.settings.retry.cache_ttl_seconds)
        self.client = RetryingClient(
            remote=self.remote,
            rate_limiter=self.rate_limiter,
            cache=self.cache,
            local=local,
            policy=self.settings.retry_policy(),
        )

        self.orchestrator = ScanOrchestrator(
            store=self.store,
            client=self.client,
            notifications=NotificationDispatcher(notifier, self.settings.notification_config()),
            config=self.settings.orchestrator_config(),
        )
        self.sweeper = ExpirySweeper(self.store, self.settings.sweeper_config())

        self._opened = False
        self.read_only = False
        self.lock_owner: Optional[int] = None
        self.logger = structlog.get_logger(__name__)

    async def open(self) -> None:
        """
        Load persisted state and start background housekeeping.

        If another live process owns the state file, the manager opens
        read-only: the state is loaded as saved (no restart recovery), the
        sweeper is not started, and any mutation raises StateLockedError.
        """
        if self._opened:
            return

        try:
            self.backend.acquire()
        except StateLockedError as e:
            self.read_only = True
            self.lock_owner = e.owner_pid
            self.logger.warning("state_owned_by_other_process", owner_pid=e.owner_pid, error=str(e))
        except PersistenceError as e:
            self.logger.error("state_lock_failed", error=str(e))

        self.store.load(recover=not self.read_only)
        self.store.read_only = self.read_only
        if not self.read_only:
            await self.sweeper.start()
        self._opened = True

        stats = self.store.stats()
        self.logger.info(
            "scan_manager_opened",
            active=stats.active,
            paused=stats.paused,
            history=stats.completed + stats.failed,
            read_only=self.read_only,
        )

    async def close(self, pause_running: bool = True) -> None:
        """
        Stop the scan loop and housekeeping, then release the remote source.

        Args:
            pause_running: Persist a running task as PAUSED before stopping
        """
        if not self._opened:
            return

        await self.orchestrator.stop(pause_running=pause_running and not self.read_only)
        await self.sweeper.stop()
        await self.remote.close()
        self.backend.release()
        self._opened = False

        self.logger.info("scan_manager_closed", client=self.client.get_statistics())

    async def __aenter__(self) -> "ScanManager":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def manual_cleanup(self) -> int:
        return await self.sweeper.manual_cleanup()

    def next_cleanup_time(self) -> datetime:
        return self.sweeper.next_cleanup_time()
