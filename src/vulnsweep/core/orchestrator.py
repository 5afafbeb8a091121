"""
Scan Orchestrator - Lifecycle owner and driver of background scan tasks.

This module implements the task state machine transitions and the package
iteration loop. At most one scan loop runs at a time: the remote API quota
is shared and too tight to split between concurrent loops.

Design Pattern: State Machine + Single Worker
"""

import asyncio
import functools
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Callable, List, Optional, Sequence

import structlog

from ..sources.base_source import PackageLookupError
from .cancellation import CancellationToken, ScanCancelledError
from .events import Broadcast
from .notifier import NotificationDispatcher
from .task import (
    DEFAULT_SECONDS_PER_PACKAGE,
    InvalidTransitionError,
    PackageRef,
    PackageResult,
    Progress,
    ScanConfig,
    ScanTask,
    TaskStatus,
    utcnow,
)
from .task_store import TaskStats, TaskStore

if TYPE_CHECKING:
    from ..sources.retrying_client import RetryingClient


@dataclass
class OrchestratorConfig:
    """Configuration for the scan loop"""
    request_delay: float = 12.0  # Pause between packages that hit the remote API (seconds)
    seconds_per_package: float = DEFAULT_SECONDS_PER_PACKAGE  # Used for duration estimates


@dataclass(frozen=True)
class ProgressEvent:
    """Emitted once per package, before its lookup"""
    task_id: str
    progress: Progress


class ScanOrchestrator:
    """
    Central coordinator for background scan tasks.

    Responsibilities:
    1. Create tasks and apply start/pause/cancel/delete transitions
    2. Enforce at most one RUNNING task across the store
    3. Drive the retrying client across a task's packages
    4. Persist and publish progress after every package
    5. Archive finished tasks and notify the user

    Example:
        >>> orchestrator = ScanOrchestrator(store=store, client=client)
        >>> task_id = await orchestrator.create_task(None, packages, DEFAULT_SCAN_CONFIGS["balanced"])
        >>> await orchestrator.wait_for_idle()
        >>> orchestrator.get_task(task_id).status
        <TaskStatus.COMPLETED: 'completed'>
    """

    def __init__(
        self,
        store: TaskStore,
        client: "RetryingClient",
        notifications: Optional[NotificationDispatcher] = None,
        config: Optional[OrchestratorConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            store: Task store owning all task state
            client: Retrying client used for package lookups
            notifications: Dispatcher for completion/failure notifications
            config: Loop configuration (uses defaults if None)
            clock: UTC wall-clock source (defaults to datetime.now(timezone.utc))
        """
        self.store = store
        self.client = client
        self.notifications = notifications or NotificationDispatcher()
        self.config = config or OrchestratorConfig()
        self._clock = clock or utcnow

        # Single worker state
        self._runner: Optional[asyncio.Task] = None
        self._runner_task_id: Optional[str] = None
        self._token: Optional[CancellationToken] = None

        # Published streams
        self.progress_events: Broadcast[ProgressEvent] = Broadcast("progress")
        self.running_task_changes: Broadcast[Optional[ScanTask]] = Broadcast(
            "running_task", replay_latest=True
        )

        # Structured logging
        self.logger = structlog.get_logger(__name__)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def create_task(
        self,
        name: Optional[str],
        packages: Sequence[PackageRef],
        config: ScanConfig,
        start_immediately: bool = True,
    ) -> str:
        """
        Create a new pending task.

        Args:
            name: Display name (a timestamped default is used if empty)
            packages: Packages to scan, in order
            config: Scan configuration, stored and echoed back
            start_immediately: Start the task right after creating it

        Returns:
            The new task id
        """
        task = ScanTask.create(
            packages=packages,
            config=config,
            name=name,
            now=self._clock(),
            seconds_per_package=self.config.seconds_per_package,
        )

        async with self.store.transaction():
            self.store.add(task)

        self.logger.info(
            "task_created",
            task_id=task.task_id,
            name=task.name,
            packages=task.total,
            mode=config.mode,
            estimated_minutes=task.estimated_duration_minutes,
        )

        if start_immediately:
            await self.start_task(task.task_id)

        return task.task_id

    async def start_task(self, task_id: str) -> None:
        """
        Start (or resume) a task, pausing whichever task is running.

        No-op if the task is unknown, already running, or terminal.
        """
        self.store.ensure_writable()
        async with self.store.lock:
            task = self.store.find(task_id)
            if task is None:
                self.logger.debug("start_ignored_unknown_task", task_id=task_id)
                return

            if task.status is TaskStatus.RUNNING:
                self.logger.info("task_already_running", task_id=task_id)
                return

            now = self._clock()
            try:
                task.transition_to(TaskStatus.RUNNING, now)
            except InvalidTransitionError as e:
                self._ignore(e)
                return

            for other in self.store.running():
                if other is task:
                    continue
                other.transition_to(TaskStatus.PAUSED, now)
                other.progress = other.progress.with_label("Paused")
                self.logger.info("task_paused", task_id=other.task_id, reason="preempted", by=task_id)

            if self._token is not None:
                self._token.cancel("preempted")

            resume_from = task.next_index
            task.progress = Progress.at(resume_from, task.total, "Starting...")

            token = CancellationToken()
            previous = self._runner
            self._token = token
            self._runner_task_id = task_id
            self._runner = asyncio.create_task(
                self._run(task, token, previous),
                name=f"scan-{task_id}",
            )

            self.store.commit()

        self.logger.info("task_started", task_id=task_id, name=task.name, resume_from=resume_from)
        self.running_task_changes.publish(task.snapshot())

    async def pause_task(self, task_id: str) -> None:
        """Pause a running task; its loop stops at the next safe point"""
        self.store.ensure_writable()
        async with self.store.lock:
            task = self.store.find(task_id)
            if task is None:
                return

            try:
                task.transition_to(TaskStatus.PAUSED, self._clock())
            except InvalidTransitionError as e:
                self._ignore(e)
                return

            task.progress = task.progress.with_label("Paused")
            self._stop_runner_for(task_id, "paused")
            self.store.commit()

        self.logger.info("task_paused", task_id=task_id, next_index=task.next_index)
        self.running_task_changes.publish(None)

    async def cancel_task(self, task_id: str) -> None:
        """Cancel a running or paused task and move it to history"""
        self.store.ensure_writable()
        async with self.store.lock:
            task = self.store.find(task_id)
            if task is None:
                return

            was_running = task.status is TaskStatus.RUNNING
            try:
                task.transition_to(TaskStatus.CANCELLED, self._clock())
            except InvalidTransitionError as e:
                self._ignore(e)
                return

            task.progress = task.progress.with_label("Cancelled")
            self._stop_runner_for(task_id, "cancelled")
            self.store.archive(task)
            self.store.commit()

        self.logger.info("task_cancelled", task_id=task_id, name=task.name)
        if was_running:
            self.running_task_changes.publish(None)

    async def delete_task(self, task_id: str) -> bool:
        """
        Delete a task from history.

        Returns:
            True if a history entry was removed
        """
        self.store.ensure_writable()
        async with self.store.lock:
            removed = self.store.remove_from_history(task_id)
            if removed:
                self.store.commit()

        if removed:
            self.logger.info("task_deleted", task_id=task_id)
        else:
            self.logger.debug("delete_ignored", task_id=task_id, reason="not_in_history")
        return removed

    async def clear_history(self) -> int:
        """Delete every task from history"""
        self.store.ensure_writable()
        async with self.store.lock:
            count = self.store.clear_history()
            if count:
                self.store.commit()

        self.logger.info("history_cleared", removed=count)
        return count

    def _stop_runner_for(self, task_id: str, reason: str) -> None:
        if self._runner_task_id == task_id and self._token is not None:
            self._token.cancel(reason)

    def _ignore(self, error: InvalidTransitionError) -> None:
        self.logger.debug(
            "invalid_transition_ignored",
            task_id=error.task_id,
            current=error.current.value,
            target=error.target.value,
        )

    # ------------------------------------------------------------------
    # Scan loop
    # ------------------------------------------------------------------

    async def _run(
        self,
        task: ScanTask,
        token: CancellationToken,
        previous: Optional[asyncio.Task],
    ) -> None:
        # The loop being replaced finishes its in-flight lookup first
        if previous is not None and not previous.done():
            await asyncio.wait({previous})

        try:
            await self._scan_packages(task, token)
        except ScanCancelledError:
            self.logger.info(
                "scan_loop_stopped",
                task_id=task.task_id,
                reason=token.reason,
                next_index=task.next_index,
            )
        except Exception as e:
            self.logger.error(
                "scan_loop_error",
                task_id=task.task_id,
                error=str(e),
                exc_info=True,
            )
            await self._finalize_failed(task, token, e)

    async def _scan_packages(self, task: ScanTask, token: CancellationToken) -> None:
        total = task.total
        self.logger.info("scan_loop_started", task_id=task.task_id, resume_from=task.next_index, total=total)

        for index in range(task.next_index, total):
            token.raise_if_cancelled()
            package = task.packages[index]

            async with self.store.lock:
                if task.status is not TaskStatus.RUNNING:
                    return
                task.progress = Progress.at(index, total, f"Scanning: {package.name}")
                self.store.commit()

            self.progress_events.publish(ProgressEvent(task_id=task.task_id, progress=task.progress))

            on_wait = functools.partial(self._on_retry_wait, task)
            try:
                outcome = await self.client.lookup(package, token=token, on_wait=on_wait)
                vulnerabilities = outcome.vulnerabilities
                used_quota = outcome.used_quota
            except PackageLookupError as e:
                # Per-package failures never fail the task
                self.logger.warning(
                    "package_lookup_failed",
                    task_id=task.task_id,
                    package=package.key,
                    error=str(e),
                )
                vulnerabilities = []
                used_quota = True

            # A lookup finished after a pause still advances the resume cursor
            async with self.store.transaction():
                if task.status.is_active:
                    task.partial_results.append(
                        PackageResult(package_name=package.key, vulnerabilities=list(vulnerabilities))
                    )

            if index < total - 1 and used_quota:
                if await token.sleep(self.config.request_delay):
                    token.raise_if_cancelled()

        await self._finalize_completed(task, token)

    async def _on_retry_wait(self, task: ScanTask, seconds: float) -> None:
        async with self.store.lock:
            if task.status is TaskStatus.RUNNING:
                task.progress = task.progress.with_label(
                    f"Waiting for rate limit reset... ({seconds:.0f}s)"
                )
                self.store.commit()

    async def _finalize_completed(self, task: ScanTask, token: CancellationToken) -> None:
        async with self.store.lock:
            if token.cancelled or task.status is not TaskStatus.RUNNING:
                return
            task.complete(self._clock())
            self.store.archive(task)
            self._release_runner(token)
            self.store.commit()

        self.logger.info(
            "task_completed",
            task_id=task.task_id,
            name=task.name,
            packages=task.total,
            vulnerabilities=task.vulnerability_count,
            actual_minutes=task.actual_duration_minutes,
        )
        self.running_task_changes.publish(None)
        self.notifications.task_completed(task.snapshot())

    async def _finalize_failed(self, task: ScanTask, token: CancellationToken, error: Exception) -> None:
        async with self.store.lock:
            if token.cancelled or task.status is not TaskStatus.RUNNING:
                return
            task.fail(str(error) or type(error).__name__, self._clock())
            self.store.archive(task)
            self._release_runner(token)
            self.store.commit()

        self.logger.error("task_failed", task_id=task.task_id, name=task.name, error=task.error)
        self.running_task_changes.publish(None)
        self.notifications.task_failed(task.snapshot())

    def _release_runner(self, token: CancellationToken) -> None:
        if self._token is token:
            self._token = None
            self._runner_task_id = None

    async def wait_for_idle(self) -> None:
        """Wait until no scan loop is executing"""
        while self._runner is not None and not self._runner.done():
            await asyncio.wait({self._runner})

    async def stop(self, pause_running: bool = True) -> None:
        """
        Stop the orchestrator.

        Args:
            pause_running: Persist the running task as PAUSED first. When
                False, the task stays RUNNING in the store and is recovered
                as PAUSED on the next load.
        """
        self.logger.info("stopping_orchestrator", running_task=self._runner_task_id)

        if pause_running:
            for task in list(self.store.running()):
                await self.pause_task(task.task_id)

        runner = self._runner
        if runner is not None and not runner.done():
            runner.cancel()
            await asyncio.gather(runner, return_exceptions=True)

        self.logger.info("orchestrator_stopped")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_task(self, task_id: str) -> Optional[ScanTask]:
        return self.store.get(task_id)

    def get_running_task(self) -> Optional[ScanTask]:
        running = self.store.running()
        return running[0].snapshot() if running else None

    def has_running_task(self) -> bool:
        return bool(self.store.running())

    def get_task_results(self, task_id: str) -> Optional[List[PackageResult]]:
        task = self.store.get(task_id)
        return task.results if task else None

    def task_stats(self) -> TaskStats:
        return self.store.stats()

    @property
    def is_running(self) -> bool:
        return self._runner is not None and not self._runner.done()

    def get_status(self) -> dict:
        """
        Get current orchestrator status.

        Returns:
            Status dictionary
        """
        stats = self.store.stats()
        return {
            "running_task": self._runner_task_id,
            "is_running": self.is_running,
            "tasks": {
                "active": stats.active,
                "running": stats.running,
                "paused": stats.paused,
                "completed": stats.completed,
                "failed": stats.failed,
            },
            "client": self.client.get_statistics(),
        }
