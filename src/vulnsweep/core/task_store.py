"""
Task Store - Owner of all active and completed scan tasks.

Single-writer discipline: every mutation of a task or of the active/history
sets happens inside `transaction()`, which holds the store lock and commits
(persist + publish) on exit. Readers never take the lock; they get shallow
snapshots.
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

import structlog

from .events import Broadcast
from .persistence import (
    PersistedState,
    PersistenceError,
    StateBackend,
    StateLockedError,
    task_from_record,
    task_to_record,
)
from .task import ScanTask, TaskStatus


DEFAULT_HISTORY_CAPACITY = 10


@dataclass(frozen=True)
class StoreSnapshot:
    """Immutable view of the store published to subscribers"""
    active: Tuple[ScanTask, ...]
    history: Tuple[ScanTask, ...]
    last_task_id: Optional[str] = None


@dataclass(frozen=True)
class TaskStats:
    """Task counts for display"""
    active: int
    running: int
    paused: int
    completed: int
    failed: int


class TaskStore:
    """
    Durable home of all scan tasks.

    - active: tasks that are pending, running, or paused
    - history: terminal tasks, most recent first, bounded to `history_capacity`

    Example:
        >>> store = TaskStore(backend=JsonFileBackend("state.json"))
        >>> store.load()
        >>> async with store.transaction():
        ...     store.add(task)
    """

    def __init__(
        self,
        backend: Optional[StateBackend] = None,
        history_capacity: int = DEFAULT_HISTORY_CAPACITY,
    ):
        """
        Initialize the task store.

        Args:
            backend: Persistence backend (in-memory only if None)
            history_capacity: Maximum number of terminal tasks kept
        """
        self.backend = backend
        self.history_capacity = history_capacity

        self._active: List[ScanTask] = []
        self._history: List[ScanTask] = []
        self.last_task_id: Optional[str] = None

        self.read_only = False
        self.lock = asyncio.Lock()
        self.state_changes: Broadcast[StoreSnapshot] = Broadcast(
            "store_state", replay_latest=True, latest_only=True
        )

        self.logger = structlog.get_logger(__name__)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self, recover: bool = True) -> None:
        """
        Load state from the backend and apply restart recovery.

        A task left RUNNING by a previous process cannot be assumed to have
        kept going, so it is forced to PAUSED. Load failures are logged and
        leave the store empty.

        Args:
            recover: Apply restart recovery. Pass False when another live
                process owns the state and its RUNNING task really is running.
        """
        if self.backend is None:
            self._publish()
            return

        try:
            state = self.backend.load()
        except PersistenceError as e:
            self.logger.error("state_load_failed", error=str(e))
            state = None

        if state is None:
            self._active, self._history, self.last_task_id = [], [], None
            self._publish()
            return

        self._active = [task_from_record(r) for r in state.active]
        self._history = [task_from_record(r) for r in state.history][: self.history_capacity]
        self.last_task_id = state.last_task_id

        recovered = 0
        for task in self._active:
            if recover and task.status is TaskStatus.RUNNING:
                task.status = TaskStatus.PAUSED
                recovered += 1
                self.logger.warning("task_recovered_as_paused", task_id=task.task_id, name=task.name)

        self.logger.info(
            "state_loaded",
            active=len(self._active),
            history=len(self._history),
            recovered=recovered,
        )

        if recovered:
            self.save()
        self._publish()

    def to_state(self) -> PersistedState:
        return PersistedState(
            active=[task_to_record(t) for t in self._active],
            history=[task_to_record(t) for t in self._history],
            last_task_id=self.last_task_id,
        )

    def save(self) -> None:
        """Persist the current state; failures are logged, never raised"""
        if self.backend is None:
            return
        try:
            self.backend.save(self.to_state())
        except PersistenceError as e:
            self.logger.error("state_save_failed", error=str(e))

    def ensure_writable(self) -> None:
        if self.read_only:
            raise StateLockedError("Task state is read-only: another process owns it")

    def commit(self) -> None:
        """Persist and publish. Caller must hold the lock."""
        self.ensure_writable()
        self.save()
        self._publish()

    def _publish(self) -> None:
        self.state_changes.publish(self.snapshot())

    @asynccontextmanager
    async def transaction(self):
        """Hold the store lock for a mutation and commit when it completes"""
        self.ensure_writable()
        async with self.lock:
            yield self
            self.commit()

    # ------------------------------------------------------------------
    # Mutations (caller must hold the lock)
    # ------------------------------------------------------------------

    def add(self, task: ScanTask) -> None:
        self._active.append(task)
        self.last_task_id = task.task_id

    def archive(self, task: ScanTask) -> None:
        """Move a terminal task from the active set to the head of history"""
        self._active = [t for t in self._active if t.task_id != task.task_id]
        self._history.insert(0, task)

        if len(self._history) > self.history_capacity:
            dropped = self._history[self.history_capacity:]
            self._history = self._history[: self.history_capacity]
            self.logger.info(
                "history_truncated",
                dropped=[t.task_id for t in dropped],
                capacity=self.history_capacity,
            )

    def remove_from_history(self, task_id: str) -> bool:
        before = len(self._history)
        self._history = [t for t in self._history if t.task_id != task_id]
        return len(self._history) != before

    def clear_history(self) -> int:
        count = len(self._history)
        self._history = []
        return count

    def evict(self, predicate: Callable[[ScanTask], bool]) -> List[ScanTask]:
        """Remove every task (active or history) matching `predicate`"""
        evicted = [t for t in self._active + self._history if predicate(t)]
        if evicted:
            ids = {t.task_id for t in evicted}
            self._active = [t for t in self._active if t.task_id not in ids]
            self._history = [t for t in self._history if t.task_id not in ids]
        return evicted

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def find(self, task_id: str) -> Optional[ScanTask]:
        """Live task object, for the orchestrator's own mutations"""
        for task in self._active:
            if task.task_id == task_id:
                return task
        for task in self._history:
            if task.task_id == task_id:
                return task
        return None

    def get(self, task_id: str) -> Optional[ScanTask]:
        task = self.find(task_id)
        return task.snapshot() if task else None

    def running(self) -> List[ScanTask]:
        return [t for t in self._active if t.status is TaskStatus.RUNNING]

    @property
    def active(self) -> List[ScanTask]:
        return [t.snapshot() for t in self._active]

    @property
    def history(self) -> List[ScanTask]:
        return [t.snapshot() for t in self._history]

    def snapshot(self) -> StoreSnapshot:
        return StoreSnapshot(
            active=tuple(t.snapshot() for t in self._active),
            history=tuple(t.snapshot() for t in self._history),
            last_task_id=self.last_task_id,
        )

    def stats(self) -> TaskStats:
        return TaskStats(
            active=len(self._active),
            running=sum(1 for t in self._active if t.status is TaskStatus.RUNNING),
            paused=sum(1 for t in self._active if t.status is TaskStatus.PAUSED),
            completed=sum(1 for t in self._history if t.status is TaskStatus.COMPLETED),
            failed=sum(1 for t in self._history if t.status is TaskStatus.FAILED),
        )
