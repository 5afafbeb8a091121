"""
Scan Task - The unit of persisted background scan work.

A task pins down an ordered list of packages and a scan configuration,
then carries a status, a progress cursor, and (once terminal) results or
an error. The state machine lives here; the orchestrator decides *when*
to transition, the task decides *whether* the transition is legal.
"""

import copy
import math
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Sequence, Tuple

from ..sources.base_source import Vulnerability


DEFAULT_SECONDS_PER_PACKAGE = 17  # request delay + response time + version lookup


class PackageKind(Enum):
    """How a package entered the dependency tree"""
    DIRECT = "direct"
    DEV = "dev"
    TRANSITIVE = "transitive"


@dataclass(frozen=True)
class PackageRef:
    """A package pinned to a version"""
    name: str
    version: str
    kind: PackageKind = PackageKind.DIRECT

    @property
    def key(self) -> str:
        return f"{self.name}@{self.version}"


@dataclass(frozen=True)
class ScanConfig:
    """Named, immutable scan configuration selected at task creation"""
    mode: str = "balanced"
    include_direct: bool = True
    include_dev: bool = False
    include_transitive: bool = True

    def includes(self, kind: PackageKind) -> bool:
        return {
            PackageKind.DIRECT: self.include_direct,
            PackageKind.DEV: self.include_dev,
            PackageKind.TRANSITIVE: self.include_transitive,
        }[kind]

    def filter_packages(self, packages: Sequence[PackageRef]) -> List[PackageRef]:
        return [pkg for pkg in packages if self.includes(pkg.kind)]


DEFAULT_SCAN_CONFIGS: Dict[str, ScanConfig] = {
    "fast": ScanConfig(mode="fast", include_direct=True, include_dev=False, include_transitive=False),
    "balanced": ScanConfig(mode="balanced", include_direct=True, include_dev=False, include_transitive=True),
    "comprehensive": ScanConfig(mode="comprehensive", include_direct=True, include_dev=True, include_transitive=True),
}


@dataclass(frozen=True)
class Progress:
    """Progress cursor of a task"""
    current: int
    total: int
    percentage: float = 0.0
    current_label: str = ""

    @classmethod
    def at(cls, current: int, total: int, label: str = "") -> "Progress":
        percentage = (current / total) * 100 if total > 0 else 0.0
        return cls(
            current=current,
            total=total,
            percentage=max(0.0, min(100.0, percentage)),
            current_label=label,
        )

    def with_label(self, label: str) -> "Progress":
        return replace(self, current_label=label)


@dataclass
class PackageResult:
    """Vulnerabilities found for one package"""
    package_name: str
    vulnerabilities: List[Vulnerability] = field(default_factory=list)


class TaskStatus(Enum):
    """Task execution status"""
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_STATUSES


ACTIVE_STATUSES: FrozenSet[TaskStatus] = frozenset(
    {TaskStatus.PENDING, TaskStatus.RUNNING, TaskStatus.PAUSED}
)
TERMINAL_STATUSES: FrozenSet[TaskStatus] = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}
)

ALLOWED_TRANSITIONS: Dict[TaskStatus, FrozenSet[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.RUNNING}),
    TaskStatus.RUNNING: frozenset(
        {TaskStatus.PAUSED, TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}
    ),
    TaskStatus.PAUSED: frozenset({TaskStatus.RUNNING, TaskStatus.CANCELLED}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}


class InvalidTransitionError(Exception):
    """Raised when a task is asked to make a transition its state forbids"""

    def __init__(self, task_id: str, current: TaskStatus, target: TaskStatus):
        super().__init__(f"Task {task_id}: cannot go from {current.value} to {target.value}")
        self.task_id = task_id
        self.current = current
        self.target = target


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_task_id(now: Optional[datetime] = None) -> str:
    now = now or utcnow()
    return f"scan_{now.strftime('%Y%m%d_%H%M%S')}_{uuid.uuid4().hex[:8]}"


def estimate_duration_minutes(
    package_count: int,
    seconds_per_package: float = DEFAULT_SECONDS_PER_PACKAGE,
) -> int:
    return math.ceil(package_count * seconds_per_package / 60)


@dataclass
class ScanTask:
    """
    Represents a single background scan task.

    Invariants:
    - progress.total == len(packages) for the task's lifetime
    - results is set if and only if status is COMPLETED
    - error is set if and only if status is FAILED

    partial_results is the resume cursor: the next package to scan is
    packages[len(partial_results)].
    """

    task_id: str
    name: str
    packages: Tuple[PackageRef, ...]
    config: ScanConfig
    status: TaskStatus = TaskStatus.PENDING
    progress: Progress = None
    results: Optional[List[PackageResult]] = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    estimated_duration_minutes: int = 0
    actual_duration_minutes: Optional[int] = None
    partial_results: List[PackageResult] = field(default_factory=list)

    def __post_init__(self):
        self.packages = tuple(self.packages)
        if self.progress is None:
            self.progress = Progress.at(0, len(self.packages), "Waiting to start...")

    @classmethod
    def create(
        cls,
        packages: Sequence[PackageRef],
        config: ScanConfig,
        name: Optional[str] = None,
        now: Optional[datetime] = None,
        seconds_per_package: float = DEFAULT_SECONDS_PER_PACKAGE,
    ) -> "ScanTask":
        now = now or utcnow()
        return cls(
            task_id=generate_task_id(now),
            name=name or f"Scan task - {now.strftime('%Y-%m-%d %H:%M')}",
            packages=tuple(packages),
            config=config,
            created_at=now,
            estimated_duration_minutes=estimate_duration_minutes(len(packages), seconds_per_package),
        )

    @property
    def total(self) -> int:
        return len(self.packages)

    @property
    def next_index(self) -> int:
        return len(self.partial_results)

    @property
    def reference_time(self) -> datetime:
        """Timestamp used for expiry: the latest lifecycle mark that is set"""
        return self.completed_at or self.started_at or self.created_at

    def can_transition(self, target: TaskStatus) -> bool:
        return target in ALLOWED_TRANSITIONS[self.status]

    def transition_to(self, target: TaskStatus, now: Optional[datetime] = None) -> None:
        """
        Move the task to `target`, applying the timestamp side effects.

        Raises:
            InvalidTransitionError: If the state machine forbids the move
        """
        if not self.can_transition(target):
            raise InvalidTransitionError(self.task_id, self.status, target)

        now = now or utcnow()
        self.status = target

        if target is TaskStatus.RUNNING and self.started_at is None:
            self.started_at = now

        if target.is_terminal:
            self.completed_at = now
            if self.started_at is not None:
                self.actual_duration_minutes = round((now - self.started_at).total_seconds() / 60)

    def complete(self, now: Optional[datetime] = None) -> None:
        self.transition_to(TaskStatus.COMPLETED, now)
        self.results = list(self.partial_results)
        self.partial_results = []
        self.progress = Progress.at(self.total, self.total, "Scan complete")

    def fail(self, message: str, now: Optional[datetime] = None) -> None:
        self.transition_to(TaskStatus.FAILED, now)
        self.error = message

    @property
    def vulnerability_count(self) -> int:
        return sum(len(r.vulnerabilities) for r in (self.results or []))

    @property
    def vulnerable_package_count(self) -> int:
        return sum(1 for r in (self.results or []) if r.vulnerabilities)

    def snapshot(self) -> "ScanTask":
        """Shallow copy safe to hand to readers"""
        clone = copy.copy(self)
        clone.partial_results = list(self.partial_results)
        if self.results is not None:
            clone.results = list(self.results)
        return clone
