"""
Persistence - Versioned, validated storage of the task store state.

The whole store (active tasks, history, last task id) is serialized as one
JSON document described by pydantic models. Timestamps round-trip as
ISO-8601 strings. A document that fails validation is rejected as a whole:
the store then starts empty instead of hydrating a half-valid state.
"""

import fcntl
import os
import tempfile
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import List, Literal, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from ..sources.base_source import SeverityLevel, Vulnerability
from .task import (
    PackageKind,
    PackageRef,
    PackageResult,
    Progress,
    ScanConfig,
    ScanTask,
    TaskStatus,
)


SCHEMA_VERSION = 1


class PersistenceError(Exception):
    """Raised when the state cannot be loaded or saved"""
    pass


class StateLockedError(PersistenceError):
    """
    Raised when another process owns the state.

    Attributes:
        owner_pid: Process id recorded by the owner, if readable
    """

    def __init__(self, message: str, owner_pid: Optional[int] = None):
        super().__init__(message)
        self.owner_pid = owner_pid


class _Record(BaseModel):
    model_config = ConfigDict(extra="forbid")


class PackageRecord(_Record):
    name: str
    version: str
    kind: PackageKind = PackageKind.DIRECT


class ScanConfigRecord(_Record):
    mode: str
    include_direct: bool = True
    include_dev: bool = False
    include_transitive: bool = True


class ProgressRecord(_Record):
    current: int = Field(ge=0)
    total: int = Field(ge=0)
    percentage: float = Field(ge=0.0, le=100.0)
    current_label: str = ""


class VulnerabilityRecord(_Record):
    cve_id: str
    description: str = "No description available"
    severity: SeverityLevel = SeverityLevel.NONE
    cvss_score: float = 0.0
    cvss_vector: str = ""
    published_date: Optional[str] = None
    last_modified_date: Optional[str] = None
    references: List[str] = Field(default_factory=list)
    affected_versions: List[str] = Field(default_factory=list)
    fixed_version: Optional[str] = None


class PackageResultRecord(_Record):
    package_name: str
    vulnerabilities: List[VulnerabilityRecord] = Field(default_factory=list)


class TaskRecord(_Record):
    task_id: str
    name: str
    packages: List[PackageRecord]
    config: ScanConfigRecord
    status: TaskStatus
    progress: ProgressRecord
    results: Optional[List[PackageResultRecord]] = None
    error: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    estimated_duration_minutes: int = 0
    actual_duration_minutes: Optional[int] = None
    partial_results: List[PackageResultRecord] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_invariants(self) -> "TaskRecord":
        if self.progress.total != len(self.packages):
            raise ValueError("progress.total does not match the package count")
        if (self.results is not None) != (self.status is TaskStatus.COMPLETED):
            raise ValueError("results must be present exactly when the task is completed")
        if (self.error is not None) != (self.status is TaskStatus.FAILED):
            raise ValueError("error must be present exactly when the task has failed")
        if len(self.partial_results) > len(self.packages):
            raise ValueError("more partial results than packages")
        return self


class PersistedState(_Record):
    """Top-level state document (schema version 1)"""
    version: Literal[1] = SCHEMA_VERSION
    active: List[TaskRecord] = Field(default_factory=list)
    history: List[TaskRecord] = Field(default_factory=list)
    last_task_id: Optional[str] = None

    @model_validator(mode="after")
    def check_partition(self) -> "PersistedState":
        for record in self.active:
            if not record.status.is_active:
                raise ValueError(f"task {record.task_id} in active set has status {record.status.value}")
        for record in self.history:
            if not record.status.is_terminal:
                raise ValueError(f"task {record.task_id} in history has status {record.status.value}")
        ids = [r.task_id for r in self.active + self.history]
        if len(ids) != len(set(ids)):
            raise ValueError("duplicate task ids")
        return self


def _result_to_record(result: PackageResult) -> PackageResultRecord:
    return PackageResultRecord(
        package_name=result.package_name,
        vulnerabilities=[VulnerabilityRecord(**v.to_dict()) for v in result.vulnerabilities],
    )


def _result_from_record(record: PackageResultRecord) -> PackageResult:
    return PackageResult(
        package_name=record.package_name,
        vulnerabilities=[Vulnerability.from_dict(v.model_dump(mode="json")) for v in record.vulnerabilities],
    )


def task_to_record(task: ScanTask) -> TaskRecord:
    return TaskRecord(
        task_id=task.task_id,
        name=task.name,
        packages=[PackageRecord(name=p.name, version=p.version, kind=p.kind) for p in task.packages],
        config=ScanConfigRecord(
            mode=task.config.mode,
            include_direct=task.config.include_direct,
            include_dev=task.config.include_dev,
            include_transitive=task.config.include_transitive,
        ),
        status=task.status,
        progress=ProgressRecord(
            current=task.progress.current,
            total=task.progress.total,
            percentage=task.progress.percentage,
            current_label=task.progress.current_label,
        ),
        results=None if task.results is None else [_result_to_record(r) for r in task.results],
        error=task.error,
        created_at=task.created_at,
        started_at=task.started_at,
        completed_at=task.completed_at,
        estimated_duration_minutes=task.estimated_duration_minutes,
        actual_duration_minutes=task.actual_duration_minutes,
        partial_results=[_result_to_record(r) for r in task.partial_results],
    )


def task_from_record(record: TaskRecord) -> ScanTask:
    return ScanTask(
        task_id=record.task_id,
        name=record.name,
        packages=tuple(PackageRef(name=p.name, version=p.version, kind=p.kind) for p in record.packages),
        config=ScanConfig(**record.config.model_dump()),
        status=record.status,
        progress=Progress(**record.progress.model_dump()),
        results=None if record.results is None else [_result_from_record(r) for r in record.results],
        error=record.error,
        created_at=record.created_at,
        started_at=record.started_at,
        completed_at=record.completed_at,
        estimated_duration_minutes=record.estimated_duration_minutes,
        actual_duration_minutes=record.actual_duration_minutes,
        partial_results=[_result_from_record(r) for r in record.partial_results],
    )


class StateBackend(ABC):
    """Where the task store state lives between processes"""

    @abstractmethod
    def load(self) -> Optional[PersistedState]:
        """
        Load the persisted state.

        Returns:
            The state, or None if nothing has been saved yet

        Raises:
            PersistenceError: If the state exists but cannot be read or validated
        """
        pass

    @abstractmethod
    def save(self, state: PersistedState) -> None:
        """
        Persist the state, replacing any previous one.

        Raises:
            PersistenceError: If the state cannot be written
        """
        pass

    def acquire(self) -> None:
        """
        Take exclusive ownership of the state for this process.

        Raises:
            StateLockedError: If another live process owns it
        """
        pass

    def release(self) -> None:
        pass


class MemoryBackend(StateBackend):
    """Keeps the serialized state in memory (tests, ephemeral runs)"""

    def __init__(self, document: Optional[str] = None):
        self.document = document
        self.save_count = 0

    def load(self) -> Optional[PersistedState]:
        if self.document is None:
            return None
        try:
            return PersistedState.model_validate_json(self.document)
        except ValidationError as e:
            raise PersistenceError(f"Invalid state document: {e}") from e

    def save(self, state: PersistedState) -> None:
        self.document = state.model_dump_json()
        self.save_count += 1


class JsonFileBackend(StateBackend):
    """
    Stores the state as a JSON file, written atomically.

    Ownership is an advisory flock on "<state file>.lock". The kernel drops
    it when the owning process exits, so a crashed scanner never leaves a
    stale lock behind.

    Example:
        >>> backend = JsonFileBackend("~/.vulnsweep/state.json")
        >>> store = TaskStore(backend=backend)
    """

    def __init__(self, path):
        self.path = Path(path).expanduser()
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        self._lock_fd: Optional[int] = None
        self.logger = structlog.get_logger(__name__)

    @property
    def is_locked(self) -> bool:
        return self._lock_fd is not None

    def acquire(self) -> None:
        if self._lock_fd is not None:
            return

        try:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o644)
        except OSError as e:
            raise PersistenceError(f"Cannot open lock file {self.lock_path}: {e}") from e

        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            owner = self._read_owner(fd)
            os.close(fd)
            raise StateLockedError(
                f"{self.path} is in use by another process (pid {owner or 'unknown'})",
                owner_pid=owner,
            )
        except OSError as e:
            os.close(fd)
            raise PersistenceError(f"Cannot lock {self.lock_path}: {e}") from e

        os.ftruncate(fd, 0)
        os.write(fd, str(os.getpid()).encode())
        self._lock_fd = fd
        self.logger.debug("state_lock_acquired", path=str(self.lock_path))

    def release(self) -> None:
        if self._lock_fd is None:
            return
        fcntl.flock(self._lock_fd, fcntl.LOCK_UN)
        os.close(self._lock_fd)
        self._lock_fd = None
        self.logger.debug("state_lock_released", path=str(self.lock_path))

    @staticmethod
    def _read_owner(fd: int) -> Optional[int]:
        try:
            return int(os.pread(fd, 32, 0).decode().strip())
        except (OSError, ValueError):
            return None

    def load(self) -> Optional[PersistedState]:
        if not self.path.exists():
            return None

        try:
            document = self.path.read_bytes()
        except OSError as e:
            raise PersistenceError(f"Cannot read {self.path}: {e}") from e

        # Undecodable bytes and schema mismatches are both ValueErrors
        try:
            return PersistedState.model_validate_json(document)
        except ValueError as e:
            raise PersistenceError(f"Invalid state file {self.path}: {e}") from e

    def save(self, state: PersistedState) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=str(self.path.parent),
                prefix=f".{self.path.name}.",
                suffix=".tmp",
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(state.model_dump_json(indent=2))
                os.replace(tmp_path, self.path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except OSError as e:
            raise PersistenceError(f"Cannot write {self.path}: {e}") from e
