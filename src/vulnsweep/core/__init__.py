"""
Core module - Scan task lifecycle and coordination.

This package contains the task model, the durable task store, and the
orchestrator that drives background scans.
"""

from .task import (
    ScanTask,
    TaskStatus,
    PackageRef,
    PackageKind,
    ScanConfig,
    Progress,
    PackageResult,
    DEFAULT_SCAN_CONFIGS,
)
from .rate_limiter import SlidingWindowRateLimiter, RateLimitConfig
from .persistence import JsonFileBackend, MemoryBackend, PersistenceError
from .task_store import TaskStore
from .orchestrator import ScanOrchestrator, OrchestratorConfig
from .sweeper import ExpirySweeper, SweeperConfig
from .notifier import NotificationDispatcher, NotificationConfig, Notifier


__all__ = [
    # Task model
    "ScanTask",
    "TaskStatus",
    "PackageRef",
    "PackageKind",
    "ScanConfig",
    "Progress",
    "PackageResult",
    "DEFAULT_SCAN_CONFIGS",
    # Rate limiting
    "SlidingWindowRateLimiter",
    "RateLimitConfig",
    # Persistence
    "TaskStore",
    "JsonFileBackend",
    "MemoryBackend",
    "PersistenceError",
    # Orchestration
    "ScanOrchestrator",
    "OrchestratorConfig",
    "ExpirySweeper",
    "SweeperConfig",
    # Notifications
    "NotificationDispatcher",
    "NotificationConfig",
    "Notifier",
]
