"""
Notifier - User-visible notifications for finished scan tasks.

Presentation is left to Notifier implementations (log lines, console
messages, desktop toasts). The dispatcher applies the user's preferences so
implementations only ever see events the user asked for.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import structlog

from .task import ScanTask


@dataclass(frozen=True)
class NotificationConfig:
    """User notification preferences"""
    enabled: bool = True
    scan_completed: bool = True
    scan_failed: bool = True
    high_severity_found: bool = True


def completion_summary(task: ScanTask) -> str:
    total = task.vulnerability_count
    if total > 0:
        return f"{task.name} finished! Found {total} vulnerabilities in {task.vulnerable_package_count} packages"
    return f"{task.name} finished! No vulnerabilities found"


def high_severity_count(task: ScanTask) -> int:
    return sum(
        1
        for result in (task.results or [])
        for vuln in result.vulnerabilities
        if vuln.is_high_severity
    )


class Notifier(ABC):
    """Receives task lifecycle notifications"""

    @abstractmethod
    def on_task_completed(self, task: ScanTask, summary: str) -> None:
        pass

    @abstractmethod
    def on_task_failed(self, task: ScanTask) -> None:
        pass

    def on_high_severity_found(self, task: ScanTask, count: int) -> None:
        pass


class LogNotifier(Notifier):
    """Writes notifications to the structured log"""

    def __init__(self):
        self.logger = structlog.get_logger(__name__)

    def on_task_completed(self, task: ScanTask, summary: str) -> None:
        self.logger.info("notify_scan_completed", task_id=task.task_id, summary=summary)

    def on_task_failed(self, task: ScanTask) -> None:
        self.logger.error("notify_scan_failed", task_id=task.task_id, name=task.name, error=task.error)

    def on_high_severity_found(self, task: ScanTask, count: int) -> None:
        self.logger.warning("notify_high_severity_found", task_id=task.task_id, count=count)


class NotificationDispatcher:
    """
    Routes task events to a Notifier according to NotificationConfig.

    Notifier errors are logged and swallowed: a broken notification channel
    must never affect the task state.
    """

    def __init__(
        self,
        notifier: Optional[Notifier] = None,
        config: Optional[NotificationConfig] = None,
    ):
        self.notifier = notifier or LogNotifier()
        self.config = config or NotificationConfig()
        self.logger = structlog.get_logger(__name__)

    def _enabled(self, event_flag: bool) -> bool:
        return self.config.enabled and event_flag

    def task_completed(self, task: ScanTask) -> None:
        if self._enabled(self.config.scan_completed):
            self._deliver("on_task_completed", task, completion_summary(task))

        count = high_severity_count(task)
        if count and self._enabled(self.config.high_severity_found):
            self._deliver("on_high_severity_found", task, count)

    def task_failed(self, task: ScanTask) -> None:
        if self._enabled(self.config.scan_failed):
            self._deliver("on_task_failed", task)

    def _deliver(self, method: str, *args) -> None:
        try:
            getattr(self.notifier, method)(*args)
        except Exception as e:
            self.logger.error("notifier_error", method=method, error=str(e))
