"""
Unit tests for Notifier module.

Run with: pytest tests/unit/test_notifier.py -v
"""

import pytest
from vulnsweep.core.notifier import (
    NotificationConfig,
    NotificationDispatcher,
    Notifier,
    completion_summary,
    high_severity_count,
)
from vulnsweep.core.task import DEFAULT_SCAN_CONFIGS, PackageRef, PackageResult, ScanTask, TaskStatus
from vulnsweep.sources.base_source import SeverityLevel, Vulnerability


class RecordingNotifier(Notifier):
    def __init__(self):
        self.events = []

    def on_task_completed(self, task, summary):
        self.events.append(("completed", summary))

    def on_task_failed(self, task):
        self.events.append(("failed", task.error))

    def on_high_severity_found(self, task, count):
        self.events.append(("high_severity", count))


class BrokenNotifier(Notifier):
    def on_task_completed(self, task, summary):
        raise RuntimeError("display unavailable")

    def on_task_failed(self, task):
        raise RuntimeError("display unavailable")


def finished_task(results) -> ScanTask:
    task = ScanTask.create(
        [PackageRef(r.package_name, "1.0.0") for r in results],
        DEFAULT_SCAN_CONFIGS["balanced"],
        name="Nightly",
    )
    task.transition_to(TaskStatus.RUNNING)
    task.partial_results = list(results)
    task.complete()
    return task


def failed_task() -> ScanTask:
    task = ScanTask.create([PackageRef("a", "1")], DEFAULT_SCAN_CONFIGS["fast"], name="Nightly")
    task.transition_to(TaskStatus.RUNNING)
    task.fail("disk full")
    return task


class TestSummaries:
    """Test suite for notification text"""

    def test_summary_with_findings(self):
        """Test the summary counts vulnerabilities and affected packages"""
        task = finished_task([
            PackageResult("lodash", [Vulnerability(cve_id="CVE-1"), Vulnerability(cve_id="CVE-2")]),
            PackageResult("left-pad", []),
            PackageResult("minimist", [Vulnerability(cve_id="CVE-3")]),
        ])

        assert completion_summary(task) == "Nightly finished! Found 3 vulnerabilities in 2 packages"

    def test_summary_without_findings(self):
        """Test the clean summary"""
        task = finished_task([PackageResult("left-pad", [])])

        assert completion_summary(task) == "Nightly finished! No vulnerabilities found"

    def test_high_severity_count(self):
        """Test only HIGH and CRITICAL findings are counted"""
        task = finished_task([
            PackageResult("a", [
                Vulnerability(cve_id="CVE-1", severity=SeverityLevel.CRITICAL),
                Vulnerability(cve_id="CVE-2", severity=SeverityLevel.MEDIUM),
            ]),
            PackageResult("b", [Vulnerability(cve_id="CVE-3", severity=SeverityLevel.HIGH)]),
        ])

        assert high_severity_count(task) == 2


class TestNotificationDispatcher:
    """Test suite for NotificationDispatcher class"""

    def test_completed_and_high_severity(self):
        """Test completion also reports high severity findings"""
        notifier = RecordingNotifier()
        dispatcher = NotificationDispatcher(notifier)
        task = finished_task([
            PackageResult("a", [Vulnerability(cve_id="CVE-1", severity=SeverityLevel.HIGH)]),
        ])

        dispatcher.task_completed(task)

        assert notifier.events == [
            ("completed", "Nightly finished! Found 1 vulnerabilities in 1 packages"),
            ("high_severity", 1),
        ]

    def test_failed(self):
        """Test failure notifications carry the error"""
        notifier = RecordingNotifier()

        NotificationDispatcher(notifier).task_failed(failed_task())

        assert notifier.events == [("failed", "disk full")]

    def test_preferences_respected(self):
        """Test disabled events are not delivered"""
        notifier = RecordingNotifier()
        config = NotificationConfig(scan_completed=False, high_severity_found=True, scan_failed=False)
        dispatcher = NotificationDispatcher(notifier, config)
        task = finished_task([
            PackageResult("a", [Vulnerability(cve_id="CVE-1", severity=SeverityLevel.CRITICAL)]),
        ])

        dispatcher.task_completed(task)
        dispatcher.task_failed(failed_task())

        assert notifier.events == [("high_severity", 1)]

    def test_master_switch(self):
        """Test enabled=False silences everything"""
        notifier = RecordingNotifier()
        dispatcher = NotificationDispatcher(notifier, NotificationConfig(enabled=False))

        dispatcher.task_completed(finished_task([PackageResult("a", [])]))
        dispatcher.task_failed(failed_task())

        assert notifier.events == []

    def test_notifier_errors_are_contained(self):
        """Test a failing notifier does not raise into the caller"""
        dispatcher = NotificationDispatcher(BrokenNotifier())

        dispatcher.task_completed(finished_task([PackageResult("a", [])]))
        dispatcher.task_failed(failed_task())


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
