"""
Unit tests for the ScanTask model and state machine.

Run with: pytest tests/unit/test_task.py -v
"""

import re
from datetime import datetime, timedelta, timezone

import pytest
from vulnsweep.core.task import (
    DEFAULT_SCAN_CONFIGS,
    InvalidTransitionError,
    PackageKind,
    PackageRef,
    PackageResult,
    Progress,
    ScanTask,
    TaskStatus,
    estimate_duration_minutes,
    generate_task_id,
)
from vulnsweep.sources.base_source import Vulnerability


NOW = datetime(2025, 3, 14, 9, 30, tzinfo=timezone.utc)

PACKAGES = [
    PackageRef("lodash", "4.17.15"),
    PackageRef("left-pad", "1.0.0", PackageKind.TRANSITIVE),
    PackageRef("jest", "29.0.0", PackageKind.DEV),
]


def make_task(**kwargs) -> ScanTask:
    kwargs.setdefault("packages", PACKAGES)
    kwargs.setdefault("config", DEFAULT_SCAN_CONFIGS["balanced"])
    kwargs.setdefault("now", NOW)
    return ScanTask.create(**kwargs)


class TestScanTaskCreation:
    """Test suite for task creation"""

    def test_create_defaults(self):
        """Test a new task starts pending with zero progress"""
        task = make_task()

        assert task.status is TaskStatus.PENDING
        assert task.progress == Progress(current=0, total=3, percentage=0.0, current_label="Waiting to start...")
        assert task.results is None
        assert task.error is None
        assert task.created_at == NOW
        assert task.started_at is None
        assert task.partial_results == []

    def test_default_name_uses_creation_time(self):
        """Test an empty name is replaced with a timestamped default"""
        assert make_task().name == "Scan task - 2025-03-14 09:30"
        assert make_task(name="").name == "Scan task - 2025-03-14 09:30"
        assert make_task(name="Release audit").name == "Release audit"

    def test_task_id_format(self):
        """Test ids carry a timestamp and a random suffix"""
        task_id = generate_task_id(NOW)

        assert re.fullmatch(r"scan_20250314_093000_[0-9a-f]{8}", task_id)
        assert generate_task_id(NOW) != task_id

    def test_estimated_duration(self):
        """Test duration estimate rounds up to whole minutes"""
        assert estimate_duration_minutes(0) == 0
        assert estimate_duration_minutes(1) == 1
        assert estimate_duration_minutes(10) == 3  # 170s
        assert make_task().estimated_duration_minutes == 1


class TestScanTaskTransitions:
    """Test suite for the task state machine"""

    def test_first_start_sets_started_at(self):
        """Test pending -> running stamps started_at once"""
        task = make_task()

        task.transition_to(TaskStatus.RUNNING, NOW + timedelta(minutes=1))
        task.transition_to(TaskStatus.PAUSED, NOW + timedelta(minutes=2))
        task.transition_to(TaskStatus.RUNNING, NOW + timedelta(minutes=3))

        assert task.started_at == NOW + timedelta(minutes=1)

    def test_pending_cannot_be_cancelled_or_paused(self):
        """Test pending only moves to running"""
        task = make_task()

        for target in (TaskStatus.PAUSED, TaskStatus.CANCELLED, TaskStatus.COMPLETED, TaskStatus.FAILED):
            assert not task.can_transition(target)
            with pytest.raises(InvalidTransitionError):
                task.transition_to(target)

        assert task.status is TaskStatus.PENDING

    def test_terminal_states_are_final(self):
        """Test no transition leaves a terminal state"""
        task = make_task()
        task.transition_to(TaskStatus.RUNNING, NOW)
        task.transition_to(TaskStatus.CANCELLED, NOW)

        for target in TaskStatus:
            assert not task.can_transition(target)

    def test_paused_cannot_complete(self):
        """Test a paused task must resume before it can finish"""
        task = make_task()
        task.transition_to(TaskStatus.RUNNING, NOW)
        task.transition_to(TaskStatus.PAUSED, NOW)

        with pytest.raises(InvalidTransitionError) as exc_info:
            task.transition_to(TaskStatus.COMPLETED, NOW)

        assert exc_info.value.current is TaskStatus.PAUSED
        assert exc_info.value.target is TaskStatus.COMPLETED

    def test_complete_moves_partial_results(self):
        """Test completion attaches results and fills progress"""
        task = make_task()
        task.transition_to(TaskStatus.RUNNING, NOW)
        task.partial_results = [
            PackageResult("lodash", [Vulnerability(cve_id="CVE-2020-8203")]),
            PackageResult("left-pad", []),
            PackageResult("jest", []),
        ]

        task.complete(NOW + timedelta(minutes=5))

        assert task.status is TaskStatus.COMPLETED
        assert len(task.results) == 3
        assert task.partial_results == []
        assert task.progress.percentage == 100.0
        assert task.progress.current == 3
        assert task.completed_at == NOW + timedelta(minutes=5)
        assert task.actual_duration_minutes == 5
        assert task.vulnerability_count == 1
        assert task.vulnerable_package_count == 1

    def test_fail_records_error(self):
        """Test failure records the message and completion time"""
        task = make_task()
        task.transition_to(TaskStatus.RUNNING, NOW)

        task.fail("disk full", NOW + timedelta(seconds=30))

        assert task.status is TaskStatus.FAILED
        assert task.error == "disk full"
        assert task.results is None
        assert task.completed_at is not None

    def test_reference_time(self):
        """Test expiry reference prefers completed, then started, then created"""
        task = make_task()
        assert task.reference_time == NOW

        task.transition_to(TaskStatus.RUNNING, NOW + timedelta(hours=1))
        assert task.reference_time == NOW + timedelta(hours=1)

        task.transition_to(TaskStatus.COMPLETED, NOW + timedelta(hours=2))
        assert task.reference_time == NOW + timedelta(hours=2)

    def test_snapshot_is_independent(self):
        """Test mutating a snapshot's lists does not affect the task"""
        task = make_task()
        snapshot = task.snapshot()

        snapshot.partial_results.append(PackageResult("lodash"))

        assert task.partial_results == []


class TestScanConfig:
    """Test suite for scan configuration presets"""

    def test_presets(self):
        """Test the mode presets select the expected dependency kinds"""
        fast = DEFAULT_SCAN_CONFIGS["fast"]
        balanced = DEFAULT_SCAN_CONFIGS["balanced"]
        comprehensive = DEFAULT_SCAN_CONFIGS["comprehensive"]

        assert [p.name for p in fast.filter_packages(PACKAGES)] == ["lodash"]
        assert [p.name for p in balanced.filter_packages(PACKAGES)] == ["lodash", "left-pad"]
        assert [p.name for p in comprehensive.filter_packages(PACKAGES)] == ["lodash", "left-pad", "jest"]

    def test_progress_is_clamped(self):
        """Test percentage stays within 0..100"""
        assert Progress.at(5, 4).percentage == 100.0
        assert Progress.at(0, 0).percentage == 0.0
        assert Progress.at(1, 4, "x").with_label("y").current_label == "y"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
