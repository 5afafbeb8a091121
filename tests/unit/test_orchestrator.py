"""
Unit tests for ScanOrchestrator module.

Run with: pytest tests/unit/test_orchestrator.py -v
"""

import asyncio

import pytest
from vulnsweep.core.cancellation import CancellationToken
from vulnsweep.core.notifier import NotificationDispatcher, Notifier
from vulnsweep.core.orchestrator import OrchestratorConfig, ScanOrchestrator
from vulnsweep.core.persistence import MemoryBackend
from vulnsweep.core.rate_limiter import RateLimitConfig, SlidingWindowRateLimiter
from vulnsweep.core.task import DEFAULT_SCAN_CONFIGS, PackageRef, TaskStatus
from vulnsweep.core.task_store import TaskStore
from vulnsweep.sources.base_source import (
    QuotaExceededError,
    RemoteError,
    Vulnerability,
    VulnerabilitySource,
)
from vulnsweep.sources.retrying_client import LookupOutcome, RetryingClient


BALANCED = DEFAULT_SCAN_CONFIGS["balanced"]


class FakeClient:
    """Stands in for RetryingClient; lookups can be held open with gates"""

    def __init__(self, results=None, errors=None, gated=()):
        self.results = results or {}
        self.errors = errors or {}
        self.gates = {name: asyncio.Event() for name in gated}
        self.started = {name: asyncio.Event() for name in gated}
        self.calls = []

    async def lookup(self, package, token=None, on_wait=None):
        self.calls.append(package.name)
        if package.name in self.gates:
            self.started[package.name].set()
            await self.gates[package.name].wait()
        if package.name in self.errors:
            raise self.errors[package.name]
        return LookupOutcome(vulnerabilities=list(self.results.get(package.name, [])), source="remote")

    def release(self, name):
        self.gates[name].set()


class RecordingNotifier(Notifier):
    def __init__(self):
        self.completed = []
        self.failed = []
        self.high_severity = []

    def on_task_completed(self, task, summary):
        self.completed.append((task.task_id, summary))

    def on_task_failed(self, task):
        self.failed.append((task.task_id, task.error))

    def on_high_severity_found(self, task, count):
        self.high_severity.append((task.task_id, count))


def packages(*names):
    return [PackageRef(name, "1.0.0") for name in names]


def make_orchestrator(client, notifier=None, request_delay=0.0):
    store = TaskStore(backend=MemoryBackend())
    return ScanOrchestrator(
        store=store,
        client=client,
        notifications=NotificationDispatcher(notifier or RecordingNotifier()),
        config=OrchestratorConfig(request_delay=request_delay),
    )


async def wait_started(client, name):
    await asyncio.wait_for(client.started[name].wait(), timeout=2)


class TestTaskLifecycle:
    """Test suite for the full create -> complete flow"""

    @pytest.mark.asyncio
    async def test_two_package_scan_completes(self):
        """Test lodash + left-pad runs to completion with one progress event per package"""
        lodash_vuln = Vulnerability(cve_id="CVE-2020-8203")
        client = FakeClient(results={"lodash": [lodash_vuln]})
        notifier = RecordingNotifier()
        orchestrator = make_orchestrator(client, notifier)
        pkgs = [PackageRef("lodash", "4.17.15"), PackageRef("left-pad", "1.0.0")]

        with orchestrator.progress_events.subscribe() as events:
            task_id = await orchestrator.create_task(None, pkgs, BALANCED, start_immediately=True)
            await orchestrator.wait_for_idle()
            received = events.drain()

        task = orchestrator.get_task(task_id)
        assert task.status is TaskStatus.COMPLETED
        assert len(task.results) == 2
        assert task.results[0].vulnerabilities == [lodash_vuln]
        assert task.results[1].vulnerabilities == []
        assert task.progress.percentage == 100.0
        assert task.started_at is not None
        assert task.completed_at is not None
        assert [e.progress.current for e in received] == [0, 1]
        assert all(e.task_id == task_id for e in received)
        assert [t.task_id for t in orchestrator.store.history] == [task_id]
        assert orchestrator.store.active == []
        assert notifier.completed == [(task_id, f"{task.name} finished! Found 1 vulnerabilities in 1 packages")]

    @pytest.mark.asyncio
    async def test_create_without_start_stays_pending(self):
        """Test start_immediately=False leaves the task pending"""
        client = FakeClient()
        orchestrator = make_orchestrator(client)

        task_id = await orchestrator.create_task("Queued", packages("a"), BALANCED, start_immediately=False)

        task = orchestrator.get_task(task_id)
        assert task.status is TaskStatus.PENDING
        assert task.name == "Queued"
        assert client.calls == []
        assert orchestrator.store.last_task_id == task_id

    @pytest.mark.asyncio
    async def test_empty_package_list_completes(self):
        """Test a task with no packages completes immediately"""
        orchestrator = make_orchestrator(FakeClient())

        task_id = await orchestrator.create_task(None, [], BALANCED)
        await orchestrator.wait_for_idle()

        task = orchestrator.get_task(task_id)
        assert task.status is TaskStatus.COMPLETED
        assert task.results == []

    @pytest.mark.asyncio
    async def test_running_task_changes_published(self):
        """Test running task changes announce start and finish"""
        orchestrator = make_orchestrator(FakeClient())

        with orchestrator.running_task_changes.subscribe() as changes:
            task_id = await orchestrator.create_task(None, packages("a"), BALANCED)
            await orchestrator.wait_for_idle()
            received = changes.drain()

        assert received[0].task_id == task_id
        assert received[0].status is TaskStatus.RUNNING
        assert received[-1] is None


class TestPauseResume:
    """Test suite for pausing and resuming"""

    @pytest.mark.asyncio
    async def test_pause_mid_loop_then_resume_from_next_package(self):
        """Test pause stops before the next lookup and resume continues after the last result"""
        client = FakeClient(gated=["b"])
        orchestrator = make_orchestrator(client)

        with orchestrator.progress_events.subscribe() as events:
            task_id = await orchestrator.create_task(None, packages("a", "b", "c"), BALANCED)
            await wait_started(client, "b")

            await orchestrator.pause_task(task_id)
            assert orchestrator.get_task(task_id).status is TaskStatus.PAUSED

            client.release("b")
            await orchestrator.wait_for_idle()

            paused = orchestrator.get_task(task_id)
            assert paused.status is TaskStatus.PAUSED
            assert paused.next_index == 2
            assert paused.progress.current_label == "Paused"
            assert client.calls == ["a", "b"]
            assert not orchestrator.has_running_task()

            await orchestrator.start_task(task_id)
            await orchestrator.wait_for_idle()
            received = [e.progress.current for e in events.drain()]

        task = orchestrator.get_task(task_id)
        assert task.status is TaskStatus.COMPLETED
        assert client.calls == ["a", "b", "c"]
        assert [r.package_name for r in task.results] == ["a@1.0.0", "b@1.0.0", "c@1.0.0"]
        assert received == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_starting_second_task_pauses_first(self):
        """Test at most one task runs: starting another pauses the current one"""
        client = FakeClient(gated=["a1"])
        orchestrator = make_orchestrator(client)

        first = await orchestrator.create_task("first", packages("a1", "a2"), BALANCED)
        await wait_started(client, "a1")

        second = await orchestrator.create_task("second", packages("b1"), BALANCED)

        assert orchestrator.get_task(first).status is TaskStatus.PAUSED
        assert orchestrator.get_task(second).status is TaskStatus.RUNNING
        assert len(orchestrator.store.running()) == 1

        client.release("a1")
        await orchestrator.wait_for_idle()

        assert orchestrator.get_task(second).status is TaskStatus.COMPLETED
        first_task = orchestrator.get_task(first)
        assert first_task.status is TaskStatus.PAUSED
        assert first_task.next_index == 1
        assert "a2" not in client.calls

    @pytest.mark.asyncio
    async def test_start_running_task_is_noop(self):
        """Test starting an already running task changes nothing"""
        client = FakeClient(gated=["a"])
        orchestrator = make_orchestrator(client)
        task_id = await orchestrator.create_task(None, packages("a"), BALANCED)
        await wait_started(client, "a")

        await orchestrator.start_task(task_id)

        assert client.calls == ["a"]
        client.release("a")
        await orchestrator.wait_for_idle()
        assert orchestrator.get_task(task_id).status is TaskStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_stop_pauses_running_task(self):
        """Test stop() persists the running task as paused"""
        client = FakeClient(gated=["a"])
        orchestrator = make_orchestrator(client)
        task_id = await orchestrator.create_task(None, packages("a", "b"), BALANCED)
        await wait_started(client, "a")

        await orchestrator.stop()

        assert orchestrator.get_task(task_id).status is TaskStatus.PAUSED
        assert not orchestrator.is_running


class TestCancelDelete:
    """Test suite for cancel, delete, and invalid transitions"""

    @pytest.mark.asyncio
    async def test_cancel_running_task(self):
        """Test cancelling moves the task to history and stops the loop"""
        client = FakeClient(gated=["a"])
        notifier = RecordingNotifier()
        orchestrator = make_orchestrator(client, notifier)
        task_id = await orchestrator.create_task(None, packages("a", "b"), BALANCED)
        await wait_started(client, "a")

        await orchestrator.cancel_task(task_id)
        client.release("a")
        await orchestrator.wait_for_idle()

        task = orchestrator.get_task(task_id)
        assert task.status is TaskStatus.CANCELLED
        assert task.results is None
        assert task.completed_at is not None
        assert client.calls == ["a"]
        assert [t.task_id for t in orchestrator.store.history] == [task_id]
        assert notifier.completed == []

    @pytest.mark.asyncio
    async def test_cancel_paused_task(self):
        """Test a paused task can be cancelled"""
        orchestrator = make_orchestrator(FakeClient())
        task_id = await orchestrator.create_task(None, packages("a"), BALANCED, start_immediately=False)
        task = orchestrator.store.find(task_id)
        task.transition_to(TaskStatus.RUNNING)
        task.transition_to(TaskStatus.PAUSED)

        await orchestrator.cancel_task(task_id)

        assert orchestrator.get_task(task_id).status is TaskStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_invalid_transitions_are_noops(self):
        """Test forbidden transitions leave state untouched"""
        orchestrator = make_orchestrator(FakeClient())
        pending_id = await orchestrator.create_task(None, packages("a"), BALANCED, start_immediately=False)
        done_id = await orchestrator.create_task(None, packages("b"), BALANCED)
        await orchestrator.wait_for_idle()

        await orchestrator.cancel_task(pending_id)
        await orchestrator.pause_task(pending_id)
        await orchestrator.pause_task(done_id)
        await orchestrator.start_task(done_id)
        await orchestrator.start_task("missing")

        assert orchestrator.get_task(pending_id).status is TaskStatus.PENDING
        assert orchestrator.get_task(done_id).status is TaskStatus.COMPLETED
        assert not orchestrator.is_running

    @pytest.mark.asyncio
    async def test_delete_only_from_history(self):
        """Test delete removes history entries and ignores active tasks"""
        orchestrator = make_orchestrator(FakeClient())
        pending_id = await orchestrator.create_task(None, packages("a"), BALANCED, start_immediately=False)
        done_id = await orchestrator.create_task(None, packages("b"), BALANCED)
        await orchestrator.wait_for_idle()

        assert await orchestrator.delete_task(pending_id) is False
        assert await orchestrator.delete_task(done_id) is True
        assert orchestrator.get_task(done_id) is None
        assert orchestrator.get_task(pending_id) is not None

    @pytest.mark.asyncio
    async def test_clear_history(self):
        """Test clear_history empties history only"""
        orchestrator = make_orchestrator(FakeClient())
        await orchestrator.create_task(None, packages("a"), BALANCED, start_immediately=False)
        for name in ("b", "c"):
            await orchestrator.create_task(None, packages(name), BALANCED)
            await orchestrator.wait_for_idle()

        assert await orchestrator.clear_history() == 2
        assert orchestrator.store.history == []
        assert len(orchestrator.store.active) == 1


class TestFailureHandling:
    """Test suite for per-package and fatal failures"""

    @pytest.mark.asyncio
    async def test_package_lookup_error_records_empty_result(self):
        """Test a failed package lookup does not fail the task"""
        client = FakeClient(errors={"b": RemoteError("HTTP 404", status=404, retryable=False)})
        orchestrator = make_orchestrator(client)

        task_id = await orchestrator.create_task(None, packages("a", "b", "c"), BALANCED)
        await orchestrator.wait_for_idle()

        task = orchestrator.get_task(task_id)
        assert task.status is TaskStatus.COMPLETED
        assert [r.vulnerabilities for r in task.results] == [[], [], []]
        assert client.calls == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_task(self):
        """Test a non-lookup exception fails the task and notifies"""
        client = FakeClient(errors={"b": RuntimeError("disk full")})
        notifier = RecordingNotifier()
        orchestrator = make_orchestrator(client, notifier)

        task_id = await orchestrator.create_task(None, packages("a", "b"), BALANCED)
        await orchestrator.wait_for_idle()

        task = orchestrator.get_task(task_id)
        assert task.status is TaskStatus.FAILED
        assert task.error == "disk full"
        assert task.results is None
        assert notifier.failed == [(task_id, "disk full")]
        assert [t.task_id for t in orchestrator.store.history] == [task_id]

    @pytest.mark.asyncio
    async def test_quota_exhausted_package_recorded_empty(self, monkeypatch):
        """Test three quota errors for one package record an empty result and the scan continues"""
        waits = []

        async def instant_sleep(self, seconds):
            waits.append(seconds)
            return self.cancelled

        monkeypatch.setattr(CancellationToken, "sleep", instant_sleep)

        class QuotaSource(VulnerabilitySource):
            def __init__(self):
                super().__init__(source_name="quota")
                self.calls = []

            async def lookup(self, name, version):
                self.calls.append(name)
                if name == "lodash":
                    raise QuotaExceededError("limit", retry_after_seconds=5)
                return [Vulnerability(cve_id="CVE-2019-0001")]

        source = QuotaSource()
        client = RetryingClient(
            remote=source,
            rate_limiter=SlidingWindowRateLimiter(RateLimitConfig(max_requests=100)),
        )
        orchestrator = ScanOrchestrator(
            store=TaskStore(backend=MemoryBackend()),
            client=client,
            config=OrchestratorConfig(request_delay=12.0),
        )

        pkgs = [PackageRef("lodash", "4.17.15"), PackageRef("left-pad", "1.0.0")]
        task_id = await orchestrator.create_task(None, pkgs, BALANCED)
        await orchestrator.wait_for_idle()

        task = orchestrator.get_task(task_id)
        assert task.status is TaskStatus.COMPLETED
        assert task.results[0].vulnerabilities == []
        assert [v.cve_id for v in task.results[1].vulnerabilities] == ["CVE-2019-0001"]
        assert source.calls == ["lodash", "lodash", "lodash", "left-pad"]
        assert waits == [5.0, 5.0, 12.0]

    @pytest.mark.asyncio
    async def test_progress_persisted_after_each_package(self):
        """Test every recorded package result reaches the backend"""
        client = FakeClient(gated=["c"])
        orchestrator = make_orchestrator(client)
        backend = orchestrator.store.backend

        task_id = await orchestrator.create_task(None, packages("a", "b", "c"), BALANCED)
        await wait_started(client, "c")

        saved = backend.load()
        assert saved.active[0].task_id == task_id
        assert len(saved.active[0].partial_results) == 2

        client.release("c")
        await orchestrator.wait_for_idle()


class TestStatus:
    """Test suite for status reporting"""

    @pytest.mark.asyncio
    async def test_get_status(self):
        """Test status reporting"""
        orchestrator = make_orchestrator(FakeClient())

        status = orchestrator.get_status()

        assert "running_task" in status
        assert "is_running" in status
        assert "tasks" in status
        assert status["is_running"] is False


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
