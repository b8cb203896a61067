"""
Unit tests for the job lifecycle, registry and execution engine.
"""
import asyncio
from datetime import datetime

import pytest

from task_engine import TaskEngine, TriggerOutcome
from task_registry import TaskRegistry
from task_scheduler import JobRun, TaskResult, TaskScheduler, TaskStatus
from tests.fixtures.factories import create_job_history


class GatedJob(TaskScheduler):
    """Runs until released or cancelled."""

    task_id = "gated"
    task_name = "Gated"

    def __init__(self, history_repo, task_id: str = "gated"):
        super().__init__(history_repo)
        self.task_id = task_id
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.watermarks = []

    async def execute(self, run: JobRun) -> TaskResult:
        self.watermarks.append(run.watermark)
        self.started.set()
        while not self.release.is_set():
            if run.cancelled:
                return TaskResult(success=False, message="stopped early")
            await asyncio.sleep(0.01)
        return TaskResult(success=True, message="done", details={"items": 1})


class StubbornJob(TaskScheduler):
    """Ignores cancellation requests."""

    task_id = "stubborn"
    task_name = "Stubborn"

    def __init__(self, history_repo):
        super().__init__(history_repo)
        self.started = asyncio.Event()

    async def execute(self, run: JobRun) -> TaskResult:
        self.started.set()
        await asyncio.sleep(60)
        return TaskResult(success=True)


class CountingJob(TaskScheduler):
    task_id = "counting"
    task_name = "Counting"

    def __init__(self, history_repo):
        super().__init__(history_repo)
        self.runs = 0

    async def execute(self, run: JobRun) -> TaskResult:
        self.runs += 1
        return TaskResult(success=True, details={"run": self.runs})


class BrokenJob(TaskScheduler):
    task_id = "broken"
    task_name = "Broken"

    async def execute(self, run: JobRun) -> TaskResult:
        raise RuntimeError("boom")


class UnsuccessfulJob(TaskScheduler):
    task_id = "unsuccessful"
    task_name = "Unsuccessful"

    async def execute(self, run: JobRun) -> TaskResult:
        return TaskResult(success=False, message="nothing worked", error="all providers failed")


@pytest.fixture
def registry():
    return TaskRegistry()


@pytest.fixture
def engine(registry, history_repo):
    return TaskEngine(registry, history_repo, shutdown_grace=0.2)


class TestTaskRegistry:
    def test_register_and_lookup(self, registry, history_repo):
        job = CountingJob(history_repo)
        registry.register(job, interval=60, first_delay=-5, blocked_by=["other"])

        definition = registry.get("counting")
        assert definition.job is job
        assert definition.first_delay == 0.0
        assert registry.list_job_names() == ["counting"]
        assert registry.list_jobs()[0]["blocked_by"] == ["other"]

    def test_rejects_bad_interval(self, registry, history_repo):
        with pytest.raises(ValueError):
            registry.register(CountingJob(history_repo), interval=0)

    def test_rejects_job_without_id(self, registry, history_repo):
        job = CountingJob(history_repo)
        job.task_id = ""
        with pytest.raises(ValueError):
            registry.register(job, interval=60)

    def test_unregister(self, registry, history_repo):
        registry.register(CountingJob(history_repo), interval=60)
        assert registry.unregister("counting") is True
        assert registry.unregister("counting") is False


class TestTaskScheduler:
    """Tests for TaskScheduler.run() on its own."""

    @pytest.mark.asyncio
    async def test_completed_run_moves_watermark(self, history_repo):
        job = CountingJob(history_repo)

        first = await job.run()
        second = await job.run()

        assert first.status == TaskStatus.COMPLETED
        assert job.status == TaskStatus.IDLE
        history = history_repo.get("counting")
        assert history.status == "completed"
        assert history.last_execution == second.started_at
        assert history.execution_count == 2
        assert history.last_result == {"run": 2}

    @pytest.mark.asyncio
    async def test_watermark_passed_to_next_run(self, history_repo):
        job = GatedJob(history_repo)
        job.release.set()

        first = await job.run()
        await job.run()

        assert job.watermarks == [None, first.started_at]

    @pytest.mark.asyncio
    async def test_watermark_read_from_history(self, store, history_repo):
        create_job_history(store, job_name="gated", last_execution=datetime(2025, 1, 1))
        job = GatedJob(history_repo)
        job.release.set()

        await job.run()

        assert job.watermarks == [datetime(2025, 1, 1)]

    @pytest.mark.asyncio
    async def test_exception_fails_the_run(self, history_repo):
        job = BrokenJob(history_repo)

        result = await job.run()

        assert result.status == TaskStatus.FAILED
        assert result.error == "boom"
        history = history_repo.get("broken")
        assert history.status == "failed"
        assert history.last_error == "boom"
        assert history.last_execution is None

    @pytest.mark.asyncio
    async def test_unsuccessful_result_fails_the_run(self, history_repo):
        result = await UnsuccessfulJob(history_repo).run()

        assert result.status == TaskStatus.FAILED
        assert history_repo.get("unsuccessful").last_error == "all providers failed"

    @pytest.mark.asyncio
    async def test_second_run_refused_while_running(self, history_repo):
        job = GatedJob(history_repo)
        task = asyncio.create_task(job.run())
        await job.started.wait()

        refused = await job.run()
        assert refused.success is False
        assert refused.error == "ALREADY_RUNNING"

        job.release.set()
        assert (await task).status == TaskStatus.COMPLETED

    def test_cancel_when_idle(self, history_repo):
        assert CountingJob(history_repo).cancel()["status"] == "not_running"


class TestTaskEngine:
    """Tests for TaskEngine."""

    @pytest.mark.asyncio
    async def test_trigger_unknown_job(self, engine):
        assert await engine.trigger("missing") == TriggerOutcome.NOT_FOUND
        assert engine.cancel("missing") is None
        assert engine.get_status("missing") is None

    @pytest.mark.asyncio
    async def test_trigger_and_join(self, engine, registry, history_repo):
        registry.register(CountingJob(history_repo), interval=3600)

        assert await engine.trigger("counting") == TriggerOutcome.STARTED
        result = await engine.join("counting", timeout=5)

        assert result.status == TaskStatus.COMPLETED
        status = engine.get_status("counting")
        assert status["status"] == "completed"
        assert status["running"] is False
        assert status["execution_count"] == 1
        assert status["progress"] is None

    @pytest.mark.asyncio
    async def test_status_idle_before_first_run(self, engine, registry, history_repo):
        registry.register(CountingJob(history_repo), interval=3600)

        assert engine.list_jobs()[0]["status"] == "idle"

    @pytest.mark.asyncio
    async def test_single_run_per_job(self, engine, registry, history_repo):
        job = GatedJob(history_repo)
        registry.register(job, interval=3600)

        assert await engine.trigger("gated") == TriggerOutcome.STARTED
        assert await engine.trigger("gated") == TriggerOutcome.ALREADY_RUNNING
        await job.started.wait()
        assert engine.get_status("gated")["status"] == "running"

        job.release.set()
        await engine.join("gated", timeout=5)

    @pytest.mark.asyncio
    async def test_blocked_by_peer(self, engine, registry, history_repo):
        sync = GatedJob(history_repo, task_id="sync")
        merge = GatedJob(history_repo, task_id="merge")
        merge.release.set()
        registry.register(sync, interval=3600)
        registry.register(merge, interval=3600, blocked_by=["sync"])

        await engine.trigger("sync")
        await sync.started.wait()
        assert await engine.trigger("merge") == TriggerOutcome.BLOCKED_BY_PEER

        sync.release.set()
        await engine.join("sync", timeout=5)
        assert await engine.trigger("merge") == TriggerOutcome.STARTED
        assert (await engine.join("merge", timeout=5)).status == TaskStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_cancel_running_job(self, engine, registry, history_repo):
        job = GatedJob(history_repo)
        registry.register(job, interval=3600)
        await engine.trigger("gated")
        await job.started.wait()

        assert engine.cancel("gated")["status"] == "cancelling"
        result = await engine.join("gated", timeout=5)

        assert result.status == TaskStatus.CANCELLED
        history = history_repo.get("gated")
        assert history.status == "cancelled"
        assert history.last_execution is None
        assert engine.cancel("gated")["status"] == "not_running"

    @pytest.mark.asyncio
    async def test_start_resets_interrupted_runs(self, engine, registry, history_repo):
        history_repo.mark_running("sync_provider_titles")

        await engine.start()
        await engine.stop()

        history = history_repo.get("sync_provider_titles")
        assert history.status == "cancelled"
        assert history.last_error

    @pytest.mark.asyncio
    async def test_interval_loop_fires_repeatedly(self, engine, registry, history_repo):
        job = CountingJob(history_repo)
        registry.register(job, interval=0.05)

        await engine.start()
        for _ in range(100):
            if job.runs >= 2:
                break
            await asyncio.sleep(0.02)
        await engine.stop()

        assert job.runs >= 2
        assert engine.is_running is False

    @pytest.mark.asyncio
    async def test_first_delay_postpones_first_fire(self, engine, registry, history_repo):
        job = CountingJob(history_repo)
        registry.register(job, interval=60, first_delay=3600)

        await engine.start()
        await asyncio.sleep(0.05)
        await engine.stop()

        assert job.runs == 0

    @pytest.mark.asyncio
    async def test_stop_cancels_cooperative_job(self, engine, registry, history_repo):
        job = GatedJob(history_repo)
        registry.register(job, interval=3600)
        await engine.start()
        await engine.trigger("gated")
        await job.started.wait()

        await engine.stop()

        history = history_repo.get("gated")
        assert history.status == "cancelled"
        assert history.last_error == "Shutdown requested"
        assert engine.active_job_names == []

    @pytest.mark.asyncio
    async def test_stop_forces_stubborn_job(self, engine, registry, history_repo):
        job = StubbornJob(history_repo)
        registry.register(job, interval=3600)
        await engine.start()
        await engine.trigger("stubborn")
        await job.started.wait()

        await engine.stop()

        history = history_repo.get("stubborn")
        assert history.status == "cancelled"
        assert history.last_error == "FORCED_STOP"
        assert job.status == TaskStatus.IDLE
