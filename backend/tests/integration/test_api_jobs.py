"""
Integration tests for the Jobs API endpoints.

These tests use the FastAPI test client over the wired engine context
(in-memory store, scheduler loops not started).
"""
import asyncio

import pytest

from task_scheduler import JobRun, TaskResult, TaskScheduler
from tests.fixtures.factories import create_provider


class HeldJob(TaskScheduler):
    """Stays running until released or cancelled."""

    def __init__(self, history_repo, task_id: str):
        super().__init__(history_repo)
        self.task_id = task_id
        self.task_name = task_id
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def execute(self, run: JobRun) -> TaskResult:
        self.started.set()
        while not self.release.is_set() and not run.cancelled:
            await asyncio.sleep(0.01)
        return TaskResult(success=not run.cancelled)


@pytest.fixture
def held_sync(engine_context):
    """Replace the sync job with one that holds until released."""
    job = HeldJob(engine_context.job_history, "sync_provider_titles")
    engine_context.registry.register(job, interval=3600)
    return job


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, async_client):
        """GET /api/health reports the service and scheduler state."""
        response = await async_client.get("/api/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["scheduler_running"] is False


class TestListJobs:
    """Tests for GET /api/jobs endpoint."""

    @pytest.mark.asyncio
    async def test_lists_registered_jobs(self, async_client):
        response = await async_client.get("/api/jobs")
        assert response.status_code == 200

        jobs = {job["job_name"]: job for job in response.json()}
        assert set(jobs) == {"sync_provider_titles", "merge_titles", "purge_provider_cache"}
        assert jobs["merge_titles"]["blocked_by"] == ["sync_provider_titles"]
        assert all(job["status"] == "idle" for job in jobs.values())


class TestGetJob:
    """Tests for GET /api/jobs/{job_name} endpoint."""

    @pytest.mark.asyncio
    async def test_not_found(self, async_client):
        response = await async_client.get("/api/jobs/definitely_nonexistent_job")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_shows_last_run(self, async_client, engine_context):
        """A finished run is reported with its history status and result."""
        response = await async_client.post("/api/jobs/sync_provider_titles/run")
        assert response.status_code == 202
        await engine_context.engine.join("sync_provider_titles", timeout=5)

        data = (await async_client.get("/api/jobs/sync_provider_titles")).json()
        assert data["status"] == "completed"
        assert data["running"] is False
        assert data["execution_count"] == 1
        assert data["last_execution"].endswith("Z")
        assert data["last_result"] == {"providers_processed": 0, "results": []}
        assert data["last_run"]["status"] == "completed"
        assert data["last_run"]["message"] == "No active providers"


class TestRunJob:
    """Tests for POST /api/jobs/{job_name}/run endpoint."""

    @pytest.mark.asyncio
    async def test_unknown_job(self, async_client):
        response = await async_client.post("/api/jobs/definitely_nonexistent_job/run")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_started(self, async_client, engine_context):
        response = await async_client.post("/api/jobs/merge_titles/run")

        assert response.status_code == 202
        assert response.json() == {"status": "started"}
        result = await engine_context.engine.join("merge_titles", timeout=5)
        assert result.success is True

    @pytest.mark.asyncio
    async def test_already_running(self, async_client, engine_context, held_sync):
        assert (await async_client.post("/api/jobs/sync_provider_titles/run")).status_code == 202
        await held_sync.started.wait()

        response = await async_client.post("/api/jobs/sync_provider_titles/run")
        assert response.status_code == 409
        assert response.json()["detail"] == "already-running"

        held_sync.release.set()
        await engine_context.engine.join("sync_provider_titles", timeout=5)

    @pytest.mark.asyncio
    async def test_merge_blocked_while_sync_runs(self, async_client, engine_context, held_sync):
        await async_client.post("/api/jobs/sync_provider_titles/run")
        await held_sync.started.wait()

        response = await async_client.post("/api/jobs/merge_titles/run")
        assert response.status_code == 409
        assert response.json()["detail"] == "blocked-by-peer"

        held_sync.release.set()
        await engine_context.engine.join("sync_provider_titles", timeout=5)
        assert (await async_client.post("/api/jobs/merge_titles/run")).status_code == 202
        await engine_context.engine.join("merge_titles", timeout=5)

    @pytest.mark.asyncio
    async def test_purge_removes_deleted_provider_cache(self, async_client, engine_context):
        create_provider(engine_context.store, id="P7", deleted=True)
        cache = engine_context.fetcher.cache_root / "P7" / "movies" / "metadata"
        cache.mkdir(parents=True)
        (cache / "get_vod_streams.json").write_text("[]")

        response = await async_client.post("/api/jobs/purge_provider_cache/run")
        assert response.status_code == 202
        result = await engine_context.engine.join("purge_provider_cache", timeout=5)

        assert result.details["purged"] == ["P7"]
        assert not (engine_context.fetcher.cache_root / "P7").exists()


class TestCancelJob:
    """Tests for POST /api/jobs/{job_name}/cancel endpoint."""

    @pytest.mark.asyncio
    async def test_unknown_job(self, async_client):
        response = await async_client.post("/api/jobs/definitely_nonexistent_job/cancel")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_not_running(self, async_client):
        response = await async_client.post("/api/jobs/merge_titles/cancel")
        assert response.status_code == 200
        assert response.json()["status"] == "not_running"

    @pytest.mark.asyncio
    async def test_cancel_running(self, async_client, engine_context, held_sync):
        await async_client.post("/api/jobs/sync_provider_titles/run")
        await held_sync.started.wait()

        response = await async_client.post("/api/jobs/sync_provider_titles/cancel")
        assert response.status_code == 200
        assert response.json()["status"] == "cancelling"

        await engine_context.engine.join("sync_provider_titles", timeout=5)
        data = (await async_client.get("/api/jobs/sync_provider_titles")).json()
        assert data["status"] == "cancelled"
        assert data["last_execution"] is None
