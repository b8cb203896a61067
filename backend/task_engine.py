"""
Job Execution Engine.

Background service that fires the registered jobs:
- One interval loop per job (first fire after the job's first delay)
- Single run per job, and jobs refused while a blocking peer runs
- Manual trigger and cancel with the same rules
- Graceful shutdown: cancel, wait up to the grace window, then force
"""
import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Optional

from errors import DocStoreError
from repositories import JobHistoryRepository
from task_registry import JobDefinition, TaskRegistry
from task_scheduler import TaskResult

logger = logging.getLogger(__name__)

# Configuration
DEFAULT_SHUTDOWN_GRACE = 30.0


class TriggerOutcome(str, Enum):
    """Answer to a start request."""
    STARTED = "started"
    ALREADY_RUNNING = "already_running"
    BLOCKED_BY_PEER = "blocked_by_peer"
    NOT_FOUND = "not_found"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() + "Z" if value else None


class TaskEngine:
    """
    Background execution engine for the registered jobs.

    Each job run is its own asyncio.Task; the engine keeps them in
    ``_runs`` until they finish so start decisions never race a run that
    has been created but not yet marked running.
    """

    def __init__(
        self,
        registry: TaskRegistry,
        history_repo: JobHistoryRepository,
        shutdown_grace: float = DEFAULT_SHUTDOWN_GRACE,
    ):
        self.registry = registry
        self.history_repo = history_repo
        self.shutdown_grace = shutdown_grace
        self._running = False
        self._loops: dict[str, asyncio.Task] = {}
        self._runs: dict[str, asyncio.Task] = {}
        self._lock = asyncio.Lock()

    async def start(self) -> None:
        """Start the interval loops."""
        if self._running:
            logger.warning("Task engine already running")
            return

        logger.info("Starting task execution engine")
        self._running = True

        try:
            reset = self.history_repo.reset_in_progress()
            if reset:
                logger.warning(f"Marked {reset} job(s) left running by a previous process as cancelled")
        except DocStoreError as e:
            logger.error(f"Failed to reset interrupted jobs: {e}")

        for definition in self.registry.definitions():
            self._loops[definition.name] = asyncio.create_task(self._interval_loop(definition))
        logger.info(f"Task engine started ({len(self._loops)} job(s))")

    async def stop(self) -> None:
        """Stop the loops, cancel in-flight runs and wait for them up to the grace window."""
        if not self._running and not self._runs:
            return

        logger.info("Stopping task execution engine")
        self._running = False

        loops = list(self._loops.values())
        self._loops.clear()
        for loop in loops:
            loop.cancel()
        if loops:
            await asyncio.gather(*loops, return_exceptions=True)

        runs = dict(self._runs)
        if runs:
            logger.info(f"Cancelling {len(runs)} active job(s): {', '.join(sorted(runs))}")
            for name in runs:
                job = self.registry.get_job(name)
                if job is not None:
                    job.cancel("Shutdown requested")

            _, pending = await asyncio.wait(set(runs.values()), timeout=self.shutdown_grace)
            if pending:
                logger.warning(
                    f"{len(pending)} job(s) still running after {self.shutdown_grace}s grace, forcing cancellation"
                )
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

        logger.info("Task engine stopped")

    @property
    def is_running(self) -> bool:
        """Check if engine is running."""
        return self._running

    @property
    def active_job_names(self) -> list[str]:
        """Get list of currently running job names."""
        return list(self._runs)

    def is_job_active(self, name: str) -> bool:
        return name in self._runs

    # -------------------------------------------------------------------------
    # Firing
    # -------------------------------------------------------------------------

    async def _interval_loop(self, definition: JobDefinition) -> None:
        """Fire one job every ``definition.interval`` seconds."""
        name = definition.name
        try:
            await asyncio.sleep(definition.first_delay)
        except asyncio.CancelledError:
            return

        while self._running:
            try:
                outcome = await self.trigger(name, triggered_by="scheduled")
                if outcome != TriggerOutcome.STARTED:
                    logger.info(f"[{name}] Scheduled run skipped: {outcome.value}")
            except Exception as e:
                logger.exception(f"[{name}] Error in scheduler loop: {e}")

            try:
                await asyncio.sleep(definition.interval)
            except asyncio.CancelledError:
                break

    async def trigger(self, name: str, triggered_by: str = "manual") -> TriggerOutcome:
        """
        Start a job unless it is running or a blocking peer is running.

        The job runs in the background; use ``join`` to wait for it.
        """
        definition = self.registry.get(name)
        if definition is None:
            return TriggerOutcome.NOT_FOUND

        async with self._lock:
            if name in self._runs or definition.job.is_running:
                logger.warning(f"[{name}] Job is already running")
                return TriggerOutcome.ALREADY_RUNNING
            for peer in definition.blocked_by:
                peer_job = self.registry.get_job(peer)
                if peer in self._runs or (peer_job is not None and peer_job.is_running):
                    logger.info(f"[{name}] Refused while {peer} is running")
                    return TriggerOutcome.BLOCKED_BY_PEER
            self._runs[name] = asyncio.create_task(self._execute(definition, triggered_by))
        return TriggerOutcome.STARTED

    async def _execute(self, definition: JobDefinition, triggered_by: str) -> Optional[TaskResult]:
        name = definition.name
        try:
            logger.info(f"[{name}] Starting job execution (triggered_by={triggered_by})")
            result = await definition.job.run()
            logger.info(
                f"[{name}] Run finished with status {result.status.value if result.status else 'unknown'}"
                f" in {result.duration_seconds or 0:.1f}s"
            )
            return result
        except asyncio.CancelledError:
            logger.warning(f"[{name}] Run task cancelled")
            raise
        except Exception as e:
            logger.exception(f"[{name}] Job execution failed: {e}")
            return None
        finally:
            self._runs.pop(name, None)

    async def join(self, name: str, timeout: Optional[float] = None) -> Optional[TaskResult]:
        """Wait for the current run of ``name`` (if any) and return its result."""
        task = self._runs.get(name)
        if task is None:
            return None
        done, _ = await asyncio.wait({task}, timeout=timeout)
        if task in done and not task.cancelled():
            return task.result()
        return None

    def cancel(self, name: str) -> Optional[dict]:
        """Request cancellation of a running job. None when the job is unknown."""
        job = self.registry.get_job(name)
        if job is None:
            return None
        return job.cancel()

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    def get_status(self, name: str) -> Optional[dict]:
        """Scheduler view of one job merged with its job_history row."""
        definition = self.registry.get(name)
        if definition is None:
            return None

        job = definition.job
        history = self.history_repo.get(name)
        running = job.is_running or name in self._runs
        if running:
            status = "running"
        else:
            status = history.status if history else "idle"

        return {
            "job_name": name,
            "task_name": job.task_name,
            "description": job.task_description,
            "status": status,
            "running": running,
            "last_execution": _iso(history.last_execution) if history else None,
            "execution_count": history.execution_count if history else 0,
            "last_error": history.last_error if history else None,
            "last_result": history.last_result if history else None,
            "interval_seconds": definition.interval,
            "blocked_by": list(definition.blocked_by),
            "progress": job.progress.to_dict() if running else None,
            "last_run": job.last_result.to_dict() if job.last_result else None,
        }

    def list_jobs(self) -> list[dict]:
        return [self.get_status(name) for name in self.registry.list_job_names()]
