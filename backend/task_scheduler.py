"""
Job Lifecycle Framework.

Provides an abstract base class for scheduled jobs with support for:
- Watermarks (the previous successful run's start time)
- Cooperative cancellation through a per-run CancellationToken
- Progress tracking and status reporting
- History persistence in the job_history collection

State machine: idle -> running -> completed | failed | cancelled -> idle.
The terminal state is what job_history keeps; the in-memory status goes
back to idle once the run is recorded.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from cancellation import CancellationToken
from errors import CancellationError, DocStoreError
from repositories import JobHistoryRepository

logger = logging.getLogger(__name__)


class TaskStatus(str, Enum):
    """Status of a job."""
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)


@dataclass
class TaskProgress:
    """Progress information for a running job."""
    total: int = 0
    current: int = 0
    status: str = "idle"
    current_item: str = ""
    success_count: int = 0
    failed_count: int = 0
    started_at: Optional[datetime] = None

    @property
    def percentage(self) -> float:
        """Get completion percentage (0-100)."""
        if self.total == 0:
            return 0.0
        return (self.current / self.total) * 100.0

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "total": self.total,
            "current": self.current,
            "percentage": round(self.percentage, 1),
            "status": self.status,
            "current_item": self.current_item,
            "success_count": self.success_count,
            "failed_count": self.failed_count,
            "started_at": self.started_at.isoformat() + "Z" if self.started_at else None,
        }


@dataclass
class TaskResult:
    """Result of a job execution."""
    success: bool
    message: str = ""
    status: Optional[TaskStatus] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    details: dict = field(default_factory=dict)

    @property
    def duration_seconds(self) -> Optional[float]:
        """Get execution duration in seconds."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "success": self.success,
            "message": self.message,
            "status": self.status.value if self.status else None,
            "started_at": self.started_at.isoformat() + "Z" if self.started_at else None,
            "completed_at": self.completed_at.isoformat() + "Z" if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "error": self.error,
            "details": self.details,
        }


@dataclass
class JobRun:
    """What a job's execute() gets to work with."""
    started_at: datetime
    # Start time of the last completed run, None on the first run
    watermark: Optional[datetime]
    cancel_token: CancellationToken

    @property
    def cancelled(self) -> bool:
        return self.cancel_token.cancelled


class TaskScheduler(ABC):
    """
    Abstract base class for scheduled jobs.

    Subclasses must implement:
    - task_id: Unique job name (also the job_history key)
    - task_name: Human-readable name for the job
    - execute(): The actual job logic

    execute() should check ``run.cancelled`` between units of work and
    return early when it is set. Returning a result with success=False
    records the run as failed.
    """

    # Subclasses must define these
    task_id: str = ""
    task_name: str = ""
    task_description: str = ""

    def __init__(self, history_repo: JobHistoryRepository):
        """Initialize the job."""
        self.history_repo = history_repo
        self._status = TaskStatus.IDLE
        self._progress = TaskProgress()
        self._cancel_token: Optional[CancellationToken] = None
        self._last_result: Optional[TaskResult] = None

    # -------------------------------------------------------------------------
    # Abstract methods (must be implemented by subclasses)
    # -------------------------------------------------------------------------

    @abstractmethod
    async def execute(self, run: JobRun) -> TaskResult:
        """
        Execute the job logic.

        Returns:
            TaskResult with execution outcome; ``details`` is stored as the
            job's last_result.
        """
        pass

    # -------------------------------------------------------------------------
    # Status and Progress
    # -------------------------------------------------------------------------

    @property
    def status(self) -> TaskStatus:
        """Get current job status."""
        return self._status

    @property
    def progress(self) -> TaskProgress:
        """Get current job progress."""
        return self._progress

    @property
    def is_running(self) -> bool:
        """Check if job is currently running."""
        return self._status == TaskStatus.RUNNING

    @property
    def last_result(self) -> Optional[TaskResult]:
        return self._last_result

    # -------------------------------------------------------------------------
    # Progress Tracking (for use by subclasses)
    # -------------------------------------------------------------------------

    def _reset_progress(self):
        """Reset progress tracking for a new run."""
        self._progress = TaskProgress()

    def _set_progress(
        self,
        total: Optional[int] = None,
        current: Optional[int] = None,
        status: Optional[str] = None,
        current_item: Optional[str] = None,
    ):
        """Update progress values. Only provided values are updated."""
        if total is not None:
            self._progress.total = total
        if current is not None:
            self._progress.current = current
        if status is not None:
            self._progress.status = status
        if current_item is not None:
            self._progress.current_item = current_item

    def _increment_progress(self, current: int = 0, success_count: int = 0, failed_count: int = 0):
        """Increment progress counters."""
        self._progress.current += current
        self._progress.success_count += success_count
        self._progress.failed_count += failed_count

    # -------------------------------------------------------------------------
    # Job Execution
    # -------------------------------------------------------------------------

    async def run(self) -> TaskResult:
        """
        Run the job immediately.

        This is the main entry point for job execution. It handles:
        - Reading the watermark before the status becomes running
        - Status management
        - Error handling and cancellation
        - History recording

        Returns:
            TaskResult with execution outcome.
        """
        if self._status == TaskStatus.RUNNING:
            return TaskResult(
                success=False,
                message="Job is already running",
                error="ALREADY_RUNNING",
            )

        watermark = self.history_repo.get_watermark(self.task_id)

        # Initialize for this run
        started_at = datetime.utcnow()
        token = CancellationToken()
        self._cancel_token = token
        self._reset_progress()
        self._status = TaskStatus.RUNNING
        self._progress.started_at = started_at
        self._progress.status = "starting"
        self._record_running()

        result = TaskResult(success=False, started_at=started_at)
        try:
            logger.info(f"[{self.task_id}] Starting job (watermark={watermark.isoformat() if watermark else None})")
            result = await self.execute(JobRun(started_at=started_at, watermark=watermark, cancel_token=token))
            result.started_at = started_at
            result.completed_at = datetime.utcnow()

            if token.cancelled:
                self._status = TaskStatus.CANCELLED
                result.success = False
                result.message = result.message or "Job was cancelled"
                result.error = token.reason or "CANCELLED"
                logger.info(f"[{self.task_id}] Job cancelled")
            elif result.success:
                self._status = TaskStatus.COMPLETED
                logger.info(f"[{self.task_id}] Job completed: {result.message}")
            else:
                self._status = TaskStatus.FAILED
                logger.warning(f"[{self.task_id}] Job failed: {result.error or result.message}")

        except CancellationError as e:
            self._status = TaskStatus.CANCELLED
            result.success = False
            result.message = "Job was cancelled"
            result.error = str(e)
            result.completed_at = datetime.utcnow()
            logger.info(f"[{self.task_id}] Job cancelled: {e}")
        except asyncio.CancelledError:
            # Forced stop; record it and let the cancellation propagate
            self._status = TaskStatus.CANCELLED
            result.success = False
            result.message = "Job was stopped"
            result.error = "FORCED_STOP"
            result.completed_at = datetime.utcnow()
            logger.warning(f"[{self.task_id}] Job force-cancelled")
            raise
        except Exception as e:
            self._status = TaskStatus.FAILED
            result.success = False
            result.message = f"Job failed with error: {str(e)}"
            result.error = str(e)
            result.completed_at = datetime.utcnow()
            logger.exception(f"[{self.task_id}] Job error: {e}")
        finally:
            result.status = self._status
            self._record_finished(result, started_at)
            self._last_result = result
            self._progress.status = self._status.value
            self._cancel_token = None
            if self._status in TERMINAL_STATUSES:
                self._status = TaskStatus.IDLE

        return result

    def cancel(self, reason: str = "Cancellation requested") -> dict:
        """
        Request cancellation of the running job.

        Returns:
            Status dict with cancellation result.
        """
        if self._status != TaskStatus.RUNNING or self._cancel_token is None:
            return {
                "status": "not_running",
                "message": "Job is not currently running",
            }

        logger.info(f"[{self.task_id}] Cancellation requested")
        self._cancel_token.cancel(reason)
        self._progress.status = "cancelling"

        return {
            "status": "cancelling",
            "message": "Cancellation requested",
        }

    # -------------------------------------------------------------------------
    # History
    # -------------------------------------------------------------------------

    def _record_running(self) -> None:
        try:
            self.history_repo.mark_running(self.task_id)
        except DocStoreError as e:
            logger.error(f"[{self.task_id}] Failed to record running state: {e}")

    def _record_finished(self, result: TaskResult, started_at: datetime) -> None:
        try:
            self.history_repo.mark_finished(
                self.task_id,
                self._status.value,
                started_at,
                result=result.details or None,
                error=None if self._status == TaskStatus.COMPLETED else (result.error or result.message),
            )
        except DocStoreError as e:
            logger.error(f"[{self.task_id}] Failed to record job result: {e}")
