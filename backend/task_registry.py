"""
Job Registry.

Central registry of the configured jobs with:
- Job registration and lookup
- Per-job interval, first delay and peer blocking rules
"""
import logging
from dataclasses import dataclass, field
from typing import Optional

from task_scheduler import TaskScheduler

logger = logging.getLogger(__name__)


@dataclass
class JobDefinition:
    """A job instance plus its schedule."""
    job: TaskScheduler
    interval: float
    first_delay: float = 0.0
    # Jobs that must not be running when this one starts
    blocked_by: list[str] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.job.task_id

    def to_dict(self) -> dict:
        return {
            "job_name": self.name,
            "task_name": self.job.task_name,
            "description": self.job.task_description,
            "interval_seconds": self.interval,
            "first_delay_seconds": self.first_delay,
            "blocked_by": list(self.blocked_by),
        }


class TaskRegistry:
    """
    Registry of job definitions, keyed by job name.

    Jobs are registered as instances because they are built with their
    repositories and handlers already injected.
    """

    def __init__(self):
        self._definitions: dict[str, JobDefinition] = {}

    def register(
        self,
        job: TaskScheduler,
        interval: float,
        first_delay: float = 0.0,
        blocked_by: Optional[list[str]] = None,
    ) -> JobDefinition:
        """
        Register a job with the registry.

        Raises:
            ValueError: if the job has no task_id or the interval is not positive.
        """
        if not job.task_id:
            raise ValueError(f"Job class {type(job).__name__} has no task_id defined")
        if interval <= 0:
            raise ValueError(f"Job {job.task_id} needs a positive interval")

        if job.task_id in self._definitions:
            logger.warning(f"Job {job.task_id} already registered, replacing")

        definition = JobDefinition(
            job=job,
            interval=interval,
            first_delay=max(first_delay, 0.0),
            blocked_by=list(blocked_by or []),
        )
        self._definitions[job.task_id] = definition
        logger.debug(f"Registered job: {job.task_id} (every {interval}s, first after {definition.first_delay}s)")
        return definition

    def unregister(self, name: str) -> bool:
        """Remove a job. Returns False if it was not registered."""
        if name in self._definitions:
            del self._definitions[name]
            logger.debug(f"Unregistered job: {name}")
            return True
        return False

    def get(self, name: str) -> Optional[JobDefinition]:
        return self._definitions.get(name)

    def get_job(self, name: str) -> Optional[TaskScheduler]:
        definition = self._definitions.get(name)
        return definition.job if definition else None

    def definitions(self) -> list[JobDefinition]:
        return list(self._definitions.values())

    def list_job_names(self) -> list[str]:
        """Get list of all registered job names."""
        return list(self._definitions.keys())

    def is_registered(self, name: str) -> bool:
        """Check if a job name is registered."""
        return name in self._definitions

    def list_jobs(self) -> list[dict]:
        """List all registered jobs with their schedule."""
        return [definition.to_dict() for definition in self._definitions.values()]
