"""
Cache Purge Task.

Scheduled job that deletes the on-disk cache tree of every provider
flagged as deleted. Provider titles are left in place.
"""
import logging

from http_fetcher import HttpFetcher
from repositories import JobHistoryRepository, ProviderRepository
from task_scheduler import JobRun, TaskResult, TaskScheduler

logger = logging.getLogger(__name__)


class CachePurgeTask(TaskScheduler):
    """Remove cache directories of deleted providers."""

    task_id = "purge_provider_cache"
    task_name = "Provider Cache Purge"
    task_description = "Delete cached responses of deleted providers"

    def __init__(self, history_repo: JobHistoryRepository, provider_repo: ProviderRepository, fetcher: HttpFetcher):
        super().__init__(history_repo)
        self.provider_repo = provider_repo
        self.fetcher = fetcher

    async def execute(self, run: JobRun) -> TaskResult:
        deleted = self.provider_repo.list_deleted()
        self._set_progress(total=len(deleted), current=0, status="purging")

        purged = []
        errors = []
        for provider in deleted:
            if run.cancelled:
                break
            try:
                if self.fetcher.purge_provider(provider.id):
                    purged.append(provider.id)
            except OSError as e:
                logger.error(f"[{self.task_id}] [{provider.id}] Failed to purge cache: {e}")
                errors.append(f"{provider.id}: {e}")
            self._increment_progress(current=1)

        return TaskResult(
            success=True,
            message=f"Purged {len(purged)} of {len(deleted)} deleted provider cache(s)",
            details={"providers_checked": len(deleted), "purged": purged, "errors": errors},
        )
