"""
Provider Sync Task.

Scheduled job that pulls every active provider's catalog and matches new
entries against TMDB:
- Categories are refreshed first (best effort)
- Movies and TV shows are scanned in parallel per provider
- Pending entries (no TMDB id, not ignored) are resolved and persisted
"""
import asyncio
import logging
from typing import Callable, Optional

from cancellation import CancellationToken
from catalog import IGNORED_NO_TMDB_MATCH, MOVIES, TVSHOWS, Provider, ProviderTitle
from errors import CancellationError, DocStoreError, EngineError, NetworkError, UpstreamFormatError
from http_fetcher import HttpFetcher
from provider_handlers import ProviderHandler, create_handler
from repositories import CategoryRepository, JobHistoryRepository, ProviderRepository, ProviderTitleRepository
from task_scheduler import JobRun, TaskResult, TaskScheduler
from tmdb_handler import TmdbHandler

logger = logging.getLogger(__name__)

# Pending entries resolved concurrently per provider; the TMDB limiter
# still caps the request rate.
RESOLVE_BATCH_SIZE = 20
# Per-entry error messages kept in a provider's result
MAX_REPORTED_ERRORS = 50

TmdbFactory = Callable[[CancellationToken], TmdbHandler]


class ProviderSyncTask(TaskScheduler):
    """
    Incremental provider fetch plus TMDB matching.

    A provider whose scan or matching fails carries ``error`` in its result
    entry; the job only fails when every provider failed.
    """

    task_id = "sync_provider_titles"
    task_name = "Provider Sync"
    task_description = "Fetch provider catalogs and match new entries against TMDB"

    def __init__(
        self,
        history_repo: JobHistoryRepository,
        provider_repo: ProviderRepository,
        title_repo: ProviderTitleRepository,
        category_repo: CategoryRepository,
        fetcher: HttpFetcher,
        tmdb_factory: TmdbFactory,
        concurrency: int = 0,
    ):
        super().__init__(history_repo)
        self.provider_repo = provider_repo
        self.title_repo = title_repo
        self.category_repo = category_repo
        self.fetcher = fetcher
        self.tmdb_factory = tmdb_factory
        # 0 = one slot per provider
        self.concurrency = concurrency

    async def execute(self, run: JobRun) -> TaskResult:
        """Execute the sync job."""
        providers = self.provider_repo.list_active()
        if not providers:
            logger.info(f"[{self.task_id}] No active providers")
            return TaskResult(
                success=True,
                message="No active providers",
                details={"providers_processed": 0, "results": []},
            )

        self._set_progress(total=len(providers), current=0, status="syncing")
        semaphore = asyncio.Semaphore(self.concurrency or len(providers))
        tmdb = self.tmdb_factory(run.cancel_token)

        async def sync_one(provider: Provider) -> Optional[dict]:
            async with semaphore:
                if run.cancelled:
                    return None
                self._set_progress(current_item=provider.id)
                entry = await self._sync_provider(provider, tmdb, run)
                self._increment_progress(
                    current=1,
                    success_count=0 if entry.get("error") else 1,
                    failed_count=1 if entry.get("error") else 0,
                )
                return entry

        try:
            outcomes = await asyncio.gather(*(sync_one(p) for p in providers), return_exceptions=True)
        finally:
            tmdb.reset_job_cache()

        # Anything that is not an engine error is a bug; fail the job with it
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome

        results = [outcome for outcome in outcomes if outcome is not None]
        details = {"providers_processed": len(results), "results": results}
        failed = [entry for entry in results if entry.get("error")]
        matched = sum(entry["matched"] for entry in results)
        ignored = sum(entry["ignored"] for entry in results)

        if run.cancelled:
            return TaskResult(success=False, message=f"Cancelled after {len(results)} provider(s)", details=details)

        if failed and len(failed) == len(results):
            return TaskResult(
                success=False,
                message="All providers failed",
                error="; ".join(f"{entry['provider_id']}: {entry['error']}" for entry in failed),
                details=details,
            )

        return TaskResult(
            success=True,
            message=(
                f"Synced {len(results) - len(failed)}/{len(results)} provider(s): "
                f"{matched} matched, {ignored} ignored"
            ),
            details=details,
        )

    # -------------------------------------------------------------------------
    # Per provider
    # -------------------------------------------------------------------------

    async def _sync_provider(self, provider: Provider, tmdb: TmdbHandler, run: JobRun) -> dict:
        entry = {"provider_id": provider.id, MOVIES: 0, TVSHOWS: 0, "matched": 0, "ignored": 0}
        try:
            handler = create_handler(provider, self.fetcher, self.title_repo, self.category_repo, run.cancel_token)
            await self._refresh_categories(handler)

            counts = await asyncio.gather(
                handler.fetch_metadata(MOVIES),
                handler.fetch_metadata(TVSHOWS),
                return_exceptions=True,
            )
            for outcome in counts:
                if isinstance(outcome, BaseException):
                    raise outcome
            entry[MOVIES], entry[TVSHOWS] = counts

            page_errors = [msg for errors in handler.scan_errors.values() for msg in errors]
            if page_errors:
                entry["page_errors"] = page_errors[:MAX_REPORTED_ERRORS]
            if handler.scan_failed():
                entry["error"] = f"Every page failed ({len(page_errors)})"
                logger.error(f"[{self.task_id}] [{provider.id}] No page could be fetched")
                return entry

            await self._resolve_pending(provider, tmdb, run, entry)

        except CancellationError:
            entry["error"] = "cancelled"
            logger.info(f"[{self.task_id}] [{provider.id}] Cancelled")
        except EngineError as e:
            entry["error"] = str(e)
            logger.error(f"[{self.task_id}] [{provider.id}] Sync failed: {e}")

        logger.info(
            f"[{self.task_id}] [{provider.id}] movies={entry[MOVIES]} tvshows={entry[TVSHOWS]} "
            f"matched={entry['matched']} ignored={entry['ignored']}"
        )
        return entry

    async def _refresh_categories(self, handler: ProviderHandler) -> None:
        """Refresh categories of both types; failures only get logged."""
        for media_type in (MOVIES, TVSHOWS):
            try:
                await handler.fetch_categories(media_type)
            except CancellationError:
                raise
            except EngineError as e:
                logger.warning(f"[{self.task_id}] [{handler.provider_id}] {media_type} categories unavailable: {e}")

    async def _resolve_pending(self, provider: Provider, tmdb: TmdbHandler, run: JobRun, entry: dict) -> None:
        """Resolve every unmatched, non-ignored entry of the provider."""
        pending = self.title_repo.find_match_candidates(provider.id)
        if not pending:
            return
        logger.info(f"[{self.task_id}] [{provider.id}] Resolving {len(pending)} pending title(s)")

        errors: list[str] = []
        for start in range(0, len(pending), RESOLVE_BATCH_SIZE):
            run.cancel_token.raise_if_cancelled()
            batch = pending[start:start + RESOLVE_BATCH_SIZE]
            outcomes = await asyncio.gather(*(self._resolve_one(tmdb, title) for title in batch), return_exceptions=True)
            for title, outcome in zip(batch, outcomes):
                if isinstance(outcome, (NetworkError, UpstreamFormatError, DocStoreError)):
                    errors.append(f"{title.provider_title_key}: {outcome}")
                elif isinstance(outcome, BaseException):
                    raise outcome
                elif outcome:
                    entry["matched"] += 1
                else:
                    entry["ignored"] += 1

        if errors:
            logger.warning(f"[{self.task_id}] [{provider.id}] {len(errors)} title(s) could not be resolved")
            entry["entry_errors"] = len(errors)
            entry["errors"] = errors[:MAX_REPORTED_ERRORS]

    async def _resolve_one(self, tmdb: TmdbHandler, title: ProviderTitle) -> bool:
        """Resolve and persist one entry. Returns True when matched."""
        tmdb_id = await tmdb.resolve(title)
        if tmdb_id:
            self.title_repo.set_match(title, tmdb_id)
            logger.debug(f"[{self.task_id}] {title.provider_title_key} -> {title.title_key}")
            return True
        self.title_repo.mark_ignored(title, IGNORED_NO_TMDB_MATCH)
        logger.debug(f"[{self.task_id}] {title.provider_title_key} ({title.name!r}) has no TMDB match")
        return False
