"""
Engine wiring.

Builds every long-lived object once (store, repositories, rate limiter,
fetcher, jobs, scheduler) and hands them to each other explicitly.
Nothing here is a module-level singleton; the FastAPI app keeps the
context on ``app.state``.
"""
import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from cancellation import CancellationToken
from config import EngineSettings
from database import init_db
from document_store import DocumentStore
from http_fetcher import HttpFetcher
from rate_limiter import TMDB_LIMITER_KEY, RateLimiter
from repositories import (
    CategoryRepository,
    JobHistoryRepository,
    ProviderRepository,
    ProviderTitleRepository,
    TitleRepository,
    TitleStreamRepository,
)
from task_engine import TaskEngine
from task_registry import TaskRegistry
from tasks import CachePurgeTask, ProviderSyncTask, TitleMergeTask
from tmdb_handler import TmdbHandler

logger = logging.getLogger(__name__)


@dataclass
class EngineContext:
    """Everything the scheduler and the API need."""
    settings: EngineSettings
    store: DocumentStore
    providers: ProviderRepository
    provider_titles: ProviderTitleRepository
    titles: TitleRepository
    title_streams: TitleStreamRepository
    categories: CategoryRepository
    job_history: JobHistoryRepository
    rate_limiter: RateLimiter
    fetcher: HttpFetcher
    registry: TaskRegistry
    engine: TaskEngine

    def tmdb(self, cancel_token: Optional[CancellationToken] = None) -> TmdbHandler:
        """A TMDB handler for one job run."""
        return TmdbHandler(
            self.fetcher,
            self.settings.tmdb_token,
            title_repo=self.titles,
            base_url=self.settings.tmdb_base_url,
            cancel_token=cancel_token,
        )

    async def close(self) -> None:
        await self.fetcher.close()


def build_context(
    settings: EngineSettings,
    session_factory=None,
    client: Optional[httpx.AsyncClient] = None,
) -> EngineContext:
    """
    Wire the engine.

    Args:
        settings: Loaded engine settings.
        session_factory: SQLAlchemy sessionmaker; defaults to init_db(settings.database_url()).
        client: httpx client for the fetcher (tests pass one bound to a mock transport).
    """
    if session_factory is None:
        session_factory = init_db(settings.database_url())
    store = DocumentStore(session_factory)

    providers = ProviderRepository(store)
    provider_titles = ProviderTitleRepository(store)
    titles = TitleRepository(store)
    title_streams = TitleStreamRepository(store)
    categories = CategoryRepository(store)
    job_history = JobHistoryRepository(store)
    store.ensure_indexes()

    rate_limiter = RateLimiter()
    rate_limiter.configure(TMDB_LIMITER_KEY, settings.tmdb_rate_concurrent, settings.tmdb_rate_duration)
    fetcher = HttpFetcher(
        settings.cache_dir,
        rate_limiter,
        timeout=settings.http_timeout_seconds,
        attempts=settings.http_retries,
        client=client,
    )

    registry = TaskRegistry()
    engine = TaskEngine(registry, job_history, shutdown_grace=settings.shutdown_grace)
    context = EngineContext(
        settings=settings,
        store=store,
        providers=providers,
        provider_titles=provider_titles,
        titles=titles,
        title_streams=title_streams,
        categories=categories,
        job_history=job_history,
        rate_limiter=rate_limiter,
        fetcher=fetcher,
        registry=registry,
        engine=engine,
    )

    sync_job = ProviderSyncTask(
        job_history, providers, provider_titles, categories, fetcher, context.tmdb,
        concurrency=settings.sync_concurrency,
    )
    merge_job = TitleMergeTask(job_history, providers, provider_titles, titles, title_streams, context.tmdb)
    purge_job = CachePurgeTask(job_history, providers, fetcher)

    registry.register(sync_job, settings.sync_interval, first_delay=0)
    registry.register(
        merge_job, settings.merge_interval,
        first_delay=settings.merge_first_delay,
        blocked_by=[sync_job.task_id],
    )
    registry.register(purge_job, settings.cache_purge_interval, first_delay=0)

    logger.info(
        f"Engine wired: sync every {settings.sync_interval}s, merge every {settings.merge_interval}s "
        f"(first after {settings.merge_first_delay}s), cache purge every {settings.cache_purge_interval}s"
    )
    return context
