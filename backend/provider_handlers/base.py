"""
Provider handler base class.

A handler translates one provider's native catalog into ProviderTitle
records. Jobs only use the public capability set:

    fetch_categories(type)       -> [Category]
    fetch_metadata(type)         -> int (entries persisted)
    load_provider_titles(since, include_ignored)
    get_all_titles()             -> [ProviderTitle]
    unload_titles()

Subclasses implement ``fetch_categories`` and ``_scan``; page failure
handling and change detection live here.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from cancellation import CancellationToken
from catalog import (
    IGNORED_EPISODES_FETCH_FAILED,
    MEDIA_TYPES,
    Category,
    Provider,
    ProviderTitle,
    check_media_type,
)
from errors import NetworkError, UpstreamAuthError, UpstreamFormatError
from http_fetcher import FetchRequest, HttpFetcher
from rate_limiter import RateConfig
from repositories import CategoryRepository, ProviderTitleRepository
from title_utils import parse_title

logger = logging.getLogger(__name__)

# Errors that cost a single page rather than the whole scan
PAGE_ERRORS = (NetworkError, UpstreamAuthError, UpstreamFormatError)

# Ignore reasons that describe a transient upstream failure; a later
# successful fetch clears them.
TRANSIENT_IGNORE_REASONS = {IGNORED_EPISODES_FETCH_FAILED}


@dataclass
class ScanState:
    """Progress of one fetch_metadata call."""
    media_type: str
    existing: dict[str, ProviderTitle]
    persisted: int = 0
    pages_ok: int = 0
    page_errors: list[str] = field(default_factory=list)

    @property
    def pages_failed(self) -> int:
        return len(self.page_errors)


class ProviderHandler(ABC):
    """Base class for IPTV provider handlers."""

    provider_type = ""
    # Cache TTL for catalog listings
    listing_ttl_hours: Optional[float] = 1

    def __init__(
        self,
        provider: Provider,
        fetcher: HttpFetcher,
        title_repo: ProviderTitleRepository,
        category_repo: CategoryRepository,
        cancel_token: Optional[CancellationToken] = None,
    ):
        self.provider = provider
        self.provider_id = provider.id
        self.fetcher = fetcher
        self.title_repo = title_repo
        self.category_repo = category_repo
        self.cancel_token = cancel_token
        self._working_set: dict[str, ProviderTitle] = {}
        # Page failures of the last fetch_metadata call per media type
        self.scan_errors: dict[str, list[str]] = {}
        self._pages_ok: dict[str, int] = {}

        rate = RateConfig.from_dict(provider.api_rate)
        fetcher.rate_limiter.configure(provider.id, rate.concurrent, rate.duration_seconds)

    def __repr__(self):
        return f"<{type(self).__name__}(provider_id={self.provider_id})>"

    # -------------------------------------------------------------------------
    # Capability set
    # -------------------------------------------------------------------------

    @abstractmethod
    async def fetch_categories(self, media_type: str) -> list[Category]:
        """Fetch and persist the provider's categories for a media type."""

    async def fetch_metadata(self, media_type: str) -> int:
        """
        Scan the provider catalog for ``media_type`` and persist new or
        changed entries of enabled categories.

        Returns:
            Number of entries written.

        Raises:
            UpstreamAuthError: if credentials are rejected before any page
                succeeded.
        """
        check_media_type(media_type)
        existing = {
            title.provider_title_key: title
            for title in self.title_repo.find_by_provider(self.provider_id, media_type)
        }
        state = ScanState(media_type=media_type, existing=existing)
        logger.info(f"[{self.provider_id}] Scanning {media_type} ({len(existing)} stored)")

        await self._scan(state)

        self.scan_errors[media_type] = list(state.page_errors)
        self._pages_ok[media_type] = state.pages_ok
        logger.info(
            f"[{self.provider_id}] {media_type}: {state.persisted} persisted, "
            f"{state.pages_ok} page(s) ok, {state.pages_failed} failed"
        )
        return state.persisted

    def load_provider_titles(self, since: Optional[datetime] = None, include_ignored: bool = True) -> int:
        """Fill the working set from the repository. Returns its size."""
        self._working_set = {}
        for media_type in MEDIA_TYPES:
            for title in self.title_repo.find_by_provider(self.provider_id, media_type, since, include_ignored):
                self._working_set[title.provider_title_key] = title
        logger.debug(f"[{self.provider_id}] Loaded {len(self._working_set)} provider titles")
        return len(self._working_set)

    def get_all_titles(self) -> list[ProviderTitle]:
        return list(self._working_set.values())

    def unload_titles(self) -> None:
        self._working_set = {}

    def scan_failed(self) -> bool:
        """True when pages failed and none succeeded in any scanned type."""
        has_errors = any(self.scan_errors.values())
        return has_errors and not any(self._pages_ok.values())

    # -------------------------------------------------------------------------
    # Subclass hooks and helpers
    # -------------------------------------------------------------------------

    @abstractmethod
    async def _scan(self, state: ScanState) -> None:
        """Fetch every page of ``state.media_type`` and call ``_persist`` per page."""

    def _request(self, media_type: str, endpoint: str, url: str, **kwargs) -> FetchRequest:
        return FetchRequest(provider_id=self.provider_id, media_type=media_type, endpoint=endpoint, url=url, **kwargs)

    async def _fetch(self, req: FetchRequest):
        return await self.fetcher.fetch(req, self.cancel_token)

    def _parse_name(self, raw: str) -> tuple[str, Optional[int]]:
        return parse_title(raw, self.provider.cleanup)

    def _page_failed(self, state: ScanState, label: str, error: Exception) -> None:
        """
        Record a failed page.

        Credential errors are fatal until a page has succeeded; other
        upstream errors only cost the page.
        """
        if isinstance(error, UpstreamAuthError) and state.pages_ok == 0:
            logger.error(f"[{self.provider_id}] {state.media_type}: authentication failed: {error}")
            raise error
        logger.warning(f"[{self.provider_id}] {state.media_type}: page {label} failed: {error}")
        state.page_errors.append(f"{label}: {error}")

    def _merge_with_existing(self, incoming: ProviderTitle, existing: ProviderTitle) -> Optional[ProviderTitle]:
        """
        Carry stored matching state onto a freshly parsed entry.

        Returns None when nothing changed.
        """
        incoming.created_at = existing.created_at
        incoming.tmdb_id = existing.tmdb_id

        keep_ignore = (
            existing.ignored
            and not incoming.identity_changed(existing)
            and existing.ignored_reason not in TRANSIENT_IGNORE_REASONS
        )
        if keep_ignore:
            incoming.ignored = True
            incoming.ignored_reason = existing.ignored_reason

        if not incoming.content_changed(existing) and (incoming.ignored, incoming.ignored_reason) == (
            existing.ignored, existing.ignored_reason,
        ):
            return None
        return incoming

    def _persist(self, state: ScanState, titles: list[ProviderTitle]) -> int:
        """Bulk-save the new or changed titles of one page."""
        changed = {}
        for title in titles:
            key = title.provider_title_key
            existing = state.existing.get(key)
            if existing is not None:
                title = self._merge_with_existing(title, existing)
                if title is None:
                    continue
            changed[key] = title

        if not changed:
            state.pages_ok += 1
            return 0

        result = self.title_repo.bulk_save(list(changed.values()))
        for key, message in result.errors:
            logger.warning(f"[{self.provider_id}] Failed to save {key}: {message}")
        failed = {key for key, _ in result.errors}
        for key, title in changed.items():
            if key not in failed:
                state.existing[key] = title

        state.pages_ok += 1
        state.persisted += result.written
        return result.written
