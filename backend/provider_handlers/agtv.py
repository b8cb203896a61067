"""
AGTV provider handler.

The catalog is served as M3U8 playlists:

    GET {base_url}/api/list/{user}/{pass}/m3u8/movies
    GET {base_url}/api/list/{user}/{pass}/m3u8/tvshows/{page}

Movies come in one playlist. TV shows are paginated; a page holding at
least PAGE_SIZE_THRESHOLD entries means another page may follow. There is
no category endpoint, categories are the distinct ``group-title`` values.
"""
import logging
import re
from typing import Optional

from catalog import MAIN_STREAM, MOVIES, TVSHOWS, Category, ProviderTitle, episode_stream_id
from errors import NetworkError
from m3u_parser import M3UEntry, count_extinf, parse_m3u
from provider_handlers.base import PAGE_ERRORS, ProviderHandler, ScanState

logger = logging.getLogger(__name__)

PAGE_SIZE_THRESHOLD = 5000
PAGE_NOT_FOUND = "Page not found"
PAGINATED_TYPES = {TVSHOWS}

# ".../{season}/{episode}" optionally followed by a file extension
_EPISODE_URL = re.compile(r"/(\d+)/(\d+)(?:\.[A-Za-z0-9]+)?/?$")


def episode_stream_id_from_url(url: str) -> str:
    """Stream id for a TV show playlist URL; "main" when it has no usable S/E."""
    match = _EPISODE_URL.search(url or "")
    if not match:
        return MAIN_STREAM
    season, episode = int(match.group(1)), int(match.group(2))
    if season < 1 or episode < 1:
        return MAIN_STREAM
    return episode_stream_id(season, episode)


class AGTVHandler(ProviderHandler):
    """Handler for M3U8 based AGTV providers."""

    provider_type = "agtv"

    def _playlist_url(self, media_type: str, page: Optional[int] = None) -> str:
        base = self.provider.base_url.rstrip("/")
        url = f"{base}/api/list/{self.provider.username}/{self.provider.password}/m3u8/{media_type}"
        if page is not None:
            url = f"{url}/{page}"
        return url

    async def _fetch_playlist_page(self, media_type: str, page: Optional[int]) -> str:
        params = {"page": page} if page is not None else {}
        req = self._request(
            media_type,
            "playlist",
            self._playlist_url(media_type, page),
            params=params,
            ttl_hours=self.listing_ttl_hours,
            response_format="text",
        )
        return await self._fetch(req)

    async def _fetch_entries(self, state: ScanState) -> list[M3UEntry]:
        """
        Download every page of a playlist.

        A failed page ends pagination (later pages cannot be addressed
        reliably); entries fetched so far are kept.
        """
        media_type = state.media_type
        if media_type not in PAGINATED_TYPES:
            try:
                content = await self._fetch_playlist_page(media_type, None)
            except PAGE_ERRORS as e:
                self._page_failed(state, "1", e)
                return []
            return parse_m3u(content)

        entries: list[M3UEntry] = []
        page = 1
        while True:
            if self.cancel_token is not None:
                self.cancel_token.raise_if_cancelled()
            try:
                content = await self._fetch_playlist_page(media_type, page)
            except NetworkError as e:
                if e.status_code == 404 and page > 1:
                    logger.debug(f"[{self.provider_id}] {media_type}: page {page} not found, end of playlist")
                    break
                self._page_failed(state, str(page), e)
                break
            except PAGE_ERRORS as e:
                self._page_failed(state, str(page), e)
                break

            extinf_count = count_extinf(content)
            if extinf_count == 0:
                if PAGE_NOT_FOUND in (content or ""):
                    logger.debug(f"[{self.provider_id}] {media_type}: page {page} reported not found")
                break

            entries.extend(parse_m3u(content))
            logger.debug(f"[{self.provider_id}] {media_type}: page {page} has {extinf_count} entries")
            if extinf_count < PAGE_SIZE_THRESHOLD:
                break
            page += 1
        return entries

    # -------------------------------------------------------------------------
    # Entry conversion
    # -------------------------------------------------------------------------

    def _new_title(self, media_type: str, entry: M3UEntry) -> Optional[ProviderTitle]:
        item_id = entry.tvg_id
        if not item_id:
            logger.debug(f"[{self.provider_id}] Skipping entry without tvg-id: {entry.title!r}")
            return None
        name, year = self._parse_name(entry.title or entry.tvg_name or "")
        if not name:
            return None
        return ProviderTitle(
            provider_id=self.provider_id,
            type=media_type,
            provider_item_id=item_id,
            name=name,
            year=year,
            category_id=entry.group_title,
            imdb_id=item_id if item_id.startswith("tt") else None,
        )

    def build_titles(self, media_type: str, entries: list[M3UEntry]) -> list[ProviderTitle]:
        """Convert playlist entries of enabled categories into titles."""
        titles: dict[str, ProviderTitle] = {}
        skipped = 0
        for entry in entries:
            if not self.provider.is_category_enabled(media_type, entry.group_title):
                skipped += 1
                continue
            if media_type == MOVIES:
                title = self._new_title(media_type, entry)
                if title is not None:
                    title.streams = {MAIN_STREAM: entry.url}
                    titles[title.provider_title_key] = title
                continue

            # TV shows: one playlist line per episode, grouped by tvg-id
            show = titles.get(f"{media_type}-{self.provider_id}-{entry.tvg_id}") if entry.tvg_id else None
            if show is None:
                show = self._new_title(media_type, entry)
                if show is None:
                    continue
                titles[show.provider_title_key] = show
            show.streams[episode_stream_id_from_url(entry.url)] = entry.url

        if skipped:
            logger.debug(f"[{self.provider_id}] {media_type}: {skipped} entries in disabled categories")
        return list(titles.values())

    # -------------------------------------------------------------------------
    # Capability set
    # -------------------------------------------------------------------------

    async def fetch_categories(self, media_type: str) -> list[Category]:
        state = ScanState(media_type=media_type, existing={})
        entries = await self._fetch_entries(state)
        names = sorted({entry.group_title for entry in entries if entry.group_title})
        categories = [
            Category(
                provider_id=self.provider_id,
                type=media_type,
                category_id=name,
                category_name=name,
                enabled=self.provider.is_category_enabled(media_type, name),
            )
            for name in names
        ]
        if categories:
            self.category_repo.save_all(self.provider_id, media_type, categories)
        logger.info(f"[{self.provider_id}] {media_type}: {len(categories)} categories")
        return categories

    async def _scan(self, state: ScanState) -> None:
        entries = await self._fetch_entries(state)
        if not entries:
            return
        titles = self.build_titles(state.media_type, entries)
        self._persist(state, titles)
