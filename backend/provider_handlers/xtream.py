"""
Xtream Codes provider handler.

Uses the player_api JSON endpoints:

    get_vod_categories / get_series_categories
    get_vod_streams&category_id=   (movies, one page per enabled category)
    get_series&category_id=        (series, one page per enabled category)
    get_series_info&series_id=     (episodes of one series)

Episodes are attached to their series entry as ``streams["Sxx-Exx"]``.
"""
import asyncio
import logging
from typing import Any, Optional

from catalog import (
    IGNORED_EPISODES_FETCH_FAILED,
    MAIN_STREAM,
    MOVIES,
    TVSHOWS,
    Category,
    ProviderTitle,
    episode_stream_id,
    normalize_tmdb_id,
)
from errors import NetworkError, UpstreamAuthError, UpstreamFormatError
from provider_handlers.base import PAGE_ERRORS, ProviderHandler, ScanState
from title_utils import year_from_release_date

logger = logging.getLogger(__name__)

SERIES_INFO_TTL_HOURS = 6
DEFAULT_EXTENSION = "mp4"

TYPE_CONFIG = {
    MOVIES: {
        "category_action": "get_vod_categories",
        "list_action": "get_vod_streams",
        "id_field": "stream_id",
        "media_endpoint": "movie",
    },
    TVSHOWS: {
        "category_action": "get_series_categories",
        "list_action": "get_series",
        "id_field": "series_id",
        "media_endpoint": "series",
    },
}


def _check_auth(payload: Any, provider_id: str) -> None:
    """player_api answers 200 with user_info.auth == 0 on bad credentials."""
    if isinstance(payload, dict):
        user_info = payload.get("user_info")
        if isinstance(user_info, dict) and str(user_info.get("auth", "1")) == "0":
            raise UpstreamAuthError(f"{provider_id}: credentials rejected by player_api", provider_id=provider_id)


def _as_list(payload: Any, what: str) -> list:
    if isinstance(payload, list):
        return payload
    # Some panels answer an empty catalog with {} or null
    if not payload:
        return []
    raise UpstreamFormatError(f"Unexpected {what} response: expected a list, got {type(payload).__name__}")


class XtreamHandler(ProviderHandler):
    """Handler for Xtream Codes (player_api) providers."""

    provider_type = "xtream"

    def _api_request(self, media_type: str, endpoint: str, action: str, params: Optional[dict] = None, ttl_hours=None):
        params = {k: str(v) for k, v in (params or {}).items()}
        query = {"username": self.provider.username, "password": self.provider.password, "action": action}
        query.update(params)
        return self._request(
            media_type,
            endpoint,
            f"{self.provider.base_url.rstrip('/')}/player_api.php",
            params=params,
            query=query,
            ttl_hours=ttl_hours,
        )

    async def _call(self, req) -> Any:
        payload = await self._fetch(req)
        _check_auth(payload, self.provider_id)
        return payload

    def stream_path(self, media_type: str, item_id: Any, extension: Optional[str]) -> str:
        """Relative playback path: /{movie|series}/{user}/{pass}/{id}.{ext}"""
        endpoint = TYPE_CONFIG[media_type]["media_endpoint"]
        return f"/{endpoint}/{self.provider.username}/{self.provider.password}/{item_id}.{extension or DEFAULT_EXTENSION}"

    def _enabled_category_ids(self, media_type: str) -> list[str]:
        """Raw category ids from the provider's enabled category keys."""
        prefix = f"{media_type}-"
        ids = []
        for key in sorted(self.provider.enabled_category_keys(media_type)):
            ids.append(key[len(prefix):] if key.startswith(prefix) else key)
        return ids

    # -------------------------------------------------------------------------
    # Categories
    # -------------------------------------------------------------------------

    async def fetch_categories(self, media_type: str) -> list[Category]:
        config = TYPE_CONFIG[media_type]
        req = self._api_request(media_type, "categories", config["category_action"], ttl_hours=self.listing_ttl_hours)
        rows = _as_list(await self._call(req), "categories")

        categories = []
        for row in rows:
            if not isinstance(row, dict):
                continue
            category_id = row.get("category_id", row.get("id"))
            if category_id in (None, ""):
                continue
            categories.append(Category(
                provider_id=self.provider_id,
                type=media_type,
                category_id=category_id,
                category_name=row.get("category_name") or row.get("name"),
                enabled=self.provider.is_category_enabled(media_type, category_id),
            ))

        if categories:
            self.category_repo.save_all(self.provider_id, media_type, categories)
        logger.info(f"[{self.provider_id}] {media_type}: {len(categories)} categories")
        return categories

    # -------------------------------------------------------------------------
    # Catalog scan
    # -------------------------------------------------------------------------

    async def _scan(self, state: ScanState) -> None:
        media_type = state.media_type
        config = TYPE_CONFIG[media_type]
        category_ids = self._enabled_category_ids(media_type)
        if not category_ids:
            logger.info(f"[{self.provider_id}] {media_type}: no enabled categories")
            return

        for category_id in category_ids:
            if self.cancel_token is not None:
                self.cancel_token.raise_if_cancelled()
            req = self._api_request(
                media_type, "streams", config["list_action"], {"category_id": category_id},
                ttl_hours=self.listing_ttl_hours,
            )
            try:
                rows = _as_list(await self._call(req), config["list_action"])
                if media_type == MOVIES:
                    titles = self._build_movies(rows)
                else:
                    titles = await self._build_series(rows, state)
            except PAGE_ERRORS as e:
                self._page_failed(state, f"category {category_id}", e)
                continue
            self._persist(state, titles)

    def _base_title(self, media_type: str, row: dict) -> Optional[ProviderTitle]:
        item_id = row.get(TYPE_CONFIG[media_type]["id_field"])
        raw_name = row.get("name") or row.get("title")
        if item_id in (None, "") or not raw_name:
            return None
        category_id = row.get("category_id")
        if not self.provider.is_category_enabled(media_type, category_id):
            return None

        name, year = self._parse_name(str(raw_name))
        release_date = row.get("releasedate") or row.get("releaseDate") or row.get("release_date") or None
        year = year or year_from_release_date(row.get("year")) or year_from_release_date(release_date)
        return ProviderTitle(
            provider_id=self.provider_id,
            type=media_type,
            provider_item_id=item_id,
            name=name,
            year=year,
            category_id=category_id,
            tmdb_hint=normalize_tmdb_id(row.get("tmdb") or row.get("tmdb_id")),
            release_date=str(release_date) if release_date else None,
        )

    def _build_movies(self, rows: list) -> list[ProviderTitle]:
        titles = []
        for row in rows:
            if not isinstance(row, dict):
                continue
            title = self._base_title(MOVIES, row)
            if title is None:
                continue
            title.streams = {MAIN_STREAM: self.stream_path(MOVIES, row["stream_id"], row.get("container_extension"))}
            titles.append(title)
        return titles

    async def _build_series(self, rows: list, state: ScanState) -> list[ProviderTitle]:
        candidates = []
        for row in rows:
            if not isinstance(row, dict):
                continue
            title = self._base_title(TVSHOWS, row)
            if title is not None:
                modified = row.get("last_modified")
                title.upstream_modified = str(modified) if modified not in (None, "") else None
                candidates.append(title)

        results = await asyncio.gather(
            *(self._attach_episodes(title, state.existing.get(title.provider_title_key)) for title in candidates),
            return_exceptions=True,
        )
        titles = []
        for title, outcome in zip(candidates, results):
            # Auth and cancellation errors abort the page
            if isinstance(outcome, BaseException):
                raise outcome
            titles.append(title)
        return titles

    async def _attach_episodes(self, title: ProviderTitle, existing: Optional[ProviderTitle]) -> None:
        """Fill ``title.streams`` from get_series_info (or the stored copy when unchanged)."""
        unchanged = (
            existing is not None
            and existing.streams
            and title.upstream_modified is not None
            and existing.upstream_modified == title.upstream_modified
        )
        if unchanged:
            title.streams = dict(existing.streams)
            return

        req = self._api_request(
            TVSHOWS, "series_info", "get_series_info", {"series_id": title.provider_item_id},
            ttl_hours=SERIES_INFO_TTL_HOURS,
        )
        try:
            payload = await self._call(req)
            title.streams = self.parse_episodes(payload)
        except (NetworkError, UpstreamFormatError) as e:
            logger.warning(f"[{self.provider_id}] Episodes of series {title.provider_item_id} unavailable: {e}")
            if existing is not None:
                # Keep what we had; the old marker makes the next run retry
                title.streams = dict(existing.streams)
                title.upstream_modified = existing.upstream_modified
            else:
                title.ignored = True
                title.ignored_reason = IGNORED_EPISODES_FETCH_FAILED

    def parse_episodes(self, payload: Any) -> dict[str, str]:
        """Map get_series_info episodes to {"Sxx-Exx": path}."""
        if not isinstance(payload, dict):
            raise UpstreamFormatError("get_series_info: expected an object")
        episodes = payload.get("episodes") or {}
        if isinstance(episodes, list):
            # Some panels send a list of season lists
            groups = [(None, season) for season in episodes]
        elif isinstance(episodes, dict):
            groups = list(episodes.items())
        else:
            raise UpstreamFormatError("get_series_info: episodes has an unexpected shape")

        streams: dict[str, str] = {}
        for season_key, items in groups:
            for episode in items or []:
                if not isinstance(episode, dict) or not episode.get("id"):
                    continue
                try:
                    season = int(episode.get("season") or season_key)
                    number = int(episode.get("episode_num"))
                    stream_id = episode_stream_id(season, number)
                except (TypeError, ValueError):
                    logger.debug(f"[{self.provider_id}] Skipping episode {episode.get('id')}: bad season/episode number")
                    continue
                streams[stream_id] = self.stream_path(TVSHOWS, episode["id"], episode.get("container_extension"))
        return streams
