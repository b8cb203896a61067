"""
TMDB v3 client and merged title builder.

All calls go through the shared HttpFetcher under the "tmdb" limiter key
and are cached under {cache_root}/tmdb/{type}/metadata/:

    search         no expiry
    find           24h
    details        24h
    season         6h
    similar        24h
    configuration  24h on disk, in memory until reset_job_cache()
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Optional

from rapidfuzz import fuzz

from cancellation import CancellationToken
from catalog import (
    MAIN_STREAM,
    MOVIES,
    TVSHOWS,
    Contribution,
    ProviderTitle,
    Title,
    TitleStream,
    check_media_type,
    normalize_tmdb_id,
    parse_stream_id,
    title_key,
)
from errors import NetworkError, TmdbNotFound
from http_fetcher import FetchRequest, HttpFetcher
from rate_limiter import TMDB_LIMITER_KEY
from repositories import TitleRepository
from title_utils import year_from_release_date

logger = logging.getLogger(__name__)

TMDB_BASE_URL = "https://api.themoviedb.org/3"
TMDB_CACHE_ID = "tmdb"

SEARCH_TTL_HOURS = None
FIND_TTL_HOURS = 24
DETAILS_TTL_HOURS = 24
SEASON_TTL_HOURS = 6
SIMILAR_TTL_HOURS = 24
CONFIGURATION_TTL_HOURS = 24

MATCH_THRESHOLD = 0.7
NAME_WEIGHT = 0.75
YEAR_WEIGHT = 0.25
MAX_SIMILAR = 20

DEFAULT_IMAGES_BASE_URL = "https://image.tmdb.org/t/p/"
PREFERRED_POSTER_SIZE = "w500"
PREFERRED_BACKDROP_SIZE = "w1280"

_TMDB_TYPES = {MOVIES: "movie", TVSHOWS: "tv"}
_NON_WORD = re.compile(r"[^\w]+", re.UNICODE)


# -----------------------------------------------------------------------------
# Matching helpers
# -----------------------------------------------------------------------------

def tmdb_type(media_type: str) -> str:
    return _TMDB_TYPES[check_media_type(media_type)]


def normalize_name(name: Optional[str]) -> str:
    return " ".join(_NON_WORD.sub(" ", (name or "").casefold()).split())


def name_similarity(expected: str, candidate: Optional[str]) -> float:
    """1.0 for an exact normalised match, otherwise token_sort_ratio in [0, 1]."""
    left, right = normalize_name(expected), normalize_name(candidate)
    if not left or not right:
        return 0.0
    if left == right:
        return 1.0
    return fuzz.token_sort_ratio(left, right) / 100.0


def year_score(expected: Optional[int], candidate_date: Optional[str]) -> float:
    candidate = year_from_release_date(candidate_date)
    if expected is None or candidate is None:
        return 0.5
    return 1.0 if expected == candidate else 0.0


def score_candidate(name: str, year: Optional[int], candidate: dict, media_type: str) -> float:
    if media_type == MOVIES:
        names = (candidate.get("title"), candidate.get("original_title"))
        date = candidate.get("release_date")
    else:
        names = (candidate.get("name"), candidate.get("original_name"))
        date = candidate.get("first_air_date")
    similarity = max(name_similarity(name, n) for n in names)
    return NAME_WEIGHT * similarity + YEAR_WEIGHT * year_score(year, date)


def pick_best_candidate(name: str, year: Optional[int], candidates: list, media_type: str) -> Optional[int]:
    """Highest scoring candidate id above the threshold; popularity breaks ties."""
    best = None
    for candidate in candidates:
        if not isinstance(candidate, dict):
            continue
        tmdb_id = normalize_tmdb_id(candidate.get("id"))
        if tmdb_id is None:
            continue
        rank = (score_candidate(name, year, candidate, media_type), float(candidate.get("popularity") or 0))
        if best is None or rank > best[0]:
            best = (rank, tmdb_id)
    if best is None or best[0][0] < MATCH_THRESHOLD:
        return None
    return best[1]


@dataclass
class TitleBuild:
    """Output of build_title."""
    title: Title
    streams: list[TitleStream] = field(default_factory=list)
    error: Optional[str] = None


class TmdbHandler:
    """TMDB lookups and Title construction for one job run."""

    def __init__(
        self,
        fetcher: HttpFetcher,
        token: str,
        title_repo: Optional[TitleRepository] = None,
        base_url: str = TMDB_BASE_URL,
        cancel_token: Optional[CancellationToken] = None,
    ):
        self.fetcher = fetcher
        self.token = token
        self.title_repo = title_repo
        self.base_url = base_url.rstrip("/")
        self.cancel_token = cancel_token
        self._configuration: Optional[dict] = None

    # -------------------------------------------------------------------------
    # Requests
    # -------------------------------------------------------------------------

    def _request(self, media_type: str, endpoint: str, path: str, params: dict, query=None, ttl_hours=None):
        return FetchRequest(
            provider_id=TMDB_CACHE_ID,
            media_type=media_type,
            endpoint=endpoint,
            url=f"{self.base_url}{path}",
            params=params,
            query=query if query is not None else params,
            headers={"Authorization": f"Bearer {self.token}", "Accept": "application/json"},
            ttl_hours=ttl_hours,
            limiter_key=TMDB_LIMITER_KEY,
        )

    async def _get(self, req: FetchRequest) -> Any:
        return await self.fetcher.fetch(req, self.cancel_token)

    async def verify(self) -> bool:
        """Check the token. Raises UpstreamAuthError when TMDB rejects it."""
        await self._get(self._request("common", "authentication", "/authentication", {}, ttl_hours=0))
        return True

    async def configuration(self) -> dict:
        """Images base URL and image sizes, held in memory until reset_job_cache()."""
        if self._configuration is not None:
            return self._configuration
        try:
            payload = await self._get(
                self._request("common", "configuration", "/configuration", {}, ttl_hours=CONFIGURATION_TTL_HOURS)
            )
            images = payload.get("images") or {}
        except NetworkError as e:
            logger.warning(f"[tmdb] Configuration unavailable ({e}), using defaults")
            images = {}

        poster_sizes = images.get("poster_sizes") or []
        backdrop_sizes = images.get("backdrop_sizes") or []
        self._configuration = {
            "images_base_url": images.get("secure_base_url") or images.get("base_url") or DEFAULT_IMAGES_BASE_URL,
            "poster_size": PREFERRED_POSTER_SIZE if PREFERRED_POSTER_SIZE in poster_sizes or not poster_sizes
            else poster_sizes[-1],
            "backdrop_size": PREFERRED_BACKDROP_SIZE if PREFERRED_BACKDROP_SIZE in backdrop_sizes or not backdrop_sizes
            else backdrop_sizes[-1],
        }
        return self._configuration

    def reset_job_cache(self) -> None:
        self._configuration = None

    # -------------------------------------------------------------------------
    # Resolve
    # -------------------------------------------------------------------------

    async def find_by_imdb(self, imdb_id: str, media_type: str) -> Optional[int]:
        payload = await self._get(self._request(
            media_type, "find", f"/find/{imdb_id}",
            params={"imdb_id": imdb_id},
            query={"external_source": "imdb_id"},
            ttl_hours=FIND_TTL_HOURS,
        ))
        results = payload.get(f"{tmdb_type(media_type)}_results") or []
        return normalize_tmdb_id(results[0].get("id")) if results else None

    async def search(self, media_type: str, name: str, year: Optional[int] = None) -> list:
        params = {"query": name}
        if year:
            params["year" if media_type == MOVIES else "first_air_date_year"] = year
        query = dict(params, include_adult="false")
        payload = await self._get(self._request(
            media_type, "search", f"/search/{tmdb_type(media_type)}", params, query=query, ttl_hours=SEARCH_TTL_HOURS,
        ))
        return payload.get("results") or []

    async def resolve(self, title: ProviderTitle) -> Optional[int]:
        """
        Find the TMDB id of a provider title.

        Order: the provider's own TMDB hint, IMDB id lookup, then a scored
        name search (with year first, then without). Returns None when no
        candidate scores at least MATCH_THRESHOLD.

        Raises:
            NetworkError: if the search itself could not be performed.
        """
        if title.tmdb_hint:
            return title.tmdb_hint

        if title.imdb_id:
            try:
                tmdb_id = await self.find_by_imdb(title.imdb_id, title.type)
                if tmdb_id:
                    return tmdb_id
            except NetworkError as e:
                logger.debug(f"[tmdb] IMDB lookup failed for {title.imdb_id}: {e}")

        if not title.name:
            return None
        candidates = await self.search(title.type, title.name, title.year)
        if not candidates and title.year:
            candidates = await self.search(title.type, title.name)
        return pick_best_candidate(title.name, title.year, candidates, title.type)

    # -------------------------------------------------------------------------
    # Metadata
    # -------------------------------------------------------------------------

    async def details(self, media_type: str, tmdb_id: int) -> dict:
        """Canonical metadata. Raises TmdbNotFound on 404."""
        try:
            return await self._get(self._request(
                media_type, "details", f"/{tmdb_type(media_type)}/{tmdb_id}", {"id": tmdb_id},
                query={}, ttl_hours=DETAILS_TTL_HOURS,
            ))
        except NetworkError as e:
            if e.status_code == 404:
                raise TmdbNotFound(media_type, tmdb_id) from e
            raise

    async def season_details(self, tmdb_id: int, season: int) -> dict:
        try:
            return await self._get(self._request(
                TVSHOWS, "season", f"/tv/{tmdb_id}/season/{season}", {"id": tmdb_id, "season": season},
                query={}, ttl_hours=SEASON_TTL_HOURS,
            ))
        except NetworkError as e:
            if e.status_code == 404:
                raise TmdbNotFound(TVSHOWS, tmdb_id) from e
            raise

    async def similar(self, media_type: str, tmdb_id: int) -> list[str]:
        """Up to MAX_SIMILAR title keys of similar titles."""
        payload = await self._get(self._request(
            media_type, "similar", f"/{tmdb_type(media_type)}/{tmdb_id}/similar", {"id": tmdb_id},
            query={}, ttl_hours=SIMILAR_TTL_HOURS,
        ))
        keys = []
        for result in payload.get("results") or []:
            similar_id = normalize_tmdb_id(result.get("id")) if isinstance(result, dict) else None
            if similar_id and similar_id != tmdb_id:
                keys.append(title_key(media_type, similar_id))
            if len(keys) >= MAX_SIMILAR:
                break
        return keys

    # -------------------------------------------------------------------------
    # Title building
    # -------------------------------------------------------------------------

    async def _episode_metadata(self, tmdb_id: int, seasons: list[int]) -> dict[str, Optional[dict]]:
        """Episode metadata keyed by stream id; a failed season contributes nothing."""
        metadata: dict[str, Optional[dict]] = {}
        for season in seasons:
            try:
                payload = await self.season_details(tmdb_id, season)
            except (NetworkError, TmdbNotFound) as e:
                logger.warning(f"[tmdb] Season {season} of tv {tmdb_id} unavailable: {e}")
                continue
            for episode in payload.get("episodes") or []:
                try:
                    sid = f"S{int(episode['season_number']):02d}-E{int(episode['episode_number']):02d}"
                except (KeyError, TypeError, ValueError):
                    continue
                metadata[sid] = {
                    "air_date": episode.get("air_date") or None,
                    "name": episode.get("name") or None,
                    "overview": episode.get("overview") or None,
                    "still_path": episode.get("still_path") or None,
                }
        return metadata

    async def _similar_keys(self, media_type: str, tmdb_id: int) -> list[str]:
        try:
            keys = await self.similar(media_type, tmdb_id)
        except (NetworkError, TmdbNotFound) as e:
            logger.warning(f"[tmdb] Similar titles of {media_type} {tmdb_id} unavailable: {e}")
            return []
        if self.title_repo is None or not keys:
            return keys
        existing = self.title_repo.existing_keys(keys)
        return [key for key in keys if key in existing]

    @staticmethod
    def _image_url(config: dict, size_key: str, path: Optional[str]) -> Optional[str]:
        if not path:
            return None
        return f"{config['images_base_url'].rstrip('/')}/{config[size_key]}{path}"

    async def build_title(
        self,
        tmdb_id: int,
        media_type: str,
        contributions: list[Contribution],
        priorities: dict[str, int],
        fallback_name: str = "",
    ) -> TitleBuild:
        """
        Build the merged Title and its TitleStreams from contributor streams.

        ``priorities`` maps provider_id to priority (lower first). When TMDB
        has no record the title is a minimal one named ``fallback_name``
        and ``error`` says why.

        Raises:
            NetworkError: when TMDB details could not be fetched at all.
        """
        check_media_type(media_type)
        key = title_key(media_type, tmdb_id)
        ordered = sorted(
            contributions,
            key=lambda c: (priorities.get(c.provider_id, float("inf")), c.provider_id, c.stream_id),
        )

        error = None
        try:
            details = await self.details(media_type, tmdb_id)
        except TmdbNotFound as e:
            logger.warning(f"[tmdb] {key}: {e}, building a minimal title")
            details = None
            error = str(e)

        # Contributions usable for this type
        usable: list[tuple[str, Contribution]] = []
        for contribution in ordered:
            if media_type == MOVIES:
                if contribution.stream_id == MAIN_STREAM:
                    usable.append((MAIN_STREAM, contribution))
                continue
            try:
                if parse_stream_id(contribution.stream_id) is None:
                    continue
            except ValueError:
                logger.debug(f"[tmdb] {key}: skipping invalid stream id {contribution.stream_id!r}")
                continue
            usable.append((contribution.stream_id, contribution))

        episode_metadata: dict[str, Optional[dict]] = {}
        if media_type == TVSHOWS and details is not None:
            seasons = sorted({parse_stream_id(sid)[0] for sid, _ in usable})
            episode_metadata = await self._episode_metadata(tmdb_id, seasons)

        streams: dict[str, dict] = {}
        title_streams: list[TitleStream] = []
        seen = set()
        for sid in sorted({sid for sid, _ in usable}):
            entry: dict = {"sources": []}
            if media_type == TVSHOWS:
                entry["episode_metadata"] = episode_metadata.get(sid)
            streams[sid] = entry
        for sid, contribution in usable:
            sources = streams[sid]["sources"]
            if contribution.provider_id not in sources:
                sources.append(contribution.provider_id)
            stream_key = (key, sid, contribution.provider_id)
            if stream_key not in seen:
                seen.add(stream_key)
                title_streams.append(TitleStream(
                    title_key=key, stream_id=sid, provider_id=contribution.provider_id, proxy_url=contribution.proxy_url,
                ))

        title = Title(title_key=key, type=media_type, tmdb_id=tmdb_id, name=fallback_name or key, streams=streams)
        if media_type == TVSHOWS:
            title.number_of_seasons = len({parse_stream_id(sid)[0] for sid in streams})
            title.number_of_episodes = len(streams)

        if details is not None:
            config = await self.configuration()
            is_movie = media_type == MOVIES
            title.name = (details.get("title") if is_movie else details.get("name")) or title.name
            title.original_name = details.get("original_title") if is_movie else details.get("original_name")
            title.release_date = (details.get("release_date") if is_movie else details.get("first_air_date")) or None
            title.overview = details.get("overview") or None
            title.poster_path = details.get("poster_path") or None
            title.backdrop_path = details.get("backdrop_path") or None
            title.poster_url = self._image_url(config, "poster_size", title.poster_path)
            title.backdrop_url = self._image_url(config, "backdrop_size", title.backdrop_path)
            title.vote_average = details.get("vote_average")
            title.vote_count = details.get("vote_count")
            title.genres = [g.get("name") for g in details.get("genres") or [] if isinstance(g, dict) and g.get("name")]
            title.runtime = details.get("runtime") if is_movie else None
            title.similar_titles = await self._similar_keys(media_type, tmdb_id)

        return TitleBuild(title=title, streams=title_streams, error=error)
