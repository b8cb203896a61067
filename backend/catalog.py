"""
Catalog entities and identifier helpers.

Identifiers:
- title_key           "{type}-{tmdb_id}"
- provider_title_key  "{type}-{provider_id}-{provider_item_id}"
- category_key        "{type}-{category_id}"
- stream id           "main" for movies, "S{season:02}-E{episode:02}" for episodes
"""
import re
from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Any, NamedTuple, Optional

MOVIES = "movies"
TVSHOWS = "tvshows"
MEDIA_TYPES = (MOVIES, TVSHOWS)

MAIN_STREAM = "main"
IGNORED_NO_TMDB_MATCH = "no_tmdb_match"
IGNORED_EPISODES_FETCH_FAILED = "episodes_fetch_failed"

_EPISODE_STREAM_ID = re.compile(r"^S(\d{2,})-E(\d{2,})$")


def check_media_type(media_type: str) -> str:
    if media_type not in MEDIA_TYPES:
        raise ValueError(f"Unsupported media type: {media_type!r}")
    return media_type


def normalize_tmdb_id(value: Any) -> Optional[int]:
    """Coerce a TMDB id; 0, empty and unparseable values mean "no id"."""
    if value is None or isinstance(value, bool):
        return None
    try:
        tmdb_id = int(str(value).strip())
    except ValueError:
        return None
    return tmdb_id if tmdb_id > 0 else None


def title_key(media_type: str, tmdb_id: int) -> str:
    return f"{media_type}-{tmdb_id}"


def provider_title_key(media_type: str, provider_id: str, provider_item_id: str) -> str:
    return f"{media_type}-{provider_id}-{provider_item_id}"


def category_key(media_type: str, category_id: Any) -> str:
    return f"{media_type}-{category_id}"


def stream_compound_key(media_type: str, tmdb_id: int, stream_id: str, provider_id: str) -> str:
    return f"{media_type}-{tmdb_id}-{stream_id}-{provider_id}"


def episode_stream_id(season: int, episode: int) -> str:
    """Format an episode stream id. Seasons and episodes start at 1."""
    season, episode = int(season), int(episode)
    if season < 1 or episode < 1:
        raise ValueError(f"Invalid episode position S{season}E{episode}")
    return f"S{season:02d}-E{episode:02d}"


def parse_stream_id(stream_id: str) -> Optional[tuple[int, int]]:
    """
    Split a stream id into (season, episode); "main" gives None.

    Raises:
        ValueError: for malformed ids and for season or episode 0.
    """
    if stream_id == MAIN_STREAM:
        return None
    match = _EPISODE_STREAM_ID.match(stream_id or "")
    if not match:
        raise ValueError(f"Invalid stream id: {stream_id!r}")
    season, episode = int(match.group(1)), int(match.group(2))
    if season < 1 or episode < 1:
        raise ValueError(f"Invalid stream id: {stream_id!r} (numbering starts at 1)")
    return season, episode


def is_valid_stream_id(stream_id: str) -> bool:
    try:
        parse_stream_id(stream_id)
    except ValueError:
        return False
    return True


class _Document:
    """Dict conversion shared by the entity dataclasses."""

    def to_doc(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_doc(cls, doc: dict):
        names = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in doc.items() if k in names})


@dataclass
class Provider(_Document):
    id: str
    type: str
    base_url: str = ""
    username: Optional[str] = None
    password: Optional[str] = None
    priority: int = 100
    enabled: bool = True
    deleted: bool = False
    enabled_categories: dict = field(default_factory=dict)
    api_rate: dict = field(default_factory=dict)
    cleanup: dict = field(default_factory=dict)
    created_at: Optional[datetime] = None
    last_updated: Optional[datetime] = None

    def __post_init__(self):
        self.enabled_categories = self.enabled_categories or {}
        self.api_rate = self.api_rate or {}
        self.cleanup = self.cleanup or {}
        if self.priority is None:
            self.priority = 100

    @property
    def is_active(self) -> bool:
        return bool(self.enabled) and not self.deleted

    def enabled_category_keys(self, media_type: str) -> set[str]:
        return {str(key) for key in self.enabled_categories.get(media_type) or []}

    def is_category_enabled(self, media_type: str, category_id: Any) -> bool:
        if category_id is None:
            return False
        keys = self.enabled_category_keys(media_type)
        return category_key(media_type, category_id) in keys or str(category_id) in keys

    def stream_url(self, path: str) -> str:
        """Absolute URL for a stored stream path."""
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"


@dataclass
class ProviderTitle(_Document):
    provider_id: str
    type: str
    provider_item_id: str
    name: str
    year: Optional[int] = None
    category_id: Optional[str] = None
    tmdb_id: Optional[int] = None
    imdb_id: Optional[str] = None
    tmdb_hint: Optional[int] = None
    release_date: Optional[str] = None
    upstream_modified: Optional[str] = None
    streams: dict = field(default_factory=dict)
    ignored: bool = False
    ignored_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    last_updated: Optional[datetime] = None

    def __post_init__(self):
        self.provider_item_id = str(self.provider_item_id)
        if self.category_id is not None:
            self.category_id = str(self.category_id)
        self.tmdb_id = normalize_tmdb_id(self.tmdb_id)
        self.tmdb_hint = normalize_tmdb_id(self.tmdb_hint)
        self.streams = dict(self.streams or {})
        if self.ignored and not self.ignored_reason:
            raise ValueError(f"{self.provider_title_key}: ignored titles need a reason")

    @property
    def provider_title_key(self) -> str:
        return provider_title_key(self.type, self.provider_id, self.provider_item_id)

    @property
    def title_key(self) -> Optional[str]:
        return title_key(self.type, self.tmdb_id) if self.tmdb_id else None

    def to_doc(self) -> dict:
        doc = super().to_doc()
        doc["provider_title_key"] = self.provider_title_key
        doc["title_key"] = self.title_key
        return doc

    def identity_changed(self, other: "ProviderTitle") -> bool:
        """True when name, year or category differ (requires re-matching)."""
        return (self.name, self.year, self.category_id) != (other.name, other.year, other.category_id)

    def content_changed(self, other: "ProviderTitle") -> bool:
        return self.identity_changed(other) or (
            self.streams, self.imdb_id, self.tmdb_hint, self.release_date, self.upstream_modified,
        ) != (
            other.streams, other.imdb_id, other.tmdb_hint, other.release_date, other.upstream_modified,
        )


@dataclass
class Title(_Document):
    title_key: str
    type: str
    tmdb_id: int
    name: str
    original_name: Optional[str] = None
    release_date: Optional[str] = None
    overview: Optional[str] = None
    poster_path: Optional[str] = None
    backdrop_path: Optional[str] = None
    poster_url: Optional[str] = None
    backdrop_url: Optional[str] = None
    vote_average: Optional[float] = None
    vote_count: Optional[int] = None
    genres: list = field(default_factory=list)
    runtime: Optional[int] = None
    number_of_seasons: Optional[int] = None
    number_of_episodes: Optional[int] = None
    similar_titles: list = field(default_factory=list)
    streams: dict = field(default_factory=dict)
    created_at: Optional[datetime] = None
    last_updated: Optional[datetime] = None

    def __post_init__(self):
        self.genres = list(self.genres or [])
        self.similar_titles = list(self.similar_titles or [])
        self.streams = dict(self.streams or {})

    def content(self) -> dict:
        """Document without timestamps, used to detect real changes."""
        doc = self.to_doc()
        doc.pop("created_at", None)
        doc.pop("last_updated", None)
        return doc


@dataclass
class TitleStream(_Document):
    title_key: str
    stream_id: str
    provider_id: str
    proxy_url: str
    created_at: Optional[datetime] = None
    last_updated: Optional[datetime] = None

    @property
    def key(self) -> tuple[str, str, str]:
        return self.title_key, self.stream_id, self.provider_id

    @property
    def compound_key(self) -> str:
        media_type, _, tmdb_id = self.title_key.partition("-")
        return stream_compound_key(media_type, int(tmdb_id), self.stream_id, self.provider_id)


@dataclass
class Category(_Document):
    provider_id: str
    type: str
    category_id: str
    category_name: Optional[str] = None
    enabled: bool = False
    created_at: Optional[datetime] = None
    last_updated: Optional[datetime] = None

    def __post_init__(self):
        self.category_id = str(self.category_id)

    @property
    def category_key(self) -> str:
        return category_key(self.type, self.category_id)

    def to_doc(self) -> dict:
        doc = super().to_doc()
        doc["category_key"] = self.category_key
        return doc


@dataclass
class JobHistory(_Document):
    job_name: str
    status: str = "idle"
    provider_id: Optional[str] = None
    last_execution: Optional[datetime] = None
    execution_count: int = 0
    last_result: Optional[dict] = None
    last_error: Optional[str] = None
    created_at: Optional[datetime] = None
    last_updated: Optional[datetime] = None


class Contribution(NamedTuple):
    """One provider stream feeding a merged title."""
    provider_id: str
    stream_id: str
    proxy_url: str
