"""
SQLAlchemy ORM models for the catalog collections.

Each collection is one table: scalar attributes that are queried or indexed
are real columns, nested structures (streams, genres, category lists, rate
configs, job results) are JSON columns.
"""
from datetime import datetime
from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, Float, Index, JSON
from database import Base


class DocumentMixin:
    """Column-wise conversion used by the document store adapter."""

    @classmethod
    def field_names(cls) -> list[str]:
        return [column.name for column in cls.__table__.columns]

    def to_document(self) -> dict:
        """Convert to a plain dict (datetimes kept as datetime objects)."""
        return {name: getattr(self, name) for name in self.field_names() if name != "pk"}


class ProviderDocument(DocumentMixin, Base):
    """
    Configuration of one upstream IPTV provider.
    Written by the admin surface; the engine only reads it.
    """
    __tablename__ = "providers"

    pk = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(100), nullable=False)
    type = Column(String(20), nullable=False)  # "agtv" or "xtream"
    base_url = Column(String(500), nullable=False, default="")
    username = Column(String(255), nullable=True)
    password = Column(String(255), nullable=True)
    priority = Column(Integer, default=100, nullable=False)  # Lower = preferred
    enabled = Column(Boolean, default=True, nullable=False)
    deleted = Column(Boolean, default=False, nullable=False)
    enabled_categories = Column(JSON, nullable=True)  # {"movies": [category_key], "tvshows": [...]}
    api_rate = Column(JSON, nullable=True)  # {"concurrent": N, "duration_seconds": D}
    cleanup = Column(JSON, nullable=True)  # {regex: replacement}
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    last_updated = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("idx_providers_id", id, unique=True),
        Index("idx_providers_enabled", enabled),
        Index("idx_providers_priority", priority),
    )

    def __repr__(self):
        return f"<ProviderDocument(id={self.id}, type={self.type}, priority={self.priority}, enabled={self.enabled}, deleted={self.deleted})>"


class ProviderTitleDocument(DocumentMixin, Base):
    """
    One entry of a provider's catalog (a movie or a series).
    For series, episode streams are attached in ``streams`` keyed Sxx-Exx.
    """
    __tablename__ = "provider_titles"

    pk = Column(Integer, primary_key=True, autoincrement=True)
    provider_title_key = Column(String(300), nullable=False)  # {type}-{provider_id}-{provider_item_id}
    provider_id = Column(String(100), nullable=False)
    type = Column(String(20), nullable=False)
    provider_item_id = Column(String(100), nullable=False)
    name = Column(String(500), nullable=False)
    year = Column(Integer, nullable=True)
    category_id = Column(String(255), nullable=True)
    tmdb_id = Column(Integer, nullable=True)
    title_key = Column(String(100), nullable=True)  # {type}-{tmdb_id} once matched
    imdb_id = Column(String(20), nullable=True)
    tmdb_hint = Column(Integer, nullable=True)  # TMDB id advertised by the provider
    release_date = Column(String(20), nullable=True)
    upstream_modified = Column(String(50), nullable=True)
    streams = Column(JSON, nullable=True)  # {stream_id: path or url}
    ignored = Column(Boolean, default=False, nullable=False)
    ignored_reason = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    last_updated = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("idx_provider_titles_key", provider_title_key, unique=True),
        Index("idx_provider_titles_item", provider_id, type, provider_item_id, unique=True),
        Index("idx_provider_titles_provider_type", provider_id, type),
        Index("idx_provider_titles_provider_tmdb", provider_id, tmdb_id),
        Index("idx_provider_titles_title_key", title_key),
        Index("idx_provider_titles_provider_ignored", provider_id, ignored),
        Index("idx_provider_titles_last_updated", last_updated),
    )

    def __repr__(self):
        return f"<ProviderTitleDocument(key={self.provider_title_key}, name={self.name}, tmdb_id={self.tmdb_id})>"


class TitleDocument(DocumentMixin, Base):
    """
    Merged catalog title, one per TMDB id and type.
    ``streams`` maps stream_id to {"sources": [provider_id], "episode_metadata": {...}}.
    """
    __tablename__ = "titles"

    pk = Column(Integer, primary_key=True, autoincrement=True)
    title_key = Column(String(100), nullable=False)
    type = Column(String(20), nullable=False)
    tmdb_id = Column(Integer, nullable=False)
    name = Column(String(500), nullable=False)
    original_name = Column(String(500), nullable=True)
    release_date = Column(String(20), nullable=True)
    overview = Column(Text, nullable=True)
    poster_path = Column(String(255), nullable=True)
    backdrop_path = Column(String(255), nullable=True)
    poster_url = Column(String(500), nullable=True)
    backdrop_url = Column(String(500), nullable=True)
    vote_average = Column(Float, nullable=True)
    vote_count = Column(Integer, nullable=True)
    genres = Column(JSON, nullable=True)
    runtime = Column(Integer, nullable=True)
    number_of_seasons = Column(Integer, nullable=True)
    number_of_episodes = Column(Integer, nullable=True)
    similar_titles = Column(JSON, nullable=True)
    streams = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    last_updated = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("idx_titles_title_key", title_key, unique=True),
        Index("idx_titles_type", type),
        Index("idx_titles_name", name),
        Index("idx_titles_release_date", release_date),
        Index("idx_titles_type_release_date", type, release_date),
    )

    def __repr__(self):
        return f"<TitleDocument(title_key={self.title_key}, name={self.name})>"


class TitleStreamDocument(DocumentMixin, Base):
    """
    Routing record for one (title, stream, provider) combination.
    """
    __tablename__ = "title_streams"

    pk = Column(Integer, primary_key=True, autoincrement=True)
    title_key = Column(String(100), nullable=False)
    stream_id = Column(String(20), nullable=False)  # "main" or "Sxx-Exx"
    provider_id = Column(String(100), nullable=False)
    proxy_url = Column(Text, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    last_updated = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("idx_title_streams_unique", title_key, stream_id, provider_id, unique=True),
        Index("idx_title_streams_title_stream", title_key, stream_id),
        Index("idx_title_streams_provider", provider_id),
        Index("idx_title_streams_title_provider", title_key, provider_id),
    )

    def __repr__(self):
        return f"<TitleStreamDocument(title_key={self.title_key}, stream_id={self.stream_id}, provider_id={self.provider_id})>"


class JobHistoryDocument(DocumentMixin, Base):
    """
    Lifecycle and watermark of a scheduled job.
    One row per job (provider_id is set only for provider-scoped jobs).
    """
    __tablename__ = "job_history"

    pk = Column(Integer, primary_key=True, autoincrement=True)
    job_name = Column(String(100), nullable=False)
    provider_id = Column(String(100), nullable=True)
    status = Column(String(20), default="idle", nullable=False)  # idle, running, completed, failed, cancelled
    last_execution = Column(DateTime, nullable=True)  # Watermark
    execution_count = Column(Integer, default=0, nullable=False)
    last_result = Column(JSON, nullable=True)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    last_updated = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("idx_job_history_job_provider", job_name, provider_id),
    )

    def __repr__(self):
        return f"<JobHistoryDocument(job_name={self.job_name}, status={self.status}, last_execution={self.last_execution})>"


class ProviderCategoryDocument(DocumentMixin, Base):
    """
    A provider-side category (Xtream category or AGTV group-title).
    ``enabled`` survives category refreshes.
    """
    __tablename__ = "provider_categories"

    pk = Column(Integer, primary_key=True, autoincrement=True)
    category_key = Column(String(300), nullable=False)  # {type}-{category_id}
    provider_id = Column(String(100), nullable=False)
    type = Column(String(20), nullable=False)
    category_id = Column(String(255), nullable=False)
    category_name = Column(String(500), nullable=True)
    enabled = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    last_updated = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("idx_provider_categories_unique", provider_id, category_key, unique=True),
        Index("idx_provider_categories_provider_type", provider_id, type),
    )

    def __repr__(self):
        return f"<ProviderCategoryDocument(provider_id={self.provider_id}, category_key={self.category_key})>"
