"""
Error kinds raised by the ingestion engine.

Every error the engine raises on purpose derives from EngineError so that
jobs can tell expected failures (a provider is down, TMDB has no entry)
apart from programming errors, which are left to propagate and fail the job.
"""
from typing import Optional


class EngineError(Exception):
    """Base class for all engine errors."""


class ConfigError(EngineError):
    """Invalid or missing configuration. Fatal at startup."""


class NetworkError(EngineError):
    """A remote call failed after retries and no cached copy was available."""

    def __init__(self, message: str, status_code: Optional[int] = None, url: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.url = url


class UpstreamAuthError(EngineError):
    """The upstream rejected our credentials (HTTP 401/403 or auth flag off)."""

    def __init__(self, message: str, provider_id: Optional[str] = None):
        super().__init__(message)
        self.provider_id = provider_id


class UpstreamFormatError(EngineError):
    """The upstream answered with something we could not parse."""


class TmdbNotFound(EngineError):
    """TMDB has no record for the requested id."""

    def __init__(self, media_type: str, tmdb_id: int):
        super().__init__(f"TMDB {media_type} {tmdb_id} not found")
        self.media_type = media_type
        self.tmdb_id = tmdb_id


class DocStoreError(EngineError):
    """A document store call failed.

    Bulk operations attach the per-item failures in ``item_errors`` as
    ``(key, message)`` tuples.
    """

    def __init__(self, message: str, item_errors: Optional[list[tuple[str, str]]] = None):
        super().__init__(message)
        self.item_errors = item_errors or []


class CancellationError(EngineError):
    """The running job was asked to stop."""
