"""
HTTP fetcher with an on-disk response cache.

All upstream traffic (IPTV providers and TMDB) goes through HttpFetcher:
- responses are cached under
  {cache_root}/{provider_id}/{type}/metadata/{endpoint}[-{param_sig}].{ext}
  and served from disk while younger than the request's TTL
- every network attempt first takes a slot from the per-key rate limiter
- transient failures (connection errors, 5xx, 429) are retried with
  exponential backoff via tenacity
- when the network gives up, a stale cached copy is returned if one exists
"""
import hashlib
import json
import logging
import os
import re
import shutil
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from cancellation import CancellationToken, guarded
from errors import NetworkError, UpstreamAuthError, UpstreamFormatError
from log_utils import redact_url
from rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_ATTEMPTS = 3
MAX_PARAM_SIG_LENGTH = 100

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._=-]+")
_EXTENSIONS = {"json": "json", "text": "m3u8"}


@dataclass
class FetchRequest:
    """
    One cacheable GET.

    ``params`` identify the resource and feed the cache file name;
    ``query`` is what is actually sent and may carry credentials.
    """
    provider_id: str
    media_type: str
    endpoint: str
    url: str
    params: dict = field(default_factory=dict)
    query: dict = field(default_factory=dict)
    headers: dict = field(default_factory=dict)
    ttl_hours: Optional[float] = None
    limiter_key: Optional[str] = None
    response_format: str = "json"
    timeout: Optional[float] = None

    @property
    def rate_key(self) -> str:
        return self.limiter_key or self.provider_id


class _RetryableStatus(Exception):
    """Internal marker for 5xx/429 responses that should be retried."""

    def __init__(self, status_code: int):
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, (httpx.TransportError, _RetryableStatus))


def _safe_segment(value: Any) -> str:
    cleaned = _UNSAFE_CHARS.sub("-", str(value)).strip("-.")
    return cleaned or "_"


def param_signature(params: dict) -> str:
    """Stable, filesystem-safe encoding of request params (sorted by key)."""
    if not params:
        return ""
    raw = "_".join(f"{key}={params[key]}" for key in sorted(params))
    signature = _UNSAFE_CHARS.sub("-", raw)
    if len(signature) > MAX_PARAM_SIG_LENGTH:
        signature = hashlib.sha1(raw.encode("utf-8")).hexdigest()
    return signature


class HttpFetcher:
    """Rate limited, retrying, disk-cached GET client."""

    def __init__(
        self,
        cache_root: str,
        rate_limiter: RateLimiter,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        attempts: int = DEFAULT_ATTEMPTS,
        backoff_multiplier: float = 0.5,
        backoff_max: float = 8.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.cache_root = Path(cache_root)
        self.rate_limiter = rate_limiter
        self.timeout = timeout
        self.attempts = max(1, attempts)
        self.backoff_multiplier = backoff_multiplier
        self.backoff_max = backoff_max
        self._client = client or httpx.AsyncClient(follow_redirects=True)

    async def close(self) -> None:
        await self._client.aclose()

    # -------------------------------------------------------------------------
    # Cache
    # -------------------------------------------------------------------------

    def cache_path(self, req: FetchRequest) -> Path:
        """Compute the cache file for a request."""
        name = _safe_segment(req.endpoint)
        signature = param_signature(req.params)
        if signature:
            name = f"{name}-{signature}"
        extension = _EXTENSIONS.get(req.response_format, "json")
        return (
            self.cache_root
            / _safe_segment(req.provider_id)
            / _safe_segment(req.media_type)
            / "metadata"
            / f"{name}.{extension}"
        )

    @staticmethod
    def _is_fresh(path: Path, ttl_hours: Optional[float]) -> bool:
        try:
            mtime = path.stat().st_mtime
        except FileNotFoundError:
            return False
        if ttl_hours is None:
            return True
        return (time.time() - mtime) < ttl_hours * 3600

    @staticmethod
    def _read_file(path: Path) -> Optional[bytes]:
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None

    @staticmethod
    def _write_atomic(path: Path, body: bytes) -> None:
        """Write via a temp file in the same directory and rename into place."""
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as tmp:
                tmp.write(body)
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    @staticmethod
    def _decode(body: bytes, req: FetchRequest) -> Any:
        if req.response_format == "text":
            return body.decode("utf-8", errors="replace")
        try:
            return json.loads(body)
        except ValueError as e:
            raise UpstreamFormatError(f"{req.provider_id}/{req.endpoint}: invalid JSON ({e})") from e

    def purge_provider(self, provider_id: str) -> bool:
        """Remove a provider's whole cache tree. Returns True if anything was removed."""
        target = self.cache_root / _safe_segment(provider_id)
        if not target.is_dir():
            return False
        shutil.rmtree(target)
        logger.info(f"[{provider_id}] Purged cache directory {target}")
        return True

    # -------------------------------------------------------------------------
    # Fetching
    # -------------------------------------------------------------------------

    async def fetch(self, req: FetchRequest, cancel_token: Optional[CancellationToken] = None) -> Any:
        """
        Return the decoded response for ``req``, from cache when fresh.

        Raises:
            UpstreamAuthError: on HTTP 401/403.
            NetworkError: when the request failed and no cached copy exists.
            UpstreamFormatError: when a JSON response cannot be decoded.
            CancellationError: when the token fires while waiting.
        """
        path = self.cache_path(req)
        if self._is_fresh(path, req.ttl_hours):
            body = self._read_file(path)
            if body is not None:
                logger.debug(f"[{req.provider_id}] Cache hit {path.name}")
                return self._decode(body, req)

        try:
            body = await guarded(self._fetch_remote(req, cancel_token), cancel_token)
        except NetworkError as e:
            if e.status_code == 404:
                raise
            stale = self._read_file(path)
            if stale is None:
                raise
            logger.warning(f"[{req.provider_id}] {req.endpoint} failed ({e}), serving stale cache")
            return self._decode(stale, req)

        try:
            payload = self._decode(body, req)
        except UpstreamFormatError as e:
            stale = self._read_file(path)
            if stale is None:
                raise
            logger.warning(f"[{req.provider_id}] {req.endpoint} returned an unusable body ({e}), serving stale cache")
            return self._decode(stale, req)
        self._write_atomic(path, body)
        return payload

    async def _fetch_remote(self, req: FetchRequest, cancel_token: Optional[CancellationToken]) -> bytes:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.attempts),
            wait=wait_exponential(multiplier=self.backoff_multiplier, max=self.backoff_max),
            retry=retry_if_exception(_is_transient),
            reraise=True,
        )
        safe_url = redact_url(req.url)
        body = b""
        try:
            async for attempt in retrying:
                with attempt:
                    # The limiter is taken again on every attempt
                    await self.rate_limiter.acquire(req.rate_key, cancel_token)
                    body = await self._attempt(req)
        except _RetryableStatus as e:
            raise NetworkError(
                f"{safe_url} returned HTTP {e.status_code} after {self.attempts} attempt(s)",
                status_code=e.status_code,
                url=safe_url,
            ) from e
        except httpx.TransportError as e:
            raise NetworkError(
                f"{safe_url} unreachable after {self.attempts} attempt(s): {type(e).__name__}",
                url=safe_url,
            ) from e
        return body

    async def _attempt(self, req: FetchRequest) -> bytes:
        safe_url = redact_url(req.url)
        logger.debug(f"[{req.provider_id}] GET {safe_url} ({req.endpoint})")
        response = await self._client.get(
            req.url,
            params=req.query or None,
            headers=req.headers or None,
            timeout=req.timeout or self.timeout,
        )
        status = response.status_code
        if 200 <= status < 300:
            return response.content
        if status in (401, 403):
            raise UpstreamAuthError(f"{safe_url} rejected credentials (HTTP {status})", provider_id=req.provider_id)
        if status == 429 or status >= 500:
            logger.debug(f"[{req.provider_id}] {req.endpoint} HTTP {status}, will retry")
            raise _RetryableStatus(status)
        raise NetworkError(f"{safe_url} returned HTTP {status}", status_code=status, url=safe_url)
