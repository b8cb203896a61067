"""
Repositories for the catalog collections.

Each repository owns one collection and exposes domain-typed methods only;
handlers and jobs never build store queries themselves.
"""
import logging
from datetime import datetime
from typing import Iterable, Optional

from catalog import Category, JobHistory, Provider, ProviderTitle, Title, TitleStream
from document_store import BulkWriteResult, DocumentStore
from models import (
    JobHistoryDocument,
    ProviderCategoryDocument,
    ProviderDocument,
    ProviderTitleDocument,
    TitleDocument,
    TitleStreamDocument,
)

logger = logging.getLogger(__name__)

TITLE_STREAM_KEY = ("title_key", "stream_id", "provider_id")


# -----------------------------------------------------------------------------
# Providers
# -----------------------------------------------------------------------------

class ProviderRepository:
    """Read access to provider configuration (plus save for tooling and tests)."""

    def __init__(self, store: DocumentStore):
        self._collection = store.collection(ProviderDocument)

    def _find(self, query: dict) -> list[Provider]:
        docs = self._collection.get_many(query, sort=[("priority", 1), ("id", 1)])
        return [Provider.from_doc(doc) for doc in docs]

    def list_all(self) -> list[Provider]:
        return self._find({})

    def list_active(self) -> list[Provider]:
        """Enabled, non-deleted providers ordered by priority."""
        return self._find({"enabled": True, "deleted": False})

    def list_deleted(self) -> list[Provider]:
        return self._find({"deleted": True})

    def list_inactive_ids(self) -> set[str]:
        """Ids of providers that are disabled or deleted."""
        return {p.id for p in self.list_all() if not p.is_active}

    def list_changed_since(self, since: Optional[datetime]) -> list[Provider]:
        """Active providers whose configuration was saved at or after ``since``."""
        query = {"enabled": True, "deleted": False}
        if since is not None:
            query["last_updated"] = {"$gte": since}
        return self._find(query)

    def get(self, provider_id: str) -> Optional[Provider]:
        doc = self._collection.get_one({"id": provider_id})
        return Provider.from_doc(doc) if doc else None

    def save(self, provider: Provider) -> None:
        doc = provider.to_doc()
        doc["last_updated"] = datetime.utcnow()
        self._collection.upsert(doc, "id")


# -----------------------------------------------------------------------------
# Provider titles
# -----------------------------------------------------------------------------

class ProviderTitleRepository:
    """Per-provider catalog entries."""

    def __init__(self, store: DocumentStore):
        self._collection = store.collection(ProviderTitleDocument)

    def _find(self, query: dict) -> list[ProviderTitle]:
        docs = self._collection.get_many(query, sort=[("provider_title_key", 1)])
        return [ProviderTitle.from_doc(doc) for doc in docs]

    def get(self, key: str) -> Optional[ProviderTitle]:
        doc = self._collection.get_one({"provider_title_key": key})
        return ProviderTitle.from_doc(doc) if doc else None

    def find_by_provider(
        self,
        provider_id: str,
        media_type: str,
        since: Optional[datetime] = None,
        include_ignored: bool = True,
    ) -> list[ProviderTitle]:
        query = {"provider_id": provider_id, "type": media_type}
        if since is not None:
            query["last_updated"] = {"$gte": since}
        if not include_ignored:
            query["ignored"] = False
        return self._find(query)

    def bulk_save(self, titles: list[ProviderTitle]) -> BulkWriteResult:
        """Upsert titles by provider_title_key, stamping last_updated."""
        now = datetime.utcnow()
        docs = []
        for title in titles:
            doc = title.to_doc()
            doc["last_updated"] = now
            docs.append(doc)
        return self._collection.bulk_upsert(docs, "provider_title_key")

    def find_match_candidates(self, provider_id: str) -> list[ProviderTitle]:
        """Entries still waiting for a TMDB id (unmatched and not ignored)."""
        return self._find({"provider_id": provider_id, "tmdb_id": None, "ignored": False})

    def set_match(self, title: ProviderTitle, tmdb_id: int) -> None:
        title.tmdb_id = tmdb_id
        title.ignored = False
        title.ignored_reason = None
        title.last_updated = datetime.utcnow()
        self._collection.update_one(
            {"provider_title_key": title.provider_title_key},
            {
                "tmdb_id": tmdb_id,
                "title_key": title.title_key,
                "ignored": False,
                "ignored_reason": None,
                "last_updated": title.last_updated,
            },
        )

    def mark_ignored(self, title: ProviderTitle, reason: str) -> None:
        if not reason:
            raise ValueError("An ignored title needs a reason")
        title.ignored = True
        title.ignored_reason = reason
        title.last_updated = datetime.utcnow()
        self._collection.update_one(
            {"provider_title_key": title.provider_title_key},
            {"ignored": True, "ignored_reason": reason, "last_updated": title.last_updated},
        )

    def find_changed_since(self, since: Optional[datetime], provider_ids: Iterable[str]) -> list[ProviderTitle]:
        """Matched entries of the given providers updated at or after ``since``."""
        query = {"provider_id": {"$in": list(provider_ids)}, "tmdb_id": {"$ne": None}}
        if since is not None:
            query["last_updated"] = {"$gte": since}
        return self._find(query)

    def find_contributors(self, title_key: str, provider_ids: Iterable[str]) -> list[ProviderTitle]:
        """Every non-ignored entry of the given providers matched to ``title_key``."""
        return self._find({
            "title_key": title_key,
            "provider_id": {"$in": list(provider_ids)},
            "ignored": False,
        })

    def title_keys_for_providers(self, provider_ids: Iterable[str]) -> set[str]:
        """Title keys that matched, non-ignored entries of the given providers point at."""
        provider_ids = list(provider_ids)
        if not provider_ids:
            return set()
        docs = self._collection.get_many(
            {"provider_id": {"$in": provider_ids}, "tmdb_id": {"$ne": None}, "ignored": False},
            projection=["title_key"],
        )
        return {doc["title_key"] for doc in docs if doc.get("title_key")}

    def count(self, provider_id: Optional[str] = None) -> int:
        return self._collection.count({"provider_id": provider_id} if provider_id else None)


# -----------------------------------------------------------------------------
# Titles
# -----------------------------------------------------------------------------

class TitleRepository:
    """Merged catalog titles."""

    def __init__(self, store: DocumentStore):
        self._collection = store.collection(TitleDocument)

    def get(self, key: str) -> Optional[Title]:
        doc = self._collection.get_one({"title_key": key})
        return Title.from_doc(doc) if doc else None

    def save(self, title: Title) -> bool:
        """
        Upsert a title. Returns False (and writes nothing) when the stored
        document already has the same content.
        """
        existing = self.get(title.title_key)
        if existing is not None and existing.content() == title.content():
            title.created_at = existing.created_at
            title.last_updated = existing.last_updated
            return False

        now = datetime.utcnow()
        title.created_at = existing.created_at if existing else now
        title.last_updated = now
        self._collection.upsert(title.to_doc(), "title_key")
        return True

    def delete(self, key: str) -> int:
        return self._collection.delete({"title_key": key})

    def existing_keys(self, keys: Iterable[str]) -> set[str]:
        keys = list(keys)
        if not keys:
            return set()
        docs = self._collection.get_many({"title_key": {"$in": keys}}, projection=["title_key"])
        return {doc["title_key"] for doc in docs}

    def count(self, media_type: Optional[str] = None) -> int:
        return self._collection.count({"type": media_type} if media_type else None)


# -----------------------------------------------------------------------------
# Title streams
# -----------------------------------------------------------------------------

class TitleStreamRepository:
    """Per (title, stream, provider) routing records."""

    def __init__(self, store: DocumentStore):
        self._collection = store.collection(TitleStreamDocument)

    def find_by_title(self, key: str) -> list[TitleStream]:
        docs = self._collection.get_many({"title_key": key}, sort=[("stream_id", 1), ("provider_id", 1)])
        return [TitleStream.from_doc(doc) for doc in docs]

    def bulk_save(self, streams: list[TitleStream]) -> BulkWriteResult:
        """
        Upsert streams; rows whose proxy_url is unchanged are left untouched.
        """
        existing: dict[tuple, TitleStream] = {}
        for key in {s.title_key for s in streams}:
            existing.update({s.key: s for s in self.find_by_title(key)})

        now = datetime.utcnow()
        docs = []
        for stream in streams:
            current = existing.get(stream.key)
            if current is not None and current.proxy_url == stream.proxy_url:
                continue
            doc = stream.to_doc()
            doc["created_at"] = current.created_at if current is not None else now
            doc["last_updated"] = now
            docs.append(doc)
        return self._collection.bulk_upsert(docs, TITLE_STREAM_KEY)

    def delete_keys(self, keys: Iterable[tuple[str, str, str]]) -> int:
        deleted = 0
        for title_key, stream_id, provider_id in keys:
            deleted += self._collection.delete({
                "title_key": title_key,
                "stream_id": stream_id,
                "provider_id": provider_id,
            })
        return deleted

    def delete_for_title(self, key: str) -> int:
        return self._collection.delete({"title_key": key})

    def title_keys_for_providers(self, provider_ids: Iterable[str]) -> set[str]:
        provider_ids = list(provider_ids)
        if not provider_ids:
            return set()
        docs = self._collection.get_many({"provider_id": {"$in": provider_ids}}, projection=["title_key"])
        return {doc["title_key"] for doc in docs}

    def count(self) -> int:
        return self._collection.count()


# -----------------------------------------------------------------------------
# Job history
# -----------------------------------------------------------------------------

class JobHistoryRepository:
    """Job lifecycle rows; ``last_execution`` is the job's watermark."""

    def __init__(self, store: DocumentStore):
        self._collection = store.collection(JobHistoryDocument)

    @staticmethod
    def _query(job_name: str, provider_id: Optional[str] = None) -> dict:
        return {"job_name": job_name, "provider_id": provider_id}

    def get(self, job_name: str, provider_id: Optional[str] = None) -> Optional[JobHistory]:
        doc = self._collection.get_one(self._query(job_name, provider_id))
        return JobHistory.from_doc(doc) if doc else None

    def list_all(self) -> list[JobHistory]:
        docs = self._collection.get_many({}, sort=[("job_name", 1)])
        return [JobHistory.from_doc(doc) for doc in docs]

    def get_watermark(self, job_name: str, provider_id: Optional[str] = None) -> Optional[datetime]:
        history = self.get(job_name, provider_id)
        return history.last_execution if history else None

    def _write(self, job_name: str, provider_id: Optional[str], changes: dict) -> None:
        now = datetime.utcnow()
        changes = dict(changes, last_updated=now)
        if not self._collection.update_one(self._query(job_name, provider_id), changes):
            doc = {"job_name": job_name, "provider_id": provider_id, "created_at": now}
            doc.update(changes)
            self._collection.bulk_insert([doc])

    def mark_running(self, job_name: str, provider_id: Optional[str] = None) -> None:
        self._write(job_name, provider_id, {"status": "running", "last_error": None})

    def mark_finished(
        self,
        job_name: str,
        status: str,
        started_at: datetime,
        result: Optional[dict] = None,
        error: Optional[str] = None,
        provider_id: Optional[str] = None,
    ) -> None:
        """
        Record a terminal transition.

        Only ``completed`` moves the watermark, and never backwards.
        ``execution_count`` counts runs that produced a result.
        """
        current = self.get(job_name, provider_id)
        changes: dict = {"status": status, "last_error": error}
        if result is not None:
            changes["last_result"] = result
            changes["execution_count"] = (current.execution_count if current else 0) + 1
        if status == "completed":
            previous = current.last_execution if current else None
            changes["last_execution"] = max(previous, started_at) if previous else started_at
        self._write(job_name, provider_id, changes)

    def reset_in_progress(self) -> int:
        """Flip rows left ``running`` by a previous process to ``cancelled``."""
        stale = self._collection.get_many({"status": "running"}, projection=["job_name", "provider_id"])
        for doc in stale:
            self._write(doc["job_name"], doc["provider_id"], {
                "status": "cancelled",
                "last_error": "Interrupted by restart",
            })
        return len(stale)


# -----------------------------------------------------------------------------
# Categories
# -----------------------------------------------------------------------------

class CategoryRepository:
    """Provider categories with their enabled flag."""

    def __init__(self, store: DocumentStore):
        self._collection = store.collection(ProviderCategoryDocument)

    def find_by_provider(self, provider_id: str, media_type: str) -> list[Category]:
        docs = self._collection.get_many(
            {"provider_id": provider_id, "type": media_type}, sort=[("category_name", 1)],
        )
        return [Category.from_doc(doc) for doc in docs]

    def save_all(self, provider_id: str, media_type: str, categories: list[Category]) -> BulkWriteResult:
        """Upsert categories, keeping the stored enabled flag of known ones."""
        existing = {c.category_key: c for c in self.find_by_provider(provider_id, media_type)}
        now = datetime.utcnow()
        docs = []
        for category in categories:
            known = existing.get(category.category_key)
            if known is not None:
                category.enabled = known.enabled
                if known.category_name == category.category_name:
                    continue
            doc = category.to_doc()
            doc["last_updated"] = now
            docs.append(doc)
        return self._collection.bulk_upsert(docs, ("provider_id", "category_key"))
