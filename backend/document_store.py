"""
Document store adapter.

Gives repositories a small document-oriented API (get_one / get_many /
upsert / bulk_upsert / bulk_insert / delete) over the SQLAlchemy models,
with Mongo-style query dicts:

    {"provider_id": "P1", "tmdb_id": {"$ne": None}, "last_updated": {"$gte": ts}}

Supported operators: $in, $nin, $ne, $gt, $gte, $lt, $lte. A plain value is
an equality test (None matches NULL). Every call uses its own short session.
"""
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Optional, Sequence, Union

from sqlalchemy import and_, not_, or_, true
from sqlalchemy.exc import SQLAlchemyError

from database import Base
from errors import DocStoreError

logger = logging.getLogger(__name__)

_OPERATORS = {"$in", "$nin", "$ne", "$gt", "$gte", "$lt", "$lte"}

KeyFields = Union[str, Sequence[str]]


@dataclass
class BulkWriteResult:
    """Outcome of a bulk write; per-item failures are listed, not raised."""
    inserted: int = 0
    updated: int = 0
    errors: list[tuple[str, str]] = field(default_factory=list)

    @property
    def written(self) -> int:
        return self.inserted + self.updated


def _as_tuple(key_fields: KeyFields) -> tuple[str, ...]:
    if isinstance(key_fields, str):
        return (key_fields,)
    return tuple(key_fields)


class Collection:
    """Document operations over one model/table."""

    def __init__(self, session_factory, model, name: Optional[str] = None):
        self._session_factory = session_factory
        self.model = model
        self.name = name or model.__tablename__
        self._fields = set(model.field_names())

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @contextmanager
    def _session(self):
        session = self._session_factory()
        try:
            yield session
        except SQLAlchemyError as e:
            session.rollback()
            raise DocStoreError(f"{self.name}: {e}") from e
        finally:
            session.close()

    def _column(self, name: str):
        if name not in self._fields or name == "pk":
            raise DocStoreError(f"{self.name}: unknown field '{name}'")
        return getattr(self.model, name)

    def _condition(self, name: str, value: Any):
        column = self._column(name)
        if not isinstance(value, dict):
            return column.is_(None) if value is None else column == value

        clauses = []
        for op, operand in value.items():
            if op not in _OPERATORS:
                raise DocStoreError(f"{self.name}: unsupported operator '{op}'")
            if op == "$in":
                clauses.append(column.in_(list(operand)))
            elif op == "$nin":
                operand = list(operand)
                clauses.append(or_(column.is_(None), not_(column.in_(operand))) if operand else true())
            elif op == "$ne":
                if operand is None:
                    clauses.append(column.isnot(None))
                else:
                    clauses.append(or_(column.is_(None), column != operand))
            elif op == "$gt":
                clauses.append(column > operand)
            elif op == "$gte":
                clauses.append(column >= operand)
            elif op == "$lt":
                clauses.append(column < operand)
            elif op == "$lte":
                clauses.append(column <= operand)
        return and_(*clauses)

    def _filtered(self, session, query: Optional[dict]):
        q = session.query(self.model)
        for name, value in (query or {}).items():
            q = q.filter(self._condition(name, value))
        return q

    def _apply(self, row, doc: dict) -> bool:
        """Copy fields onto a row; returns True when anything changed."""
        changed = False
        for name, value in doc.items():
            if name == "pk":
                continue
            self._column(name)
            if getattr(row, name) != value:
                setattr(row, name, value)
                changed = True
        return changed

    def _key_query(self, doc: dict, key_fields: tuple[str, ...]) -> dict:
        missing = [k for k in key_fields if doc.get(k) is None]
        if missing:
            raise DocStoreError(f"{self.name}: document missing key field(s) {', '.join(missing)}")
        return {k: doc[k] for k in key_fields}

    def _upsert_in_session(self, session, doc: dict, key_fields: tuple[str, ...]) -> str:
        existing = self._filtered(session, self._key_query(doc, key_fields)).first()
        now = datetime.utcnow()
        if existing is None:
            row = self.model()
            self._apply(row, doc)
            if "created_at" in self._fields and doc.get("created_at") is None:
                row.created_at = now
            if "last_updated" in self._fields and doc.get("last_updated") is None:
                row.last_updated = now
            session.add(row)
            session.flush()
            return "inserted"
        # created_at is never overwritten on update
        update = {k: v for k, v in doc.items() if k != "created_at"}
        self._apply(existing, update)
        session.flush()
        return "updated"

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def ensure_indexes(self) -> None:
        """Create the table and its declared indexes if missing."""
        with self._session() as session:
            Base.metadata.create_all(bind=session.get_bind(), tables=[self.model.__table__])

    def get_one(self, query: dict) -> Optional[dict]:
        with self._session() as session:
            row = self._filtered(session, query).first()
            return row.to_document() if row else None

    def get_many(
        self,
        query: Optional[dict] = None,
        sort: Optional[list[tuple[str, int]]] = None,
        projection: Optional[Iterable[str]] = None,
        limit: Optional[int] = None,
    ) -> list[dict]:
        """
        Query documents.

        Args:
            query: Mongo-style filter dict
            sort: list of (field, 1|-1)
            projection: fields to return (all when None)
            limit: maximum documents
        """
        with self._session() as session:
            q = self._filtered(session, query)
            for name, direction in sort or []:
                column = self._column(name)
                q = q.order_by(column.desc() if direction < 0 else column.asc())
            if limit:
                q = q.limit(limit)
            rows = q.all()
            docs = [row.to_document() for row in rows]

        if projection is not None:
            fields = list(projection)
            for name in fields:
                self._column(name)
            docs = [{name: doc.get(name) for name in fields} for doc in docs]
        return docs

    def count(self, query: Optional[dict] = None) -> int:
        with self._session() as session:
            return self._filtered(session, query).count()

    def upsert(self, doc: dict, key_fields: KeyFields) -> str:
        """Insert or update a single document. Returns "inserted" or "updated"."""
        keys = _as_tuple(key_fields)
        with self._session() as session:
            outcome = self._upsert_in_session(session, doc, keys)
            session.commit()
            return outcome

    def update_one(self, query: dict, changes: dict) -> bool:
        """Set fields on the first matching document. Returns False when none matched."""
        with self._session() as session:
            row = self._filtered(session, query).first()
            if row is None:
                return False
            self._apply(row, changes)
            session.commit()
            return True

    def bulk_upsert(self, docs: list[dict], key_fields: KeyFields) -> BulkWriteResult:
        """
        Upsert many documents.

        The batch is first written in one transaction. If that fails it is
        replayed one document per transaction so a bad item only costs itself.
        """
        keys = _as_tuple(key_fields)
        result = BulkWriteResult()
        if not docs:
            return result

        session = self._session_factory()
        try:
            for doc in docs:
                if self._upsert_in_session(session, doc, keys) == "inserted":
                    result.inserted += 1
                else:
                    result.updated += 1
            session.commit()
            return result
        except (SQLAlchemyError, DocStoreError) as e:
            session.rollback()
            logger.warning(f"[{self.name}] Bulk upsert of {len(docs)} documents failed ({e}), retrying item by item")
        finally:
            session.close()

        result = BulkWriteResult()
        for doc in docs:
            label = "-".join(str(doc.get(k)) for k in keys)
            try:
                if self.upsert(doc, keys) == "inserted":
                    result.inserted += 1
                else:
                    result.updated += 1
            except DocStoreError as e:
                result.errors.append((label, str(e)))
                logger.warning(f"[{self.name}] Failed to upsert {label}: {e}")
        return result

    def bulk_insert(self, docs: list[dict]) -> BulkWriteResult:
        """Insert many documents, collecting per-item failures."""
        result = BulkWriteResult()
        for index, doc in enumerate(docs):
            try:
                with self._session() as session:
                    row = self.model()
                    self._apply(row, doc)
                    now = datetime.utcnow()
                    if "created_at" in self._fields and row.created_at is None:
                        row.created_at = now
                    if "last_updated" in self._fields and row.last_updated is None:
                        row.last_updated = now
                    session.add(row)
                    session.commit()
                result.inserted += 1
            except DocStoreError as e:
                result.errors.append((str(index), str(e)))
        return result

    def delete(self, query: dict) -> int:
        """Delete matching documents. An empty query is refused."""
        if not query:
            raise DocStoreError(f"{self.name}: refusing to delete with an empty query")
        with self._session() as session:
            deleted = self._filtered(session, query).delete(synchronize_session=False)
            session.commit()
            return deleted


class DocumentStore:
    """Collection factory bound to one session factory."""

    def __init__(self, session_factory):
        self._session_factory = session_factory
        self._collections: dict[str, Collection] = {}

    def collection(self, model) -> Collection:
        name = model.__tablename__
        if name not in self._collections:
            self._collections[name] = Collection(self._session_factory, model)
        return self._collections[name]

    def ensure_indexes(self) -> None:
        for collection in self._collections.values():
            collection.ensure_indexes()
