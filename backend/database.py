"""
Document store setup.

The catalog collections (providers, provider_titles, titles, title_streams,
job_history, provider_categories) live in SQL tables managed by SQLAlchemy.
DOCSTORE_URI selects the database; by default it is a SQLite file under
DATA_DIR.
"""
import logging
from pathlib import Path
from typing import Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool

from errors import DocStoreError

logger = logging.getLogger(__name__)

# SQLAlchemy Base for model declarations
Base = declarative_base()

# Engine and session factory (initialized on startup)
_engine: Optional[Engine] = None
_SessionLocal = None


def _is_sqlite(database_url: str) -> bool:
    return database_url.startswith("sqlite")


def create_db_engine(database_url: str) -> Engine:
    """Create an engine with SQLite-specific settings where needed."""
    if not _is_sqlite(database_url):
        return create_engine(database_url, pool_pre_ping=True, echo=False)

    in_memory = database_url in ("sqlite://", "sqlite:///:memory:")
    if not in_memory:
        db_path = database_url.split("sqlite:///", 1)[-1]
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(
        database_url,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool if in_memory else None,
        echo=False,  # Set to True for SQL debugging
    )

    if not in_memory:
        @event.listens_for(engine, "connect")
        def _set_sqlite_pragmas(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.close()

    return engine


def init_db(database_url: str):
    """
    Initialize the document store, creating tables and indexes if missing.

    Returns:
        The session factory bound to the new engine.
    """
    global _engine, _SessionLocal

    try:
        logger.info(f"Initializing document store at {database_url.split('@')[-1]}")
        _engine = create_db_engine(database_url)
        _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=_engine, expire_on_commit=False)

        # Import models to register them with Base
        import models  # noqa: F401

        Base.metadata.create_all(bind=_engine)
        logger.debug("Document store tables and indexes created/verified")
        return _SessionLocal
    except SQLAlchemyError as e:
        logger.exception(f"Failed to initialize document store: {e}")
        raise DocStoreError(f"Failed to initialize document store: {e}") from e


def dispose_db() -> None:
    """Release pooled connections."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None

