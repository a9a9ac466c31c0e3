import logging
from contextlib import contextmanager
from typing import Any, Iterator, Optional

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, SQLModel, create_engine

from common.config import ensure_directories, settings
from common.errors import StoreError
from common.job_schema import Job  # noqa: F401  (registers the table on SQLModel.metadata)

logger = logging.getLogger(__name__)

_engine: Optional[Engine] = None


def _create_engine(url: str) -> Engine:
    connect_args = {}
    if url.startswith("sqlite"):
        # Worker threads and request handlers share the pool.
        connect_args = {"check_same_thread": False, "timeout": 20}
    engine = create_engine(url, echo=False, connect_args=connect_args)

    if url.startswith("sqlite"):

        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_conn: Any, _connection_record: Any) -> None:
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA busy_timeout=5000")
            cursor.close()

    return engine


def init_db(url: Optional[str] = None) -> Engine:
    """Connect to the job database and create the schema.

    Raises StoreError when the database is unreachable; callers treat this as
    fatal at startup.
    """
    global _engine
    url = url or settings.database_url
    if url == settings.database_url:
        ensure_directories()
    try:
        engine = _create_engine(url)
        SQLModel.metadata.create_all(engine)
    except SQLAlchemyError as exc:
        raise StoreError(f"Could not initialize job database: {exc}") from exc
    if _engine is not None:
        _engine.dispose()
    _engine = engine
    logger.info("Job database ready")
    return engine


def get_engine() -> Engine:
    if _engine is None:
        return init_db()
    return _engine


def dispose() -> None:
    global _engine
    if _engine is not None:
        _engine.dispose()
        _engine = None


@contextmanager
def session_scope() -> Iterator[Session]:
    """One transaction: commit on success, rollback and raise StoreError on database errors."""
    session = Session(get_engine(), expire_on_commit=False)
    try:
        yield session
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        raise StoreError(str(exc)) from exc
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
