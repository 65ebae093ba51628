"""Database engine and session handling for the ingest store."""

import logging
import os
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path.home() / ".civic_ingest" / "civic_ingest.db"

# Seconds a writer waits on a locked SQLite file before failing
SQLITE_BUSY_TIMEOUT = 30

_engine: Engine | None = None
_session_factory: sessionmaker | None = None


def get_database_url(db_path: Path | str | None = None) -> str:
    """
    Resolve the connection URL for the ingest store.

    An explicit ``db_path`` wins, then ``DATABASE_URL`` (a full URL or a bare
    file path), then the per-user default file.
    """
    if db_path is None:
        configured = os.environ.get("DATABASE_URL", "")
        if "://" in configured:
            return configured
        db_path = configured or DEFAULT_DB_PATH

    path = Path(db_path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{path}"


def _configure_sqlite(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute(f"PRAGMA busy_timeout = {SQLITE_BUSY_TIMEOUT * 1000}")
    cursor.execute("PRAGMA journal_mode = WAL")
    cursor.execute("PRAGMA foreign_keys = ON")
    cursor.close()


def create_db_engine(db_path: Path | str | None = None, echo: bool = False) -> Engine:
    """Create an engine; SQLite connections get a busy timeout and WAL journaling."""
    url = get_database_url(db_path)
    if not url.startswith("sqlite"):
        return create_engine(url, echo=echo, pool_pre_ping=True)

    engine = create_engine(url, echo=echo, connect_args={"check_same_thread": False})
    event.listen(engine, "connect", _configure_sqlite)
    return engine


def get_engine(db_path: Path | str | None = None, echo: bool = False) -> Engine:
    """Return the process-wide engine, creating it on first use."""
    global _engine
    if _engine is None:
        _engine = create_db_engine(db_path, echo)
        logger.debug(f"Opened ingest store at {_engine.url}")
    return _engine


def get_session_factory(db_path: Path | str | None = None) -> sessionmaker:
    global _session_factory
    if _session_factory is None:
        _session_factory = sessionmaker(bind=get_engine(db_path), autoflush=False)
    return _session_factory


def reset_engine() -> None:
    """Dispose of the process-wide engine so the next call re-reads DATABASE_URL."""
    global _engine, _session_factory
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_factory = None


@contextmanager
def get_session(db_path: Path | str | None = None) -> Generator[Session, None, None]:
    """
    Open a session; the caller decides when to commit.

    Usage:
        with get_session() as session:
            SourceDocumentRepository(session).add(document)
            session.commit()
    """
    session = get_session_factory(db_path)()
    try:
        yield session
    finally:
        session.close()


@contextmanager
def session_scope(db_path: Path | str | None = None) -> Generator[Session, None, None]:
    """Open a session that commits on success and rolls back on any error."""
    with get_session(db_path) as session:
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise


def init_db(db_path: Path | str | None = None) -> None:
    """Create every ingest table that does not exist yet."""
    from civic_ingest.db.models import Base

    Base.metadata.create_all(bind=get_engine(db_path))
