"""
Database connection and session management.

Any SQLAlchemy URL works: SQLite for local runs and tests, PostgreSQL when
DATABASE_URL points at one. One Database instance per process, created at
startup and passed to the stores and indexer stages.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from backend_relgraph.config.env import mask_url
from backend_relgraph.database.tables import Base
from backend_relgraph.relgraph_logging import get_logger

logger = get_logger(__name__)


def _enable_sqlite_wal(dbapi_conn, _record) -> None:
    cur = dbapi_conn.cursor()
    cur.execute("PRAGMA journal_mode=WAL")
    cur.execute("PRAGMA busy_timeout=5000")
    cur.close()


class Database:
    """Engine plus session factory for one database URL."""

    def __init__(self, url: str, *, echo: bool = False) -> None:
        self.url = url
        connect_args = {}
        if url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(url, connect_args=connect_args, pool_pre_ping=True, echo=echo)
        if url.startswith("sqlite") and ":memory:" not in url:
            event.listen(self.engine, "connect", _enable_sqlite_wal)
        self._session_factory = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Single session scope. Commits on success, rolls back on error."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_all(self) -> None:
        """Create tables if they do not exist. Safe to call on every startup."""
        Base.metadata.create_all(bind=self.engine)
        logger.info("database_init", url=mask_url(self.url))

    def dispose(self) -> None:
        self.engine.dispose()


def get_database(url: str, *, create: bool = True) -> Database:
    """Build a Database for url and create tables when create is True."""
    db = Database(url)
    if create:
        db.create_all()
    return db
