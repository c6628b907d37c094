"""
Database session management for the lending library.

Every lending operation runs in one short-lived session whose transaction
is the all-or-nothing boundary for that operation. Correctness under
concurrent workers comes from the database (conditional UPDATEs, row locks
and constraints), not from anything held in process memory, so sessions
are never shared between threads.
"""

import logging
from collections.abc import Callable, Generator
from contextlib import contextmanager
from typing import TypeVar

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..config import get_config
from ..errors import RepositoryException
from .schema import Base

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Seconds a SQLite writer waits for a competing writer before giving up
SQLITE_BUSY_TIMEOUT = 30


def default_database_url() -> str:
    """URL of the configured SQLite file; its directory is created on demand."""
    path = get_config().database_path
    path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{path}"


def _enable_foreign_keys(dbapi_connection, connection_record) -> None:  # noqa: ARG001
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA foreign_keys=ON")
    finally:
        cursor.close()


def build_engine(database_url: str) -> Engine:
    """
    Create an engine for the given URL.

    SQLite connections may be handed between worker threads and wait on the
    database lock for up to ``SQLITE_BUSY_TIMEOUT`` seconds, so two borrowers
    racing for the last copy serialize instead of failing with "database is
    locked". Other backends get a bounded pool with liveness checks.
    """
    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT},
        )
        event.listen(engine, "connect", _enable_foreign_keys)
    else:
        engine = create_engine(database_url, pool_size=10, max_overflow=20, pool_pre_ping=True)

    logger.info("Database engine created: %s", engine.url)
    return engine


class DatabaseManager:
    """
    Owns the engine and session factory for one database.

    Both are built lazily, so constructing a manager never touches the
    database. Sessions do not autoflush (repositories flush when they need
    generated ids or constraint checks) and keep loaded values after
    commit; repositories re-read rows with ``populate_existing`` whenever
    they need the current state.
    """

    def __init__(self, database_url: str | None = None):
        self.database_url = database_url or default_database_url()
        self._engine: Engine | None = None
        self._sessions: sessionmaker | None = None

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            self._engine = build_engine(self.database_url)
        return self._engine

    def create_session(self) -> Session:
        """A new session; the caller closes it."""
        if self._sessions is None:
            self._sessions = sessionmaker(
                bind=self.engine, autoflush=False, expire_on_commit=False
            )
        return self._sessions()

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """
        Session that commits when the block exits cleanly.

        ```python
        with db_manager.session_scope() as session:
            CirculationRepository(session).expire_stale_reservations()
        ```

        On any exception the transaction is rolled back and the exception
        propagates unchanged.
        """
        session = self.create_session()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def init_database(self, drop_existing: bool = False) -> None:
        """Create all lending tables, optionally dropping the old ones first."""
        if drop_existing:
            logger.warning("Dropping lending tables in %s", self.engine.url)
            Base.metadata.drop_all(bind=self.engine)
        Base.metadata.create_all(bind=self.engine)
        logger.info("Lending schema ready (%d tables)", len(Base.metadata.tables))

    def verify_connection(self) -> bool:
        try:
            with self.engine.connect() as connection:
                connection.execute(text("SELECT 1"))
        except SQLAlchemyError:
            logger.exception("Cannot reach database %s", self.database_url)
            return False
        return True

    def close(self) -> None:
        """Dispose of pooled connections; the manager can be reused afterwards."""
        if self._engine is not None:
            self._engine.dispose()
        self._engine = None
        self._sessions = None


# === Process-wide manager ===

_db_manager: DatabaseManager | None = None


def get_db_manager(database_url: str | None = None) -> DatabaseManager:
    """The process-wide manager; ``database_url`` only applies on first use."""
    global _db_manager  # noqa: PLW0603

    if _db_manager is None:
        _db_manager = DatabaseManager(database_url)
    return _db_manager


def reset_db_manager() -> None:
    global _db_manager  # noqa: PLW0603

    if _db_manager is not None:
        _db_manager.close()
    _db_manager = None


def get_session() -> Session:
    """New session from the process-wide manager. Use it as a context manager."""
    return get_db_manager().create_session()


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    with get_db_manager().session_scope() as session:
        yield session


# === Error wrapping ===


def safe_commit(session: Session, operation: str) -> None:
    """
    Commit, turning database failures into RepositoryException.

    The session is rolled back before the error is raised so it stays usable.
    """
    try:
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        raise RepositoryException(f"Could not {operation}: {e!s}") from e


def safe_query(session: Session, query_func: Callable[[Session], T], error_msg: str) -> T:
    """
    Run ``query_func(session)``, turning database failures into RepositoryException.

    Lending errors raised inside ``query_func`` pass through untouched.
    """
    try:
        return query_func(session)
    except SQLAlchemyError as e:
        logger.exception("%s", error_msg)
        raise RepositoryException(f"{error_msg}: database error") from e
