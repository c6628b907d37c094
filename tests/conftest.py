"""Test configuration and fixtures for the lending library.

Every test gets:
1. An isolated SQLite file database - file-backed so concurrency tests can
   open several connections
2. A frozen, advanceable clock injected into the lending components
3. Explicit circulation rules instead of the process-wide configuration
4. Factories for books and users
"""

import itertools
import os
from collections.abc import Generator
from datetime import datetime, timedelta
from decimal import Decimal
from pathlib import Path

import logfire
import pytest
from sqlalchemy.orm import Session

from lending_library.config import LibraryConfig, reset_config
from lending_library.database.book_repository import BookCreateSchema, BookRepository
from lending_library.database.circulation_repository import CirculationRepository
from lending_library.database.session import DatabaseManager, reset_db_manager
from lending_library.database.user_repository import UserCreateSchema, UserRepository
from lending_library.models.user import Role
from lending_library.policy import Actor


@pytest.fixture(scope="session", autouse=True)
def _configure_logfire():
    """Keep spans local during tests."""
    logfire.configure(send_to_logfire=False, console=False)


@pytest.fixture(autouse=True)
def _reset_globals() -> Generator[None, None, None]:
    reset_config()
    reset_db_manager()
    yield
    reset_config()
    reset_db_manager()


# === Clock ===


class FrozenClock:
    """A clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now += timedelta(**delta)
        return self.now

    def today(self):
        return self.now.date()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2024, 3, 1, 10, 0, 0))


# === Database Fixtures ===


@pytest.fixture
def test_db_path(tmp_path: Path) -> Path:
    """Provide a temporary database path for each test."""
    return tmp_path / "test_library.db"


@pytest.fixture
def test_database_url(test_db_path: Path) -> str:
    return f"sqlite:///{test_db_path}"


@pytest.fixture
def db_manager(test_database_url: str) -> Generator[DatabaseManager, None, None]:
    manager = DatabaseManager(test_database_url)
    manager.init_database()
    yield manager
    manager.close()


@pytest.fixture
def test_db_session(db_manager: DatabaseManager) -> Generator[Session, None, None]:
    session = db_manager.create_session()
    try:
        yield session
    finally:
        session.close()


# === Configuration Fixtures ===


@pytest.fixture
def lending_config(test_db_path: Path) -> LibraryConfig:
    """Circulation rules with the documented defaults, pinned for tests."""
    return LibraryConfig(
        daily_fine_rate=Decimal("1.00"),
        grace_period_days=0,
        reservation_hold_duration_hours=48,
        default_loan_days=14,
        database_path=test_db_path,
    )


@pytest.fixture
def clean_env(monkeypatch) -> None:
    """Remove every LENDING_LIBRARY_* variable for the duration of a test."""
    for key in list(os.environ):
        if key.startswith("LENDING_LIBRARY_"):
            monkeypatch.delenv(key)


# === Repositories and Factories ===


@pytest.fixture
def circulation(test_db_session, lending_config, clock) -> CirculationRepository:
    return CirculationRepository(test_db_session, lending_config, clock)


@pytest.fixture
def make_book(test_db_session):
    counter = itertools.count(1)

    def _make_book(total_copies: int = 1, title: str | None = None, **kwargs):
        n = next(counter)
        data = BookCreateSchema(
            isbn=kwargs.pop("isbn", f"978{n:010d}"),
            title=title or f"Book {n}",
            author=kwargs.pop("author", f"Author {n}"),
            total_copies=total_copies,
            **kwargs,
        )
        return BookRepository(test_db_session).create(data)

    return _make_book


@pytest.fixture
def make_user(test_db_session):
    counter = itertools.count(1)

    def _make_user(role: Role = Role.PATRON, username: str | None = None):
        n = next(counter)
        username = username or f"user{n}"
        data = UserCreateSchema(
            username=username, email=f"{username}@library.org", role=role
        )
        return UserRepository(test_db_session).create(data)

    return _make_user


@pytest.fixture
def patron(make_user):
    return make_user(username="alice")


@pytest.fixture
def other_patron(make_user):
    return make_user(username="bob")


@pytest.fixture
def third_patron(make_user):
    return make_user(username="carol")


@pytest.fixture
def librarian(make_user):
    return make_user(role=Role.LIBRARIAN, username="librarian")


@pytest.fixture
def librarian_actor(librarian) -> Actor:
    return Actor.librarian(librarian.id)
