"""Test configuration and fixtures for the Library Circulation API.

1. Isolated test databases - each test gets its own SQLite file
2. Configuration overrides - cheap bcrypt rounds, no retry backoff
3. A fixed clock - every timestamp in a test is predictable
4. Factories - users and books created through the real repositories
"""

import os
from collections.abc import Generator
from datetime import datetime
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from library_api.api import create_app
from library_api.auth import Actor, issue_access_token
from library_api.clock import FixedClock
from library_api.config import ServerConfig, get_config, reset_config
from library_api.database.book_repository import BookCreateSchema, BookRepository
from library_api.database.session import DatabaseManager
from library_api.database.user_repository import UserCreateSchema, UserRepository
from library_api.ledger import BorrowingLedger
from library_api.models.book import Book
from library_api.models.user import Role, User
from library_api.observability import initialize_observability

NOW = datetime(2025, 3, 10, 12, 0, 0)
PASSWORD = "password123"


# === Environment & Configuration Fixtures ===


@pytest.fixture(scope="session", autouse=True)
def observability() -> None:
    """Configure Logfire once; nothing is exported without a token."""
    initialize_observability(
        ServerConfig(database_url="sqlite://", jwt_secret="test-secret-key", logfire_token=None)
    )


@pytest.fixture(autouse=True)
def isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    """Point the process-wide configuration at a temporary database.

    Repositories hash passwords with the global configuration, so the cheap
    bcrypt work factor has to come from the environment.
    """
    for key in list(os.environ):
        if key.startswith("LIBRARY_API_"):
            monkeypatch.delenv(key)

    monkeypatch.setenv("LIBRARY_API_DATABASE_URL", f"sqlite:///{tmp_path / 'test_library.db'}")
    monkeypatch.setenv("LIBRARY_API_BCRYPT_ROUNDS", "4")
    monkeypatch.setenv("LIBRARY_API_CONFLICT_BACKOFF_SECONDS", "0")
    monkeypatch.setenv("LIBRARY_API_JWT_SECRET", "test-secret-key")
    reset_config()

    yield

    reset_config()


@pytest.fixture
def test_config() -> ServerConfig:
    return get_config()


# === Database Fixtures ===


@pytest.fixture
def db(test_config: ServerConfig) -> Generator[DatabaseManager, None, None]:
    """A migrated database manager on the temporary SQLite file."""
    manager = DatabaseManager(test_config.database_url, busy_timeout=5.0)
    manager.init_database()
    yield manager
    manager.close()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(NOW)


@pytest.fixture
def ledger(db: DatabaseManager, clock: FixedClock, test_config: ServerConfig) -> BorrowingLedger:
    return BorrowingLedger(db, clock, test_config, sleep=lambda seconds: None)


# === Factories ===


@pytest.fixture
def make_user(db: DatabaseManager):
    """Create users through the user repository."""
    counter = {"n": 0}

    def _make_user(role: Role = Role.MEMBER, **overrides) -> User:
        counter["n"] += 1
        data = {
            "email_address": f"{role.value}{counter['n']}@library.test",
            "password": PASSWORD,
            "first_name": role.value.title(),
            "last_name": f"Number{counter['n']}",
            "role": role,
        }
        data.update(overrides)
        with db.session_scope() as session:
            return UserRepository(session).create(UserCreateSchema(**data))

    return _make_user


@pytest.fixture
def make_book(db: DatabaseManager, clock: FixedClock):
    """Create books through the catalog repository."""
    counter = {"n": 0}

    def _make_book(**overrides) -> Book:
        counter["n"] += 1
        data = {
            "title": f"Test Book {counter['n']}",
            "author": "Test Author",
            "genre": "Fiction",
            "publication_year": 2001,
            "publisher": "Test Press",
            "total_copies": 1,
        }
        data.update(overrides)
        with db.session_scope() as session:
            return BookRepository(session, clock).create(BookCreateSchema(**data))

    return _make_book


@pytest.fixture
def librarian(make_user) -> User:
    return make_user(Role.LIBRARIAN)


@pytest.fixture
def member(make_user) -> User:
    return make_user(Role.MEMBER)


@pytest.fixture
def librarian_actor(librarian: User) -> Actor:
    return Actor.from_user(librarian)


@pytest.fixture
def member_actor(member: User) -> Actor:
    return Actor.from_user(member)


@pytest.fixture
def get_book(db: DatabaseManager):
    """Re-read a book in a fresh session."""

    def _get_book(book_id: int) -> Book:
        with db.session_scope() as session:
            return BookRepository(session).get(book_id)

    return _get_book


# === HTTP Fixtures ===


@pytest.fixture
def client(
    db: DatabaseManager, clock: FixedClock, test_config: ServerConfig
) -> Generator[TestClient, None, None]:
    app = create_app(test_config, db=db, clock=clock, sweep_on_startup=False)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers(test_config: ServerConfig):
    """Authorization headers carrying a fresh access token for ``user``."""

    def _auth_headers(user: User) -> dict[str, str]:
        return {"Authorization": f"Bearer {issue_access_token(user, test_config)}"}

    return _auth_headers
