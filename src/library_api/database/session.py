"""
Database session management for the Library Circulation API.

This module provides connection management and session handling for SQLAlchemy.
Proper session management is what makes the ledger's guarantees hold:

1. Transaction Management: every ledger operation is one transaction that
   fully commits or fully rolls back
2. Write Serialization: SQLite transactions start with ``BEGIN IMMEDIATE`` so
   concurrent writers queue on the database lock instead of racing
3. Connection Pooling: one pooled connection per worker thread
4. Error Recovery: rollback on any exception, including interruption

Sessions should be short-lived (one per request or ledger attempt) and always
used through ``session_scope()``.
"""

import logging
from collections.abc import Callable, Generator
from contextlib import contextmanager

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ..config import get_config
from ..errors import LibraryError
from .schema import Base

logger = logging.getLogger(__name__)


class DatabaseManager:
    """
    Manages database connections and sessions.

    This class provides:
    - Lazy engine creation with per-dialect configuration
    - Session factory with explicit transactions
    - Schema creation for development and tests
    """

    def __init__(self, database_url: str | None = None, busy_timeout: float | None = None):
        """
        Initialize the database manager.

        Args:
            database_url: SQLAlchemy database URL. If None, uses the configured URL.
            busy_timeout: Seconds SQLite waits on a locked database.
        """
        config = get_config()
        self.database_url = database_url or config.database_url
        self.busy_timeout = busy_timeout if busy_timeout is not None else config.sqlite_busy_timeout
        self._engine: Engine | None = None
        self._session_factory: sessionmaker | None = None

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    @property
    def engine(self) -> Engine:
        """
        Get or create the database engine.

        SQLite engines get:
        - foreign key enforcement
        - WAL journaling for file databases
        - ``BEGIN IMMEDIATE`` transactions, so the write lock is taken up front
          and two writers never deadlock upgrading a read lock
        """
        if self._engine is None:
            if self.is_sqlite:
                in_memory = ":memory:" in self.database_url or self.database_url == "sqlite://"
                engine_kwargs = {
                    "connect_args": {"check_same_thread": False, "timeout": self.busy_timeout},
                    "echo": False,
                }
                if in_memory:
                    # A memory database only exists on its one connection
                    engine_kwargs["poolclass"] = StaticPool

                self._engine = create_engine(self.database_url, **engine_kwargs)

                @event.listens_for(self._engine, "connect")
                def set_sqlite_pragma(dbapi_connection, connection_record):  # noqa: ARG001
                    # Hand transaction control to the "begin" listener below
                    dbapi_connection.isolation_level = None
                    cursor = dbapi_connection.cursor()
                    cursor.execute("PRAGMA foreign_keys=ON")
                    if not in_memory:
                        cursor.execute("PRAGMA journal_mode=WAL")
                    cursor.close()

                @event.listens_for(self._engine, "begin")
                def begin_immediate(conn):
                    conn.exec_driver_sql("BEGIN IMMEDIATE")
            else:
                self._engine = create_engine(
                    self.database_url,
                    pool_size=10,
                    max_overflow=20,
                    pool_pre_ping=True,
                    echo=False,
                )

            logger.info("Database engine created: %s", self._engine.url)

        return self._engine

    @property
    def session_factory(self) -> sessionmaker:
        """Get or create the session factory."""
        if self._session_factory is None:
            self._session_factory = sessionmaker(
                bind=self.engine,
                autoflush=False,
                # Models are converted to pydantic after commit
                expire_on_commit=False,
            )
        return self._session_factory

    def create_session(self) -> Session:
        """Create a new database session. Prefer ``session_scope()``."""
        return self.session_factory()

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """
        Provide a transactional scope for database operations.

        ```python
        with db_manager.session_scope() as session:
            book = session.get(Book, book_id)
        # Session is automatically committed or rolled back
        ```

        Domain errors roll back quietly; unexpected errors are logged.
        """
        session = self.create_session()
        try:
            yield session
            session.commit()
            logger.debug("Database transaction committed successfully")
        except LibraryError:
            session.rollback()
            raise
        except OperationalError:
            # Contention is retried by the caller
            logger.debug("Database contention, rolling back")
            session.rollback()
            raise
        except Exception:
            logger.exception("Database error, rolling back")
            session.rollback()
            raise
        finally:
            session.close()

    def init_database(self, drop_existing: bool = False) -> None:
        """
        Initialize the database schema.

        Args:
            drop_existing: If True, drop all tables before creating
        """
        engine = self.engine

        if drop_existing:
            logger.warning("Dropping all existing tables...")
            Base.metadata.drop_all(bind=engine)

        logger.info("Creating database tables...")
        Base.metadata.create_all(bind=engine)
        logger.info("Database initialization complete")

    def verify_connection(self) -> bool:
        """Check the database answers a trivial query (health checks)."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError:
            logger.exception("Database connection failed")
            return False

    def close(self) -> None:
        """Dispose the engine and its pooled connections."""
        if self._engine:
            self._engine.dispose()
            logger.info("Database engine disposed")
        self._engine = None
        self._session_factory = None


# Global database manager instance
_db_manager: DatabaseManager | None = None


def get_db_manager(database_url: str | None = None) -> DatabaseManager:
    """
    Get the global database manager instance.

    Args:
        database_url: Database URL (only used on first call)
    """
    global _db_manager  # noqa: PLW0603 - Singleton pattern for database manager

    if _db_manager is None:
        _db_manager = DatabaseManager(database_url)

    return _db_manager


def reset_db_manager() -> None:
    """Close and forget the global manager (tests, CLI re-runs)."""
    global _db_manager  # noqa: PLW0603

    if _db_manager is not None:
        _db_manager.close()
    _db_manager = None


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """Convenience context manager over the global manager."""
    with get_db_manager().session_scope() as session:
        yield session


class RepositoryException(Exception):
    """Unexpected persistence failure (not a domain rule violation)."""


def safe_commit(session: Session, operation: str) -> None:
    """
    Commit a session, wrapping unexpected database errors.

    Raises:
        RepositoryException: If the commit fails for a non-transient reason
    """
    try:
        session.commit()
    except OperationalError:
        session.rollback()
        raise
    except SQLAlchemyError as e:
        session.rollback()
        raise RepositoryException(f"Database operation '{operation}' failed: {e!s}") from e


def safe_query[T](session: Session, query_func: Callable[[Session], T], error_msg: str) -> T:
    """
    Execute a query, wrapping unexpected database errors.

    Transient ``OperationalError``s (locked database, serialization failures)
    pass through untouched so the ledger can retry them.

    Raises:
        RepositoryException: If the query fails
    """
    try:
        return query_func(session)
    except OperationalError:
        raise
    except SQLAlchemyError as e:
        logger.exception("Query failed")
        raise RepositoryException(f"{error_msg}: database query failed") from e
