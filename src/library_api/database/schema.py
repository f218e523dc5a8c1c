"""
SQLAlchemy database schema for the Library Circulation API.

These tables back the pydantic models in ``library_api.models``. The
constraints here are the last line of defence for the circulation
invariants:
1. ``0 <= available_copies <= total_copies`` on every book
2. at most one active (``returned_at IS NULL``) borrowing per user and book,
   enforced by a partial unique index
3. ``due_at > borrowed_at`` and ``returned_at >= borrowed_at``
"""

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

from ..models.book import BookStatus
from ..models.borrowing import BorrowingStatus
from ..models.user import Role

# Base class for all SQLAlchemy models
Base = declarative_base()

ACTIVE_BORROWING_INDEX = "ix_borrowings_active_user_book"


def _enum_column(enum_cls, name: str) -> Enum:
    """Store enum values ("checked_out"), not member names, behind a CHECK."""
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        create_constraint=True,
        length=20,
        values_callable=lambda members: [member.value for member in members],
    )


class User(Base):
    """
    Users table - members and librarians.

    Email addresses are normalized to lower case before storage, so the plain
    unique constraint is case-insensitive in practice.
    """

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email_address = Column(String(255), nullable=False, unique=True)
    password_digest = Column(String(255), nullable=False)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    role = Column(_enum_column(Role, "user_role"), nullable=False, default=Role.MEMBER)
    last_signed_in_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=func.now())
    updated_at = Column(DateTime, nullable=False, default=func.now(), onupdate=func.now())

    borrowings = relationship(
        "Borrowing", back_populates="user", cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (Index("idx_user_role", "role"),)

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part)


class Book(Base):
    """
    Books table - the library catalog.

    ``available_copies`` and ``status`` are only moved by the borrowing
    ledger's conditional updates or by explicit librarian edits.
    """

    __tablename__ = "books"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(255), nullable=False)
    author = Column(String(255), nullable=False)
    isbn = Column(String(20), nullable=True, unique=True)
    description = Column(Text, nullable=True)
    genre = Column(String(100), nullable=True)
    publication_year = Column(Integer, nullable=True)
    publisher = Column(String(255), nullable=True)
    total_copies = Column(Integer, nullable=False, default=1)
    available_copies = Column(Integer, nullable=False, default=1)
    status = Column(
        _enum_column(BookStatus, "book_status"), nullable=False, default=BookStatus.AVAILABLE
    )

    created_at = Column(DateTime, nullable=False, default=func.now())
    updated_at = Column(DateTime, nullable=False, default=func.now(), onupdate=func.now())

    borrowings = relationship(
        "Borrowing", back_populates="book", cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (
        Index("idx_book_title", "title"),
        Index("idx_book_author", "author"),
        Index("idx_book_genre", "genre"),
        Index("idx_book_status", "status"),
        CheckConstraint("available_copies >= 0", name="check_available_copies_non_negative"),
        CheckConstraint(
            "available_copies <= total_copies", name="check_available_not_exceed_total"
        ),
        CheckConstraint("total_copies > 0", name="check_total_copies_positive"),
    )


class Borrowing(Base):
    """
    Borrowings table - one row per loan of one copy.

    Rows are created and mutated exclusively by the borrowing ledger.
    """

    __tablename__ = "borrowings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    book_id = Column(Integer, ForeignKey("books.id", ondelete="CASCADE"), nullable=False)
    borrowed_at = Column(DateTime, nullable=False)
    due_at = Column(DateTime, nullable=False)
    returned_at = Column(DateTime, nullable=True)
    status = Column(
        _enum_column(BorrowingStatus, "borrowing_status"),
        nullable=False,
        default=BorrowingStatus.BORROWED,
    )

    created_at = Column(DateTime, nullable=False, default=func.now())
    updated_at = Column(DateTime, nullable=False, default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="borrowings")
    book = relationship("Book", back_populates="borrowings")

    __table_args__ = (
        Index("idx_borrowing_user_book", "user_id", "book_id"),
        Index("idx_borrowing_status", "status"),
        Index("idx_borrowing_due_at", "due_at"),
        Index("idx_borrowing_borrowed_at", "borrowed_at"),
        Index(
            ACTIVE_BORROWING_INDEX,
            "user_id",
            "book_id",
            unique=True,
            sqlite_where=text("returned_at IS NULL"),
            postgresql_where=text("returned_at IS NULL"),
        ),
        CheckConstraint("due_at > borrowed_at", name="check_due_after_borrowed"),
        CheckConstraint(
            "returned_at IS NULL OR returned_at >= borrowed_at",
            name="check_returned_after_borrowed",
        ),
    )
