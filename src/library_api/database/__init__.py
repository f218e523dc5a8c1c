"""
Database layer for the Library Circulation API.

This package provides:
- SQLAlchemy schema definitions
- Session management with dialect-specific locking
- Repositories for books, users and borrowings
"""

from .book_repository import BookCreateSchema, BookRepository, BookSearchParams, BookUpdateSchema
from .borrowing_repository import BorrowingFilterParams, BorrowingRepository
from .repository import PaginatedResponse, PaginationParams
from .schema import Base, Book, Borrowing, User
from .session import DatabaseManager, RepositoryException, get_db_manager, session_scope
from .user_repository import UserCreateSchema, UserRepository, UserUpdateSchema

__all__ = [
    "Base",
    "Book",
    "BookCreateSchema",
    "BookRepository",
    "BookSearchParams",
    "BookUpdateSchema",
    "Borrowing",
    "BorrowingFilterParams",
    "BorrowingRepository",
    "DatabaseManager",
    "PaginatedResponse",
    "PaginationParams",
    "RepositoryException",
    "User",
    "UserCreateSchema",
    "UserRepository",
    "UserUpdateSchema",
    "get_db_manager",
    "session_scope",
]
