"""
Library Circulation API Models.

Pydantic models for the core entities:
- Book: catalog entries with copy counts and status
- User: members and librarians
- Borrowing: loans of a copy, with derived due-date computations
"""

from .book import Book, BookStatus, normalize_isbn
from .borrowing import BookSummary, Borrowing, BorrowingStatus, UserSummary
from .user import Role, User

__all__ = [
    "Book",
    "BookStatus",
    "BookSummary",
    "Borrowing",
    "BorrowingStatus",
    "Role",
    "User",
    "UserSummary",
    "normalize_isbn",
]
