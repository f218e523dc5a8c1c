"""
Borrowing model for the Library Circulation API.

A borrowing records one member holding one copy of a book:
- created active with status ``borrowed`` by the ledger's borrow operation
- flagged ``overdue`` by the sweep once ``due_at`` has passed
- closed with status ``returned`` by the ledger's return operation (terminal)

The derived computations below are pure functions of a borrowing and the
current time, so callers pass ``now`` from the injected clock.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator


class BorrowingStatus(str, Enum):
    """Closed set of borrowing statuses."""

    BORROWED = "borrowed"
    RETURNED = "returned"
    OVERDUE = "overdue"


class UserSummary(BaseModel):
    id: int
    name: str
    email: str


class BookSummary(BaseModel):
    id: int
    title: str
    author: str
    genre: str | None = None


class Borrowing(BaseModel):
    """Represents one loan of one copy of a book."""

    id: int = Field(..., description="Borrowing identifier")

    user_id: int = Field(..., description="Borrowing member")

    book_id: int = Field(..., description="Borrowed book")

    borrowed_at: datetime = Field(..., description="When the copy was lent")

    due_at: datetime = Field(..., description="When the copy must be back")

    returned_at: datetime | None = Field(None, description="When the copy came back")

    status: BorrowingStatus = Field(default=BorrowingStatus.BORROWED)

    created_at: datetime | None = None

    updated_at: datetime | None = None

    user: UserSummary | None = Field(None, description="Borrower, when loaded")

    book: BookSummary | None = Field(None, description="Book, when loaded")

    @model_validator(mode="after")
    def validate_dates(self) -> "Borrowing":
        """Due date after borrow date; return date not before borrow date."""
        if self.due_at <= self.borrowed_at:
            raise ValueError("Due date must be after borrowed date")
        if self.returned_at is not None and self.returned_at < self.borrowed_at:
            raise ValueError("Return date cannot be before borrowed date")
        return self

    @property
    def is_active(self) -> bool:
        return is_active(self)

    def is_overdue(self, now: datetime) -> bool:
        return is_overdue(self, now)

    def days_overdue(self, now: datetime) -> int:
        return days_overdue(self, now)

    def days_until_due(self, now: datetime) -> int:
        return days_until_due(self, now)

    @property
    def borrowing_period_days(self) -> int:
        return borrowing_period_days(self)

    def to_response(self, now: datetime, detailed: bool = False) -> dict:
        """Serialize with derived fields evaluated at ``now``."""
        data = {
            "id": self.id,
            "user": self.user.model_dump() if self.user else {"id": self.user_id},
            "book": self.book.model_dump() if self.book else {"id": self.book_id},
            "borrowed_at": self.borrowed_at,
            "due_at": self.due_at,
            "returned_at": self.returned_at,
            "status": self.status.value,
            "overdue": self.is_overdue(now),
            "days_until_due": self.days_until_due(now),
        }
        if detailed:
            data.update(
                {
                    "days_overdue": self.days_overdue(now),
                    "borrowing_period_days": self.borrowing_period_days,
                    "created_at": self.created_at,
                    "updated_at": self.updated_at,
                }
            )
        return data

    model_config = ConfigDict(from_attributes=True)


# =============================================================================
# DERIVED COMPUTATIONS
# =============================================================================
# Whole days are counted between calendar dates, so a loan due yesterday at
# 23:59 is one day overdue this morning.


def is_active(borrowing: Borrowing) -> bool:
    return borrowing.returned_at is None


def is_overdue(borrowing: Borrowing, now: datetime) -> bool:
    return is_active(borrowing) and borrowing.due_at < now


def days_overdue(borrowing: Borrowing, now: datetime) -> int:
    if not is_overdue(borrowing, now):
        return 0
    return (now.date() - borrowing.due_at.date()).days


def days_until_due(borrowing: Borrowing, now: datetime) -> int:
    """Days left until the due date; negative once overdue, 0 when returned."""
    if not is_active(borrowing):
        return 0
    return (borrowing.due_at.date() - now.date()).days


def borrowing_period_days(borrowing: Borrowing) -> int:
    return (borrowing.due_at.date() - borrowing.borrowed_at.date()).days
