"""
Dashboard aggregates for the Library Circulation API.

Read-only rollups for the two dashboards:
- **Librarian**: catalog and circulation overview, books due today, members
  with overdue books, recent activity and the most popular books
- **Member**: personal overview, active loans, recent returns and
  recommendations

"Overdue" here means active and past due at the injected clock's ``now``,
whether or not the sweep has flagged it yet.
"""

from datetime import datetime, time, timedelta

from sqlalchemy.orm import Session

from .clock import Clock, SystemClock
from .database.book_repository import BookRepository
from .database.borrowing_repository import BorrowingRepository
from .database.schema import Book as BookDB
from .database.schema import Borrowing as BorrowingDB
from .database.user_repository import UserRepository
from .models.book import BookStatus
from .models.borrowing import Borrowing
from .models.user import Role

BORROWING_LIMIT = 5
DUE_SOON_DAYS = 3
DUE_THIS_WEEK_DAYS = 7
RECENT_BORROWINGS_LIMIT = 10
HISTORY_LIMIT = 10
POPULAR_BOOKS_LIMIT = 5
RECOMMENDATIONS_LIMIT = 5


def borrowing_summary(borrowing: Borrowing, now: datetime) -> dict:
    """A borrowing as listed on the librarian dashboard."""
    return {
        "id": borrowing.id,
        "user": borrowing.user.model_dump() if borrowing.user else None,
        "book": {
            "id": borrowing.book.id,
            "title": borrowing.book.title,
            "author": borrowing.book.author,
        }
        if borrowing.book
        else None,
        "borrowed_at": borrowing.borrowed_at,
        "due_at": borrowing.due_at,
        "status": borrowing.status.value,
        "days_until_due": borrowing.days_until_due(now),
        "days_overdue": borrowing.days_overdue(now),
        "overdue": borrowing.is_overdue(now),
    }


def member_borrowing_details(borrowing: Borrowing, now: datetime) -> dict:
    """A borrowing as listed on the member dashboard."""
    return {
        "id": borrowing.id,
        "book": borrowing.book.model_dump() if borrowing.book else None,
        "borrowed_at": borrowing.borrowed_at,
        "due_at": borrowing.due_at,
        "returned_at": borrowing.returned_at,
        "status": borrowing.status.value,
        "days_until_due": borrowing.days_until_due(now),
        "days_overdue": borrowing.days_overdue(now),
        "overdue": borrowing.is_overdue(now),
        "can_renew": borrowing.is_active and not borrowing.is_overdue(now),
    }


class DashboardAggregator:
    """Computes dashboard payloads from one read session."""

    def __init__(self, session: Session, clock: Clock | None = None):
        self.clock = clock or SystemClock()
        self.books = BookRepository(session, self.clock)
        self.borrowings = BorrowingRepository(session)
        self.users = UserRepository(session)

    # =========================================================================
    # LIBRARIAN
    # =========================================================================

    def librarian(self) -> dict:
        now = self.clock.now()
        start_of_today = datetime.combine(now.date(), time.min)
        start_of_tomorrow = start_of_today + timedelta(days=1)

        active = BorrowingDB.returned_at.is_(None)
        overdue = (active, BorrowingDB.due_at < now)
        due_today = (
            active,
            BorrowingDB.due_at >= start_of_today,
            BorrowingDB.due_at < start_of_tomorrow,
        )

        overview = {
            **self.books.catalog_totals(),
            "borrowed_books": self.borrowings.count_where(active),
            "total_members": self.users.count_by_role(Role.MEMBER),
            "overdue_books": self.borrowings.count_where(*overdue),
            "books_due_today": self.borrowings.count_where(*due_today),
            "books_due_this_week": self.borrowings.count_where(
                active,
                BorrowingDB.due_at >= start_of_today,
                BorrowingDB.due_at <= start_of_today + timedelta(days=DUE_THIS_WEEK_DAYS),
            ),
        }

        books_due_today = [
            borrowing_summary(b, now)
            for b in self.borrowings.find(*due_today, order_by=BorrowingDB.due_at)
        ]

        recent = [
            borrowing_summary(b, now)
            for b in self.borrowings.find(
                order_by=BorrowingDB.borrowed_at.desc(), limit=RECENT_BORROWINGS_LIMIT
            )
        ]

        return {
            "overview": overview,
            "books_due_today": books_due_today,
            "overdue_members": self._overdue_members(
                self.borrowings.find(*overdue, order_by=BorrowingDB.due_at), now
            ),
            "recent_borrowings": recent,
            "popular_books": [
                {
                    "id": book.id,
                    "title": book.title,
                    "author": book.author,
                    "times_borrowed": count,
                    "available_copies": book.available_copies,
                    "total_copies": book.total_copies,
                }
                for book, count in self.books.most_borrowed(limit=POPULAR_BOOKS_LIMIT)
            ],
        }

    def _overdue_members(self, overdue: list[Borrowing], now: datetime) -> list[dict]:
        """Group overdue borrowings by member, most days overdue first."""
        grouped: dict[int, dict] = {}
        for borrowing in overdue:
            entry = grouped.setdefault(
                borrowing.user_id,
                {
                    "user": borrowing.user.model_dump() if borrowing.user else None,
                    "overdue_count": 0,
                    "total_days_overdue": 0,
                    "books": [],
                },
            )
            entry["overdue_count"] += 1
            entry["total_days_overdue"] += borrowing.days_overdue(now)
            entry["books"].append(borrowing_summary(borrowing, now))

        return sorted(grouped.values(), key=lambda member: -member["total_days_overdue"])

    # =========================================================================
    # MEMBER
    # =========================================================================

    def member(self, user_id: int) -> dict:
        now = self.clock.now()
        mine = BorrowingDB.user_id == user_id
        active = BorrowingDB.returned_at.is_(None)

        currently_borrowed = self.borrowings.count_where(mine, active)
        overview = {
            "total_books_borrowed": self.borrowings.count_where(mine),
            "currently_borrowed": currently_borrowed,
            "books_returned": self.borrowings.count_where(
                mine, BorrowingDB.returned_at.is_not(None)
            ),
            "overdue_books": self.borrowings.count_where(mine, active, BorrowingDB.due_at < now),
            "books_due_soon": self.borrowings.count_where(
                mine,
                active,
                BorrowingDB.due_at >= now,
                BorrowingDB.due_at <= now + timedelta(days=DUE_SOON_DAYS),
            ),
            "borrowing_limit_reached": currently_borrowed >= BORROWING_LIMIT,
        }

        active_borrowings = [
            member_borrowing_details(b, now)
            for b in self.borrowings.find(mine, active, order_by=BorrowingDB.due_at)
        ]
        history = [
            member_borrowing_details(b, now)
            for b in self.borrowings.find(
                mine,
                BorrowingDB.returned_at.is_not(None),
                order_by=BorrowingDB.returned_at.desc(),
                limit=HISTORY_LIMIT,
            )
        ]

        return {
            "overview": overview,
            "active_borrowings": active_borrowings,
            "borrowing_history": history,
            "recommendations": self._recommendations(user_id),
        }

    def _recommendations(self, user_id: int) -> list[dict]:
        """
        Popular available books in the genres the member has borrowed.

        Books the member already borrowed are excluded. Members without a
        genre history get the most popular available books.
        """
        borrowed = self.books.borrowed_by(user_id)
        genres = sorted({book.genre for book in borrowed if book.genre})

        conditions = [BookDB.status == BookStatus.AVAILABLE, BookDB.available_copies > 0]
        if genres:
            conditions += [
                BookDB.genre.in_(genres),
                BookDB.id.not_in([book.id for book in borrowed]),
            ]

        return [
            {
                "id": book.id,
                "title": book.title,
                "author": book.author,
                "genre": book.genre,
                "available_copies": book.available_copies,
            }
            for book, _ in self.books.most_borrowed(*conditions, limit=RECOMMENDATIONS_LIMIT)
        ]
