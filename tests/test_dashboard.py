"""Tests for the librarian and member dashboard aggregates."""

from datetime import timedelta

import pytest

from library_api.auth import Actor
from library_api.dashboard import BORROWING_LIMIT, DashboardAggregator
from library_api.database.borrowing_repository import BorrowingRepository
from library_api.models.book import BookStatus

from .conftest import NOW


@pytest.fixture
def dashboard(db, clock):
    """Compute a dashboard in a fresh read session."""

    def _dashboard(kind: str, user_id: int | None = None) -> dict:
        with db.session_scope() as session:
            aggregator = DashboardAggregator(session, clock)
            return aggregator.librarian() if kind == "librarian" else aggregator.member(user_id)

    return _dashboard


class TestLibrarianDashboard:
    def test_empty_library(self, dashboard, librarian):
        data = dashboard("librarian")

        assert data["overview"] == {
            "total_books": 0,
            "total_copies": 0,
            "available_books": 0,
            "borrowed_books": 0,
            "total_members": 0,
            "overdue_books": 0,
            "books_due_today": 0,
            "books_due_this_week": 0,
        }
        assert data["books_due_today"] == []
        assert data["overdue_members"] == []
        assert data["recent_borrowings"] == []
        assert data["popular_books"] == []

    def test_overview_counts(self, dashboard, ledger, clock, make_user, make_book):
        alice = Actor.from_user(make_user())
        bob = Actor.from_user(make_user())
        popular = make_book(title="Popular", total_copies=3)
        quiet = make_book(title="Quiet", total_copies=2)
        make_book(title="Shelved", total_copies=1, status=BookStatus.MAINTENANCE)

        # Borrowed 20 days ago: 6 days overdue now
        clock.current = NOW - timedelta(days=20)
        ledger.borrow(alice, popular.id)
        # Borrowed 14 days ago: due today, later in the day
        clock.current = NOW - timedelta(days=14) + timedelta(hours=3)
        ledger.borrow(bob, popular.id)
        # Borrowed 10 days ago: due in 4 days
        clock.current = NOW - timedelta(days=10)
        ledger.borrow(alice, quiet.id)
        clock.current = NOW

        data = dashboard("librarian")
        overview = data["overview"]

        assert overview["total_books"] == 3
        assert overview["total_copies"] == 6
        assert overview["available_books"] == 2
        assert overview["borrowed_books"] == 3
        assert overview["total_members"] == 2
        assert overview["overdue_books"] == 1
        assert overview["books_due_today"] == 1
        assert overview["books_due_this_week"] == 2

        assert [b["user"]["id"] for b in data["books_due_today"]] == [bob.id]
        assert len(data["recent_borrowings"]) == 3
        assert data["recent_borrowings"][0]["book"]["title"] == "Quiet"

        assert data["popular_books"][0]["title"] == "Popular"
        assert data["popular_books"][0]["times_borrowed"] == 2

    def test_overdue_members_sorted_by_total_days(
        self, dashboard, ledger, clock, make_user, make_book
    ):
        slightly_late = Actor.from_user(make_user())
        very_late = Actor.from_user(make_user())
        books = [make_book(total_copies=2) for _ in range(3)]

        clock.current = NOW - timedelta(days=16)
        ledger.borrow(slightly_late, books[0].id)
        clock.current = NOW - timedelta(days=19)
        ledger.borrow(very_late, books[1].id)
        ledger.borrow(very_late, books[2].id)
        clock.current = NOW

        members = dashboard("librarian")["overdue_members"]

        assert [m["user"]["id"] for m in members] == [very_late.id, slightly_late.id]
        assert members[0]["overdue_count"] == 2
        assert members[0]["total_days_overdue"] == 10
        assert members[1]["total_days_overdue"] == 2
        assert all(book["overdue"] for book in members[0]["books"])

    def test_dashboard_never_mutates(
        self, dashboard, ledger, clock, member_actor, make_book, db
    ):
        clock.current = NOW - timedelta(days=30)
        borrowing = ledger.borrow(member_actor, make_book().id)
        clock.current = NOW

        dashboard("librarian")
        dashboard("member", member_actor.id)

        with db.session_scope() as session:
            stored = BorrowingRepository(session).get(borrowing.id)
        assert stored.status.value == "borrowed"


class TestMemberDashboard:
    def test_overview_and_lists(
        self, dashboard, ledger, clock, member_actor, librarian_actor, make_book
    ):
        due_soon = make_book(title="Due Soon", genre="Mystery")
        later = make_book(title="Later", genre="Mystery")
        finished = make_book(title="Finished", genre="History")

        clock.current = NOW - timedelta(days=12)
        ledger.borrow(member_actor, due_soon.id)
        done = ledger.borrow(member_actor, finished.id)
        clock.current = NOW - timedelta(days=2)
        ledger.borrow(member_actor, later.id)
        ledger.return_borrowing(librarian_actor, done.id)
        clock.current = NOW

        data = dashboard("member", member_actor.id)

        assert data["overview"] == {
            "total_books_borrowed": 3,
            "currently_borrowed": 2,
            "books_returned": 1,
            "overdue_books": 0,
            "books_due_soon": 1,
            "borrowing_limit_reached": False,
        }
        assert [b["book"]["title"] for b in data["active_borrowings"]] == ["Due Soon", "Later"]
        assert data["active_borrowings"][0]["days_until_due"] == 2
        assert data["active_borrowings"][0]["can_renew"] is True
        assert [b["book"]["title"] for b in data["borrowing_history"]] == ["Finished"]
        assert data["borrowing_history"][0]["can_renew"] is False

    def test_borrowing_limit(self, dashboard, ledger, member_actor, make_book):
        for _ in range(BORROWING_LIMIT):
            ledger.borrow(member_actor, make_book().id)

        assert dashboard("member", member_actor.id)["overview"]["borrowing_limit_reached"]

    def test_overdue_loans_cannot_be_renewed(
        self, dashboard, ledger, clock, member_actor, make_book
    ):
        clock.current = NOW - timedelta(days=15)
        ledger.borrow(member_actor, make_book().id)
        clock.current = NOW

        data = dashboard("member", member_actor.id)

        assert data["overview"]["overdue_books"] == 1
        assert data["active_borrowings"][0]["overdue"] is True
        assert data["active_borrowings"][0]["days_overdue"] == 1
        assert data["active_borrowings"][0]["can_renew"] is False

    def test_recommendations_follow_genres(
        self, dashboard, ledger, make_user, librarian_actor, make_book, member_actor
    ):
        read = make_book(title="Read Mystery", genre="Mystery")
        popular_mystery = make_book(title="Popular Mystery", genre="Mystery", total_copies=3)
        make_book(title="Unborrowed Mystery", genre="Mystery")
        popular_history = make_book(title="Popular History", genre="History", total_copies=3)

        others = [Actor.from_user(make_user()) for _ in range(2)]
        for reader in others:
            ledger.borrow(reader, popular_mystery.id)
            ledger.borrow(reader, popular_history.id)
        returned = ledger.borrow(member_actor, read.id)
        ledger.return_borrowing(librarian_actor, returned.id)

        recommendations = dashboard("member", member_actor.id)["recommendations"]

        assert [r["title"] for r in recommendations] == ["Popular Mystery"]

    def test_new_members_get_popular_books(
        self, dashboard, ledger, make_user, make_book, member_actor
    ):
        favourite = make_book(title="Favourite", total_copies=5)
        runner_up = make_book(title="Runner Up", total_copies=5)
        readers = [Actor.from_user(make_user()) for _ in range(3)]
        for reader in readers:
            ledger.borrow(reader, favourite.id)
        ledger.borrow(readers[0], runner_up.id)

        recommendations = dashboard("member", member_actor.id)["recommendations"]

        assert [r["title"] for r in recommendations] == ["Favourite", "Runner Up"]
