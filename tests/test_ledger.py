"""
Tests for the borrowing ledger.

Covers the borrow/return/sweep rules, the copy-count invariants, the
conflict retry loop and concurrent requests from real threads against a
shared SQLite file.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from library_api.auth import Actor
from library_api.database.book_repository import BookRepository, BookUpdateSchema
from library_api.database.borrowing_repository import BorrowingRepository
from library_api.database.schema import Borrowing as BorrowingDB
from library_api.database.session import DatabaseManager
from library_api.errors import (
    AlreadyBorrowed,
    AlreadyReturned,
    BookUnavailable,
    ConflictRetryExhausted,
    Forbidden,
    LibraryError,
    NotFound,
)
from library_api.ledger import BorrowingLedger
from library_api.models.book import BookStatus
from library_api.models.borrowing import Borrowing, BorrowingStatus
from library_api.models.user import Role

from .conftest import NOW


def run_concurrently(calls):
    """Start every call at the same moment; collect results or domain errors."""
    barrier = threading.Barrier(len(calls))

    def run(call):
        barrier.wait()
        try:
            return call()
        except LibraryError as e:
            return e

    with ThreadPoolExecutor(max_workers=len(calls)) as pool:
        return list(pool.map(run, calls))


def assert_copy_invariants(book):
    assert 0 <= book.available_copies <= book.total_copies
    if book.available_copies == 0:
        assert book.status != BookStatus.AVAILABLE


@pytest.fixture
def get_borrowing(db):
    def _get_borrowing(borrowing_id: int) -> Borrowing:
        with db.session_scope() as session:
            return BorrowingRepository(session).get(borrowing_id)

    return _get_borrowing


@pytest.fixture
def active_count(db):
    def _active_count(book_id: int) -> int:
        with db.session_scope() as session:
            return BorrowingRepository(session).count_where(
                BorrowingDB.book_id == book_id,
                BorrowingDB.returned_at.is_(None),
            )

    return _active_count


class TestBorrow:
    def test_borrow_takes_a_copy(self, ledger, member_actor, make_book, get_book):
        book = make_book(total_copies=2)

        borrowing = ledger.borrow(member_actor, book.id)

        assert borrowing.user_id == member_actor.id
        assert borrowing.book_id == book.id
        assert borrowing.borrowed_at == NOW
        assert borrowing.due_at == NOW + timedelta(days=14)
        assert borrowing.returned_at is None
        assert borrowing.status == BorrowingStatus.BORROWED
        assert borrowing.book.title == book.title

        stored = get_book(book.id)
        assert stored.available_copies == 1
        assert stored.status == BookStatus.AVAILABLE

    def test_last_copy_checks_the_book_out(self, ledger, member_actor, make_book, get_book):
        book = make_book(total_copies=1)

        ledger.borrow(member_actor, book.id)

        stored = get_book(book.id)
        assert stored.available_copies == 0
        assert stored.status == BookStatus.CHECKED_OUT

    def test_only_members_borrow(self, ledger, librarian_actor, make_book, get_book):
        book = make_book()

        with pytest.raises(Forbidden):
            ledger.borrow(librarian_actor, book.id)

        assert get_book(book.id).available_copies == 1

    def test_missing_book(self, ledger, member_actor):
        with pytest.raises(NotFound, match="Book 404 not found"):
            ledger.borrow(member_actor, 404)

    def test_same_book_twice(self, ledger, member_actor, make_book, get_book):
        book = make_book(total_copies=2)
        ledger.borrow(member_actor, book.id)

        with pytest.raises(AlreadyBorrowed):
            ledger.borrow(member_actor, book.id)

        assert get_book(book.id).available_copies == 1

    @pytest.mark.parametrize("status", [BookStatus.MAINTENANCE, BookStatus.LOST])
    def test_unavailable_status(self, ledger, member_actor, make_book, get_book, status):
        book = make_book(total_copies=2, status=status)

        with pytest.raises(BookUnavailable):
            ledger.borrow(member_actor, book.id)

        assert get_book(book.id).available_copies == 2

    def test_loan_period_comes_from_config(self, db, clock, test_config, member_actor, make_book):
        config = test_config.model_copy(update={"loan_period_days": 21})
        ledger = BorrowingLedger(db, clock, config)

        borrowing = ledger.borrow(member_actor, make_book().id)

        assert borrowing.borrowing_period_days == 21


class TestReturn:
    def test_return_restores_the_copy(
        self, ledger, member_actor, librarian_actor, make_book, get_book, clock
    ):
        book = make_book(total_copies=1)
        borrowing = ledger.borrow(member_actor, book.id)
        clock.advance(days=3)

        returned = ledger.return_borrowing(librarian_actor, borrowing.id)

        assert returned.status == BorrowingStatus.RETURNED
        assert returned.returned_at == NOW + timedelta(days=3)
        stored = get_book(book.id)
        assert stored.available_copies == 1
        assert stored.status == BookStatus.AVAILABLE

    def test_only_librarians_return(self, ledger, member_actor, make_book):
        borrowing = ledger.borrow(member_actor, make_book().id)

        with pytest.raises(Forbidden):
            ledger.return_borrowing(member_actor, borrowing.id)

    def test_missing_borrowing(self, ledger, librarian_actor):
        with pytest.raises(NotFound, match="Borrowing 12 not found"):
            ledger.return_borrowing(librarian_actor, 12)

    def test_double_return_increments_once(
        self, ledger, member_actor, librarian_actor, make_book, get_book
    ):
        book = make_book(total_copies=2)
        borrowing = ledger.borrow(member_actor, book.id)
        ledger.return_borrowing(librarian_actor, borrowing.id)

        with pytest.raises(AlreadyReturned):
            ledger.return_borrowing(librarian_actor, borrowing.id)

        assert get_book(book.id).available_copies == 2

    def test_manual_status_survives_return(
        self, db, ledger, member_actor, librarian_actor, make_book, get_book
    ):
        book = make_book(total_copies=1)
        borrowing = ledger.borrow(member_actor, book.id)
        with db.session_scope() as session:
            BookRepository(session).set_status(book.id, BookStatus.MAINTENANCE)

        ledger.return_borrowing(librarian_actor, borrowing.id)

        stored = get_book(book.id)
        assert stored.available_copies == 1
        assert stored.status == BookStatus.MAINTENANCE

    def test_clock_behind_borrow_time(
        self, ledger, member_actor, librarian_actor, make_book, clock
    ):
        borrowing = ledger.borrow(member_actor, make_book().id)
        clock.current = NOW - timedelta(hours=1)

        returned = ledger.return_borrowing(librarian_actor, borrowing.id)

        assert returned.returned_at == borrowing.borrowed_at

    def test_increment_is_capped_at_total(
        self, db, ledger, member_actor, librarian_actor, make_book, get_book
    ):
        book = make_book(total_copies=2)
        borrowing = ledger.borrow(member_actor, book.id)
        # A librarian recounts the shelf before the copy comes back
        with db.session_scope() as session:
            BookRepository(session).update(book.id, BookUpdateSchema(available_copies=2))

        ledger.return_borrowing(librarian_actor, borrowing.id)

        assert get_book(book.id).available_copies == 2


class TestScenarios:
    def test_single_copy_handover(
        self, ledger, make_user, librarian_actor, make_book, get_book
    ):
        alice = Actor.from_user(make_user())
        bob = Actor.from_user(make_user())
        book = make_book(total_copies=1)

        alices = ledger.borrow(alice, book.id)
        stored = get_book(book.id)
        assert (stored.available_copies, stored.status) == (0, BookStatus.CHECKED_OUT)

        with pytest.raises(BookUnavailable):
            ledger.borrow(bob, book.id)

        ledger.return_borrowing(librarian_actor, alices.id)
        stored = get_book(book.id)
        assert (stored.available_copies, stored.status) == (1, BookStatus.AVAILABLE)

        bobs = ledger.borrow(bob, book.id)
        assert bobs.user_id == bob.id

    def test_borrow_return_borrow(
        self, ledger, member_actor, librarian_actor, make_book, get_book
    ):
        book = make_book(total_copies=3)

        first = ledger.borrow(member_actor, book.id)
        ledger.return_borrowing(librarian_actor, first.id)
        second = ledger.borrow(member_actor, book.id)
        ledger.return_borrowing(librarian_actor, second.id)

        assert second.id != first.id
        assert get_book(book.id).available_copies == 3


class TestSweepOverdue:
    def test_sweep_flags_past_due(
        self, db, clock, test_config, member_actor, make_book, get_book, get_borrowing
    ):
        config = test_config.model_copy(update={"loan_period_days": 7})
        ledger = BorrowingLedger(db, clock, config, sleep=lambda seconds: None)
        book = make_book()

        clock.current = NOW - timedelta(days=14)
        borrowing = ledger.borrow(member_actor, book.id)
        clock.current = NOW

        assert ledger.sweep_overdue() == 1

        flagged = get_borrowing(borrowing.id)
        assert flagged.status == BorrowingStatus.OVERDUE
        assert flagged.days_overdue(NOW) == 7
        assert get_book(book.id).available_copies == 0

    def test_sweep_twice_equals_once(self, ledger, member_actor, make_book, clock):
        ledger.borrow(member_actor, make_book().id)
        clock.advance(days=15)

        assert ledger.sweep_overdue() == 1
        assert ledger.sweep_overdue() == 0

    def test_sweep_ignores_current_and_returned(
        self, ledger, make_user, librarian_actor, make_book, clock
    ):
        keeper = Actor.from_user(make_user())
        returner = Actor.from_user(make_user())
        book = make_book(total_copies=2)

        ledger.borrow(keeper, book.id)
        returned = ledger.borrow(returner, book.id)
        ledger.return_borrowing(librarian_actor, returned.id)
        clock.advance(days=13)

        assert ledger.sweep_overdue() == 0

    def test_overdue_borrowing_can_be_returned(
        self, ledger, member_actor, librarian_actor, make_book, clock, get_book
    ):
        book = make_book()
        borrowing = ledger.borrow(member_actor, book.id)
        clock.advance(days=20)
        ledger.sweep_overdue()

        returned = ledger.return_borrowing(librarian_actor, borrowing.id)

        assert returned.status == BorrowingStatus.RETURNED
        assert get_book(book.id).available_copies == 1


class TestConflictRetry:
    def _locked(self) -> OperationalError:
        return OperationalError("BEGIN IMMEDIATE", {}, Exception("database is locked"))

    def test_transient_conflicts_are_retried(self, db, clock, test_config):
        config = test_config.model_copy(update={"conflict_backoff_seconds": 0.01})
        sleeps = []
        ledger = BorrowingLedger(db, clock, config, sleep=sleeps.append)
        attempts = []

        def flaky(session):  # noqa: ARG001
            attempts.append(1)
            if len(attempts) < 3:
                raise self._locked()
            return "done"

        assert ledger._run("borrow", flaky) == "done"
        assert len(attempts) == 3
        assert sleeps == pytest.approx([0.01, 0.02])

    def test_retry_budget_is_bounded(self, db, clock, test_config):
        config = test_config.model_copy(update={"max_conflict_retries": 4})
        sleeps = []
        ledger = BorrowingLedger(db, clock, config, sleep=sleeps.append)

        def always_locked(session):  # noqa: ARG001
            raise self._locked()

        with pytest.raises(ConflictRetryExhausted) as exc_info:
            ledger._run("return", always_locked)

        assert exc_info.value.attempts == 4
        assert exc_info.value.operation == "return"
        assert len(sleeps) == 3

    def test_domain_errors_are_not_retried(self, ledger, member_actor):
        sleeps = []
        ledger._sleep = sleeps.append

        with pytest.raises(NotFound):
            ledger.borrow(member_actor, 999)

        assert sleeps == []

    def test_held_write_lock_exhausts_retries(
        self, db, clock, test_config, member_actor, make_book, get_book
    ):
        book = make_book()
        config = test_config.model_copy(update={"max_conflict_retries": 3})
        impatient_db = DatabaseManager(test_config.database_url, busy_timeout=0.05)
        sleeps = []
        ledger = BorrowingLedger(impatient_db, clock, config, sleep=sleeps.append)

        try:
            with db.engine.connect() as blocker:
                # Autobegin issues BEGIN IMMEDIATE and takes the write lock
                blocker.exec_driver_sql("SELECT 1")

                with pytest.raises(ConflictRetryExhausted):
                    ledger.borrow(member_actor, book.id)

                blocker.rollback()

            assert len(sleeps) == 2
            assert get_book(book.id).available_copies == 1

            # Once the lock is released the same ledger succeeds
            ledger.borrow(member_actor, book.id)
            assert get_book(book.id).available_copies == 0
        finally:
            impatient_db.close()


class TestConcurrency:
    def test_more_borrowers_than_copies(self, ledger, make_user, make_book, get_book):
        copies, borrowers = 3, 8
        book = make_book(total_copies=copies)
        actors = [Actor.from_user(make_user()) for _ in range(borrowers)]

        results = run_concurrently(
            [lambda actor=actor: ledger.borrow(actor, book.id) for actor in actors]
        )

        successes = [r for r in results if isinstance(r, Borrowing)]
        failures = [r for r in results if isinstance(r, LibraryError)]
        assert len(successes) == copies
        assert len(failures) == borrowers - copies
        assert all(isinstance(f, BookUnavailable) for f in failures)

        stored = get_book(book.id)
        assert stored.available_copies == 0
        assert stored.status == BookStatus.CHECKED_OUT

    def test_same_member_races_itself(self, ledger, member_actor, make_book, get_book):
        book = make_book(total_copies=2)

        results = run_concurrently([lambda: ledger.borrow(member_actor, book.id)] * 2)

        assert sum(isinstance(r, Borrowing) for r in results) == 1
        assert sum(isinstance(r, AlreadyBorrowed) for r in results) == 1
        assert get_book(book.id).available_copies == 1

    def test_concurrent_double_return(
        self, ledger, member_actor, librarian_actor, make_book, get_book
    ):
        book = make_book(total_copies=2)
        borrowing = ledger.borrow(member_actor, book.id)

        results = run_concurrently(
            [lambda: ledger.return_borrowing(librarian_actor, borrowing.id)] * 2
        )

        assert sum(isinstance(r, Borrowing) for r in results) == 1
        assert sum(isinstance(r, AlreadyReturned) for r in results) == 1
        assert get_book(book.id).available_copies == 2

    def test_mixed_borrows_and_returns_keep_counts_consistent(
        self, ledger, make_user, librarian_actor, make_book, get_book, active_count
    ):
        book = make_book(total_copies=2)
        holders = [Actor.from_user(make_user()) for _ in range(2)]
        waiting = [Actor.from_user(make_user()) for _ in range(4)]
        held = [ledger.borrow(actor, book.id) for actor in holders]

        calls = [
            lambda borrowing=borrowing: ledger.return_borrowing(librarian_actor, borrowing.id)
            for borrowing in held
        ] + [lambda actor=actor: ledger.borrow(actor, book.id) for actor in waiting]
        run_concurrently(calls)

        stored = get_book(book.id)
        assert_copy_invariants(stored)
        assert stored.available_copies == stored.total_copies - active_count(book.id)


def test_actor_role_is_checked_before_touching_the_store(ledger, make_book):
    ghost = Actor(id=999, role=Role.LIBRARIAN)

    with pytest.raises(Forbidden):
        ledger.borrow(ghost, make_book().id)
