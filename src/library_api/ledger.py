"""
Borrowing ledger for the Library Circulation API.

The ledger is the only code that creates or closes borrowings, and the only
code that moves a book's copy count and status as a side effect. Each
operation is one transaction:

- **borrow**: take a copy with a conditional UPDATE, then insert the
  borrowing; the partial unique index backs up the one-active-borrowing rule
- **return**: close the borrowing with a guarded UPDATE, then restore the
  copy (capped at the book's total)
- **sweep_overdue**: a single UPDATE flagging active borrowings past due

Lock contention (``OperationalError``) rolls the transaction back and the
operation is retried a bounded number of times with linear backoff. Domain
errors are never retried.
"""

import logging
import time
from collections.abc import Callable
from datetime import timedelta

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from .auth import Actor
from .clock import Clock, SystemClock
from .config import ServerConfig, get_config
from .database.book_repository import BookRepository
from .database.borrowing_repository import BorrowingRepository
from .database.session import DatabaseManager
from .errors import (
    AlreadyBorrowed,
    AlreadyReturned,
    BookUnavailable,
    ConflictRetryExhausted,
    LibraryError,
    NotFound,
)
from .models.borrowing import Borrowing
from .observability import trace_ledger
from .policies import authorize, can_borrow, can_return

logger = logging.getLogger(__name__)


class BorrowingLedger:
    """
    Transactional borrow, return and overdue sweep.

    Args:
        db: Database manager; each attempt opens its own session scope
        clock: Source of "now" for borrowed, due and returned timestamps
        config: Loan period and retry budget
        sleep: Backoff function (replaced in tests)
    """

    def __init__(
        self,
        db: DatabaseManager,
        clock: Clock | None = None,
        config: ServerConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.db = db
        self.clock = clock or SystemClock()
        self.config = config or get_config()
        self._sleep = sleep

    @property
    def loan_period(self) -> timedelta:
        return timedelta(days=self.config.loan_period_days)

    # =========================================================================
    # OPERATIONS
    # =========================================================================

    @trace_ledger("borrow")
    def borrow(self, actor: Actor, book_id: int) -> Borrowing:
        """
        Lend one copy of a book to a member.

        Raises:
            Forbidden: If the actor is not a member
            NotFound: If the book doesn't exist
            AlreadyBorrowed: If the member already holds this book
            BookUnavailable: If no copy can be lent
            ConflictRetryExhausted: If the store stayed locked
        """
        authorize(can_borrow(actor))
        borrowing = self._run("borrow", lambda session: self._borrow(session, actor, book_id))
        logger.info(
            "User %s borrowed book %s (borrowing %s, due %s)",
            actor.id,
            book_id,
            borrowing.id,
            borrowing.due_at.isoformat(),
        )
        return borrowing

    @trace_ledger("return")
    def return_borrowing(self, actor: Actor, borrowing_id: int) -> Borrowing:
        """
        Close a borrowing and put its copy back on the shelf.

        Raises:
            Forbidden: If the actor is not a librarian
            NotFound: If the borrowing doesn't exist
            AlreadyReturned: If the borrowing was already closed
            ConflictRetryExhausted: If the store stayed locked
        """
        authorize(can_return(actor))
        borrowing = self._run("return", lambda session: self._return(session, borrowing_id))
        logger.info(
            "Borrowing %s returned (book %s, processed by %s)",
            borrowing.id,
            borrowing.book_id,
            actor.id,
        )
        return borrowing

    @trace_ledger("sweep_overdue")
    def sweep_overdue(self) -> int:
        """
        Flag active borrowings past their due date as overdue.

        Idempotent; books are not touched.

        Returns:
            Number of borrowings newly flagged
        """
        flagged = self._run(
            "sweep_overdue",
            lambda session: BorrowingRepository(session).mark_overdue(self.clock.now()),
        )
        logger.info("Overdue sweep flagged %d borrowing(s)", flagged)
        return flagged

    # =========================================================================
    # TRANSACTION BODIES
    # =========================================================================

    def _borrow(self, session: Session, actor: Actor, book_id: int) -> Borrowing:
        books = BookRepository(session, self.clock)
        borrowings = BorrowingRepository(session)

        if books.get_for_update(book_id) is None:
            raise NotFound.for_entity("Book", book_id)

        if borrowings.find_active(actor.id, book_id) is not None:
            raise AlreadyBorrowed()

        now = self.clock.now()
        if not books.take_copy(book_id, now):
            raise BookUnavailable()

        row = borrowings.insert(actor.id, book_id, now, now + self.loan_period)
        return borrowings.get(row.id)

    def _return(self, session: Session, borrowing_id: int) -> Borrowing:
        books = BookRepository(session, self.clock)
        borrowings = BorrowingRepository(session)

        row = borrowings.get_for_update(borrowing_id)
        if row is None:
            raise NotFound.for_entity("Borrowing", borrowing_id)
        if row.returned_at is not None:
            raise AlreadyReturned()

        # A clock behind the borrow time must not break returned >= borrowed
        returned_at = max(self.clock.now(), row.borrowed_at)
        if not borrowings.mark_returned(borrowing_id, returned_at):
            raise AlreadyReturned()

        if not books.restore_copy(row.book_id, returned_at):
            logger.warning(
                "Book %s already has all copies on the shelf; return of borrowing %s "
                "did not increment availability",
                row.book_id,
                borrowing_id,
            )

        return borrowings.get(borrowing_id)

    def _run[T](self, operation: str, work: Callable[[Session], T]) -> T:
        """Run ``work`` in a fresh transaction, retrying on lock contention."""
        attempts = self.config.max_conflict_retries

        for attempt in range(1, attempts + 1):
            try:
                with self.db.session_scope() as session:
                    return work(session)
            except LibraryError as e:
                logger.info("%s rejected: %s", operation, e.message)
                raise
            except OperationalError as e:
                if attempt == attempts:
                    logger.error(
                        "%s gave up after %d attempts: %s", operation, attempts, e.orig
                    )
                    break
                delay = self.config.conflict_backoff_seconds * attempt
                logger.warning(
                    "%s hit a store conflict (attempt %d/%d), retrying in %.3fs: %s",
                    operation,
                    attempt,
                    attempts,
                    delay,
                    e.orig,
                )
                self._sleep(delay)

        raise ConflictRetryExhausted(operation, attempts)

