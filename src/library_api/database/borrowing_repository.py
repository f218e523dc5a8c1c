"""
Borrowing repository implementation for the Library Circulation API.

Persistence primitives for borrowing records. They never commit: the
borrowing ledger composes them into a single transaction together with the
catalog's copy accounting, and commits or rolls back the whole unit.

Reads (detail views, scoped listings, per-user and per-book history) return
``Borrowing`` models with their user and book summaries loaded.
"""

from datetime import datetime

from pydantic import BaseModel
from sqlalchemy import Select, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import joinedload

from ..errors import AlreadyBorrowed
from ..models.borrowing import BookSummary, BorrowingStatus, UserSummary
from ..models.borrowing import Borrowing as BorrowingModel
from .repository import BaseRepository, PaginatedResponse, PaginationParams
from .schema import ACTIVE_BORROWING_INDEX
from .schema import Borrowing as BorrowingDB
from .session import RepositoryException, safe_query


class BorrowingFilterParams(BaseModel):
    """Filters for borrowing listings."""

    status: BorrowingStatus | None = None
    user_id: int | None = None
    book_id: int | None = None


def is_active_borrowing_conflict(error: IntegrityError) -> bool:
    """True when an insert lost the race for the one-active-borrowing index."""
    message = str(error.orig)
    return ACTIVE_BORROWING_INDEX in message or (
        "borrowings.user_id" in message and "borrowings.book_id" in message
    )


class BorrowingRepository(BaseRepository[BorrowingDB, BorrowingModel]):
    """Repository for borrowing records."""

    entity_name = "Borrowing"

    @property
    def model_class(self):
        return BorrowingDB

    @property
    def response_schema(self):
        return BorrowingModel

    def _to_response_model(self, db_obj: BorrowingDB) -> BorrowingModel:
        """Convert a row, embedding user and book summaries."""
        user = db_obj.user
        book = db_obj.book
        return BorrowingModel(
            id=db_obj.id,
            user_id=db_obj.user_id,
            book_id=db_obj.book_id,
            borrowed_at=db_obj.borrowed_at,
            due_at=db_obj.due_at,
            returned_at=db_obj.returned_at,
            status=db_obj.status,
            created_at=db_obj.created_at,
            updated_at=db_obj.updated_at,
            user=UserSummary(id=user.id, name=user.full_name, email=user.email_address)
            if user
            else None,
            book=BookSummary(id=book.id, title=book.title, author=book.author, genre=book.genre)
            if book
            else None,
        )

    def _detailed_query(self) -> Select:
        return select(BorrowingDB).options(
            joinedload(BorrowingDB.user), joinedload(BorrowingDB.book)
        )

    def _get_db_obj(self, entity_id: int) -> BorrowingDB | None:
        return safe_query(
            self.session,
            lambda s: s.execute(
                self._detailed_query()
                .where(BorrowingDB.id == entity_id)
                .execution_options(populate_existing=True)
            )
            .unique()
            .scalar_one_or_none(),
            "Failed to get borrowing",
        )

    # =========================================================================
    # LEDGER PRIMITIVES
    # =========================================================================

    def find_active(self, user_id: int, book_id: int) -> BorrowingDB | None:
        """The user's active borrowing of this book, if any."""
        return safe_query(
            self.session,
            lambda s: s.execute(
                select(BorrowingDB).where(
                    BorrowingDB.user_id == user_id,
                    BorrowingDB.book_id == book_id,
                    BorrowingDB.returned_at.is_(None),
                )
            ).scalar_one_or_none(),
            "Failed to check active borrowing",
        )

    def get_for_update(self, borrowing_id: int) -> BorrowingDB | None:
        return safe_query(
            self.session,
            lambda s: s.execute(
                select(BorrowingDB)
                .where(BorrowingDB.id == borrowing_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalar_one_or_none(),
            "Failed to get borrowing for update",
        )

    def insert(
        self, user_id: int, book_id: int, borrowed_at: datetime, due_at: datetime
    ) -> BorrowingDB:
        """
        Insert an active borrowing and flush it.

        Raises:
            AlreadyBorrowed: If the one-active-borrowing index rejects the row
            RepositoryException: On any other integrity failure
        """
        borrowing = BorrowingDB(
            user_id=user_id,
            book_id=book_id,
            borrowed_at=borrowed_at,
            due_at=due_at,
            returned_at=None,
            status=BorrowingStatus.BORROWED,
            created_at=borrowed_at,
            updated_at=borrowed_at,
        )
        self.session.add(borrowing)
        try:
            self.session.flush()
        except IntegrityError as e:
            if is_active_borrowing_conflict(e):
                raise AlreadyBorrowed() from e
            raise RepositoryException(f"Failed to insert borrowing: {e.orig}") from e
        return borrowing

    def mark_returned(self, borrowing_id: int, returned_at: datetime) -> bool:
        """
        Close an active borrowing.

        Returns:
            True if this call closed it, False if it was already returned
        """
        result = safe_query(
            self.session,
            lambda s: s.execute(
                update(BorrowingDB)
                .where(BorrowingDB.id == borrowing_id, BorrowingDB.returned_at.is_(None))
                .values(
                    returned_at=returned_at,
                    status=BorrowingStatus.RETURNED,
                    updated_at=returned_at,
                )
                .execution_options(synchronize_session=False)
            ),
            "Failed to mark borrowing returned",
        )
        return result.rowcount > 0

    def mark_overdue(self, now: datetime) -> int:
        """
        Flag every active borrowing past its due date.

        Returns:
            Number of borrowings newly flagged
        """
        result = safe_query(
            self.session,
            lambda s: s.execute(
                update(BorrowingDB)
                .where(
                    BorrowingDB.returned_at.is_(None),
                    BorrowingDB.due_at < now,
                    BorrowingDB.status != BorrowingStatus.OVERDUE,
                )
                .values(status=BorrowingStatus.OVERDUE, updated_at=now)
                .execution_options(synchronize_session=False)
            ),
            "Failed to flag overdue borrowings",
        )
        return result.rowcount

    # =========================================================================
    # READS
    # =========================================================================

    def list_borrowings(
        self,
        query: Select | None = None,
        filters: BorrowingFilterParams | None = None,
        pagination: PaginationParams | None = None,
    ) -> PaginatedResponse[BorrowingModel]:
        """
        Paginated listing, newest borrowings first.

        Args:
            query: A pre-scoped select over borrowings (see
                ``policies.scope_borrowings``)
            filters: Optional status, user and book filters
        """
        query = query if query is not None else select(BorrowingDB)
        query = query.options(joinedload(BorrowingDB.user), joinedload(BorrowingDB.book))

        if filters:
            if filters.status is not None:
                query = query.where(BorrowingDB.status == filters.status)
            if filters.user_id is not None:
                query = query.where(BorrowingDB.user_id == filters.user_id)
            if filters.book_id is not None:
                query = query.where(BorrowingDB.book_id == filters.book_id)

        query = query.order_by(BorrowingDB.borrowed_at.desc(), BorrowingDB.id.desc())
        return self._paginate_query(query, pagination)

    def find(self, *conditions, order_by=None, limit: int | None = None) -> list[BorrowingModel]:
        """Unpaginated read of borrowings matching every condition."""
        query = self._detailed_query().where(*conditions)
        if order_by is not None:
            query = query.order_by(order_by, BorrowingDB.id)
        if limit is not None:
            query = query.limit(limit)

        results = safe_query(
            self.session,
            lambda s: s.execute(query).unique().scalars().all(),
            "Failed to find borrowings",
        )
        return [self._to_response_model(row) for row in results]

    def count_where(self, *conditions) -> int:
        return (
            safe_query(
                self.session,
                lambda s: s.execute(
                    select(func.count()).select_from(BorrowingDB).where(*conditions)
                ).scalar(),
                "Failed to count borrowings",
            )
            or 0
        )

    def for_user(
        self, user_id: int, pagination: PaginationParams | None = None
    ) -> PaginatedResponse[BorrowingModel]:
        return self.list_borrowings(
            filters=BorrowingFilterParams(user_id=user_id), pagination=pagination
        )

    def for_book(
        self, book_id: int, pagination: PaginationParams | None = None
    ) -> PaginatedResponse[BorrowingModel]:
        return self.list_borrowings(
            filters=BorrowingFilterParams(book_id=book_id), pagination=pagination
        )
