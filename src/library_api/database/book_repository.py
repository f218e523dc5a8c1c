"""
Book repository implementation for the Library Circulation API.

This repository is the catalog store:

1. **Catalog Management**: create, update and delete books with field
   validation that reports every violated field at once
2. **Browsing**: filtered, paginated listings and a capped free-text search
3. **Status Override**: librarians may force a status without touching copies
4. **Copy Accounting**: the conditional UPDATE primitives the borrowing
   ledger uses to take and restore copies atomically

Copy counts are never changed with a read-modify-write; ``take_copy`` and
``restore_copy`` push the check into the UPDATE's WHERE clause and report
whether a row matched.
"""

from datetime import datetime

from pydantic import BaseModel
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError

from ..clock import Clock, SystemClock
from ..errors import DuplicateError, FieldError, ValidationFailed
from ..models.book import Book as BookModel
from ..models.book import BookStatus, normalize_isbn
from .repository import BaseRepository, PaginatedResponse, PaginationParams
from .schema import Book as BookDB
from .schema import Borrowing as BorrowingDB
from .session import RepositoryException, safe_commit, safe_query

SEARCH_RESULT_LIMIT = 50
MAX_TEXT_LENGTH = 255
MIN_PUBLICATION_YEAR = 1000


class BookCreateSchema(BaseModel):
    """Schema for creating a new book.

    Types only; domain rules are checked by ``validate_book_fields`` so all
    violations can be reported together.
    """

    title: str | None = None
    author: str | None = None
    isbn: str | None = None
    description: str | None = None
    genre: str | None = None
    publication_year: int | None = None
    publisher: str | None = None
    total_copies: int | None = None
    available_copies: int | None = None  # Defaults to total_copies
    status: BookStatus | None = None


class BookUpdateSchema(BaseModel):
    """Schema for updating a book - all fields optional."""

    title: str | None = None
    author: str | None = None
    isbn: str | None = None
    description: str | None = None
    genre: str | None = None
    publication_year: int | None = None
    publisher: str | None = None
    total_copies: int | None = None
    available_copies: int | None = None
    status: BookStatus | None = None


class BookSearchParams(BaseModel):
    """
    Filters for catalog listings.

    These map directly onto the query parameters of ``GET /books``.
    """

    search: str | None = None  # Free text across title, author, genre, publisher
    genre: str | None = None  # Exact genre match
    author: str | None = None  # Author contains
    title: str | None = None  # Title contains
    status: BookStatus | None = None


def _normalize_fields(values: dict) -> dict:
    """Apply the catalog normalizations (stripped names, normalized ISBN)."""
    normalized = dict(values)
    for field in ("title", "author"):
        if isinstance(normalized.get(field), str):
            normalized[field] = normalized[field].strip()
    if "isbn" in normalized:
        normalized["isbn"] = normalize_isbn(normalized["isbn"])
    return normalized


def validate_book_fields(values: dict, current_year: int) -> list[FieldError]:
    """
    Check a complete set of book fields against the catalog rules.

    Args:
        values: Normalized field values (after merging any update)
        current_year: Publication years up to ``current_year + 1`` are allowed

    Returns:
        Every violated field; empty when the book is valid
    """
    errors: list[FieldError] = []

    for field in ("title", "author"):
        value = values.get(field)
        if not value:
            errors.append(FieldError(field, "can't be blank"))
        elif len(value) > MAX_TEXT_LENGTH:
            errors.append(
                FieldError(field, f"is too long (maximum is {MAX_TEXT_LENGTH} characters)")
            )

    year = values.get("publication_year")
    if year is not None:
        if year <= MIN_PUBLICATION_YEAR:
            errors.append(
                FieldError("publication_year", f"must be greater than {MIN_PUBLICATION_YEAR}")
            )
        elif year > current_year + 1:
            errors.append(
                FieldError("publication_year", f"must be less than or equal to {current_year + 1}")
            )

    total = values.get("total_copies")
    available = values.get("available_copies")
    if total is None:
        errors.append(FieldError("total_copies", "can't be blank"))
    elif total <= 0:
        errors.append(FieldError("total_copies", "must be greater than 0"))

    if available is None:
        errors.append(FieldError("available_copies", "can't be blank"))
    elif available < 0:
        errors.append(FieldError("available_copies", "must be greater than or equal to 0"))
    elif total is not None and available > total:
        errors.append(
            FieldError("available_copies", f"must be less than or equal to {total}")
        )

    return errors


class BookRepository(BaseRepository[BookDB, BookModel]):
    """
    Repository for book data access.

    - Read methods back the public catalog endpoints
    - Write methods back the librarian catalog endpoints
    - ``take_copy`` / ``restore_copy`` are only called by the borrowing ledger
    """

    entity_name = "Book"

    def __init__(self, session, clock: Clock | None = None):
        super().__init__(session)
        self.clock = clock or SystemClock()

    @property
    def model_class(self):
        return BookDB

    @property
    def response_schema(self):
        return BookModel

    # =========================================================================
    # CATALOG MANAGEMENT
    # =========================================================================

    def create(self, data: BookCreateSchema) -> BookModel:
        """
        Create a new book.

        ``available_copies`` defaults to ``total_copies`` and ``status`` to
        available.

        Raises:
            ValidationFailed: Listing every violated field
            DuplicateError: If the ISBN is already catalogued
        """
        values = _normalize_fields(data.model_dump())
        if values.get("available_copies") is None:
            values["available_copies"] = values.get("total_copies")
        if values.get("status") is None:
            values["status"] = BookStatus.AVAILABLE

        errors = validate_book_fields(values, self.clock.now().year)
        if errors:
            raise ValidationFailed(errors)

        self._ensure_isbn_free(values.get("isbn"))

        book = BookDB(**values)
        self.session.add(book)
        self._commit_catalog_change("create book")
        self.session.refresh(book)
        return self._to_response_model(book)

    def update(self, book_id: int, data: BookUpdateSchema) -> BookModel:
        """
        Update book information with only the fields provided.

        The merged record is validated as a whole, so lowering
        ``total_copies`` below ``available_copies`` is rejected.

        Raises:
            NotFound: If the book doesn't exist
            ValidationFailed: Listing every violated field
            DuplicateError: If the new ISBN belongs to another book
        """
        book = self._require_db_obj(book_id)
        changes = _normalize_fields(data.model_dump(exclude_unset=True))

        merged = {
            field: getattr(book, field)
            for field in BookUpdateSchema.model_fields
            if field not in changes
        }
        merged.update(changes)

        errors = validate_book_fields(merged, self.clock.now().year)
        if errors:
            raise ValidationFailed(errors)

        if "isbn" in changes and changes["isbn"] != book.isbn:
            self._ensure_isbn_free(changes["isbn"], exclude_id=book.id)

        for field, value in changes.items():
            setattr(book, field, value)
        book.updated_at = self.clock.now()

        self._commit_catalog_change("update book")
        self.session.refresh(book)
        return self._to_response_model(book)

    def set_status(self, book_id: int, status: BookStatus) -> BookModel:
        """
        Manually override a book's status (maintenance, lost, ...).

        Copy counts are left untouched.

        Raises:
            NotFound: If the book doesn't exist
        """
        book = self._require_db_obj(book_id)
        book.status = status
        book.updated_at = self.clock.now()
        safe_commit(self.session, "set book status")
        self.session.refresh(book)
        return self._to_response_model(book)

    def _ensure_isbn_free(self, isbn: str | None, exclude_id: int | None = None) -> None:
        if not isbn:
            return

        query = select(func.count()).select_from(BookDB).where(BookDB.isbn == isbn)
        if exclude_id is not None:
            query = query.where(BookDB.id != exclude_id)

        taken = safe_query(
            self.session, lambda s: s.execute(query).scalar(), "Failed to check ISBN existence"
        )
        if taken:
            raise DuplicateError("isbn", "has already been taken")

    def _commit_catalog_change(self, operation: str) -> None:
        """Commit, turning a lost ISBN race into a duplicate error."""
        try:
            self.session.flush()
        except IntegrityError as e:
            self.session.rollback()
            if "isbn" in str(e.orig):
                raise DuplicateError("isbn", "has already been taken") from e
            raise RepositoryException(f"Failed to {operation}: {e.orig}") from e
        safe_commit(self.session, operation)

    # =========================================================================
    # BROWSING
    # =========================================================================

    def list_books(
        self,
        search_params: BookSearchParams | None = None,
        pagination: PaginationParams | None = None,
    ) -> PaginatedResponse[BookModel]:
        """
        Filtered, paginated catalog listing, ordered by title.

        Returns:
            Paginated response with matching books
        """
        search_params = search_params or BookSearchParams()
        query = select(BookDB)

        filters = []

        if search_params.search:
            filters.append(_free_text_filter(search_params.search))

        if search_params.genre:
            filters.append(BookDB.genre == search_params.genre)

        if search_params.author:
            filters.append(BookDB.author.ilike(f"%{search_params.author}%"))

        if search_params.title:
            filters.append(BookDB.title.ilike(f"%{search_params.title}%"))

        if search_params.status:
            filters.append(BookDB.status == search_params.status)

        if filters:
            query = query.where(and_(*filters))

        query = query.order_by(BookDB.title, BookDB.id)

        return self._paginate_query(query, pagination)

    def search(self, text: str, limit: int = SEARCH_RESULT_LIMIT) -> list[BookModel]:
        """
        Free-text search across title, author, genre and publisher.

        Raises:
            ValidationFailed: If the query is blank
        """
        if not text or not text.strip():
            raise ValidationFailed.single("q", "Search query is required")

        query = (
            select(BookDB)
            .where(_free_text_filter(text.strip()))
            .order_by(BookDB.title, BookDB.id)
            .limit(min(limit, SEARCH_RESULT_LIMIT))
        )
        results = safe_query(
            self.session, lambda s: s.execute(query).scalars().all(), "Failed to search books"
        )
        return [self._to_response_model(book) for book in results]

    def times_borrowed(self, book_id: int) -> int:
        """Number of borrowings ever recorded for a book."""
        return (
            safe_query(
                self.session,
                lambda s: s.execute(
                    select(func.count())
                    .select_from(BorrowingDB)
                    .where(BorrowingDB.book_id == book_id)
                ).scalar(),
                "Failed to count book borrowings",
            )
            or 0
        )

    def most_borrowed(self, *conditions, limit: int = 5) -> list[tuple[BookModel, int]]:
        """
        Books ranked by how often they were borrowed.

        Books never borrowed are not ranked.

        Returns:
            ``(book, times_borrowed)`` pairs, most borrowed first
        """
        borrow_count = func.count(BorrowingDB.id).label("borrow_count")
        query = (
            select(BookDB, borrow_count)
            .join(BorrowingDB, BorrowingDB.book_id == BookDB.id)
            .where(*conditions)
            .group_by(BookDB.id)
            .order_by(borrow_count.desc(), BookDB.id)
            .limit(limit)
        )
        rows = safe_query(
            self.session, lambda s: s.execute(query).all(), "Failed to rank popular books"
        )
        return [(self._to_response_model(book), count) for book, count in rows]

    def borrowed_by(self, user_id: int) -> list[BookModel]:
        """Distinct books the user has ever borrowed."""
        query = (
            select(BookDB)
            .where(
                BookDB.id.in_(select(BorrowingDB.book_id).where(BorrowingDB.user_id == user_id))
            )
            .order_by(BookDB.id)
        )
        results = safe_query(
            self.session,
            lambda s: s.execute(query).scalars().all(),
            "Failed to get borrowed books",
        )
        return [self._to_response_model(book) for book in results]

    def catalog_totals(self) -> dict[str, int]:
        """Book count, copy count and number of books in the available status."""
        row = safe_query(
            self.session,
            lambda s: s.execute(
                select(
                    func.count(BookDB.id),
                    func.coalesce(func.sum(BookDB.total_copies), 0),
                    func.count(BookDB.id).filter(BookDB.status == BookStatus.AVAILABLE),
                )
            ).one(),
            "Failed to compute catalog totals",
        )
        return {"total_books": row[0], "total_copies": row[1], "available_books": row[2]}

    # =========================================================================
    # COPY ACCOUNTING (borrowing ledger only)
    # =========================================================================

    def get_for_update(self, book_id: int) -> BookDB | None:
        """
        Load a book row with a row lock.

        PostgreSQL takes ``FOR UPDATE``; SQLite already holds the database
        write lock from ``BEGIN IMMEDIATE`` and ignores the clause.
        """
        query = (
            select(BookDB)
            .where(BookDB.id == book_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return safe_query(
            self.session,
            lambda s: s.execute(query).scalar_one_or_none(),
            "Failed to get book for update",
        )

    def take_copy(self, book_id: int, now: datetime) -> bool:
        """
        Decrement ``available_copies`` if the book can be lent.

        The availability check lives in the WHERE clause, so two concurrent
        callers can never both take the last copy. When the last copy goes
        the status becomes checked_out.

        Returns:
            True if a copy was taken, False if none was lendable
        """
        taken = self._execute_update(
            update(BookDB)
            .where(
                BookDB.id == book_id,
                BookDB.status == BookStatus.AVAILABLE,
                BookDB.available_copies > 0,
            )
            .values(available_copies=BookDB.available_copies - 1, updated_at=now),
            "take copy",
        )
        if not taken:
            return False

        self._execute_update(
            update(BookDB)
            .where(
                BookDB.id == book_id,
                BookDB.available_copies == 0,
                BookDB.status == BookStatus.AVAILABLE,
            )
            .values(status=BookStatus.CHECKED_OUT),
            "mark checked out",
        )
        return True

    def restore_copy(self, book_id: int, now: datetime) -> bool:
        """
        Increment ``available_copies`` for a returned copy.

        The count is capped at ``total_copies``. A checked_out book becomes
        available again; maintenance and lost are left alone.

        Returns:
            True if the count was incremented, False if it was already full
        """
        restored = self._execute_update(
            update(BookDB)
            .where(BookDB.id == book_id, BookDB.available_copies < BookDB.total_copies)
            .values(available_copies=BookDB.available_copies + 1, updated_at=now),
            "restore copy",
        )

        self._execute_update(
            update(BookDB)
            .where(
                BookDB.id == book_id,
                BookDB.status == BookStatus.CHECKED_OUT,
                BookDB.available_copies > 0,
            )
            .values(status=BookStatus.AVAILABLE, updated_at=now),
            "mark available",
        )
        return restored

    def adjust_availability(self, book_id: int, delta: int, now: datetime) -> bool:
        """Take (``delta=-1``) or restore (``delta=1``) one copy."""
        if delta == -1:
            return self.take_copy(book_id, now)
        if delta == 1:
            return self.restore_copy(book_id, now)
        raise ValueError(f"Availability moves one copy at a time, got {delta}")

    def _execute_update(self, statement, operation: str) -> bool:
        result = safe_query(
            self.session,
            lambda s: s.execute(statement.execution_options(synchronize_session=False)),
            f"Failed to {operation}",
        )
        return result.rowcount > 0


def _free_text_filter(text: str):
    term = f"%{text}%"
    return or_(
        BookDB.title.ilike(term),
        BookDB.author.ilike(term),
        BookDB.genre.ilike(term),
        BookDB.publisher.ilike(term),
    )
