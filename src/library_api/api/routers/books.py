"""Catalog endpoints, plus borrowing a book and its borrowing history."""

from typing import Annotated

from fastapi import APIRouter, Query, status
from pydantic import BaseModel

from ...database.book_repository import (
    BookCreateSchema,
    BookRepository,
    BookSearchParams,
    BookUpdateSchema,
)
from ...database.borrowing_repository import BorrowingRepository
from ...models.book import BookStatus
from ...policies import (
    authorize,
    can_browse_catalog,
    can_manage_catalog,
    can_view_book_borrowings,
)
from ..dependencies import AppClock, CurrentActor, Database, Ledger, OptionalActor, Pagination

router = APIRouter(prefix="/books", tags=["books"])


class StatusRequest(BaseModel):
    status: BookStatus


@router.get("")
def list_books(
    actor: OptionalActor,
    db: Database,
    pagination: Pagination,
    search: str | None = None,
    genre: str | None = None,
    author: str | None = None,
    title: str | None = None,
    book_status: Annotated[BookStatus | None, Query(alias="status")] = None,
):
    authorize(can_browse_catalog(actor))
    params = BookSearchParams(
        search=search, genre=genre, author=author, title=title, status=book_status
    )
    with db.session_scope() as session:
        page = BookRepository(session).list_books(params, pagination)

    return {"books": [book.summary() for book in page.items], "pagination": page.pagination()}


@router.get("/search")
def search_books(
    actor: OptionalActor,
    db: Database,
    q: str | None = None,
    search: str | None = None,
):
    authorize(can_browse_catalog(actor))
    text = q or search or ""
    with db.session_scope() as session:
        books = BookRepository(session).search(text)

    return {
        "books": [book.summary() for book in books],
        "search_query": text,
        "results_count": len(books),
    }


@router.get("/{book_id}")
def show_book(book_id: int, actor: OptionalActor, db: Database):
    authorize(can_browse_catalog(actor))
    with db.session_scope() as session:
        book = BookRepository(session).get(book_id)
    return {"book": book.detail()}


@router.post("", status_code=status.HTTP_201_CREATED)
def create_book(payload: BookCreateSchema, actor: CurrentActor, db: Database, clock: AppClock):
    authorize(can_manage_catalog(actor))
    with db.session_scope() as session:
        book = BookRepository(session, clock).create(payload)
    return {"message": "Book created successfully", "book": book.detail()}


@router.api_route("/{book_id}", methods=["PATCH", "PUT"])
def update_book(
    book_id: int, payload: BookUpdateSchema, actor: CurrentActor, db: Database, clock: AppClock
):
    authorize(can_manage_catalog(actor))
    with db.session_scope() as session:
        book = BookRepository(session, clock).update(book_id, payload)
    return {"message": "Book updated successfully", "book": book.detail()}


@router.delete("/{book_id}")
def delete_book(book_id: int, actor: CurrentActor, db: Database):
    authorize(can_manage_catalog(actor))
    with db.session_scope() as session:
        BookRepository(session).delete(book_id)
    return {"message": "Book deleted successfully"}


@router.patch("/{book_id}/manage_status")
def manage_status(
    book_id: int, payload: StatusRequest, actor: CurrentActor, db: Database, clock: AppClock
):
    authorize(can_manage_catalog(actor))
    with db.session_scope() as session:
        book = BookRepository(session, clock).set_status(book_id, payload.status)
    return {"message": "Book status updated successfully", "book": book.detail()}


@router.post("/{book_id}/borrow", status_code=status.HTTP_201_CREATED)
def borrow_book(book_id: int, actor: CurrentActor, ledger: Ledger, clock: AppClock):
    borrowing = ledger.borrow(actor, book_id)
    return {
        "message": "Book borrowed successfully",
        "borrowing": borrowing.to_response(clock.now(), detailed=True),
    }


@router.get("/{book_id}/borrowings")
def book_borrowings(
    book_id: int, actor: CurrentActor, db: Database, clock: AppClock, pagination: Pagination
):
    authorize(can_view_book_borrowings(actor))
    now = clock.now()
    with db.session_scope() as session:
        books = BookRepository(session)
        book = books.get(book_id)
        times_borrowed = books.times_borrowed(book_id)
        page = BorrowingRepository(session).for_book(book_id, pagination)

    return {
        "book": {"id": book.id, "title": book.title, "author": book.author},
        "times_borrowed": times_borrowed,
        "borrowings": [borrowing.to_response(now) for borrowing in page.items],
        "pagination": page.pagination(),
    }
