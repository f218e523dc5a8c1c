"""Borrowing endpoints: scoped listings, detail, borrow, return and the overdue sweep."""

from typing import Annotated

from fastapi import APIRouter, Query, status
from pydantic import BaseModel
from sqlalchemy import select

from ...database.borrowing_repository import BorrowingFilterParams, BorrowingRepository
from ...database.schema import Borrowing as BorrowingDB
from ...errors import NotFound
from ...models.borrowing import BorrowingStatus
from ...policies import (
    authorize,
    can_list_borrowings,
    can_sweep_overdue,
    can_view_borrowing,
    scope_borrowings,
)
from ..dependencies import AppClock, CurrentActor, Database, Ledger, Pagination

router = APIRouter(prefix="/borrowings", tags=["borrowings"])


class BorrowRequest(BaseModel):
    book_id: int


@router.get("")
def list_borrowings(
    actor: CurrentActor,
    db: Database,
    clock: AppClock,
    pagination: Pagination,
    borrowing_status: Annotated[BorrowingStatus | None, Query(alias="status")] = None,
    user_id: int | None = None,
):
    authorize(can_list_borrowings(actor))
    filters = BorrowingFilterParams(
        status=borrowing_status,
        # Filtering by another user is a librarian feature
        user_id=user_id if actor.is_librarian else None,
    )
    now = clock.now()
    with db.session_scope() as session:
        page = BorrowingRepository(session).list_borrowings(
            scope_borrowings(actor, select(BorrowingDB)), filters, pagination
        )

    return {
        "borrowings": [borrowing.to_response(now) for borrowing in page.items],
        "pagination": page.pagination(),
    }


@router.post("/borrow_book", status_code=status.HTTP_201_CREATED)
def borrow_book(payload: BorrowRequest, actor: CurrentActor, ledger: Ledger, clock: AppClock):
    borrowing = ledger.borrow(actor, payload.book_id)
    return {
        "message": "Book borrowed successfully",
        "borrowing": borrowing.to_response(clock.now(), detailed=True),
    }


@router.post("/sweep_overdue")
def sweep_overdue(actor: CurrentActor, ledger: Ledger):
    authorize(can_sweep_overdue(actor))
    flagged = ledger.sweep_overdue()
    return {"message": "Overdue sweep complete", "flagged": flagged}


@router.get("/{borrowing_id}")
def show_borrowing(borrowing_id: int, actor: CurrentActor, db: Database, clock: AppClock):
    with db.session_scope() as session:
        borrowing = BorrowingRepository(session).get(borrowing_id)

    # Someone else's borrowing is reported exactly like a missing one
    if not can_view_borrowing(actor, borrowing.user_id):
        raise NotFound.for_entity("Borrowing", borrowing_id)
    return {"borrowing": borrowing.to_response(clock.now(), detailed=True)}


@router.patch("/{borrowing_id}/return")
def return_borrowing(borrowing_id: int, actor: CurrentActor, ledger: Ledger, clock: AppClock):
    borrowing = ledger.return_borrowing(actor, borrowing_id)
    return {
        "message": "Book returned successfully",
        "borrowing": borrowing.to_response(clock.now(), detailed=True),
    }
