"""
Authorization rules for the Library Circulation API.

Each predicate answers one question about an actor (``None`` when the
request is anonymous) and a resource. Handlers call ``authorize()`` with a
predicate before reaching the ledger or a repository.

Row-level visibility is expressed with scope functions that narrow a
``select`` to what the actor may see.
"""

from sqlalchemy import Select

from .auth import Actor
from .database.schema import Borrowing as BorrowingDB
from .database.schema import User as UserDB
from .errors import Forbidden


def authorize(allowed: bool, message: str | None = None) -> None:
    """Raise ``Forbidden`` unless ``allowed``."""
    if not allowed:
        raise Forbidden(message) if message else Forbidden()


def _is_librarian(actor: Actor | None) -> bool:
    return actor is not None and actor.is_librarian


def _is_member(actor: Actor | None) -> bool:
    return actor is not None and actor.is_member


# =============================================================================
# CATALOG
# =============================================================================


def can_browse_catalog(actor: Actor | None) -> bool:  # noqa: ARG001
    """Anyone, including anonymous visitors, may browse and search."""
    return True


def can_manage_catalog(actor: Actor | None) -> bool:
    """Create, update, delete and status overrides."""
    return _is_librarian(actor)


def can_view_book_borrowings(actor: Actor | None) -> bool:
    return _is_librarian(actor)


# =============================================================================
# CIRCULATION
# =============================================================================


def can_borrow(actor: Actor | None) -> bool:
    return _is_member(actor)


def can_return(actor: Actor | None) -> bool:
    return _is_librarian(actor)


def can_sweep_overdue(actor: Actor | None) -> bool:
    return _is_librarian(actor)


def can_list_borrowings(actor: Actor | None) -> bool:
    return actor is not None


def can_view_borrowing(actor: Actor | None, borrower_id: int) -> bool:
    """Librarians see every borrowing; members only their own."""
    return _is_librarian(actor) or (actor is not None and actor.id == borrower_id)


def can_view_user_borrowings(actor: Actor | None, user_id: int) -> bool:  # noqa: ARG001
    """Any user's borrowing history, the caller's own included, is librarian-only."""
    return _is_librarian(actor)


# =============================================================================
# USERS
# =============================================================================


def can_list_users(actor: Actor | None) -> bool:
    return _is_librarian(actor)


def can_create_user(actor: Actor | None) -> bool:
    return _is_librarian(actor)


def can_view_user(actor: Actor | None, user_id: int) -> bool:
    return _is_librarian(actor) or (actor is not None and actor.id == user_id)


def can_update_user(actor: Actor | None, user_id: int) -> bool:
    return can_view_user(actor, user_id)


def can_delete_user(actor: Actor | None, user_id: int) -> bool:
    """Librarians may delete anyone but themselves."""
    return _is_librarian(actor) and actor.id != user_id


def can_change_role(actor: Actor | None, user_id: int) -> bool:
    """Librarians may change anyone's role but their own."""
    return _is_librarian(actor) and actor.id != user_id


# =============================================================================
# DASHBOARDS
# =============================================================================


def can_view_librarian_dashboard(actor: Actor | None) -> bool:
    return _is_librarian(actor)


def can_view_member_dashboard(actor: Actor | None) -> bool:
    return _is_member(actor)


# =============================================================================
# SCOPES
# =============================================================================


def scope_borrowings(actor: Actor, query: Select) -> Select:
    """Librarians: every borrowing. Members: their own."""
    if actor.is_librarian:
        return query
    return query.where(BorrowingDB.user_id == actor.id)


def scope_users(actor: Actor, query: Select) -> Select:
    """Librarians: every user. Members: themselves."""
    if actor.is_librarian:
        return query
    return query.where(UserDB.id == actor.id)
