"""
FastAPI dependencies shared by the routers.

The database manager, clock, ledger and configuration live on
``app.state`` (see ``create_app``). Handlers open their own short
``session_scope()``; the actor is resolved in a separate scope that is closed
before the handler runs, so a request never holds two transactions at once.
"""

from typing import Annotated

from fastapi import Depends, Header, Query, Request

from ..auth import Actor, TokenType, decode_token, extract_bearer_token
from ..clock import Clock
from ..config import ServerConfig
from ..database.repository import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE, PaginationParams
from ..database.session import DatabaseManager
from ..database.user_repository import UserRepository
from ..errors import Unauthorized
from ..ledger import BorrowingLedger


def get_config(request: Request) -> ServerConfig:
    return request.app.state.config


def get_db(request: Request) -> DatabaseManager:
    return request.app.state.db


def get_clock(request: Request) -> Clock:
    return request.app.state.clock


def get_ledger(request: Request) -> BorrowingLedger:
    return request.app.state.ledger


def get_optional_actor(
    request: Request,
    authorization: Annotated[str | None, Header()] = None,
) -> Actor | None:
    """
    Resolve the bearer token, if any, to an ``Actor``.

    No header means an anonymous request. A header that is malformed,
    expired or names a deleted user is rejected.
    """
    token = extract_bearer_token(authorization)
    if token is None:
        return None

    payload = decode_token(token, TokenType.ACCESS, request.app.state.config)

    with request.app.state.db.session_scope() as session:
        user = UserRepository(session).get_by_id(payload["user_id"])

    if user is None:
        raise Unauthorized("Invalid token - user not found")
    return Actor.from_user(user)


def get_current_actor(
    actor: Annotated[Actor | None, Depends(get_optional_actor)],
) -> Actor:
    if actor is None:
        raise Unauthorized()
    return actor


def get_pagination(
    page: Annotated[int, Query(ge=1)] = 1,
    per_page: Annotated[int, Query(ge=1, le=MAX_PAGE_SIZE)] = DEFAULT_PAGE_SIZE,
) -> PaginationParams:
    return PaginationParams(page=page, per_page=per_page)


Config = Annotated[ServerConfig, Depends(get_config)]
Database = Annotated[DatabaseManager, Depends(get_db)]
AppClock = Annotated[Clock, Depends(get_clock)]
Ledger = Annotated[BorrowingLedger, Depends(get_ledger)]
OptionalActor = Annotated[Actor | None, Depends(get_optional_actor)]
CurrentActor = Annotated[Actor, Depends(get_current_actor)]
Pagination = Annotated[PaginationParams, Depends(get_pagination)]
