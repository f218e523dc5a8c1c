"""Authentication endpoints: register, login, token refresh, logout and me."""

import logging

from fastapi import APIRouter, status
from pydantic import BaseModel

from ...auth import TokenType, decode_token, issue_token_pair
from ...database.user_repository import UserCreateSchema, UserRepository
from ...errors import Unauthorized, ValidationFailed
from ..dependencies import AppClock, Config, CurrentActor, Database

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


class LoginRequest(BaseModel):
    email_address: str = ""
    password: str = ""


class RefreshRequest(BaseModel):
    refresh_token: str | None = None


class RegisterRequest(BaseModel):
    email_address: str | None = None
    password: str | None = None
    password_confirmation: str | None = None
    first_name: str | None = None
    last_name: str | None = None


@router.post("/login")
def login(payload: LoginRequest, db: Database, clock: AppClock, config: Config):
    with db.session_scope() as session:
        user = UserRepository(session).authenticate(
            payload.email_address, payload.password, clock.now()
        )

    if user is None:
        logger.info("Failed login for %s", payload.email_address.strip().lower())
        raise Unauthorized("Invalid email or password")

    logger.info("User %s signed in", user.id)
    return {"message": "Login successful", "user": user.public(), **issue_token_pair(user, config)}


@router.post("/register", status_code=status.HTTP_201_CREATED)
def register(payload: RegisterRequest, db: Database, config: Config):
    with db.session_scope() as session:
        user = UserRepository(session).register(UserCreateSchema(**payload.model_dump()))

    logger.info("Registered member %s", user.id)
    return {
        "message": "Registration successful",
        "user": user.public(),
        **issue_token_pair(user, config),
    }


@router.post("/refresh")
def refresh(payload: RefreshRequest, db: Database, config: Config):
    if not payload.refresh_token:
        raise ValidationFailed.single("refresh_token", "Refresh token required")

    try:
        claims = decode_token(payload.refresh_token, TokenType.REFRESH, config)
    except Unauthorized as e:
        raise Unauthorized("Invalid refresh token") from e

    with db.session_scope() as session:
        user = UserRepository(session).get_by_id(claims["user_id"])

    if user is None:
        raise Unauthorized("Invalid refresh token")
    return issue_token_pair(user, config)


@router.delete("/logout")
def logout(actor: CurrentActor):
    # Tokens are stateless; the client discards them
    logger.info("User %s signed out", actor.id)
    return {"message": "Logout successful"}


@router.get("/me")
def me(actor: CurrentActor, db: Database):
    with db.session_scope() as session:
        user = UserRepository(session).get(actor.id)
    return {"user": user.public()}
