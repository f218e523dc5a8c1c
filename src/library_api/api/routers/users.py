"""User administration endpoints."""

from fastapi import APIRouter, status
from pydantic import BaseModel
from sqlalchemy import select

from ...database.borrowing_repository import BorrowingRepository
from ...database.schema import User as UserDB
from ...database.user_repository import UserCreateSchema, UserRepository, UserUpdateSchema
from ...models.user import Role
from ...policies import (
    authorize,
    can_change_role,
    can_create_user,
    can_delete_user,
    can_list_users,
    can_update_user,
    can_view_user,
    can_view_user_borrowings,
    scope_users,
)
from ..dependencies import AppClock, CurrentActor, Database, Pagination

router = APIRouter(prefix="/users", tags=["users"])


class RoleRequest(BaseModel):
    role: Role


@router.get("")
def list_users(actor: CurrentActor, db: Database, pagination: Pagination):
    authorize(can_list_users(actor))
    with db.session_scope() as session:
        page = UserRepository(session).list_users(scope_users(actor, select(UserDB)), pagination)
    return {"users": [user.public() for user in page.items], "pagination": page.pagination()}


@router.post("", status_code=status.HTTP_201_CREATED)
def create_user(payload: UserCreateSchema, actor: CurrentActor, db: Database):
    authorize(can_create_user(actor))
    with db.session_scope() as session:
        user = UserRepository(session).create(payload)
    return {"message": "User created successfully", "user": user.public()}


@router.get("/{user_id}")
def show_user(user_id: int, actor: CurrentActor, db: Database):
    authorize(can_view_user(actor, user_id))
    with db.session_scope() as session:
        user = UserRepository(session).get(user_id)
    return {"user": user.public()}


@router.api_route("/{user_id}", methods=["PATCH", "PUT"])
def update_user(user_id: int, payload: UserUpdateSchema, actor: CurrentActor, db: Database):
    authorize(can_update_user(actor, user_id))
    with db.session_scope() as session:
        user = UserRepository(session).update(user_id, payload)
    return {"message": "User updated successfully", "user": user.public()}


@router.delete("/{user_id}")
def delete_user(user_id: int, actor: CurrentActor, db: Database):
    authorize(can_delete_user(actor, user_id))
    with db.session_scope() as session:
        UserRepository(session).delete(user_id)
    return {"message": "User deleted successfully"}


@router.patch("/{user_id}/change_role")
def change_role(user_id: int, payload: RoleRequest, actor: CurrentActor, db: Database):
    authorize(can_change_role(actor, user_id))
    with db.session_scope() as session:
        user = UserRepository(session).change_role(user_id, payload.role)
    return {"message": "User role updated successfully", "user": user.public()}


@router.get("/{user_id}/borrowings")
def user_borrowings(
    user_id: int, actor: CurrentActor, db: Database, clock: AppClock, pagination: Pagination
):
    authorize(can_view_user_borrowings(actor, user_id))
    now = clock.now()
    with db.session_scope() as session:
        user = UserRepository(session).get(user_id)
        page = BorrowingRepository(session).for_user(user_id, pagination)

    return {
        "user": {
            "id": user.id,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "email_address": user.email_address,
        },
        "borrowings": [borrowing.to_response(now) for borrowing in page.items],
        "pagination": page.pagination(),
    }
