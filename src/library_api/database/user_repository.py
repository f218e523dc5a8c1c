"""
User repository implementation for the Library Circulation API.

This repository manages accounts for members and librarians:

1. **Registration**: account creation with normalized, unique emails and
   bcrypt password hashes
2. **Authentication**: credential checks that record the sign-in time
3. **Administration**: profile updates, role changes and deletion
4. **Scoped Listing**: listings filtered by the caller's scope

Password hashes never leave this module; every read returns the public
``User`` model.
"""

from datetime import datetime

from pydantic import BaseModel
from sqlalchemy import Select, func, select
from sqlalchemy.exc import IntegrityError

from ..auth import MAX_PASSWORD_BYTES, hash_password, verify_password
from ..errors import DuplicateError, FieldError, ValidationFailed
from ..models.user import Role
from ..models.user import User as UserModel
from .repository import BaseRepository, PaginatedResponse, PaginationParams
from .schema import User as UserDB
from .session import RepositoryException, safe_commit, safe_query

MIN_PASSWORD_LENGTH = 8
MAX_NAME_LENGTH = 100


class UserCreateSchema(BaseModel):
    """Schema for creating a new user."""

    email_address: str | None = None
    password: str | None = None
    password_confirmation: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    role: Role = Role.MEMBER


class UserUpdateSchema(BaseModel):
    """Schema for updating a user - all fields optional. Roles change separately."""

    email_address: str | None = None
    password: str | None = None
    password_confirmation: str | None = None
    first_name: str | None = None
    last_name: str | None = None


def normalize_email(email: str | None) -> str | None:
    if email is None:
        return None
    return email.strip().lower() or None


def _validate_password(password: str | None, confirmation: str | None) -> list[FieldError]:
    errors = []
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        errors.append(
            FieldError("password", f"is too short (minimum is {MIN_PASSWORD_LENGTH} characters)")
        )
    elif len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        errors.append(
            FieldError("password", f"is too long (maximum is {MAX_PASSWORD_BYTES} bytes)")
        )
    if confirmation is not None and confirmation != password:
        errors.append(FieldError("password_confirmation", "doesn't match Password"))
    return errors


def _validate_profile(values: dict) -> list[FieldError]:
    errors = []
    email = values.get("email_address")
    if not email:
        errors.append(FieldError("email_address", "can't be blank"))
    elif "@" not in email or len(email) > 255:
        errors.append(FieldError("email_address", "is invalid"))

    for field in ("first_name", "last_name"):
        value = values.get(field)
        if value and len(value) > MAX_NAME_LENGTH:
            errors.append(
                FieldError(field, f"is too long (maximum is {MAX_NAME_LENGTH} characters)")
            )
    return errors


class UserRepository(BaseRepository[UserDB, UserModel]):
    """Repository for user accounts."""

    entity_name = "User"

    @property
    def model_class(self):
        return UserDB

    @property
    def response_schema(self):
        return UserModel

    def create(self, data: UserCreateSchema) -> UserModel:
        """
        Create a new user with a hashed password.

        Raises:
            ValidationFailed: Listing every violated field
            DuplicateError: If the email is already registered
        """
        values = {
            "email_address": normalize_email(data.email_address),
            "first_name": data.first_name,
            "last_name": data.last_name,
        }
        errors = _validate_profile(values) + _validate_password(
            data.password, data.password_confirmation
        )
        if errors:
            raise ValidationFailed(errors)

        self._ensure_email_free(values["email_address"])

        user = UserDB(
            **values,
            role=data.role,
            password_digest=hash_password(data.password),
        )
        self.session.add(user)
        self._commit_account_change("create user")
        self.session.refresh(user)
        return self._to_response_model(user)

    def register(self, data: UserCreateSchema) -> UserModel:
        """Self-service sign-up; always creates a member."""
        return self.create(data.model_copy(update={"role": Role.MEMBER}))

    def authenticate(self, email: str, password: str, now: datetime) -> UserModel | None:
        """
        Check credentials and record the sign-in.

        Returns:
            The user, or None if the email is unknown or the password wrong
        """
        user = self._get_db_by_email(normalize_email(email))
        if user is None or not password or not verify_password(password, user.password_digest):
            return None

        user.last_signed_in_at = now
        safe_commit(self.session, "record sign in")
        self.session.refresh(user)
        return self._to_response_model(user)

    def get_by_email(self, email: str) -> UserModel | None:
        user = self._get_db_by_email(normalize_email(email))
        return self._to_response_model(user) if user else None

    def update(self, user_id: int, data: UserUpdateSchema) -> UserModel:
        """
        Update profile fields and optionally the password.

        Raises:
            NotFound: If the user doesn't exist
            ValidationFailed: Listing every violated field
            DuplicateError: If the new email belongs to another account
        """
        user = self._require_db_obj(user_id)
        changes = data.model_dump(exclude_unset=True)
        password = changes.pop("password", None)
        confirmation = changes.pop("password_confirmation", None)
        if "email_address" in changes:
            changes["email_address"] = normalize_email(changes["email_address"])

        merged = {
            "email_address": user.email_address,
            "first_name": user.first_name,
            "last_name": user.last_name,
        }
        merged.update(changes)

        errors = _validate_profile(merged)
        if password is not None or confirmation is not None:
            errors += _validate_password(password, confirmation)
        if errors:
            raise ValidationFailed(errors)

        if changes.get("email_address", user.email_address) != user.email_address:
            self._ensure_email_free(changes["email_address"], exclude_id=user.id)

        for field, value in changes.items():
            setattr(user, field, value)
        if password is not None:
            user.password_digest = hash_password(password)

        self._commit_account_change("update user")
        self.session.refresh(user)
        return self._to_response_model(user)

    def change_role(self, user_id: int, role: Role) -> UserModel:
        """
        Set a user's role.

        Raises:
            NotFound: If the user doesn't exist
        """
        user = self._require_db_obj(user_id)
        user.role = role
        safe_commit(self.session, "change role")
        self.session.refresh(user)
        return self._to_response_model(user)

    def list_users(
        self, query: Select | None = None, pagination: PaginationParams | None = None
    ) -> PaginatedResponse[UserModel]:
        """
        Paginated listing, newest accounts first.

        Args:
            query: A pre-scoped select over users (see ``policies.scope_users``)
        """
        query = query if query is not None else select(UserDB)
        query = query.order_by(UserDB.created_at.desc(), UserDB.id.desc())
        return self._paginate_query(query, pagination)

    def count_by_role(self, role: Role) -> int:
        return (
            safe_query(
                self.session,
                lambda s: s.execute(
                    select(func.count()).select_from(UserDB).where(UserDB.role == role)
                ).scalar(),
                "Failed to count users by role",
            )
            or 0
        )

    def _get_db_by_email(self, email: str | None) -> UserDB | None:
        if not email:
            return None
        return safe_query(
            self.session,
            lambda s: s.execute(
                select(UserDB).where(UserDB.email_address == email)
            ).scalar_one_or_none(),
            "Failed to get user by email",
        )

    def _ensure_email_free(self, email: str, exclude_id: int | None = None) -> None:
        query = select(func.count()).select_from(UserDB).where(UserDB.email_address == email)
        if exclude_id is not None:
            query = query.where(UserDB.id != exclude_id)

        taken = safe_query(
            self.session, lambda s: s.execute(query).scalar(), "Failed to check email existence"
        )
        if taken:
            raise DuplicateError("email_address", "has already been taken")

    def _commit_account_change(self, operation: str) -> None:
        try:
            self.session.flush()
        except IntegrityError as e:
            self.session.rollback()
            if "email_address" in str(e.orig):
                raise DuplicateError("email_address", "has already been taken") from e
            raise RepositoryException(f"Failed to {operation}: {e.orig}") from e
        safe_commit(self.session, operation)
