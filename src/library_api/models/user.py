"""
User model for the Library Circulation API.

Users are either members, who borrow books, or librarians, who manage the
catalog and process returns. The password hash never leaves the store.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class Role(str, Enum):
    """Closed set of user roles."""

    MEMBER = "member"
    LIBRARIAN = "librarian"


class User(BaseModel):
    """Public view of a user account."""

    id: int = Field(..., description="User identifier")

    email_address: str = Field(
        ...,
        description="Login email, stored stripped and lower-cased",
        examples=["reader@example.com"],
    )

    first_name: str | None = Field(None, description="Given name")

    last_name: str | None = Field(None, description="Family name")

    role: Role = Field(default=Role.MEMBER, description="Authorization role")

    last_signed_in_at: datetime | None = Field(None, description="Last successful login")

    created_at: datetime | None = None

    updated_at: datetime | None = None

    @property
    def is_librarian(self) -> bool:
        return self.role == Role.LIBRARIAN

    @property
    def is_member(self) -> bool:
        return self.role == Role.MEMBER

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part)

    def public(self) -> dict:
        return {
            "id": self.id,
            "email_address": self.email_address,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "role": self.role.value,
            "last_signed_in_at": self.last_signed_in_at,
            "created_at": self.created_at,
        }

    model_config = ConfigDict(from_attributes=True)
