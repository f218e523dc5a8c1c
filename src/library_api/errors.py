"""
Error taxonomy for the Library Circulation API.

Every failure raised by the ledger, the stores or the authorization layer is
a ``LibraryError`` carrying a machine-readable ``kind`` and a human-readable
message. The HTTP layer is the only place these are turned into responses
(see ``api/errors.py``).
"""

import enum
from dataclasses import dataclass


class ErrorKind(str, enum.Enum):
    """Machine-readable error kinds exposed to API clients."""

    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    ALREADY_BORROWED = "already_borrowed"
    BOOK_UNAVAILABLE = "book_unavailable"
    ALREADY_RETURNED = "already_returned"
    VALIDATION_FAILED = "validation_failed"
    CONFLICT_RETRY_EXHAUSTED = "conflict_retry_exhausted"
    UNAUTHORIZED = "unauthorized"


@dataclass(frozen=True)
class FieldError:
    """A single violated field constraint."""

    field: str
    message: str

    def as_dict(self) -> dict[str, str]:
        return {"field": self.field, "message": self.message}


class LibraryError(Exception):
    """Base class for all domain errors."""

    kind: ErrorKind

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def as_dict(self) -> dict:
        return {"kind": self.kind.value, "message": self.message}


class Forbidden(LibraryError):
    """The actor lacks the role required for the action."""

    kind = ErrorKind.FORBIDDEN

    def __init__(self, message: str = "You are not authorized to perform this action"):
        super().__init__(message)


class NotFound(LibraryError):
    """A referenced book, borrowing or user does not exist."""

    kind = ErrorKind.NOT_FOUND

    @classmethod
    def for_entity(cls, entity: str, entity_id: int | str) -> "NotFound":
        return cls(f"{entity} {entity_id} not found")


class AlreadyBorrowed(LibraryError):
    """The user already holds an active borrowing of this book."""

    kind = ErrorKind.ALREADY_BORROWED

    def __init__(self, message: str = "You already have this book borrowed"):
        super().__init__(message)


class BookUnavailable(LibraryError):
    """The book has no lendable copy or is not in the available status."""

    kind = ErrorKind.BOOK_UNAVAILABLE

    def __init__(self, message: str = "Book is not available for borrowing"):
        super().__init__(message)


class AlreadyReturned(LibraryError):
    """The borrowing has already been returned."""

    kind = ErrorKind.ALREADY_RETURNED

    def __init__(self, message: str = "Book has already been returned"):
        super().__init__(message)


class ValidationFailed(LibraryError):
    """One or more field constraints were violated.

    Carries every violated field, not just the first one found.
    """

    kind = ErrorKind.VALIDATION_FAILED

    def __init__(self, errors: list[FieldError], message: str = "Validation failed"):
        super().__init__(message)
        self.errors = list(errors)

    @classmethod
    def single(cls, field: str, message: str) -> "ValidationFailed":
        return cls([FieldError(field, message)])

    def as_dict(self) -> dict:
        data = super().as_dict()
        data["fields"] = [error.as_dict() for error in self.errors]
        return data


class DuplicateError(ValidationFailed):
    """A unique field (email, isbn) is already taken."""

    def __init__(self, field: str, message: str):
        super().__init__([FieldError(field, message)], message=message)


class ConflictRetryExhausted(LibraryError):
    """The store stayed contended after the bounded retry budget.

    This is a transient failure; the operation left no partial state and
    may be retried by the client.
    """

    kind = ErrorKind.CONFLICT_RETRY_EXHAUSTED

    def __init__(self, operation: str, attempts: int):
        super().__init__(f"Could not complete {operation} after {attempts} attempts, retry later")
        self.operation = operation
        self.attempts = attempts


class Unauthorized(LibraryError):
    """Authentication is missing, malformed or expired."""

    kind = ErrorKind.UNAUTHORIZED

    def __init__(self, message: str = "Authentication token required"):
        super().__init__(message)
