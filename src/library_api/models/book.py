"""
Book model for the Library Circulation API.

A book is a catalog entry with a number of lendable copies. Its
``available_copies`` and ``status`` are driven by the borrowing ledger;
metadata and manual status overrides are edited by librarians through the
catalog store.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class BookStatus(str, Enum):
    """Closed set of book statuses."""

    AVAILABLE = "available"
    CHECKED_OUT = "checked_out"
    MAINTENANCE = "maintenance"
    LOST = "lost"


def normalize_isbn(value: str | None) -> str | None:
    """Strip hyphens and whitespace and upper-case; blank becomes ``None``."""
    if value is None:
        return None
    normalized = "".join(ch for ch in value if ch != "-" and not ch.isspace()).upper()
    return normalized or None


class Book(BaseModel):
    """
    Represents a book in the library catalog.

    Returned by the catalog store and embedded in API responses.
    """

    id: int = Field(..., description="Catalog identifier")

    title: str = Field(..., description="The title of the book", examples=["The Hobbit"])

    author: str = Field(..., description="Author name", examples=["J.R.R. Tolkien"])

    isbn: str | None = Field(
        None,
        description="Normalized ISBN (no hyphens, upper-case)",
        examples=["9780547928227"],
    )

    description: str | None = Field(None, description="Brief description of the book")

    genre: str | None = Field(None, description="Genre or category", examples=["Fantasy"])

    publication_year: int | None = Field(None, description="Year of publication")

    publisher: str | None = Field(None, description="Publisher name")

    total_copies: int = Field(..., description="Copies owned by the library", ge=1)

    available_copies: int = Field(..., description="Copies currently lendable", ge=0)

    status: BookStatus = Field(default=BookStatus.AVAILABLE, description="Current book status")

    created_at: datetime | None = Field(None, description="When the book was catalogued")

    updated_at: datetime | None = Field(None, description="When the record last changed")

    @property
    def is_available(self) -> bool:
        """A book can be borrowed only when available with a free copy."""
        return self.status == BookStatus.AVAILABLE and self.available_copies > 0

    @property
    def checked_out_copies(self) -> int:
        return self.total_copies - self.available_copies

    @property
    def full_title(self) -> str:
        return f"{self.title} by {self.author}"

    @property
    def published_info(self) -> str | None:
        """Publisher and year, whichever are known."""
        if self.publication_year is None:
            return self.publisher
        if not self.publisher:
            return str(self.publication_year)
        return f"{self.publisher} ({self.publication_year})"

    def summary(self) -> dict:
        """Short representation used in listings."""
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "genre": self.genre,
            "status": self.status.value,
            "available_copies": self.available_copies,
            "total_copies": self.total_copies,
            "available": self.is_available,
        }

    def detail(self) -> dict:
        """Full representation used for single-book responses."""
        data = self.summary()
        data.update(
            {
                "isbn": self.isbn,
                "description": self.description,
                "publication_year": self.publication_year,
                "publisher": self.publisher,
                "published_info": self.published_info,
                "full_title": self.full_title,
                "created_at": self.created_at,
                "updated_at": self.updated_at,
            }
        )
        return data

    model_config = ConfigDict(
        from_attributes=True,
        json_schema_extra={
            "example": {
                "id": 1,
                "title": "The Hobbit",
                "author": "J.R.R. Tolkien",
                "isbn": "9780547928227",
                "genre": "Fantasy",
                "publication_year": 1937,
                "publisher": "Allen & Unwin",
                "total_copies": 3,
                "available_copies": 2,
                "status": "available",
            }
        },
    )
