"""
Repository pattern implementation for the Library Circulation API.

This module provides the data access layer between the HTTP handlers and
the database:

1. **Transport Separation**: handlers and the ledger never build SQL
2. **Testability**: repositories work on any ``Session``, including the
   temporary SQLite databases used by the test-suite
3. **Consistency**: all listings paginate and all reads return pydantic
   models, never live ORM objects

Repositories never open their own transactions; they run inside the session
given to them, normally from ``DatabaseManager.session_scope()``.
"""

from abc import ABC, abstractmethod
from typing import Generic, TypeVar

from pydantic import BaseModel, Field
from sqlalchemy import Select, func, select
from sqlalchemy.orm import Session

from ..errors import NotFound, ValidationFailed
from .schema import Base
from .session import RepositoryException, safe_commit, safe_query

# Type variables for generic repository
ModelType = TypeVar("ModelType", bound=Base)
ResponseSchemaType = TypeVar("ResponseSchemaType", bound=BaseModel)

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

__all__ = [
    "BaseRepository",
    "PaginatedResponse",
    "PaginationParams",
    "RepositoryException",
]


class PaginationParams(BaseModel):
    """Standard pagination parameters for list operations."""

    page: int = 1
    per_page: int = DEFAULT_PAGE_SIZE

    @property
    def offset(self) -> int:
        """Calculate offset for SQL queries."""
        return (self.page - 1) * self.per_page

    def validate_params(self) -> None:
        """
        Validate pagination parameters.

        Raises:
            ValidationFailed: If page < 1 or per_page outside 1..100
        """
        if self.page < 1:
            raise ValidationFailed.single("page", "must be greater than or equal to 1")
        if self.per_page < 1 or self.per_page > MAX_PAGE_SIZE:
            raise ValidationFailed.single("per_page", f"must be between 1 and {MAX_PAGE_SIZE}")


class PaginatedResponse(BaseModel, Generic[ResponseSchemaType]):
    """
    Standard paginated response.

    The same structure is used for every paginated listing in the API.
    """

    items: list[ResponseSchemaType] = Field(default_factory=list)
    total: int
    page: int
    per_page: int
    total_pages: int
    has_next: bool
    has_previous: bool

    def pagination(self) -> dict:
        """Pagination block as rendered in listing responses."""
        return {
            "current_page": self.page,
            "per_page": self.per_page,
            "total_count": self.total,
            "total_pages": self.total_pages,
        }


class BaseRepository(ABC, Generic[ModelType, ResponseSchemaType]):
    """
    Abstract base repository providing common read and delete operations.

    Subclasses supply the ORM class and the pydantic response schema, and
    add their own create/update logic with domain validation.
    """

    #: Entity name used in ``NotFound`` messages
    entity_name: str = "Record"

    def __init__(self, session: Session):
        """Initialize repository with database session."""
        self.session = session

    @property
    @abstractmethod
    def model_class(self) -> type[ModelType]:
        """Return the SQLAlchemy model class."""

    @property
    @abstractmethod
    def response_schema(self) -> type[ResponseSchemaType]:
        """Return the Pydantic response schema."""

    def _to_response_model(self, db_obj: ModelType) -> ResponseSchemaType:
        """Convert database model to Pydantic response model."""
        return self.response_schema.model_validate(db_obj, from_attributes=True)

    def _get_db_obj(self, entity_id: int) -> ModelType | None:
        return safe_query(
            self.session,
            lambda s: s.get(self.model_class, entity_id),
            f"Failed to get {self.model_class.__name__} by ID",
        )

    def _require_db_obj(self, entity_id: int) -> ModelType:
        db_obj = self._get_db_obj(entity_id)
        if db_obj is None:
            raise NotFound.for_entity(self.entity_name, entity_id)
        return db_obj

    def get_by_id(self, entity_id: int) -> ResponseSchemaType | None:
        """
        Get entity by ID.

        Returns:
            Pydantic model or None if not found
        """
        db_obj = self._get_db_obj(entity_id)
        if db_obj is None:
            return None
        return self._to_response_model(db_obj)

    def get(self, entity_id: int) -> ResponseSchemaType:
        """
        Get entity by ID or fail.

        Raises:
            NotFound: If no entity has this ID
        """
        return self._to_response_model(self._require_db_obj(entity_id))

    def count(self) -> int:
        return (
            safe_query(
                self.session,
                lambda s: s.execute(select(func.count()).select_from(self.model_class)).scalar(),
                f"Failed to count {self.model_class.__name__}",
            )
            or 0
        )

    def delete(self, entity_id: int) -> None:
        """
        Delete entity by ID.

        Raises:
            NotFound: If no entity has this ID
            RepositoryException: On database errors
        """
        db_obj = self._require_db_obj(entity_id)
        self.session.delete(db_obj)
        safe_commit(self.session, f"delete {self.model_class.__name__}")

    def _paginate_query(
        self, query: Select, pagination: PaginationParams | None, convert=None
    ) -> PaginatedResponse:
        """Count, slice and convert a select statement."""
        if not pagination:
            pagination = PaginationParams()

        pagination.validate_params()
        convert = convert or self._to_response_model

        # Get total count
        count_query = select(func.count()).select_from(query.order_by(None).subquery())
        total = (
            safe_query(
                self.session,
                lambda s: s.execute(count_query).scalar(),
                "Failed to count in pagination",
            )
            or 0
        )

        # Apply pagination
        query = query.offset(pagination.offset).limit(pagination.per_page)
        results = safe_query(
            self.session,
            lambda s: s.execute(query).unique().scalars().all(),
            "Failed to get paginated results",
        )

        items = [convert(item) for item in results]

        return PaginatedResponse(
            items=items,
            total=total,
            page=pagination.page,
            per_page=pagination.per_page,
            total_pages=(total + pagination.per_page - 1) // pagination.per_page,
            has_next=pagination.page * pagination.per_page < total,
            has_previous=pagination.page > 1,
        )
