"""
Repository pattern implementation for the lending library.

Repositories are the data access layer: they turn SQLAlchemy rows into
pydantic models and express every invariant-bearing change as a single
conditional statement. Two kinds of methods live on them:

1. **Catalog methods** (create/update/delete of books and users) are
   standalone administrative actions and commit their own transaction.
2. **Lending building blocks** (ledger, loan, queue and fine steps) only
   flush. ``CirculationRepository`` composes them and commits once, so a
   compound operation either lands completely or not at all.
"""

from abc import ABC, abstractmethod
from typing import Generic, TypeVar

from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..errors import (
    ConflictError,
    DuplicateError,
    ForbiddenError,
    InvalidArgumentError,
    InvalidStateError,
    InvariantViolationError,
    NotFoundError,
    RepositoryException,
    UnavailableError,
)
from .schema import Base
from .session import safe_commit, safe_query

__all__ = [
    "BaseRepository",
    "ConflictError",
    "DuplicateError",
    "ForbiddenError",
    "InvalidArgumentError",
    "InvalidStateError",
    "InvariantViolationError",
    "NotFoundError",
    "PaginatedResponse",
    "PaginationParams",
    "RepositoryException",
    "UnavailableError",
]

ModelType = TypeVar("ModelType", bound=Base)
CreateSchemaType = TypeVar("CreateSchemaType", bound=BaseModel)
ResponseSchemaType = TypeVar("ResponseSchemaType", bound=BaseModel)


class PaginationParams(BaseModel):
    """Standard pagination parameters for list operations."""

    page: int = 1
    page_size: int = 20

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size

    def validate_params(self) -> None:
        """Validate pagination parameters."""
        if self.page < 1:
            raise InvalidArgumentError("Page must be >= 1")
        if self.page_size < 1 or self.page_size > 100:
            raise InvalidArgumentError("Page size must be between 1 and 100")


class PaginatedResponse(BaseModel, Generic[ResponseSchemaType]):
    """Standard paginated response for list operations."""

    items: list[ResponseSchemaType]
    total: int
    page: int
    page_size: int
    total_pages: int
    has_next: bool
    has_previous: bool

    @classmethod
    def build(
        cls, items: list, total: int, pagination: PaginationParams
    ) -> "PaginatedResponse":
        return cls(
            items=items,
            total=total,
            page=pagination.page,
            page_size=pagination.page_size,
            total_pages=(total + pagination.page_size - 1) // pagination.page_size,
            has_next=pagination.page * pagination.page_size < total,
            has_previous=pagination.page > 1,
        )


class BaseRepository(ABC, Generic[ModelType, CreateSchemaType, ResponseSchemaType]):
    """
    Abstract base repository providing common read and create operations.

    All queries go through ``safe_query`` so database failures surface as
    ``RepositoryException`` rather than driver-specific errors.
    """

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
        """Return the pydantic response schema."""

    @property
    def entity_name(self) -> str:
        return self.model_class.__name__

    def _to_response_model(self, db_obj: ModelType) -> ResponseSchemaType:
        """Convert database model to pydantic response model."""
        return self.response_schema.model_validate(db_obj, from_attributes=True)

    def _get_db(self, id: int) -> ModelType | None:
        query = select(self.model_class).where(self.model_class.id == id)
        return safe_query(
            self.session,
            lambda s: s.execute(query).scalar_one_or_none(),
            f"Failed to get {self.entity_name} by ID",
        )

    def _get_db_or_raise(self, id: int) -> ModelType:
        db_obj = self._get_db(id)
        if db_obj is None:
            raise NotFoundError(f"{self.entity_name} {id} not found")
        return db_obj

    def get_by_id(self, id: int) -> ResponseSchemaType | None:
        """
        Get entity by ID.

        Returns:
            Pydantic model or None if not found
        """
        db_obj = self._get_db(id)
        if db_obj is None:
            return None
        return self._to_response_model(db_obj)

    def get(self, id: int) -> ResponseSchemaType:
        """
        Get entity by ID.

        Raises:
            NotFoundError: If the entity does not exist
        """
        return self._to_response_model(self._get_db_or_raise(id))

    def create(self, data: CreateSchemaType) -> ResponseSchemaType:
        """
        Create new entity and commit.

        Raises:
            DuplicateError: If a unique column collides
            RepositoryException: On other database errors
        """
        try:
            db_obj = self.model_class(**self._create_values(data))
            self.session.add(db_obj)
            self.session.flush()
        except IntegrityError as e:
            self.session.rollback()
            raise DuplicateError(f"{self.entity_name} already exists: {e.orig!s}") from e
        except SQLAlchemyError as e:
            self.session.rollback()
            raise RepositoryException(f"Database error: {e!s}") from e

        safe_commit(self.session, f"create {self.entity_name}")
        self.session.refresh(db_obj)
        return self._to_response_model(db_obj)

    def _create_values(self, data: CreateSchemaType) -> dict:
        """Column values for a new row; override to derive columns."""
        return data.model_dump()

    def exists(self, id: int) -> bool:
        """Check if entity exists by ID."""
        query = select(func.count()).select_from(self.model_class).where(self.model_class.id == id)
        count = safe_query(
            self.session, lambda s: s.execute(query).scalar(), "Failed to check existence"
        )
        return count > 0
