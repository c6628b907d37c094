"""
Database package for the lending library.

This package provides:
- SQLAlchemy schema definitions (schema.py)
- Session management and connection handling (session.py)
- Repositories for the catalog, users and every lending component

Correctness under concurrent workers lives here: invariants are carried by
constraints, partial unique indexes and conditional UPDATE statements, and
``CirculationRepository`` wraps each compound operation in one transaction.
"""

from .book_repository import BookCreateSchema, BookRepository, BookSearchParams, BookUpdateSchema
from .circulation_repository import (
    BorrowResult,
    CancelResult,
    CirculationRepository,
    ExpirySweepResult,
    ReturnResult,
)
from .fine_repository import FineAction, FineRepository, FineStanding, decide_fine_action
from .loan_repository import LoanRepository
from .repository import (
    BaseRepository,
    ConflictError,
    DuplicateError,
    ForbiddenError,
    InvalidArgumentError,
    InvalidStateError,
    InvariantViolationError,
    NotFoundError,
    PaginatedResponse,
    PaginationParams,
    RepositoryException,
    UnavailableError,
)
from .reservation_repository import ReservationRepository
from .schema import Base, Book, Fine, Loan, Reservation, User
from .session import (
    DatabaseManager,
    get_db_manager,
    get_session,
    reset_db_manager,
    safe_commit,
    safe_query,
    session_scope,
)
from .user_repository import UserCreateSchema, UserRepository, UserUpdateSchema

__all__ = [
    "Base",
    "BaseRepository",
    "Book",
    "BookCreateSchema",
    "BookRepository",
    "BookSearchParams",
    "BookUpdateSchema",
    "BorrowResult",
    "CancelResult",
    "CirculationRepository",
    "ConflictError",
    "DatabaseManager",
    "DuplicateError",
    "ExpirySweepResult",
    "Fine",
    "FineAction",
    "FineRepository",
    "FineStanding",
    "ForbiddenError",
    "InvalidArgumentError",
    "InvalidStateError",
    "InvariantViolationError",
    "Loan",
    "LoanRepository",
    "NotFoundError",
    "PaginatedResponse",
    "PaginationParams",
    "RepositoryException",
    "Reservation",
    "ReservationRepository",
    "ReturnResult",
    "UnavailableError",
    "User",
    "UserCreateSchema",
    "UserRepository",
    "UserUpdateSchema",
    "decide_fine_action",
    "get_db_manager",
    "get_session",
    "reset_db_manager",
    "safe_commit",
    "safe_query",
    "session_scope",
]
