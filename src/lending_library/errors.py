"""
Error taxonomy for lending operations.

Every business-rule failure is raised at the point of violation and
propagates unchanged to the caller; nothing in the core retries these.
Each class carries a stable ``kind`` string that transport adapters map to
their own status codes.
"""


class RepositoryException(Exception):
    """Base exception for repository operations."""

    kind = "repository_error"


class NotFoundError(RepositoryException):
    """Raised when a referenced book, user, loan, reservation or fine does not exist."""

    kind = "not_found"


class UnavailableError(RepositoryException):
    """Raised when no copy is free to borrow, or a free book is reserved."""

    kind = "unavailable"


class ConflictError(RepositoryException):
    """Raised for duplicate active loans/reservations and competing changes."""

    kind = "conflict"


class DuplicateError(ConflictError):
    """Raised when attempting to create a duplicate entity (ISBN, username, email)."""


class InvalidStateError(RepositoryException):
    """Raised when the entity's status forbids the operation."""

    kind = "invalid_state"


class InvalidArgumentError(RepositoryException):
    """Raised for malformed input such as a negative copy count."""

    kind = "invalid_argument"


class ForbiddenError(RepositoryException):
    """Raised when the actor has no rights over the target record."""

    kind = "forbidden"


class InvariantViolationError(RepositoryException):
    """
    Raised when an internal consistency rule is breached.

    This indicates a concurrency bug. It is logged and surfaced, never
    silently corrected.
    """

    kind = "invariant_violation"
