"""
Lending library models.

Pydantic models for the core entities. Repositories convert database rows
into these models so that tools and callers never hold live ORM objects:

- Book: catalog title with its copy counters
- User: patron or librarian identity
- Loan, Reservation: circulation records
- Fine: late-return fine
"""

from .book import Book
from .circulation import Loan, Reservation, ReservationStatus
from .fine import Fine, FineStatus
from .user import Role, User

__all__ = [
    "Book",
    "Fine",
    "FineStatus",
    "Loan",
    "Reservation",
    "ReservationStatus",
    "Role",
    "User",
]
