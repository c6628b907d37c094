"""
Circulation models for the lending library.

These models represent the movement of copies between shelf and patron:
- Loan: a patron holding a copy, active until it is returned
- Reservation: a patron waiting for a copy of an unavailable book

Reservation lifecycle::

    PENDING --(copy frees up, FIFO)--> AVAILABLE
    AVAILABLE --(patron borrows)--> FULFILLED
    AVAILABLE --(hold window elapses)--> EXPIRED
    PENDING | AVAILABLE --(owner or librarian cancels)--> CANCELED
"""

from datetime import date, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ReservationStatus(str, Enum):
    """Status of a reservation."""

    PENDING = "PENDING"
    AVAILABLE = "AVAILABLE"
    FULFILLED = "FULFILLED"
    EXPIRED = "EXPIRED"
    CANCELED = "CANCELED"

    @classmethod
    def active(cls) -> tuple["ReservationStatus", ...]:
        """Statuses that still hold a place in the queue."""
        return (cls.PENDING, cls.AVAILABLE)

    @property
    def is_terminal(self) -> bool:
        return self not in self.active()


class Loan(BaseModel):
    """
    Represents one borrowing of one copy.

    A loan is active while ``return_date`` is unset. Loans are never
    deleted; a returned loan is the historical record of the borrowing.
    """

    id: int = Field(..., ge=1)

    # Cleared when the book is withdrawn from the catalog
    book_id: int | None = Field(None, description="Borrowed book")

    user_id: int = Field(..., description="Borrowing user")

    borrow_date: date = Field(..., description="Date the copy left the shelf")

    due_date: date = Field(..., description="Date the copy should be back")

    return_date: date | None = Field(
        None,
        description="Date the copy came back; unset while the loan is active",
    )

    @model_validator(mode="after")
    def validate_dates(self) -> "Loan":
        """Validate date relationships."""
        if self.due_date < self.borrow_date:
            raise ValueError("Due date cannot be before borrow date")
        if self.return_date and self.return_date < self.borrow_date:
            raise ValueError("Return date cannot be before borrow date")
        return self

    @property
    def is_active(self) -> bool:
        return self.return_date is None

    def is_overdue(self, today: date | None = None) -> bool:
        """An active loan past its due date."""
        today = today or date.today()
        return self.is_active and self.due_date < today

    @property
    def overdue_days(self) -> int | None:
        """Days between due date and return date (negative when early)."""
        if self.return_date is None:
            return None
        return (self.return_date - self.due_date).days

    @property
    def loan_period_days(self) -> int:
        return (self.due_date - self.borrow_date).days

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "id": 17,
                "book_id": 3,
                "user_id": 42,
                "borrow_date": "2024-01-01",
                "due_date": "2024-01-15",
                "return_date": None,
            }
        },
    )


class Reservation(BaseModel):
    """
    Represents a patron's place in a book's waiting list.

    ``expiration_time`` is only set once the reservation is promoted to a
    hold (``AVAILABLE``).
    """

    id: int = Field(..., ge=1)

    book_id: int | None = Field(None, description="Reserved book")

    user_id: int = Field(..., description="Waiting user")

    reservation_time: datetime = Field(..., description="When the patron joined the queue")

    status: ReservationStatus = Field(default=ReservationStatus.PENDING)

    expiration_time: datetime | None = Field(
        None,
        description="When an AVAILABLE hold lapses",
    )

    @model_validator(mode="after")
    def validate_hold(self) -> "Reservation":
        if self.status == ReservationStatus.AVAILABLE and self.expiration_time is None:
            raise ValueError("An available hold must have an expiration time")
        return self

    @property
    def is_active(self) -> bool:
        return self.status in ReservationStatus.active()

    @property
    def is_hold(self) -> bool:
        return self.status == ReservationStatus.AVAILABLE

    def is_expired(self, now: datetime | None = None) -> bool:
        """A hold whose window has passed."""
        if not self.is_hold or self.expiration_time is None:
            return False
        return self.expiration_time < (now or datetime.now())

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)
