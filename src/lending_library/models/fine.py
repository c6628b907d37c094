"""
Fine model for the lending library.

A fine is derived from a returned loan: one fine per loan at most, created
or recomputed when the loan comes back late, and settled by a librarian.
"""

from datetime import date
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class FineStatus(str, Enum):
    """Status of a fine."""

    PENDING = "PENDING"
    PAID = "PAID"
    WAIVED = "WAIVED"

    @property
    def is_settled(self) -> bool:
        return self != FineStatus.PENDING


class Fine(BaseModel):
    """Represents a late-return fine."""

    id: int = Field(..., ge=1)

    loan_id: int = Field(..., description="Loan the fine was assessed on")

    user_id: int = Field(..., description="User who owes the fine")

    amount: Decimal = Field(
        ...,
        description="Amount owed",
        gt=0,
        max_digits=10,
        decimal_places=2,
    )

    issue_date: date = Field(..., description="Date the amount was (re)assessed")

    paid_date: date | None = None

    status: FineStatus = Field(default=FineStatus.PENDING)

    @property
    def is_outstanding(self) -> bool:
        return self.status == FineStatus.PENDING

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "id": 5,
                "loan_id": 17,
                "user_id": 42,
                "amount": "5.00",
                "issue_date": "2024-01-20",
                "paid_date": None,
                "status": "PENDING",
            }
        },
    )
