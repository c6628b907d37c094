"""
User model for the lending library.

Users are patrons who borrow and reserve books, and librarians who also
administer the catalog and fines. Authentication happens outside this
package; here a user is only an identity with a role.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class Role(str, Enum):
    """Role of a library user."""

    PATRON = "PATRON"
    LIBRARIAN = "LIBRARIAN"


class User(BaseModel):
    """Represents a registered library user."""

    id: int = Field(..., ge=1)

    username: str = Field(
        ...,
        description="Unique login name",
        min_length=3,
        max_length=50,
        pattern=r"^[a-zA-Z0-9_.-]+$",
    )

    email: EmailStr = Field(..., description="Unique contact email")

    full_name: str | None = Field(None, max_length=200)

    role: Role = Field(default=Role.PATRON)

    created_at: datetime | None = None

    @property
    def is_librarian(self) -> bool:
        return self.role == Role.LIBRARIAN

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)
