"""
Book model for the lending library.

A book is a catalog title together with its copy counters. The counters are
owned by the Inventory Ledger; this model is the read-side view returned by
repositories and tools.
"""

from datetime import date, datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class Book(BaseModel):
    """
    Represents a book in the library catalog.

    ``available_copies`` is the number of copies on the shelf right now;
    ``total_copies - available_copies`` copies are out on loan.
    """

    id: int = Field(
        ...,
        description="Catalog identity of the book",
        ge=1,
    )

    isbn: str = Field(
        ...,
        description="International Standard Book Number (ISBN-10 or ISBN-13)",
        examples=["9780134685479", "978-0-06-112008-4"],
    )

    title: str = Field(
        ...,
        description="The title of the book",
        min_length=1,
        max_length=500,
        examples=["The Great Gatsby", "To Kill a Mockingbird"],
    )

    author: str = Field(
        ...,
        description="Display name of the author",
        min_length=1,
        max_length=200,
    )

    genre: str | None = Field(
        None,
        description="Literary genre or category of the book",
        examples=["Fiction", "Science Fiction", "Biography"],
    )

    publication_date: date | None = Field(
        None,
        description="Date the edition was published",
    )

    total_copies: int = Field(
        ...,
        description="Total number of copies owned by the library",
        ge=0,
    )

    available_copies: int = Field(
        ...,
        description="Number of copies currently free to borrow",
        ge=0,
    )

    created_at: datetime | None = Field(
        None,
        description="Timestamp when the book was added to the catalog",
    )

    updated_at: datetime | None = Field(
        None,
        description="Timestamp when the book record was last updated",
    )

    @field_validator("isbn")
    @classmethod
    def normalize_isbn(cls, v: str) -> str:
        """Normalize ISBN by removing hyphens and spaces for consistent storage."""
        normalized = v.replace("-", "").replace(" ", "")
        if len(normalized) not in (10, 13):
            raise ValueError("ISBN must be 10 or 13 characters")
        return normalized

    @model_validator(mode="after")
    def validate_copy_counts(self) -> "Book":
        """Available copies can never exceed the copies owned."""
        if self.available_copies > self.total_copies:
            raise ValueError("Available copies cannot exceed total copies")
        return self

    @property
    def copies_on_loan(self) -> int:
        return self.total_copies - self.available_copies

    @property
    def is_available(self) -> bool:
        return self.available_copies > 0

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "id": 1,
                "isbn": "9780134685479",
                "title": "Effective Java",
                "author": "Joshua Bloch",
                "genre": "Programming",
                "total_copies": 3,
                "available_copies": 2,
            }
        },
    )
