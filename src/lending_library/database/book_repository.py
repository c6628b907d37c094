"""
Book repository implementation for the lending library.

This repository is both the catalog (add, search, edit, withdraw titles) and
the Inventory Ledger: the single source of truth for whether a copy is free.

Ledger changes are never read-modify-write in Python. Each one is a single
conditional UPDATE whose WHERE clause carries the invariant, e.g.::

    UPDATE books SET available_copies = available_copies - 1
    WHERE id = :id AND available_copies > 0

A zero-row result means the invariant would have been broken, so two
workers racing for the last copy get exactly one success.
"""

import logging
from datetime import date

from pydantic import BaseModel, Field, field_validator
from sqlalchemy import and_, case, func, select, update

from ..errors import (
    ConflictError,
    DuplicateError,
    InvalidArgumentError,
    InvariantViolationError,
    NotFoundError,
    UnavailableError,
)
from ..models.book import Book as BookModel
from ..models.circulation import ReservationStatus
from .repository import BaseRepository, PaginatedResponse, PaginationParams
from .schema import Book as BookDB
from .schema import Loan as LoanDB
from .schema import Reservation as ReservationDB
from .session import safe_commit, safe_query

logger = logging.getLogger(__name__)


def _normalize_isbn(v: str) -> str:
    normalized = v.replace("-", "").replace(" ", "")
    if len(normalized) not in (10, 13):
        raise ValueError("ISBN must be 10 or 13 characters")
    return normalized


class BookCreateSchema(BaseModel):
    """Schema for adding a title to the catalog. All copies start on the shelf."""

    isbn: str
    title: str = Field(..., min_length=1, max_length=500)
    author: str = Field(..., min_length=1, max_length=200)
    genre: str | None = None
    publication_date: date | None = None
    description: str | None = None
    total_copies: int = Field(default=1, ge=0)

    @field_validator("isbn")
    @classmethod
    def normalize_isbn(cls, v: str) -> str:
        return _normalize_isbn(v)

    @field_validator("publication_date")
    @classmethod
    def validate_publication_date(cls, v: date | None) -> date | None:
        if v is not None and v > date.today():
            raise ValueError("Publication date cannot be in the future")
        return v


class BookUpdateSchema(BaseModel):
    """Schema for editing a book - all fields optional."""

    isbn: str | None = None
    title: str | None = Field(None, min_length=1, max_length=500)
    author: str | None = Field(None, min_length=1, max_length=200)
    genre: str | None = None
    publication_date: date | None = None
    description: str | None = None
    total_copies: int | None = None

    @field_validator("isbn")
    @classmethod
    def normalize_isbn(cls, v: str | None) -> str | None:
        return _normalize_isbn(v) if v is not None else None


class BookSearchParams(BaseModel):
    """Search parameters for finding books."""

    title: str | None = None  # Title contains
    author: str | None = None  # Author contains
    genre: str | None = None  # Genre contains
    isbn: str | None = None  # Exact ISBN
    available_only: bool = False


class BookRepository(BaseRepository[BookDB, BookCreateSchema, BookModel]):
    """
    Repository for the catalog and the Inventory Ledger.

    Catalog edits commit on their own. Ledger methods
    (``decrement_available``, ``increment_available``, ``resize``) only
    flush; the surrounding circulation transaction decides when they land.
    """

    @property
    def model_class(self):
        return BookDB

    @property
    def response_schema(self):
        return BookModel

    def _create_values(self, data: BookCreateSchema) -> dict:
        values = data.model_dump()
        values["available_copies"] = data.total_copies
        return values

    def create(self, data: BookCreateSchema) -> BookModel:
        """Add a title; ISBN collisions raise DuplicateError."""
        if self.get_by_isbn(data.isbn) is not None:
            raise DuplicateError(f"Book with ISBN {data.isbn} already exists")
        book = super().create(data)
        logger.info("Book added: '%s' (%d copies)", book.title, book.total_copies)
        return book

    def get_by_isbn(self, isbn: str) -> BookModel | None:
        query = select(BookDB).where(BookDB.isbn == _normalize_isbn(isbn))
        db_obj = safe_query(
            self.session,
            lambda s: s.execute(query).scalar_one_or_none(),
            "Failed to get book by ISBN",
        )
        return self._to_response_model(db_obj) if db_obj else None

    def search(
        self,
        search_params: BookSearchParams,
        pagination: PaginationParams | None = None,
    ) -> PaginatedResponse[BookModel]:
        """
        Search for books by case-insensitive substrings and exact ISBN.

        Args:
            search_params: Search and filter criteria
            pagination: Pagination parameters

        Returns:
            Paginated response with matching books ordered by title
        """
        filters = []
        if search_params.title:
            filters.append(func.lower(BookDB.title).contains(search_params.title.lower()))
        if search_params.author:
            filters.append(func.lower(BookDB.author).contains(search_params.author.lower()))
        if search_params.genre:
            filters.append(func.lower(BookDB.genre).contains(search_params.genre.lower()))
        if search_params.isbn:
            filters.append(BookDB.isbn == _normalize_isbn(search_params.isbn))
        if search_params.available_only:
            filters.append(BookDB.available_copies > 0)

        query = select(BookDB)
        if filters:
            query = query.where(and_(*filters))

        pagination = pagination or PaginationParams()
        pagination.validate_params()

        count_query = select(func.count()).select_from(query.subquery())
        total = (
            safe_query(
                self.session,
                lambda s: s.execute(count_query).scalar(),
                "Failed to count search results",
            )
            or 0
        )

        page_query = (
            query.order_by(BookDB.title, BookDB.id)
            .offset(pagination.offset)
            .limit(pagination.page_size)
        )
        results = safe_query(
            self.session,
            lambda s: s.execute(page_query).scalars().all(),
            "Failed to search books",
        )
        items = [self._to_response_model(book) for book in results]
        return PaginatedResponse.build(items, total, pagination)

    def update_book(self, book_id: int, data: BookUpdateSchema) -> BookModel:
        """
        Edit catalog fields and commit.

        A ``total_copies`` change is applied through ``resize`` so the
        ledger rules hold for administrative edits too.

        Raises:
            NotFoundError: If the book does not exist
            DuplicateError: If the new ISBN belongs to another book
            InvalidArgumentError, ConflictError: From ``resize``
        """
        book = self._get_db_or_raise(book_id)
        changes = data.model_dump(exclude_unset=True, exclude={"total_copies"})

        new_isbn = changes.get("isbn")
        if new_isbn and new_isbn != book.isbn and self.get_by_isbn(new_isbn) is not None:
            raise DuplicateError(f"Another book with ISBN {new_isbn} already exists")

        for field, value in changes.items():
            if value is not None:
                setattr(book, field, value)
        self.session.flush()

        if data.total_copies is not None:
            self.resize(book_id, data.total_copies)

        safe_commit(self.session, "update book")
        updated = self._reload(book_id)
        logger.info("Book updated: '%s'", updated.title)
        return updated

    def delete_book(self, book_id: int) -> None:
        """
        Withdraw a book from the catalog and commit.

        Refused while any copy is on an active loan. Active reservations are
        canceled; historical loans and reservations keep their rows with the
        book reference cleared.

        Raises:
            NotFoundError: If the book does not exist
            ConflictError: If the book has an active loan
        """
        book = self._get_db_or_raise(book_id)

        if self.has_active_loans(book_id):
            raise ConflictError(
                f"Cannot delete book '{book.title}': it is currently borrowed"
            )

        canceled = self.session.execute(
            update(ReservationDB)
            .where(
                ReservationDB.book_id == book_id,
                ReservationDB.status.in_(ReservationStatus.active()),
            )
            .values(status=ReservationStatus.CANCELED)
            .execution_options(synchronize_session=False)
        ).rowcount
        self.session.execute(
            update(LoanDB)
            .where(LoanDB.book_id == book_id)
            .values(book_id=None)
            .execution_options(synchronize_session=False)
        )
        self.session.execute(
            update(ReservationDB)
            .where(ReservationDB.book_id == book_id)
            .values(book_id=None)
            .execution_options(synchronize_session=False)
        )
        self.session.delete(book)
        safe_commit(self.session, "delete book")
        logger.info("Book deleted with id %d (%d active reservations canceled)", book_id, canceled)

    def has_active_loans(self, book_id: int) -> bool:
        query = (
            select(func.count())
            .select_from(LoanDB)
            .where(LoanDB.book_id == book_id, LoanDB.return_date.is_(None))
        )
        count = safe_query(
            self.session, lambda s: s.execute(query).scalar(), "Failed to count active loans"
        )
        return count > 0

    # === Inventory Ledger ===

    def lock(self, book_id: int) -> BookDB:
        """
        Take the book-scoped row lock for the rest of the transaction.

        Effective on databases with row locks (SELECT ... FOR UPDATE); on
        SQLite the conditional UPDATEs carry the serialization instead.

        Raises:
            NotFoundError: If the book does not exist
        """
        query = (
            select(BookDB)
            .where(BookDB.id == book_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        book = safe_query(
            self.session,
            lambda s: s.execute(query).scalar_one_or_none(),
            "Failed to lock book",
        )
        if book is None:
            raise NotFoundError(f"Book {book_id} not found")
        return book

    def decrement_available(self, book_id: int) -> None:
        """
        Take one copy off the shelf.

        Raises:
            NotFoundError: If the book does not exist
            UnavailableError: If no copy is free
        """
        stmt = (
            update(BookDB)
            .where(BookDB.id == book_id, BookDB.available_copies > 0)
            .values(available_copies=BookDB.available_copies - 1)
            .execution_options(synchronize_session=False)
        )
        result = safe_query(
            self.session, lambda s: s.execute(stmt), "Failed to decrement available copies"
        )
        if result.rowcount == 0:
            book = self._get_db_or_raise(book_id)
            raise UnavailableError(f"Book '{book.title}' is not available for borrowing")
        logger.debug("Decremented available copies of book %d", book_id)

    def increment_available(self, book_id: int) -> None:
        """
        Put one copy back on the shelf.

        Raises:
            NotFoundError: If the book does not exist
            InvariantViolationError: If the shelf is already full
        """
        stmt = (
            update(BookDB)
            .where(BookDB.id == book_id, BookDB.available_copies < BookDB.total_copies)
            .values(available_copies=BookDB.available_copies + 1)
            .execution_options(synchronize_session=False)
        )
        result = safe_query(
            self.session, lambda s: s.execute(stmt), "Failed to increment available copies"
        )
        if result.rowcount == 0:
            book = self._reload_db(book_id)
            logger.critical(
                "Inventory invariant violated: book %d already has %d/%d copies available",
                book_id,
                book.available_copies,
                book.total_copies,
            )
            raise InvariantViolationError(
                f"Returning a copy of book {book_id} would exceed its total copies"
            )
        logger.debug("Incremented available copies of book %d", book_id)

    def resize(self, book_id: int, new_total: int) -> BookModel:
        """
        Change the number of copies owned.

        Copies on loan are preserved: shrinking takes copies off the shelf,
        never out of patrons' hands, so ``available`` is capped at
        ``new_total - copies_on_loan``. Growing leaves ``available``
        unchanged.

        Raises:
            InvalidArgumentError: If new_total is negative
            NotFoundError: If the book does not exist
            ConflictError: If more copies are on loan than new_total
        """
        if new_total < 0:
            raise InvalidArgumentError("Total copies cannot be negative")

        book = self.lock(book_id)
        on_loan = book.total_copies - book.available_copies
        if new_total < on_loan:
            raise ConflictError(
                f"Total copies cannot be less than the number of copies on loan ({on_loan})"
            )

        shrink_to = BookDB.available_copies - (BookDB.total_copies - new_total)
        stmt = (
            update(BookDB)
            .where(
                BookDB.id == book_id,
                BookDB.total_copies - BookDB.available_copies <= new_total,
            )
            .values(
                total_copies=new_total,
                available_copies=case(
                    (BookDB.total_copies > new_total, shrink_to),
                    else_=BookDB.available_copies,
                ),
            )
            .execution_options(synchronize_session=False)
        )
        result = safe_query(self.session, lambda s: s.execute(stmt), "Failed to resize book")
        if result.rowcount == 0:
            raise ConflictError(f"Copies of book {book_id} went on loan during the resize")

        resized = self._reload(book_id)
        logger.info(
            "Book %d resized to %d copies (%d available)",
            book_id,
            resized.total_copies,
            resized.available_copies,
        )
        return resized

    def _reload_db(self, book_id: int) -> BookDB:
        book = self.session.get(BookDB, book_id, populate_existing=True)
        if book is None:
            raise NotFoundError(f"Book {book_id} not found")
        return book

    def _reload(self, book_id: int) -> BookModel:
        """Read the row again, bypassing values cached in the session."""
        return self._to_response_model(self._reload_db(book_id))

    def get_current(self, book_id: int) -> BookModel:
        """Current ledger state of a book, fresh from the database."""
        return self._reload(book_id)

