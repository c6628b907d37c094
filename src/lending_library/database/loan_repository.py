"""
Loan repository implementation for the lending library.

The Loan Tracker owns active and historical borrowing records:

1. **Opening**: one active loan per (book, user), due date defaulted or
   validated
2. **Closing**: a conditional UPDATE on ``return_date IS NULL`` so a
   duplicate return is detected rather than applied twice
3. **History**: per user and system-wide (newest first), overdue list
4. **Reports**: most borrowed books and per-user activity

Like the other lending building blocks, nothing here commits.
"""

import logging
from collections.abc import Callable
from datetime import date, datetime, timedelta

from pydantic import BaseModel
from sqlalchemy import and_, case, desc, func, select, update
from sqlalchemy.exc import IntegrityError

from ..config import LibraryConfig, get_config
from ..models.circulation import Loan as LoanModel
from .repository import (
    BaseRepository,
    ConflictError,
    InvalidArgumentError,
    NotFoundError,
    PaginatedResponse,
    PaginationParams,
)
from .schema import Book as BookDB
from .schema import Loan as LoanDB
from .schema import User as UserDB
from .session import safe_query

logger = logging.getLogger(__name__)


class LoanCreateSchema(BaseModel):
    """Schema for opening a loan."""

    book_id: int
    user_id: int
    due_date: date | None = None


class BookLoanCount(BaseModel):
    """One row of the most-borrowed report."""

    book_id: int
    title: str
    author: str
    loan_count: int


class UserActivity(BaseModel):
    """One row of the user activity report."""

    user_id: int
    username: str
    total_loans: int
    active_loans: int


class LoanRepository(BaseRepository[LoanDB, LoanCreateSchema, LoanModel]):
    """Repository for borrowing records."""

    def __init__(
        self,
        session,
        config: LibraryConfig | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        super().__init__(session)
        self.config = config or get_config()
        self.clock = clock

    @property
    def model_class(self):
        return LoanDB

    @property
    def response_schema(self):
        return LoanModel

    def today(self) -> date:
        return self.clock().date()

    def has_active_loan(self, book_id: int, user_id: int) -> bool:
        query = (
            select(func.count())
            .select_from(LoanDB)
            .where(
                LoanDB.book_id == book_id,
                LoanDB.user_id == user_id,
                LoanDB.return_date.is_(None),
            )
        )
        count = safe_query(
            self.session, lambda s: s.execute(query).scalar(), "Failed to check active loan"
        )
        return count > 0

    def open_loan(self, book_id: int, user_id: int, due_date: date | None = None) -> LoanModel:
        """
        Record a new borrowing dated today.

        The caller must already have taken a copy off the shelf.

        Args:
            book_id: Borrowed book
            user_id: Borrowing user
            due_date: Must be after today; defaults to the configured loan period

        Raises:
            InvalidArgumentError: If due_date is not in the future
            ConflictError: If the user already has this book on an active loan
        """
        today = self.today()
        if due_date is None:
            due_date = today + timedelta(days=self.config.default_loan_days)
        elif due_date <= today:
            raise InvalidArgumentError("Due date must be in the future")

        if self.has_active_loan(book_id, user_id):
            raise ConflictError(f"User {user_id} already has book {book_id} on loan")

        loan = LoanDB(book_id=book_id, user_id=user_id, borrow_date=today, due_date=due_date)
        self.session.add(loan)
        try:
            self.session.flush()
        except IntegrityError as e:
            # Lost a race against a concurrent borrow by the same user
            raise ConflictError(f"User {user_id} already has book {book_id} on loan") from e

        logger.info(
            "Loan %d opened: book %d to user %d, due %s", loan.id, book_id, user_id, due_date
        )
        return self._to_response_model(loan)

    def close_loan(self, loan_id: int) -> tuple[LoanModel, bool]:
        """
        Mark a loan returned today.

        Returns:
            The loan, and True if this call closed it. A loan that was
            already returned comes back unchanged with False.

        Raises:
            NotFoundError: If the loan does not exist
        """
        stmt = (
            update(LoanDB)
            .where(LoanDB.id == loan_id, LoanDB.return_date.is_(None))
            .values(return_date=self.today())
            .execution_options(synchronize_session=False)
        )
        result = safe_query(self.session, lambda s: s.execute(stmt), "Failed to close loan")
        loan = self._reload(loan_id)

        if result.rowcount == 0:
            logger.warning("Loan %d was already returned on %s", loan_id, loan.return_date)
            return loan, False

        logger.info("Loan %d closed (book %s, user %d)", loan_id, loan.book_id, loan.user_id)
        return loan, True

    def _reload(self, loan_id: int) -> LoanModel:
        query = (
            select(LoanDB)
            .where(LoanDB.id == loan_id)
            .execution_options(populate_existing=True)
        )
        loan = safe_query(
            self.session, lambda s: s.execute(query).scalar_one_or_none(), "Failed to load loan"
        )
        if loan is None:
            raise NotFoundError(f"Loan {loan_id} not found")
        return self._to_response_model(loan)

    # === History ===

    def history_for_user(self, user_id: int) -> list[LoanModel]:
        """All loans of a user, newest first."""
        query = (
            select(LoanDB)
            .where(LoanDB.user_id == user_id)
            .order_by(desc(LoanDB.borrow_date), desc(LoanDB.id))
        )
        results = safe_query(
            self.session, lambda s: s.execute(query).scalars().all(), "Failed to get loan history"
        )
        return [self._to_response_model(loan) for loan in results]

    def history(self, pagination: PaginationParams | None = None) -> PaginatedResponse[LoanModel]:
        """All loans in the system, newest first."""
        pagination = pagination or PaginationParams()
        pagination.validate_params()

        total = safe_query(
            self.session,
            lambda s: s.execute(select(func.count()).select_from(LoanDB)).scalar(),
            "Failed to count loans",
        )
        query = (
            select(LoanDB)
            .order_by(desc(LoanDB.borrow_date), desc(LoanDB.id))
            .offset(pagination.offset)
            .limit(pagination.page_size)
        )
        results = safe_query(
            self.session, lambda s: s.execute(query).scalars().all(), "Failed to get loans"
        )
        return PaginatedResponse.build(
            [self._to_response_model(loan) for loan in results], total or 0, pagination
        )

    def active_for_user(self, user_id: int) -> list[LoanModel]:
        query = (
            select(LoanDB)
            .where(LoanDB.user_id == user_id, LoanDB.return_date.is_(None))
            .order_by(LoanDB.due_date, LoanDB.id)
        )
        results = safe_query(
            self.session, lambda s: s.execute(query).scalars().all(), "Failed to get active loans"
        )
        return [self._to_response_model(loan) for loan in results]

    def overdue(self, as_of: date | None = None) -> list[LoanModel]:
        """Active loans whose due date has passed, most overdue first."""
        as_of = as_of or self.today()
        query = (
            select(LoanDB)
            .where(and_(LoanDB.return_date.is_(None), LoanDB.due_date < as_of))
            .order_by(LoanDB.due_date, LoanDB.id)
        )
        results = safe_query(
            self.session, lambda s: s.execute(query).scalars().all(), "Failed to get overdue loans"
        )
        return [self._to_response_model(loan) for loan in results]

    # === Reports ===

    def top_borrowed_books(self, limit: int = 10) -> list[BookLoanCount]:
        """Books ordered by how often they were borrowed."""
        loan_count = func.count(LoanDB.id).label("loan_count")
        query = (
            select(BookDB.id, BookDB.title, BookDB.author, loan_count)
            .join(LoanDB, LoanDB.book_id == BookDB.id)
            .group_by(BookDB.id, BookDB.title, BookDB.author)
            .order_by(desc(loan_count), BookDB.title)
            .limit(limit)
        )
        rows = safe_query(
            self.session, lambda s: s.execute(query).all(), "Failed to build top books report"
        )
        return [
            BookLoanCount(book_id=r.id, title=r.title, author=r.author, loan_count=r.loan_count)
            for r in rows
        ]

    def user_activity(self) -> list[UserActivity]:
        """Total and active loan counts per user, busiest first."""
        total_loans = func.count(LoanDB.id).label("total_loans")
        active_loans = func.coalesce(
            func.sum(case((LoanDB.return_date.is_(None), 1), else_=0)), 0
        ).label("active_loans")
        query = (
            select(UserDB.id, UserDB.username, total_loans, active_loans)
            .outerjoin(LoanDB, LoanDB.user_id == UserDB.id)
            .group_by(UserDB.id, UserDB.username)
            .order_by(desc(total_loans), UserDB.username)
        )
        rows = safe_query(
            self.session, lambda s: s.execute(query).all(), "Failed to build user activity report"
        )
        return [
            UserActivity(
                user_id=r.id,
                username=r.username,
                total_loans=r.total_loans,
                active_loans=r.active_loans,
            )
            for r in rows
        ]
