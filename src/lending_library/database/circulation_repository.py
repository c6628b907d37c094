"""
Circulation repository - the lending orchestrator.

This repository composes the Inventory Ledger, Loan Tracker, Reservation
Queue and Fine Calculator into the operations callers actually invoke:

1. **Borrow**: ledger decrement -> open loan -> fulfil the borrower's hold
2. **Return**: close loan -> ledger increment -> assess fine -> promote next
   waiter
3. **Reservations**: reserve, cancel (with hold cascade), expiry sweep
4. **Fines**: assess, pay, waive
5. **Queries**: histories, overdue loans, reservations and fines, scoped by
   the caller's role

Each operation is one database transaction. The building blocks only
flush; ``_atomic`` commits at the end or rolls everything back and
re-raises the original error, so inventory counts, loan records and queue
state always move together.
"""

import logging
from collections.abc import Callable, Generator
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..config import LibraryConfig, get_config
from ..models.book import Book as BookModel
from ..models.circulation import Loan as LoanModel
from ..models.circulation import Reservation as ReservationModel
from ..models.fine import Fine as FineModel
from ..models.fine import FineStatus
from ..observability import trace_operation
from ..policy import Actor, require_librarian, require_owner_or_librarian
from .book_repository import BookRepository
from .fine_repository import FineRepository
from .loan_repository import BookLoanCount, LoanRepository, UserActivity
from .repository import PaginatedResponse, PaginationParams, RepositoryException
from .reservation_repository import ReservationRepository
from .session import safe_commit
from .user_repository import UserRepository

logger = logging.getLogger(__name__)


class BorrowResult(BaseModel):
    """Outcome of a borrow."""

    loan: LoanModel
    # The borrower's hold on this book, now FULFILLED
    fulfilled_reservation: ReservationModel | None = None


class ReturnResult(BaseModel):
    """Outcome of a return."""

    loan: LoanModel
    already_returned: bool = False
    fine: FineModel | None = None
    promoted_reservation: ReservationModel | None = None


class CancelResult(BaseModel):
    reservation: ReservationModel
    promoted_reservation: ReservationModel | None = None


class ExpirySweepResult(BaseModel):
    """Outcome of one pass over lapsed holds."""

    expired: list[ReservationModel] = []
    promoted: list[ReservationModel] = []
    # reservation id -> error message for holds that could not be expired
    failures: dict[int, str] = {}


class CirculationRepository:
    """
    Entry point for every lending operation.

    Args:
        session: Session owned by this repository for the operation
        config: Circulation rules; defaults to the process configuration
        clock: Source of "now"; injectable for tests
    """

    def __init__(
        self,
        session: Session,
        config: LibraryConfig | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.session = session
        self.config = config or get_config()
        self.clock = clock

        self.books = BookRepository(session)
        self.users = UserRepository(session)
        self.loans = LoanRepository(session, self.config, clock)
        self.reservations = ReservationRepository(session, self.config, clock)
        self.fines = FineRepository(session, self.config, clock)

    @contextmanager
    def _atomic(self, operation: str) -> Generator[None, None, None]:
        """Commit the operation's changes together, or none of them."""
        try:
            yield
            self.session.flush()
        except Exception:
            self.session.rollback()
            raise
        safe_commit(self.session, operation)

    # === Borrow and return ===

    @trace_operation("borrow")
    def borrow_book(
        self,
        book_id: int,
        user_id: int,
        due_date: date | None = None,
        actor: Actor | None = None,
    ) -> BorrowResult:
        """
        Lend a copy of a book to a user.

        The copy is taken off the shelf before the loan is written, so a
        failure in between can only undercount availability, never
        overbook it. A hold the user had on the book is fulfilled in the
        same transaction.

        Args:
            book_id: Book to borrow
            user_id: Borrowing user
            due_date: Optional due date (must be in the future)
            actor: Caller; patrons may only borrow for themselves

        Raises:
            NotFoundError: If the book or user does not exist
            ForbiddenError: If a patron borrows on someone else's behalf
            UnavailableError: If no copy is free
            ConflictError: If the user already has this book on loan
            InvalidArgumentError: If due_date is not in the future
        """
        if actor is not None:
            require_owner_or_librarian(actor, user_id, "borrow on behalf of another user")

        with self._atomic("borrow book"):
            self.books.get(book_id)
            self.users.get(user_id)
            self.books.decrement_available(book_id)
            loan = self.loans.open_loan(book_id, user_id, due_date)
            fulfilled = self.reservations.fulfill(book_id, user_id)

        logger.info(
            "User %d borrowed book %d (loan %d, due %s)", user_id, book_id, loan.id, loan.due_date
        )
        return BorrowResult(loan=loan, fulfilled_reservation=fulfilled)

    @trace_operation("return")
    def return_loan(self, loan_id: int, actor: Actor) -> ReturnResult:
        """
        Take a copy back.

        Returning an already-returned loan is a no-op so retried requests
        are harmless: no second increment, fine or promotion happens.

        Raises:
            NotFoundError: If the loan does not exist
            ForbiddenError: If a patron returns someone else's loan
            InvariantViolationError: If the shelf would hold more copies than exist
        """
        with self._atomic("return loan"):
            loan = self.loans.get(loan_id)
            require_owner_or_librarian(actor, loan.user_id, "return this loan")

            loan, closed_now = self.loans.close_loan(loan_id)
            if not closed_now:
                return ReturnResult(loan=loan, already_returned=True)

            promoted = None
            if loan.book_id is not None:
                self.books.increment_available(loan.book_id)
            fine = self.fines.assess(loan_id)
            if loan.book_id is not None:
                promoted = self.reservations.promote_next(loan.book_id)

        logger.info(
            "Loan %d returned (fine: %s, promoted reservation: %s)",
            loan_id,
            fine.amount if fine else "none",
            promoted.id if promoted else "none",
        )
        return ReturnResult(loan=loan, fine=fine, promoted_reservation=promoted)

    # === Reservations ===

    @trace_operation("reserve")
    def reserve_book(
        self, book_id: int, user_id: int, actor: Actor | None = None
    ) -> ReservationModel:
        """
        Put a user on the waiting list of an unavailable book.

        Raises:
            NotFoundError: If the book or user does not exist
            ForbiddenError: If a patron reserves on someone else's behalf
            UnavailableError: If a copy is free
            ConflictError: If the user already has an active reservation for it
        """
        if actor is not None:
            require_owner_or_librarian(actor, user_id, "reserve on behalf of another user")

        with self._atomic("reserve book"):
            self.users.get(user_id)
            reservation = self.reservations.reserve(book_id, user_id)
        return reservation

    @trace_operation("cancel_reservation")
    def cancel_reservation(self, reservation_id: int, actor: Actor) -> CancelResult:
        """
        Cancel a reservation; a released hold goes to the next waiter.

        Raises:
            NotFoundError: If the reservation does not exist
            ForbiddenError: If the actor neither owns it nor is a librarian
            InvalidStateError: If the reservation is already finished
        """
        with self._atomic("cancel reservation"):
            canceled, promoted = self.reservations.cancel(reservation_id, actor)
        return CancelResult(reservation=canceled, promoted_reservation=promoted)

    @trace_operation("promote_next")
    def promote_next(self, book_id: int) -> ReservationModel | None:
        """Offer one freed copy of a book to its next waiter."""
        with self._atomic("promote reservation"):
            promoted = self.reservations.promote_next(book_id)
        return promoted

    @trace_operation("expire_stale")
    def expire_stale_reservations(self) -> ExpirySweepResult:
        """
        Expire every lapsed hold and promote the next waiter for each.

        Every hold is expired in its own transaction so a failure on one
        book does not hold back the others. Safe to run repeatedly and
        alongside borrows and returns.
        """
        result = ExpirySweepResult()
        candidates = self.reservations.expired_holds()
        self.session.rollback()

        for hold in candidates:
            try:
                with self._atomic("expire reservation"):
                    expired, promoted = self.reservations.expire(hold.id)
            except RepositoryException as e:
                logger.exception("Failed to expire reservation %d", hold.id)
                result.failures[hold.id] = str(e)
                continue

            if expired is not None:
                result.expired.append(expired)
            if promoted is not None:
                result.promoted.append(promoted)

        if candidates:
            logger.info(
                "Expiry sweep: %d expired, %d promoted, %d failed",
                len(result.expired),
                len(result.promoted),
                len(result.failures),
            )
        return result

    # === Fines ===

    @trace_operation("assess_fine")
    def assess_fine(self, loan_id: int) -> FineModel | None:
        with self._atomic("assess fine"):
            fine = self.fines.assess(loan_id)
        return fine

    @trace_operation("pay_fine")
    def pay_fine(self, fine_id: int, actor: Actor) -> FineModel:
        """Record payment of a fine. Librarians only."""
        require_librarian(actor, "record fine payments")
        with self._atomic("pay fine"):
            fine = self.fines.pay(fine_id)
        return fine

    @trace_operation("waive_fine")
    def waive_fine(self, fine_id: int, actor: Actor) -> FineModel:
        """Waive a fine. Librarians only."""
        require_librarian(actor, "waive fines")
        with self._atomic("waive fine"):
            fine = self.fines.waive(fine_id)
        return fine

    # === Inventory administration ===

    @trace_operation("resize")
    def resize_book(self, book_id: int, new_total: int, actor: Actor) -> BookModel:
        """Change how many copies of a book the library owns. Librarians only."""
        require_librarian(actor, "change copy counts")
        with self._atomic("resize book"):
            book = self.books.resize(book_id, new_total)
        return book

    # === Queries ===

    def loan_history(self, actor: Actor, user_id: int | None = None) -> list[LoanModel]:
        """A user's loans, newest first. Defaults to the actor's own."""
        user_id = actor.id if user_id is None else user_id
        require_owner_or_librarian(actor, user_id, "view another user's loan history")
        return self.loans.history_for_user(user_id)

    def all_loan_history(
        self, actor: Actor, pagination: PaginationParams | None = None
    ) -> PaginatedResponse[LoanModel]:
        require_librarian(actor, "view the full loan history")
        return self.loans.history(pagination)

    def active_loans(self, actor: Actor, user_id: int | None = None) -> list[LoanModel]:
        user_id = actor.id if user_id is None else user_id
        require_owner_or_librarian(actor, user_id, "view another user's loans")
        return self.loans.active_for_user(user_id)

    def overdue_loans(self, actor: Actor) -> list[LoanModel]:
        require_librarian(actor, "view overdue loans")
        return self.loans.overdue()

    def active_reservations(
        self, actor: Actor, user_id: int | None = None
    ) -> list[ReservationModel]:
        user_id = actor.id if user_id is None else user_id
        require_owner_or_librarian(actor, user_id, "view another user's reservations")
        return self.reservations.active_for_user(user_id)

    def all_active_reservations(self, actor: Actor) -> list[ReservationModel]:
        require_librarian(actor, "view all reservations")
        return self.reservations.all_active()

    def reservation_queue(self, book_id: int) -> list[ReservationModel]:
        self.books.get(book_id)
        return self.reservations.queue_for_book(book_id)

    def user_fines(
        self, actor: Actor, user_id: int | None = None, status: FineStatus | None = None
    ) -> list[FineModel]:
        user_id = actor.id if user_id is None else user_id
        require_owner_or_librarian(actor, user_id, "view another user's fines")
        return self.fines.for_user(user_id, status)

    def pending_fines(self, actor: Actor) -> list[FineModel]:
        require_librarian(actor, "view all pending fines")
        return self.fines.list_fines(FineStatus.PENDING)

    def all_fines(self, actor: Actor, status: FineStatus | None = None) -> list[FineModel]:
        require_librarian(actor, "view all fines")
        return self.fines.list_fines(status)

    def outstanding_fines_total(self, actor: Actor, user_id: int | None = None) -> Decimal:
        user_id = actor.id if user_id is None else user_id
        require_owner_or_librarian(actor, user_id, "view another user's fines")
        return self.fines.outstanding_total(user_id)

    # === Reports ===

    def top_borrowed_books(self, actor: Actor, limit: int = 10) -> list[BookLoanCount]:
        require_librarian(actor, "view circulation reports")
        return self.loans.top_borrowed_books(limit)

    def user_activity(self, actor: Actor) -> list[UserActivity]:
        require_librarian(actor, "view circulation reports")
        return self.loans.user_activity()
