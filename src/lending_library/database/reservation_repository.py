"""
Reservation repository implementation for the lending library.

The Reservation Queue keeps a FIFO waiting list per book and drives each
reservation through its lifecycle::

    PENDING --promote_next--> AVAILABLE --fulfill--> FULFILLED
                              AVAILABLE --expire---> EXPIRED
    PENDING | AVAILABLE --cancel--> CANCELED

Every transition is ``UPDATE ... WHERE id = :id AND status = :old``. A
zero-row result means another worker moved the row first; ``promote_next``
then simply moves on to the next waiter. Reserving and promotion also take
the book-scoped lock so a return and an expiry sweep cannot both promote
for the same freed copy, and a new waiter never misses a freed one.
"""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from ..config import LibraryConfig, get_config
from ..models.circulation import Reservation as ReservationModel
from ..models.circulation import ReservationStatus
from ..policy import Actor, require_owner_or_librarian
from .book_repository import BookRepository
from .repository import (
    BaseRepository,
    ConflictError,
    InvalidStateError,
    NotFoundError,
    UnavailableError,
)
from .schema import Reservation as ReservationDB
from .session import safe_query

logger = logging.getLogger(__name__)


class ReservationCreateSchema(BaseModel):
    """Schema for joining a book's waiting list."""

    book_id: int
    user_id: int


class ReservationRepository(
    BaseRepository[ReservationDB, ReservationCreateSchema, ReservationModel]
):
    """
    Repository for the per-book waiting lists.

    The hold window comes from the config handed in at construction, and
    "now" from ``clock``, so tests can drive expiry deterministically.
    """

    def __init__(
        self,
        session,
        config: LibraryConfig | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        super().__init__(session)
        self.config = config or get_config()
        self.clock = clock
        self.books = BookRepository(session)

    @property
    def model_class(self):
        return ReservationDB

    @property
    def response_schema(self):
        return ReservationModel

    @property
    def hold_duration(self) -> timedelta:
        return timedelta(hours=self.config.reservation_hold_duration_hours)

    def _reload(self, reservation_id: int) -> ReservationDB:
        query = (
            select(ReservationDB)
            .where(ReservationDB.id == reservation_id)
            .execution_options(populate_existing=True)
        )
        reservation = safe_query(
            self.session,
            lambda s: s.execute(query).scalar_one_or_none(),
            "Failed to load reservation",
        )
        if reservation is None:
            raise NotFoundError(f"Reservation {reservation_id} not found")
        return reservation

    def _transition(
        self,
        reservation_id: int,
        from_status: ReservationStatus,
        to_status: ReservationStatus,
        **values,
    ) -> bool:
        """Move a reservation between statuses if nobody else moved it first."""
        stmt = (
            update(ReservationDB)
            .where(ReservationDB.id == reservation_id, ReservationDB.status == from_status)
            .values(status=to_status, **values)
            .execution_options(synchronize_session=False)
        )
        result = safe_query(
            self.session, lambda s: s.execute(stmt), "Failed to update reservation status"
        )
        return result.rowcount == 1

    def get_active(self, book_id: int, user_id: int) -> ReservationModel | None:
        query = select(ReservationDB).where(
            ReservationDB.book_id == book_id,
            ReservationDB.user_id == user_id,
            ReservationDB.status.in_(ReservationStatus.active()),
        )
        db_obj = safe_query(
            self.session,
            lambda s: s.execute(query).scalar_one_or_none(),
            "Failed to get active reservation",
        )
        return self._to_response_model(db_obj) if db_obj else None

    @staticmethod
    def _copy_available(title: str) -> UnavailableError:
        return UnavailableError(
            f"Book '{title}' has copies available; borrow it instead of reserving"
        )

    def reserve(self, book_id: int, user_id: int) -> ReservationModel:
        """
        Join the waiting list of a book that has no free copy.

        Availability is read again once the insert holds the write lock; a
        copy returned in between refuses the reservation.

        Raises:
            NotFoundError: If the book does not exist
            UnavailableError: If a copy is free (borrow it instead)
            ConflictError: If the user already waits for or holds this book
        """
        book = self.books.lock(book_id)
        if self.get_active(book_id, user_id) is not None:
            raise ConflictError(
                f"User {user_id} already has an active reservation for book {book_id}"
            )
        if book.available_copies > 0:
            raise self._copy_available(book.title)

        reservation = ReservationDB(
            book_id=book_id,
            user_id=user_id,
            reservation_time=self.clock(),
            status=ReservationStatus.PENDING,
        )
        self.session.add(reservation)
        try:
            self.session.flush()
        except IntegrityError as e:
            raise ConflictError(
                f"User {user_id} already has an active reservation for book {book_id}"
            ) from e

        if self.books.get_current(book_id).available_copies > 0:
            logger.info("Copy of book %d freed while reserving; refusing reservation", book_id)
            raise self._copy_available(book.title)

        logger.info(
            "Reservation %d created: user %d waits for book %d", reservation.id, user_id, book_id
        )
        return self._to_response_model(reservation)

    def next_pending(self, book_id: int) -> ReservationDB | None:
        """Oldest PENDING reservation of a book; ties go to the earlier insert."""
        query = (
            select(ReservationDB)
            .where(
                ReservationDB.book_id == book_id,
                ReservationDB.status == ReservationStatus.PENDING,
            )
            .order_by(ReservationDB.reservation_time, ReservationDB.id)
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return safe_query(
            self.session,
            lambda s: s.execute(query).scalar_one_or_none(),
            "Failed to get next reservation",
        )

    def promote_next(self, book_id: int) -> ReservationModel | None:
        """
        Offer a freed copy to the next waiter.

        Turns the oldest PENDING reservation into an AVAILABLE hold that
        lapses after the configured window. Call once per freed copy.

        Returns:
            The promoted reservation, or None if nobody is waiting
        """
        self.books.lock(book_id)
        while True:
            candidate = self.next_pending(book_id)
            if candidate is None:
                logger.debug("No pending reservations for book %d", book_id)
                return None

            expires = self.clock() + self.hold_duration
            if self._transition(
                candidate.id,
                ReservationStatus.PENDING,
                ReservationStatus.AVAILABLE,
                expiration_time=expires,
            ):
                logger.info(
                    "Reservation %d promoted: book %d held for user %d until %s",
                    candidate.id,
                    book_id,
                    candidate.user_id,
                    expires,
                )
                return self._to_response_model(self._reload(candidate.id))

            logger.debug("Reservation %d changed concurrently, trying next", candidate.id)

    def cancel(
        self, reservation_id: int, actor: Actor
    ) -> tuple[ReservationModel, ReservationModel | None]:
        """
        Give up a place in the queue or a held copy.

        Canceling an AVAILABLE hold passes the copy on to the next waiter.

        Returns:
            The canceled reservation, and the reservation promoted in its
            place (if any)

        Raises:
            NotFoundError: If the reservation does not exist
            ForbiddenError: If the actor neither owns it nor is a librarian
            InvalidStateError: If the reservation is already finished
        """
        while True:
            reservation = self._reload(reservation_id)
            require_owner_or_librarian(actor, reservation.user_id, "cancel this reservation")

            prior = reservation.status
            if prior.is_terminal:
                raise InvalidStateError(
                    f"Reservation {reservation_id} is {prior.value} and cannot be canceled"
                )
            if self._transition(reservation_id, prior, ReservationStatus.CANCELED):
                break

        canceled = self._to_response_model(self._reload(reservation_id))
        logger.info(
            "Reservation %d canceled by user %d (was %s)", reservation_id, actor.id, prior.value
        )

        promoted = None
        if prior == ReservationStatus.AVAILABLE and canceled.book_id is not None:
            promoted = self.promote_next(canceled.book_id)
        return canceled, promoted

    def fulfill(self, book_id: int, user_id: int) -> ReservationModel | None:
        """
        Close the user's hold on a book they just borrowed.

        Returns None when the user had no hold; most borrows are not
        reservation-driven.
        """
        query = select(ReservationDB).where(
            ReservationDB.book_id == book_id,
            ReservationDB.user_id == user_id,
            ReservationDB.status == ReservationStatus.AVAILABLE,
        )
        hold = safe_query(
            self.session,
            lambda s: s.execute(query).scalar_one_or_none(),
            "Failed to find hold",
        )
        if hold is None:
            return None

        if not self._transition(hold.id, ReservationStatus.AVAILABLE, ReservationStatus.FULFILLED):
            return None

        logger.info("Reservation %d fulfilled: user %d borrowed book %d", hold.id, user_id, book_id)
        return self._to_response_model(self._reload(hold.id))

    def expired_holds(self) -> list[ReservationModel]:
        """AVAILABLE holds whose window has passed, oldest expiry first."""
        query = (
            select(ReservationDB)
            .where(
                ReservationDB.status == ReservationStatus.AVAILABLE,
                ReservationDB.expiration_time < self.clock(),
            )
            .order_by(ReservationDB.expiration_time, ReservationDB.id)
        )
        results = safe_query(
            self.session,
            lambda s: s.execute(query).scalars().all(),
            "Failed to find expired holds",
        )
        return [self._to_response_model(r) for r in results]

    def expire(
        self, reservation_id: int
    ) -> tuple[ReservationModel | None, ReservationModel | None]:
        """
        Expire one lapsed hold and pass its copy to the next waiter.

        Returns:
            The expired reservation and the one promoted in its place. The
            first element is None if the hold was claimed, canceled or
            already expired by someone else in the meantime.
        """
        stmt = (
            update(ReservationDB)
            .where(
                ReservationDB.id == reservation_id,
                ReservationDB.status == ReservationStatus.AVAILABLE,
                ReservationDB.expiration_time < self.clock(),
            )
            .values(status=ReservationStatus.EXPIRED)
            .execution_options(synchronize_session=False)
        )
        result = safe_query(self.session, lambda s: s.execute(stmt), "Failed to expire hold")
        if result.rowcount == 0:
            logger.warning("Reservation %d is no longer an expired hold, skipping", reservation_id)
            return None, None

        expired = self._to_response_model(self._reload(reservation_id))
        logger.info(
            "Reservation %d expired (book %s, user %d)",
            expired.id,
            expired.book_id,
            expired.user_id,
        )

        promoted = None
        if expired.book_id is not None:
            promoted = self.promote_next(expired.book_id)
        return expired, promoted

    # === Queries ===

    def active_for_user(self, user_id: int) -> list[ReservationModel]:
        """A user's PENDING and AVAILABLE reservations, oldest first."""
        query = (
            select(ReservationDB)
            .where(
                ReservationDB.user_id == user_id,
                ReservationDB.status.in_(ReservationStatus.active()),
            )
            .order_by(ReservationDB.reservation_time, ReservationDB.id)
        )
        results = safe_query(
            self.session,
            lambda s: s.execute(query).scalars().all(),
            "Failed to get user reservations",
        )
        return [self._to_response_model(r) for r in results]

    def queue_for_book(self, book_id: int) -> list[ReservationModel]:
        """The PENDING waiting list of a book in promotion order."""
        query = (
            select(ReservationDB)
            .where(
                ReservationDB.book_id == book_id,
                ReservationDB.status == ReservationStatus.PENDING,
            )
            .order_by(ReservationDB.reservation_time, ReservationDB.id)
        )
        results = safe_query(
            self.session,
            lambda s: s.execute(query).scalars().all(),
            "Failed to get reservation queue",
        )
        return [self._to_response_model(r) for r in results]

    def all_active(self) -> list[ReservationModel]:
        query = (
            select(ReservationDB)
            .where(ReservationDB.status.in_(ReservationStatus.active()))
            .order_by(ReservationDB.reservation_time, ReservationDB.id)
        )
        results = safe_query(
            self.session,
            lambda s: s.execute(query).scalars().all(),
            "Failed to get active reservations",
        )
        return [self._to_response_model(r) for r in results]
