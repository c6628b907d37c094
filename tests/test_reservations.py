"""
Tests for the Reservation Queue.

Covers the reservation state machine: FIFO promotion, hold expiry,
cancellation with hand-off to the next waiter, and fulfilment on borrow.
"""

from datetime import timedelta

import pytest

from lending_library.database.repository import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    UnavailableError,
)
from lending_library.database.reservation_repository import ReservationRepository
from lending_library.models.circulation import ReservationStatus
from lending_library.policy import Actor


@pytest.fixture
def queue(test_db_session, lending_config, clock) -> ReservationRepository:
    return ReservationRepository(test_db_session, lending_config, clock)


@pytest.fixture
def lent_out_book(make_book, make_user, circulation):
    """A single-copy book that is out on loan to someone else."""
    book = make_book(total_copies=1, title="Lent Out")
    holder = make_user(username="holder")
    circulation.borrow_book(book.id, holder.id)
    return book


class TestReserve:
    def test_reserve_unavailable_book(self, queue, lent_out_book, patron, clock):
        reservation = queue.reserve(lent_out_book.id, patron.id)

        assert reservation.status == ReservationStatus.PENDING
        assert reservation.reservation_time == clock()
        assert reservation.expiration_time is None

    def test_reserve_available_book_is_refused(self, queue, make_book, patron):
        book = make_book(total_copies=2)
        with pytest.raises(UnavailableError, match="borrow it instead"):
            queue.reserve(book.id, patron.id)

    def test_reserve_unknown_book(self, queue, patron):
        with pytest.raises(NotFoundError):
            queue.reserve(404, patron.id)

    def test_duplicate_active_reservation_conflicts(self, queue, lent_out_book, patron):
        queue.reserve(lent_out_book.id, patron.id)
        with pytest.raises(ConflictError):
            queue.reserve(lent_out_book.id, patron.id)

    def test_can_reserve_again_after_cancel(self, queue, lent_out_book, patron):
        first = queue.reserve(lent_out_book.id, patron.id)
        queue.cancel(first.id, Actor.patron(patron.id))

        second = queue.reserve(lent_out_book.id, patron.id)
        assert second.id != first.id


class TestPromoteNext:
    def test_fifo_order(self, queue, lent_out_book, patron, other_patron, third_patron, clock):
        r1 = queue.reserve(lent_out_book.id, patron.id)
        clock.advance(minutes=1)
        r2 = queue.reserve(lent_out_book.id, other_patron.id)
        clock.advance(minutes=1)
        r3 = queue.reserve(lent_out_book.id, third_patron.id)

        promoted = [queue.promote_next(lent_out_book.id) for _ in range(3)]

        assert [r.id for r in promoted] == [r1.id, r2.id, r3.id]
        assert all(r.status == ReservationStatus.AVAILABLE for r in promoted)
        assert queue.promote_next(lent_out_book.id) is None

    def test_same_timestamp_ties_go_to_earlier_reservation(
        self, queue, lent_out_book, patron, other_patron
    ):
        r1 = queue.reserve(lent_out_book.id, patron.id)
        queue.reserve(lent_out_book.id, other_patron.id)

        assert queue.promote_next(lent_out_book.id).id == r1.id

    def test_hold_window(self, queue, lent_out_book, patron, clock):
        queue.reserve(lent_out_book.id, patron.id)
        clock.advance(hours=1)

        promoted = queue.promote_next(lent_out_book.id)

        assert promoted.expiration_time == clock() + timedelta(hours=48)

    def test_no_waiters_is_noop(self, queue, lent_out_book):
        assert queue.promote_next(lent_out_book.id) is None

    def test_queue_for_book_lists_pending_in_order(
        self, queue, lent_out_book, patron, other_patron, clock
    ):
        r1 = queue.reserve(lent_out_book.id, patron.id)
        clock.advance(seconds=5)
        r2 = queue.reserve(lent_out_book.id, other_patron.id)

        assert [r.id for r in queue.queue_for_book(lent_out_book.id)] == [r1.id, r2.id]

        queue.promote_next(lent_out_book.id)
        assert [r.id for r in queue.queue_for_book(lent_out_book.id)] == [r2.id]


class TestCancel:
    def test_owner_cancels_pending(self, queue, lent_out_book, patron):
        reservation = queue.reserve(lent_out_book.id, patron.id)

        canceled, promoted = queue.cancel(reservation.id, Actor.patron(patron.id))

        assert canceled.status == ReservationStatus.CANCELED
        assert promoted is None

    def test_other_patron_forbidden(self, queue, lent_out_book, patron, other_patron):
        reservation = queue.reserve(lent_out_book.id, patron.id)

        with pytest.raises(ForbiddenError):
            queue.cancel(reservation.id, Actor.patron(other_patron.id))

    def test_librarian_may_cancel(self, queue, lent_out_book, patron, librarian_actor):
        reservation = queue.reserve(lent_out_book.id, patron.id)
        canceled, _ = queue.cancel(reservation.id, librarian_actor)
        assert canceled.status == ReservationStatus.CANCELED

    def test_cancel_terminal_reservation_is_invalid(self, queue, lent_out_book, patron):
        reservation = queue.reserve(lent_out_book.id, patron.id)
        queue.cancel(reservation.id, Actor.patron(patron.id))

        with pytest.raises(InvalidStateError):
            queue.cancel(reservation.id, Actor.patron(patron.id))

    def test_canceling_hold_promotes_next_waiter(
        self, queue, lent_out_book, patron, other_patron, clock
    ):
        first = queue.reserve(lent_out_book.id, patron.id)
        clock.advance(minutes=1)
        second = queue.reserve(lent_out_book.id, other_patron.id)
        queue.promote_next(lent_out_book.id)

        canceled, promoted = queue.cancel(first.id, Actor.patron(patron.id))

        assert canceled.status == ReservationStatus.CANCELED
        assert promoted.id == second.id
        assert promoted.status == ReservationStatus.AVAILABLE

    def test_canceling_pending_does_not_promote(
        self, queue, lent_out_book, patron, other_patron, clock
    ):
        first = queue.reserve(lent_out_book.id, patron.id)
        clock.advance(minutes=1)
        second = queue.reserve(lent_out_book.id, other_patron.id)

        queue.cancel(first.id, Actor.patron(patron.id))

        assert queue.get(second.id).status == ReservationStatus.PENDING


class TestFulfillAndExpire:
    def test_fulfill_hold(self, queue, lent_out_book, patron):
        reservation = queue.reserve(lent_out_book.id, patron.id)
        queue.promote_next(lent_out_book.id)

        fulfilled = queue.fulfill(lent_out_book.id, patron.id)

        assert fulfilled.id == reservation.id
        assert fulfilled.status == ReservationStatus.FULFILLED

    def test_fulfill_without_hold_is_noop(self, queue, lent_out_book, patron):
        queue.reserve(lent_out_book.id, patron.id)
        assert queue.fulfill(lent_out_book.id, patron.id) is None

    def test_expire_lapsed_hold_promotes_next(
        self, queue, lent_out_book, patron, other_patron, clock
    ):
        first = queue.reserve(lent_out_book.id, patron.id)
        clock.advance(minutes=1)
        second = queue.reserve(lent_out_book.id, other_patron.id)
        queue.promote_next(lent_out_book.id)
        clock.advance(hours=49)

        assert [r.id for r in queue.expired_holds()] == [first.id]
        expired, promoted = queue.expire(first.id)

        assert expired.status == ReservationStatus.EXPIRED
        assert promoted.id == second.id
        assert promoted.expiration_time == clock() + timedelta(hours=48)

    def test_hold_within_window_is_not_expired(self, queue, lent_out_book, patron, clock):
        reservation = queue.reserve(lent_out_book.id, patron.id)
        queue.promote_next(lent_out_book.id)
        clock.advance(hours=47)

        assert queue.expired_holds() == []
        assert queue.expire(reservation.id) == (None, None)

    def test_active_for_user(self, queue, make_book, make_user, circulation, patron):
        holder = make_user(username="holder")
        books = [make_book(total_copies=1) for _ in range(2)]
        for book in books:
            circulation.borrow_book(book.id, holder.id)
        reservations = [queue.reserve(book.id, patron.id) for book in books]
        queue.cancel(reservations[0].id, Actor.patron(patron.id))

        assert [r.id for r in queue.active_for_user(patron.id)] == [reservations[1].id]
        assert [r.id for r in queue.all_active()] == [reservations[1].id]
