"""
Tests for the catalog and the Inventory Ledger.

The ledger tests work directly on BookRepository inside one open
transaction; the catalog tests use the committing CRUD methods.
"""

import logging

import pytest

from lending_library.database.book_repository import (
    BookRepository,
    BookSearchParams,
    BookUpdateSchema,
)
from lending_library.database.repository import (
    ConflictError,
    DuplicateError,
    InvalidArgumentError,
    InvariantViolationError,
    NotFoundError,
    PaginationParams,
    UnavailableError,
)
from lending_library.database.schema import Loan as LoanDB
from lending_library.database.schema import Reservation as ReservationDB
from lending_library.models.circulation import ReservationStatus
from lending_library.policy import Actor


@pytest.fixture
def books(test_db_session) -> BookRepository:
    return BookRepository(test_db_session)


class TestInventoryLedger:
    def test_decrement_until_empty(self, books, make_book):
        book = make_book(total_copies=2)

        books.decrement_available(book.id)
        books.decrement_available(book.id)
        assert books.get_current(book.id).available_copies == 0

        with pytest.raises(UnavailableError):
            books.decrement_available(book.id)
        assert books.get_current(book.id).available_copies == 0

    def test_decrement_unknown_book(self, books):
        with pytest.raises(NotFoundError):
            books.decrement_available(999)

    def test_increment_restores_copy(self, books, make_book):
        book = make_book(total_copies=2)
        books.decrement_available(book.id)

        books.increment_available(book.id)

        current = books.get_current(book.id)
        assert current.available_copies == current.total_copies == 2

    def test_increment_past_total_is_invariant_violation(self, books, make_book, caplog):
        book = make_book(total_copies=1)

        with caplog.at_level(logging.CRITICAL), pytest.raises(InvariantViolationError):
            books.increment_available(book.id)

        assert books.get_current(book.id).available_copies == 1
        assert any(r.levelno == logging.CRITICAL for r in caplog.records)

    def test_resize_rejects_negative_total(self, books, make_book):
        book = make_book(total_copies=2)
        with pytest.raises(InvalidArgumentError):
            books.resize(book.id, -1)

    def test_resize_below_copies_on_loan_conflicts(self, books, make_book):
        book = make_book(total_copies=3)
        books.decrement_available(book.id)
        books.decrement_available(book.id)

        with pytest.raises(ConflictError):
            books.resize(book.id, 1)

        current = books.get_current(book.id)
        assert (current.total_copies, current.available_copies) == (3, 1)

    def test_shrink_caps_available(self, books, make_book):
        book = make_book(total_copies=5)

        resized = books.resize(book.id, 3)

        assert (resized.total_copies, resized.available_copies) == (3, 3)

    def test_shrink_keeps_copies_on_loan(self, books, make_book):
        book = make_book(total_copies=5)
        books.decrement_available(book.id)
        books.decrement_available(book.id)

        resized = books.resize(book.id, 4)

        assert (resized.total_copies, resized.available_copies) == (4, 2)
        assert resized.copies_on_loan == 2

    def test_grow_leaves_available_unchanged(self, books, make_book):
        book = make_book(total_copies=5)
        books.decrement_available(book.id)

        resized = books.resize(book.id, 8)

        assert (resized.total_copies, resized.available_copies) == (8, 4)

    def test_noop_resize_round_trip(self, books, make_book):
        book = make_book(total_copies=2)
        books.decrement_available(book.id)

        first = books.resize(book.id, 5)
        second = books.resize(book.id, first.total_copies)

        assert second.available_copies == first.available_copies
        assert second.total_copies == 5

    def test_resize_to_zero_when_nothing_on_loan(self, books, make_book):
        book = make_book(total_copies=2)
        resized = books.resize(book.id, 0)
        assert (resized.total_copies, resized.available_copies) == (0, 0)


class TestCatalog:
    def test_create_starts_with_all_copies_available(self, make_book):
        book = make_book(total_copies=4, title="Dune")
        assert book.total_copies == 4
        assert book.available_copies == 4

    def test_duplicate_isbn_rejected(self, make_book):
        make_book(isbn="9780441013593")
        with pytest.raises(DuplicateError):
            make_book(isbn="978-0-441-01359-3")

    def test_search(self, books, make_book):
        make_book(title="Dune", author="Frank Herbert", genre="Science Fiction")
        make_book(title="Dune Messiah", author="Frank Herbert", genre="Science Fiction")
        make_book(title="Emma", author="Jane Austen", genre="Fiction", total_copies=0)

        by_title = books.search(BookSearchParams(title="dune"))
        assert [b.title for b in by_title.items] == ["Dune", "Dune Messiah"]

        by_author = books.search(BookSearchParams(author="AUSTEN"))
        assert by_author.total == 1

        available = books.search(BookSearchParams(available_only=True))
        assert {b.title for b in available.items} == {"Dune", "Dune Messiah"}

        paged = books.search(BookSearchParams(), PaginationParams(page=2, page_size=2))
        assert paged.total == 3
        assert len(paged.items) == 1
        assert paged.has_previous is True
        assert paged.has_next is False

    def test_search_by_isbn(self, books, make_book):
        book = make_book(isbn="9780441013593")
        result = books.search(BookSearchParams(isbn="978-0441013593"))
        assert [b.id for b in result.items] == [book.id]

    def test_invalid_pagination(self, books):
        with pytest.raises(InvalidArgumentError):
            books.search(BookSearchParams(), PaginationParams(page=0))

    def test_update_details_and_total(self, books, make_book):
        book = make_book(total_copies=2)

        updated = books.update_book(
            book.id, BookUpdateSchema(title="New Title", genre="Poetry", total_copies=3)
        )

        assert updated.title == "New Title"
        assert updated.genre == "Poetry"
        assert (updated.total_copies, updated.available_copies) == (3, 2)

    def test_update_to_taken_isbn_rejected(self, books, make_book):
        make_book(isbn="9780441013593")
        other = make_book(isbn="9780061120084")

        with pytest.raises(DuplicateError):
            books.update_book(other.id, BookUpdateSchema(isbn="9780441013593"))

    def test_get_unknown_book(self, books):
        assert books.get_by_id(42) is None
        with pytest.raises(NotFoundError):
            books.get(42)

    def test_delete_refused_while_on_loan(self, books, make_book, patron, circulation):
        book = make_book(total_copies=1)
        circulation.borrow_book(book.id, patron.id)

        with pytest.raises(ConflictError):
            books.delete_book(book.id)
        assert books.exists(book.id)

    def test_delete_keeps_history_and_cancels_queue(
        self, books, make_book, patron, other_patron, third_patron, circulation, test_db_session
    ):
        book = make_book(total_copies=1)
        loan = circulation.borrow_book(book.id, patron.id).loan
        held = circulation.reserve_book(book.id, other_patron.id)
        waiting = circulation.reserve_book(book.id, third_patron.id)
        circulation.return_loan(loan.id, Actor.patron(patron.id))

        books.delete_book(book.id)

        test_db_session.expire_all()
        assert not books.exists(book.id)
        assert test_db_session.get(LoanDB, loan.id).book_id is None
        for reservation_id in (held.id, waiting.id):
            row = test_db_session.get(ReservationDB, reservation_id)
            assert row.status == ReservationStatus.CANCELED
            assert row.book_id is None
