"""
SQLAlchemy database schema for the lending library.

The tables mirror the pydantic models in ``lending_library.models``. The
schema itself enforces the lending invariants so that concurrent workers
cannot break them even if application checks race:

1. ``0 <= available_copies <= total_copies`` on every book row
2. at most one active loan per (book, user)
3. at most one active reservation per (book, user)
4. at most one fine per loan, always with a positive amount
"""

from sqlalchemy import (
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

from ..models.circulation import ReservationStatus
from ..models.fine import FineStatus
from ..models.user import Role

# Base class for all SQLAlchemy models
Base = declarative_base()

# Enum columns store member names, which equal their values
ACTIVE_RESERVATION_CLAUSE = "status IN ('PENDING', 'AVAILABLE')"
ACTIVE_LOAN_CLAUSE = "return_date IS NULL"


class Book(Base):
    """
    Books table - the catalog and the Inventory Ledger counters.

    ``available_copies`` is only ever changed through conditional UPDATE
    statements issued by ``BookRepository`` so that check-and-change is a
    single atomic step in the database.
    """

    __tablename__ = "books"

    id = Column(Integer, primary_key=True, autoincrement=True)
    isbn = Column(String(13), nullable=False, unique=True)
    title = Column(String(500), nullable=False, index=True)
    author = Column(String(200), nullable=False)
    genre = Column(String(100), nullable=True)
    publication_date = Column(Date, nullable=True)
    description = Column(Text, nullable=True)
    total_copies = Column(Integer, nullable=False, default=1)
    available_copies = Column(Integer, nullable=False, default=1)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=func.now())
    updated_at = Column(DateTime, nullable=True, default=func.now(), onupdate=func.now())

    # Relationships
    loans = relationship("Loan", back_populates="book")
    reservations = relationship("Reservation", back_populates="book")

    __table_args__ = (
        Index("idx_book_author", "author"),
        Index("idx_book_genre", "genre"),
        CheckConstraint("available_copies >= 0", name="check_available_copies_non_negative"),
        CheckConstraint(
            "available_copies <= total_copies", name="check_available_not_exceed_total"
        ),
        CheckConstraint("total_copies >= 0", name="check_total_copies_non_negative"),
    )


class User(Base):
    """
    Users table - patrons and librarians.

    Credentials live with the authentication collaborator; this table only
    records identity and role.
    """

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(50), nullable=False, unique=True)
    email = Column(String(255), nullable=False, unique=True)
    full_name = Column(String(200), nullable=True)
    role = Column(Enum(Role), nullable=False, default=Role.PATRON)

    created_at = Column(DateTime, nullable=False, default=func.now())

    loans = relationship("Loan", back_populates="user")
    reservations = relationship("Reservation", back_populates="user")
    fines = relationship("Fine", back_populates="user")


class Loan(Base):
    """
    Loans table - one row per borrowing.

    Active while ``return_date`` is NULL. Rows are never deleted; when a
    book is withdrawn from the catalog its historical loans keep their row
    with ``book_id`` cleared.
    """

    __tablename__ = "loans"

    id = Column(Integer, primary_key=True, autoincrement=True)
    book_id = Column(Integer, ForeignKey("books.id", ondelete="SET NULL"), nullable=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    borrow_date = Column(Date, nullable=False)
    due_date = Column(Date, nullable=False)
    return_date = Column(Date, nullable=True)

    created_at = Column(DateTime, nullable=False, default=func.now())

    book = relationship("Book", back_populates="loans")
    user = relationship("User", back_populates="loans")
    fine = relationship("Fine", back_populates="loan", uselist=False)

    __table_args__ = (
        Index("idx_loan_user", "user_id"),
        Index("idx_loan_book", "book_id"),
        Index("idx_loan_due_date", "due_date"),
        Index(
            "uq_loan_active_book_user",
            "book_id",
            "user_id",
            unique=True,
            sqlite_where=text(ACTIVE_LOAN_CLAUSE),
            postgresql_where=text(ACTIVE_LOAN_CLAUSE),
        ),
        CheckConstraint("due_date >= borrow_date", name="check_due_not_before_borrow"),
    )


class Reservation(Base):
    """
    Reservations table - the per-book waiting list.

    Queue order is ``reservation_time`` then ``id``. Status transitions are
    conditional UPDATEs keyed on the previous status, so two workers can
    never both move the same row.
    """

    __tablename__ = "reservations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    book_id = Column(Integer, ForeignKey("books.id", ondelete="SET NULL"), nullable=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    reservation_time = Column(DateTime, nullable=False)
    status = Column(Enum(ReservationStatus), nullable=False, default=ReservationStatus.PENDING)
    expiration_time = Column(DateTime, nullable=True)

    updated_at = Column(DateTime, nullable=True, default=func.now(), onupdate=func.now())

    book = relationship("Book", back_populates="reservations")
    user = relationship("User", back_populates="reservations")

    __table_args__ = (
        Index("idx_reservation_queue", "book_id", "status", "reservation_time"),
        Index("idx_reservation_user", "user_id"),
        Index("idx_reservation_expiration", "status", "expiration_time"),
        Index(
            "uq_reservation_active_book_user",
            "book_id",
            "user_id",
            unique=True,
            sqlite_where=text(ACTIVE_RESERVATION_CLAUSE),
            postgresql_where=text(ACTIVE_RESERVATION_CLAUSE),
        ),
    )


class Fine(Base):
    """Fines table - at most one fine per loan."""

    __tablename__ = "fines"

    id = Column(Integer, primary_key=True, autoincrement=True)
    loan_id = Column(Integer, ForeignKey("loans.id"), nullable=False, unique=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    amount = Column(Numeric(10, 2, asdecimal=True), nullable=False)
    issue_date = Column(Date, nullable=False)
    paid_date = Column(Date, nullable=True)
    status = Column(Enum(FineStatus), nullable=False, default=FineStatus.PENDING)

    loan = relationship("Loan", back_populates="fine")
    user = relationship("User", back_populates="fines")

    __table_args__ = (
        Index("idx_fine_user_status", "user_id", "status"),
        CheckConstraint("amount > 0", name="check_fine_amount_positive"),
    )
