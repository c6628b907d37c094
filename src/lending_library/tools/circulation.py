"""
Circulation tools for the lending library MCP server.

Tools that move copies between shelf and patrons:
1. borrow_book: lend a copy (fulfils the borrower's hold if they had one)
2. return_book: take a copy back, assess any fine, promote the next waiter
3. reserve_book: join the waiting list of an unavailable book
4. cancel_reservation: leave the waiting list or give up a hold
5. expire_reservations: sweep lapsed holds

Each handler validates its input, runs exactly one orchestrator operation in
its own session, and returns text plus structured ``data``.
"""

import logging
from datetime import date
from typing import Any

from pydantic import Field, ValidationError

from ..database.circulation_repository import CirculationRepository
from ..database.repository import RepositoryException
from ..database.session import get_session
from ..observability import trace_tool
from .common import (
    ActorInput,
    repository_error_response,
    text_response,
    unexpected_error_response,
    validation_error_response,
)

logger = logging.getLogger(__name__)


# =============================================================================
# BORROW
# =============================================================================


class BorrowBookInput(ActorInput):
    """Input schema for the borrow_book tool."""

    book_id: int = Field(..., description="ID of the book to borrow", ge=1)

    user_id: int = Field(
        ...,
        description="ID of the borrowing user (patrons may only borrow for themselves)",
        ge=1,
    )

    due_date: date | None = Field(
        default=None,
        description="Optional due date after today. Defaults to the standard loan period",
        examples=["2024-02-15"],
    )


@trace_tool("borrow_book")
async def borrow_book_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    try:
        params = BorrowBookInput.model_validate(arguments)
    except ValidationError as e:
        return validation_error_response("borrow_book", e)

    try:
        with get_session() as session:
            result = CirculationRepository(session).borrow_book(
                params.book_id, params.user_id, params.due_date, actor=params.actor
            )
    except RepositoryException as e:
        return repository_error_response("borrow_book", e)
    except Exception as e:
        return unexpected_error_response("borrow_book", e)

    loan = result.loan
    message = (
        f"Book {loan.book_id} lent to user {loan.user_id} (loan {loan.id}). "
        f"Due date: {loan.due_date.strftime('%B %d, %Y')}"
    )
    if result.fulfilled_reservation is not None:
        message += f". Reservation {result.fulfilled_reservation.id} fulfilled"

    return text_response(message, result.model_dump(mode="json"))


borrow_book = {
    "name": "borrow_book",
    "description": (
        "Borrow a copy of a book. Fails if no copy is free (reserve it instead) or if the "
        "user already has this book on loan. A hold the user had on the book is fulfilled."
    ),
    "inputSchema": BorrowBookInput.model_json_schema(),
    "handler": borrow_book_handler,
}


# =============================================================================
# RETURN
# =============================================================================


class ReturnBookInput(ActorInput):
    """Input schema for the return_book tool."""

    loan_id: int = Field(..., description="ID of the loan being returned", ge=1)


@trace_tool("return_book")
async def return_book_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    try:
        params = ReturnBookInput.model_validate(arguments)
    except ValidationError as e:
        return validation_error_response("return_book", e)

    try:
        with get_session() as session:
            result = CirculationRepository(session).return_loan(params.loan_id, params.actor)
    except RepositoryException as e:
        return repository_error_response("return_book", e)
    except Exception as e:
        return unexpected_error_response("return_book", e)

    if result.already_returned:
        message = f"Loan {result.loan.id} was already returned on {result.loan.return_date}"
    else:
        message = f"Loan {result.loan.id} returned on {result.loan.return_date}"
        if result.fine is not None:
            message += f". Fine: {result.fine.amount} ({result.fine.status.value})"
        if result.promoted_reservation is not None:
            message += (
                f". Copy now held for user {result.promoted_reservation.user_id} "
                f"until {result.promoted_reservation.expiration_time:%Y-%m-%d %H:%M}"
            )

    return text_response(message, result.model_dump(mode="json"))


return_book = {
    "name": "return_book",
    "description": (
        "Return a borrowed book. Late returns are fined; the copy is offered to the next "
        "user waiting for it. Returning an already-returned loan changes nothing."
    ),
    "inputSchema": ReturnBookInput.model_json_schema(),
    "handler": return_book_handler,
}


# =============================================================================
# RESERVE
# =============================================================================


class ReserveBookInput(ActorInput):
    """Input schema for the reserve_book tool."""

    book_id: int = Field(..., description="ID of the unavailable book to reserve", ge=1)

    user_id: int = Field(..., description="ID of the user joining the waiting list", ge=1)


@trace_tool("reserve_book")
async def reserve_book_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    try:
        params = ReserveBookInput.model_validate(arguments)
    except ValidationError as e:
        return validation_error_response("reserve_book", e)

    try:
        with get_session() as session:
            repo = CirculationRepository(session)
            reservation = repo.reserve_book(params.book_id, params.user_id, actor=params.actor)
            queue = [r.id for r in repo.reservation_queue(params.book_id)]
            position = queue.index(reservation.id) + 1
    except RepositoryException as e:
        return repository_error_response("reserve_book", e)
    except Exception as e:
        return unexpected_error_response("reserve_book", e)

    return text_response(
        f"Reservation {reservation.id} created: user {reservation.user_id} is number "
        f"{position} in the queue for book {reservation.book_id}",
        {"reservation": reservation.model_dump(mode="json"), "queue_position": position},
    )


reserve_book = {
    "name": "reserve_book",
    "description": (
        "Join the waiting list of a book with no free copy. Waiters are served first come, "
        "first served; when a copy frees up it is held for the next waiter for a limited time."
    ),
    "inputSchema": ReserveBookInput.model_json_schema(),
    "handler": reserve_book_handler,
}


# =============================================================================
# CANCEL
# =============================================================================


class CancelReservationInput(ActorInput):
    """Input schema for the cancel_reservation tool."""

    reservation_id: int = Field(..., description="ID of the reservation to cancel", ge=1)


@trace_tool("cancel_reservation")
async def cancel_reservation_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    try:
        params = CancelReservationInput.model_validate(arguments)
    except ValidationError as e:
        return validation_error_response("cancel_reservation", e)

    try:
        with get_session() as session:
            result = CirculationRepository(session).cancel_reservation(
                params.reservation_id, params.actor
            )
    except RepositoryException as e:
        return repository_error_response("cancel_reservation", e)
    except Exception as e:
        return unexpected_error_response("cancel_reservation", e)

    message = f"Reservation {result.reservation.id} canceled"
    if result.promoted_reservation is not None:
        message += f". Held copy passed to user {result.promoted_reservation.user_id}"
    return text_response(message, result.model_dump(mode="json"))


cancel_reservation = {
    "name": "cancel_reservation",
    "description": (
        "Cancel a pending reservation or give up a held copy. Only the owner or a librarian "
        "may cancel. A released hold goes to the next user in the queue."
    ),
    "inputSchema": CancelReservationInput.model_json_schema(),
    "handler": cancel_reservation_handler,
}


# =============================================================================
# EXPIRE
# =============================================================================


@trace_tool("expire_reservations")
async def expire_reservations_handler(arguments: dict[str, Any]) -> dict[str, Any]:  # noqa: ARG001
    try:
        with get_session() as session:
            result = CirculationRepository(session).expire_stale_reservations()
    except RepositoryException as e:
        return repository_error_response("expire_reservations", e)
    except Exception as e:
        return unexpected_error_response("expire_reservations", e)

    message = (
        f"Expired {len(result.expired)} holds and promoted {len(result.promoted)} reservations"
    )
    if result.failures:
        message += f"; {len(result.failures)} holds could not be expired"
    return text_response(message, result.model_dump(mode="json"))


expire_reservations = {
    "name": "expire_reservations",
    "description": (
        "Expire holds that were not collected in time and offer each copy to the next "
        "user waiting for it. Safe to run at any time."
    ),
    "inputSchema": {"type": "object", "properties": {}},
    "handler": expire_reservations_handler,
}
