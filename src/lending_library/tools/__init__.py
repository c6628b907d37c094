"""
MCP tools for the lending library.

Tools are the request layer: they take an already-authenticated caller
(``actor_id`` and ``actor_role``), call one lending operation, and return
an MCP result. Failures become ``isError`` results tagged with the error's
``errorKind`` (``not_found``, ``unavailable``, ``conflict``, ...).
"""

from .circulation import (
    borrow_book,
    cancel_reservation,
    expire_reservations,
    reserve_book,
    return_book,
)
from .fines import list_fines, pay_fine, waive_fine

# Registered on the server in this order
all_tools = [
    borrow_book,
    return_book,
    reserve_book,
    cancel_reservation,
    expire_reservations,
    pay_fine,
    waive_fine,
    list_fines,
]

__all__ = [
    "all_tools",
    "borrow_book",
    "cancel_reservation",
    "expire_reservations",
    "list_fines",
    "pay_fine",
    "reserve_book",
    "return_book",
    "waive_fine",
]
