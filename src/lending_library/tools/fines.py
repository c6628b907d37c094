"""
Fine tools for the lending library MCP server.

Settling fines is a librarian action; listing is open to users for their
own fines and to librarians for anyone's.
"""

import logging
from typing import Any

from pydantic import Field, ValidationError

from ..database.circulation_repository import CirculationRepository
from ..database.repository import RepositoryException
from ..database.session import get_session
from ..models.fine import FineStatus
from ..observability import trace_tool
from .common import (
    ActorInput,
    repository_error_response,
    text_response,
    unexpected_error_response,
    validation_error_response,
)

logger = logging.getLogger(__name__)


class SettleFineInput(ActorInput):
    """Input schema for pay_fine and waive_fine."""

    fine_id: int = Field(..., description="ID of the fine", ge=1)


@trace_tool("pay_fine")
async def pay_fine_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    try:
        params = SettleFineInput.model_validate(arguments)
    except ValidationError as e:
        return validation_error_response("pay_fine", e)

    try:
        with get_session() as session:
            fine = CirculationRepository(session).pay_fine(params.fine_id, params.actor)
    except RepositoryException as e:
        return repository_error_response("pay_fine", e)
    except Exception as e:
        return unexpected_error_response("pay_fine", e)

    return text_response(
        f"Fine {fine.id} of {fine.amount} paid on {fine.paid_date}",
        {"fine": fine.model_dump(mode="json")},
    )


pay_fine = {
    "name": "pay_fine",
    "description": "Record payment of a fine. Librarians only; a paid fine cannot be paid again.",
    "inputSchema": SettleFineInput.model_json_schema(),
    "handler": pay_fine_handler,
}


@trace_tool("waive_fine")
async def waive_fine_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    try:
        params = SettleFineInput.model_validate(arguments)
    except ValidationError as e:
        return validation_error_response("waive_fine", e)

    try:
        with get_session() as session:
            fine = CirculationRepository(session).waive_fine(params.fine_id, params.actor)
    except RepositoryException as e:
        return repository_error_response("waive_fine", e)
    except Exception as e:
        return unexpected_error_response("waive_fine", e)

    return text_response(
        f"Fine {fine.id} of {fine.amount} waived", {"fine": fine.model_dump(mode="json")}
    )


waive_fine = {
    "name": "waive_fine",
    "description": "Waive a pending fine. Librarians only; paid fines cannot be waived.",
    "inputSchema": SettleFineInput.model_json_schema(),
    "handler": waive_fine_handler,
}


class ListFinesInput(ActorInput):
    """Input schema for the list_fines tool."""

    user_id: int | None = Field(
        default=None,
        description="Whose fines to list; defaults to the caller. Omit as librarian with all_users",
        ge=1,
    )

    status: FineStatus | None = Field(default=None, description="Only fines in this status")

    all_users: bool = Field(default=False, description="Librarians: list fines of every user")


@trace_tool("list_fines")
async def list_fines_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    try:
        params = ListFinesInput.model_validate(arguments)
    except ValidationError as e:
        return validation_error_response("list_fines", e)

    try:
        with get_session() as session:
            repo = CirculationRepository(session)
            if params.all_users:
                fines = repo.all_fines(params.actor, params.status)
                outstanding = None
            else:
                fines = repo.user_fines(params.actor, params.user_id, params.status)
                outstanding = repo.outstanding_fines_total(params.actor, params.user_id)
    except RepositoryException as e:
        return repository_error_response("list_fines", e)
    except Exception as e:
        return unexpected_error_response("list_fines", e)

    message = f"Found {len(fines)} fines"
    if outstanding is not None:
        message += f"; outstanding total {outstanding}"
    return text_response(
        message,
        {
            "fines": [f.model_dump(mode="json") for f in fines],
            "outstanding_total": str(outstanding) if outstanding is not None else None,
        },
    )


list_fines = {
    "name": "list_fines",
    "description": (
        "List fines. Patrons see their own; librarians may pass any user_id or all_users."
    ),
    "inputSchema": ListFinesInput.model_json_schema(),
    "handler": list_fines_handler,
}
