"""
Shared pieces of the MCP tool handlers.

Tools translate caller identity and arguments into orchestrator calls and
turn the error taxonomy into MCP error results. Every error result carries
an ``errorKind`` so clients can branch on it without parsing text.
"""

import logging
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from ..errors import RepositoryException
from ..models.user import Role
from ..policy import Actor

logger = logging.getLogger(__name__)


class ActorInput(BaseModel):
    """Identity of the already-authenticated caller."""

    actor_id: int = Field(..., description="ID of the user performing the action", ge=1)

    actor_role: Role = Field(
        default=Role.PATRON,
        description="Role of the caller: PATRON acts on own records, LIBRARIAN on any",
    )

    @property
    def actor(self) -> Actor:
        return Actor(id=self.actor_id, role=self.actor_role)


def text_response(message: str, data: dict[str, Any] | None = None) -> dict[str, Any]:
    response: dict[str, Any] = {"content": [{"type": "text", "text": message}]}
    if data is not None:
        response["data"] = data
    return response


def error_response(kind: str, message: str) -> dict[str, Any]:
    return {
        "isError": True,
        "errorKind": kind,
        "content": [{"type": "text", "text": message}],
    }


def validation_error_response(tool_name: str, error: ValidationError) -> dict[str, Any]:
    logger.warning("Invalid %s parameters: %s", tool_name, error)
    return error_response("invalid_argument", f"Invalid {tool_name} parameters: {error}")


def repository_error_response(tool_name: str, error: RepositoryException) -> dict[str, Any]:
    """Business-rule failures are expected outcomes, not server faults."""
    logger.info("%s failed (%s): %s", tool_name, error.kind, error)
    return error_response(error.kind, str(error))


def unexpected_error_response(tool_name: str, error: Exception) -> dict[str, Any]:
    logger.exception("Unexpected error in %s tool", tool_name)
    return error_response("internal_error", f"An unexpected error occurred: {error!s}")
