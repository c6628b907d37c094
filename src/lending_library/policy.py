"""
Authorization policy for circulation operations.

The request layer authenticates callers; the core only receives an
``Actor`` (identity plus role) and asks this module whether that actor may
touch a given record. Keeping the role-to-permission mapping here means no
repository duck-types on a persisted user object.
"""

from pydantic import BaseModel, ConfigDict

from .errors import ForbiddenError
from .models.user import Role


class Actor(BaseModel):
    """The already-authenticated caller of an operation."""

    id: int
    role: Role = Role.PATRON

    model_config = ConfigDict(frozen=True)

    @property
    def is_librarian(self) -> bool:
        return self.role == Role.LIBRARIAN

    @classmethod
    def patron(cls, user_id: int) -> "Actor":
        return cls(id=user_id, role=Role.PATRON)

    @classmethod
    def librarian(cls, user_id: int) -> "Actor":
        return cls(id=user_id, role=Role.LIBRARIAN)


def can_act_on(actor: Actor, owner_id: int) -> bool:
    """Owners act on their own records; librarians act on anyone's."""
    return actor.is_librarian or actor.id == owner_id


def require_owner_or_librarian(actor: Actor, owner_id: int, action: str) -> None:
    """
    Raise ForbiddenError unless the actor owns the record or is a librarian.

    Args:
        actor: Caller of the operation
        owner_id: User id that owns the record
        action: Human-readable action for the error message
    """
    if not can_act_on(actor, owner_id):
        raise ForbiddenError(f"User {actor.id} is not allowed to {action}")


def require_librarian(actor: Actor, action: str) -> None:
    """Raise ForbiddenError unless the actor has the librarian role."""
    if not actor.is_librarian:
        raise ForbiddenError(f"Only librarians may {action}")
