"""
User repository implementation for the lending library.

Manages patron and librarian identities. Username and email are both
unique, compared case-insensitively; registration and edits reject either
collision with a DuplicateError.
"""

import logging

from pydantic import BaseModel, EmailStr, Field
from sqlalchemy import exists, func, or_, select
from sqlalchemy.exc import IntegrityError

from ..models.user import Role
from ..models.user import User as UserModel
from ..policy import Actor
from .repository import (
    BaseRepository,
    ConflictError,
    DuplicateError,
    PaginatedResponse,
    PaginationParams,
)
from .schema import Fine as FineDB
from .schema import Loan as LoanDB
from .schema import Reservation as ReservationDB
from .schema import User as UserDB
from .session import safe_commit, safe_query

logger = logging.getLogger(__name__)

USERNAME_PATTERN = r"^[a-zA-Z0-9_.-]+$"


class UserCreateSchema(BaseModel):
    """Schema for registering a new user."""

    username: str = Field(..., min_length=3, max_length=50, pattern=USERNAME_PATTERN)
    email: EmailStr
    full_name: str | None = None
    role: Role = Role.PATRON


class UserUpdateSchema(BaseModel):
    """Schema for editing a user - all fields optional."""

    username: str | None = Field(None, min_length=3, max_length=50, pattern=USERNAME_PATTERN)
    email: EmailStr | None = None
    full_name: str | None = None
    role: Role | None = None


class UserRepository(BaseRepository[UserDB, UserCreateSchema, UserModel]):
    """Repository for user data access."""

    @property
    def model_class(self):
        return UserDB

    @property
    def response_schema(self):
        return UserModel

    def _check_unique(
        self, username: str | None, email: str | None, exclude_id: int | None = None
    ) -> None:
        conditions = []
        if username is not None:
            conditions.append(func.lower(UserDB.username) == username.lower())
        if email is not None:
            conditions.append(func.lower(UserDB.email) == email.lower())
        if not conditions:
            return

        query = select(UserDB).where(or_(*conditions))
        if exclude_id is not None:
            query = query.where(UserDB.id != exclude_id)
        taken = safe_query(
            self.session,
            lambda s: s.execute(query).scalars().all(),
            "Failed to check user uniqueness",
        )
        for other in taken:
            if username is not None and other.username.lower() == username.lower():
                raise DuplicateError(f"Username '{username}' is already taken")
        if taken:
            raise DuplicateError(f"Email '{email}' is already registered")

    def create(self, data: UserCreateSchema) -> UserModel:
        """
        Register a user.

        Raises:
            DuplicateError: If the username or email is already taken
        """
        self._check_unique(data.username, data.email)

        user = super().create(data)
        logger.info("User registered: %s (%s)", user.username, user.role.value)
        return user

    def update_user(self, user_id: int, data: UserUpdateSchema) -> UserModel:
        """
        Edit a user's identity or role and commit.

        Only fields that were set are changed. Uniqueness is checked against
        every other user, so re-submitting the current username is fine.

        Raises:
            NotFoundError: If the user does not exist
            DuplicateError: If the new username or email belongs to someone else
        """
        user = self._get_db_or_raise(user_id)
        changes = {k: v for k, v in data.model_dump(exclude_unset=True).items() if v is not None}

        self._check_unique(changes.get("username"), changes.get("email"), exclude_id=user_id)

        for field, value in changes.items():
            setattr(user, field, value)
        try:
            self.session.flush()
        except IntegrityError as e:
            self.session.rollback()
            raise DuplicateError(f"User already exists: {e.orig!s}") from e

        safe_commit(self.session, "update user")
        updated = self._to_response_model(user)
        logger.info("User %d updated: %s (%s)", user_id, updated.username, updated.role.value)
        return updated

    def delete_user(self, user_id: int) -> None:
        """
        Remove a user and commit.

        Refused while the user has a book on loan. Loans, reservations and
        fines always name their user, so a user with any circulation history
        is kept as well.

        Raises:
            NotFoundError: If the user does not exist
            ConflictError: If the user has an active loan or circulation history
        """
        user = self._get_db_or_raise(user_id)

        if self.has_active_loans(user_id):
            raise ConflictError(
                f"Cannot delete user '{user.username}': they have books that are not returned"
            )

        history = select(
            or_(
                exists().where(LoanDB.user_id == user_id),
                exists().where(ReservationDB.user_id == user_id),
                exists().where(FineDB.user_id == user_id),
            )
        )
        if safe_query(
            self.session, lambda s: s.execute(history).scalar(), "Failed to check user history"
        ):
            raise ConflictError(
                f"Cannot delete user '{user.username}': they have circulation history"
            )

        self.session.delete(user)
        safe_commit(self.session, "delete user")
        logger.info("User deleted with id %d", user_id)

    def has_active_loans(self, user_id: int) -> bool:
        query = select(
            exists().where(LoanDB.user_id == user_id, LoanDB.return_date.is_(None))
        )
        return safe_query(
            self.session, lambda s: s.execute(query).scalar(), "Failed to check active loans"
        )

    def get_by_username(self, username: str) -> UserModel | None:
        query = select(UserDB).where(func.lower(UserDB.username) == username.lower())
        db_obj = safe_query(
            self.session,
            lambda s: s.execute(query).scalar_one_or_none(),
            "Failed to get user by username",
        )
        return self._to_response_model(db_obj) if db_obj else None

    def list_users(
        self, role: Role | None = None, pagination: PaginationParams | None = None
    ) -> PaginatedResponse[UserModel]:
        pagination = pagination or PaginationParams()
        pagination.validate_params()

        query = select(UserDB)
        if role is not None:
            query = query.where(UserDB.role == role)

        total = safe_query(
            self.session,
            lambda s: s.execute(select(func.count()).select_from(query.subquery())).scalar(),
            "Failed to count users",
        )
        page_query = query.order_by(UserDB.username).offset(pagination.offset).limit(
            pagination.page_size
        )
        results = safe_query(
            self.session, lambda s: s.execute(page_query).scalars().all(), "Failed to list users"
        )
        return PaginatedResponse.build(
            [self._to_response_model(u) for u in results], total or 0, pagination
        )

    def actor_for(self, user_id: int) -> Actor:
        """Build the Actor for a registered user (NotFoundError if unknown)."""
        user = self.get(user_id)
        return Actor(id=user.id, role=user.role)
