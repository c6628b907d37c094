"""Tests for user registration, editing and removal."""

import pytest
from pydantic import ValidationError

from lending_library.database.repository import (
    ConflictError,
    DuplicateError,
    NotFoundError,
    PaginationParams,
)
from lending_library.database.user_repository import (
    UserCreateSchema,
    UserRepository,
    UserUpdateSchema,
)
from lending_library.models.user import Role
from lending_library.policy import Actor


@pytest.fixture
def users(test_db_session) -> UserRepository:
    return UserRepository(test_db_session)


class TestUserRepository:
    def test_register(self, users):
        user = users.create(
            UserCreateSchema(username="dana", email="dana@library.org", full_name="Dana Scully")
        )

        assert user.role == Role.PATRON
        assert users.get_by_username("DANA").id == user.id

    @pytest.mark.parametrize(
        "username,email",
        [("Alice", "someone@library.org"), ("someone", "ALICE@library.org")],
    )
    def test_duplicates_are_case_insensitive(self, users, patron, username, email):
        with pytest.raises(DuplicateError):
            users.create(UserCreateSchema(username=username, email=email))

    def test_invalid_username(self):
        with pytest.raises(ValidationError):
            UserCreateSchema(username="no spaces", email="x@library.org")

    def test_list_by_role(self, users, patron, other_patron, librarian):
        everyone = users.list_users()
        assert [u.username for u in everyone.items] == ["alice", "bob", "librarian"]

        librarians = users.list_users(role=Role.LIBRARIAN)
        assert [u.username for u in librarians.items] == ["librarian"]

        page = users.list_users(pagination=PaginationParams(page=2, page_size=2))
        assert page.total == 3
        assert [u.username for u in page.items] == ["librarian"]

    def test_actor_for(self, users, librarian):
        actor = users.actor_for(librarian.id)
        assert actor.is_librarian
        assert actor.id == librarian.id

        with pytest.raises(NotFoundError):
            users.actor_for(999)


class TestUpdateUser:
    def test_update_identity_and_role(self, users, patron):
        updated = users.update_user(
            patron.id,
            UserUpdateSchema(
                username="alice.w",
                email="alice.w@library.org",
                full_name="Alice Walker",
                role=Role.LIBRARIAN,
            ),
        )

        assert updated.username == "alice.w"
        assert updated.role == Role.LIBRARIAN
        assert users.get(patron.id).email == "alice.w@library.org"
        assert users.actor_for(patron.id).is_librarian

    def test_partial_update_keeps_other_fields(self, users, patron):
        updated = users.update_user(patron.id, UserUpdateSchema(full_name="Only Name"))

        assert updated.full_name == "Only Name"
        assert updated.username == patron.username
        assert updated.email == patron.email
        assert updated.role == patron.role

    def test_keeping_own_username_is_not_a_collision(self, users, patron):
        updated = users.update_user(patron.id, UserUpdateSchema(username="ALICE"))
        assert updated.username == "ALICE"

    @pytest.mark.parametrize(
        "changes,message",
        [
            ({"username": "Bob"}, "Username 'Bob' is already taken"),
            ({"email": "BOB@library.org"}, "already registered"),
        ],
    )
    def test_collision_with_another_user(self, users, patron, other_patron, changes, message):
        with pytest.raises(DuplicateError, match=message):
            users.update_user(patron.id, UserUpdateSchema(**changes))

        assert users.get(patron.id).username == "alice"

    def test_unknown_user(self, users):
        with pytest.raises(NotFoundError):
            users.update_user(999, UserUpdateSchema(full_name="Nobody"))


class TestDeleteUser:
    def test_delete_user_without_history(self, users, patron):
        users.delete_user(patron.id)

        assert users.get_by_id(patron.id) is None
        assert users.get_by_username("alice") is None

    def test_refused_while_book_on_loan(self, users, circulation, make_book, patron):
        circulation.borrow_book(make_book().id, patron.id)

        with pytest.raises(ConflictError, match="not returned"):
            users.delete_user(patron.id)

        assert users.get(patron.id).username == "alice"

    def test_refused_with_circulation_history(self, users, circulation, make_book, patron):
        loan = circulation.borrow_book(make_book().id, patron.id).loan
        circulation.return_loan(loan.id, Actor.patron(patron.id))

        with pytest.raises(ConflictError, match="circulation history"):
            users.delete_user(patron.id)

        assert users.get(patron.id).id == patron.id

    def test_unknown_user(self, users):
        with pytest.raises(NotFoundError):
            users.delete_user(999)
