"""Tests for the fine MCP tools."""

from contextlib import contextmanager
from datetime import timedelta

import pytest

from lending_library.models.user import Role
from lending_library.policy import Actor
from lending_library.tools.fines import list_fines_handler, pay_fine_handler, waive_fine_handler


@pytest.fixture
def mock_get_session(test_db_session, monkeypatch):
    """Hand the test session to the handlers instead of opening a new one."""

    @contextmanager
    def _mock_get_session():
        yield test_db_session

    monkeypatch.setattr("lending_library.tools.fines.get_session", _mock_get_session)
    return test_db_session


@pytest.fixture
def fine(mock_get_session, circulation, clock, make_book, patron):
    """A 4.00 fine from a loan returned four days late."""
    loan = circulation.borrow_book(
        make_book().id, patron.id, clock.today() + timedelta(days=3)
    ).loan
    clock.advance(days=7)
    return circulation.return_loan(loan.id, Actor.patron(patron.id)).fine


def _librarian_args(librarian, **kwargs):
    return {"actor_id": librarian.id, "actor_role": Role.LIBRARIAN.value, **kwargs}


class TestSettleFineTools:
    async def test_pay(self, fine, librarian):
        result = await pay_fine_handler(_librarian_args(librarian, fine_id=fine.id))

        assert not result.get("isError")
        assert result["data"]["fine"]["status"] == "PAID"
        assert result["data"]["fine"]["paid_date"] is not None
        assert "paid" in result["content"][0]["text"]

    async def test_pay_twice(self, fine, librarian):
        await pay_fine_handler(_librarian_args(librarian, fine_id=fine.id))

        result = await pay_fine_handler(_librarian_args(librarian, fine_id=fine.id))

        assert result["isError"] is True
        assert result["errorKind"] == "invalid_state"

    async def test_patron_cannot_pay(self, fine, patron):
        result = await pay_fine_handler({"actor_id": patron.id, "fine_id": fine.id})
        assert result["errorKind"] == "forbidden"

    async def test_waive(self, fine, librarian):
        result = await waive_fine_handler(_librarian_args(librarian, fine_id=fine.id))

        assert result["data"]["fine"]["status"] == "WAIVED"

    async def test_waive_paid_fine(self, fine, librarian):
        await pay_fine_handler(_librarian_args(librarian, fine_id=fine.id))

        result = await waive_fine_handler(_librarian_args(librarian, fine_id=fine.id))

        assert result["errorKind"] == "invalid_state"

    async def test_unknown_fine(self, mock_get_session, librarian):
        result = await pay_fine_handler(_librarian_args(librarian, fine_id=404))
        assert result["errorKind"] == "not_found"


class TestListFinesTool:
    async def test_own_fines(self, fine, patron):
        result = await list_fines_handler({"actor_id": patron.id})

        assert not result.get("isError")
        assert [f["id"] for f in result["data"]["fines"]] == [fine.id]
        assert result["data"]["outstanding_total"] == "4.00"

    async def test_status_filter(self, fine, patron):
        result = await list_fines_handler({"actor_id": patron.id, "status": "PAID"})
        assert result["data"]["fines"] == []

    async def test_other_users_fines_forbidden(self, fine, other_patron, patron):
        result = await list_fines_handler({"actor_id": other_patron.id, "user_id": patron.id})
        assert result["errorKind"] == "forbidden"

    async def test_librarian_lists_all(self, fine, librarian):
        result = await list_fines_handler(_librarian_args(librarian, all_users=True))

        assert len(result["data"]["fines"]) == 1
        assert result["data"]["outstanding_total"] is None

    async def test_patron_cannot_list_all(self, fine, patron):
        result = await list_fines_handler({"actor_id": patron.id, "all_users": True})
        assert result["errorKind"] == "forbidden"
