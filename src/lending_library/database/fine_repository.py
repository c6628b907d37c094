"""
Fine repository implementation for the lending library.

The Fine Calculator turns a returned loan into at most one fine. What to do
with the loan's existing fine is a pure decision over its standing:

=========  ==================  ===========================
standing   amount owed         action
=========  ==================  ===========================
NONE       nothing             SKIP
NONE       positive            CREATE
PENDING    nothing             KEEP
PENDING    same as stored      KEEP
PENDING    different           UPDATE (amount, issue date)
SETTLED    anything            KEEP
=========  ==================  ===========================

``decide_fine_action`` implements this table without touching the database,
so it is tested on its own.
"""

import logging
from collections.abc import Callable
from datetime import date, datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel
from sqlalchemy import desc, func, select, update
from sqlalchemy.exc import IntegrityError

from ..config import LibraryConfig, get_config
from ..models.fine import Fine as FineModel
from ..models.fine import FineStatus
from .repository import BaseRepository, ConflictError, InvalidStateError, NotFoundError
from .schema import Fine as FineDB
from .schema import Loan as LoanDB
from .session import safe_query

logger = logging.getLogger(__name__)


class FineStanding(Enum):
    """Where a loan stands with respect to its fine."""

    NONE = "none"
    PENDING = "pending"
    # Paid or waived: never recomputed
    SETTLED = "settled"

    @classmethod
    def of(cls, fine: FineModel | None) -> "FineStanding":
        if fine is None:
            return cls.NONE
        if fine.status == FineStatus.PENDING:
            return cls.PENDING
        return cls.SETTLED


class FineAction(Enum):
    SKIP = "skip"
    CREATE = "create"
    UPDATE = "update"
    KEEP = "keep"


def calculate_fine_amount(
    due_date: date, return_date: date, daily_rate: Decimal, grace_period_days: int
) -> Decimal | None:
    """
    Amount owed for a loan returned on ``return_date``.

    Returns:
        The amount, or None if the return was within the grace period or
        the rate makes the fine zero
    """
    overdue_days = (return_date - due_date).days
    if overdue_days <= grace_period_days:
        return None
    amount = (daily_rate * (overdue_days - grace_period_days)).quantize(Decimal("0.01"))
    return amount if amount > 0 else None


def decide_fine_action(
    standing: FineStanding, amount: Decimal | None, current_amount: Decimal | None = None
) -> FineAction:
    if standing == FineStanding.SETTLED:
        return FineAction.KEEP
    if amount is None:
        return FineAction.SKIP if standing == FineStanding.NONE else FineAction.KEEP
    if standing == FineStanding.NONE:
        return FineAction.CREATE
    return FineAction.KEEP if amount == current_amount else FineAction.UPDATE


class FineCreateSchema(BaseModel):
    loan_id: int
    user_id: int
    amount: Decimal


class FineRepository(BaseRepository[FineDB, FineCreateSchema, FineModel]):
    """
    Repository for late-return fines.

    Rate and grace period come from the config handed in at construction.
    """

    def __init__(
        self,
        session,
        config: LibraryConfig | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        super().__init__(session)
        self.config = config or get_config()
        self.clock = clock

    @property
    def model_class(self):
        return FineDB

    @property
    def response_schema(self):
        return FineModel

    def today(self) -> date:
        return self.clock().date()

    def _reload(self, fine_id: int) -> FineModel:
        query = (
            select(FineDB)
            .where(FineDB.id == fine_id)
            .execution_options(populate_existing=True)
        )
        fine = safe_query(
            self.session, lambda s: s.execute(query).scalar_one_or_none(), "Failed to load fine"
        )
        if fine is None:
            raise NotFoundError(f"Fine {fine_id} not found")
        return self._to_response_model(fine)

    def get_for_loan(self, loan_id: int) -> FineModel | None:
        query = (
            select(FineDB)
            .where(FineDB.loan_id == loan_id)
            .execution_options(populate_existing=True)
        )
        fine = safe_query(
            self.session,
            lambda s: s.execute(query).scalar_one_or_none(),
            "Failed to get fine for loan",
        )
        return self._to_response_model(fine) if fine else None

    def assess(self, loan_id: int) -> FineModel | None:
        """
        Create, recompute or leave alone the fine of a returned loan.

        Returns:
            The loan's fine after assessment, or None if it owes nothing

        Raises:
            NotFoundError: If the loan does not exist
            InvalidStateError: If the loan has not been returned
        """
        loan = safe_query(
            self.session,
            lambda s: s.get(LoanDB, loan_id, populate_existing=True),
            "Failed to load loan",
        )
        if loan is None:
            raise NotFoundError(f"Loan {loan_id} not found")
        if loan.return_date is None:
            raise InvalidStateError(f"Loan {loan_id} has not been returned; cannot assess a fine")

        amount = calculate_fine_amount(
            loan.due_date,
            loan.return_date,
            self.config.daily_fine_rate,
            self.config.grace_period_days,
        )
        existing = self.get_for_loan(loan_id)
        action = decide_fine_action(
            FineStanding.of(existing), amount, existing.amount if existing else None
        )

        if action == FineAction.SKIP:
            logger.debug("Loan %d returned on time, no fine", loan_id)
            return None
        if action == FineAction.KEEP:
            return existing
        if action == FineAction.CREATE:
            return self._create_fine(loan, amount)
        return self._update_amount(existing, amount)

    def _create_fine(self, loan: LoanDB, amount: Decimal) -> FineModel:
        fine = FineDB(
            loan_id=loan.id,
            user_id=loan.user_id,
            amount=amount,
            issue_date=self.today(),
            status=FineStatus.PENDING,
        )
        self.session.add(fine)
        try:
            self.session.flush()
        except IntegrityError as e:
            raise ConflictError(f"Loan {loan.id} was assessed concurrently") from e

        logger.info(
            "Fine %d created: %s owed by user %d for loan %d",
            fine.id,
            amount,
            loan.user_id,
            loan.id,
        )
        return self._to_response_model(fine)

    def _update_amount(self, fine: FineModel, amount: Decimal) -> FineModel:
        stmt = (
            update(FineDB)
            .where(FineDB.id == fine.id, FineDB.status == FineStatus.PENDING)
            .values(amount=amount, issue_date=self.today())
            .execution_options(synchronize_session=False)
        )
        result = safe_query(self.session, lambda s: s.execute(stmt), "Failed to update fine")
        if result.rowcount == 0:
            # Settled between read and write; settled fines are never recomputed
            return self._reload(fine.id)

        logger.info("Fine %d recomputed: %s -> %s", fine.id, fine.amount, amount)
        return self._reload(fine.id)

    def pay(self, fine_id: int) -> FineModel:
        """
        Record payment of a fine.

        Waived fines can still be paid.

        Raises:
            NotFoundError: If the fine does not exist
            InvalidStateError: If the fine is already paid
        """
        fine = self._reload(fine_id)
        if fine.status == FineStatus.PAID:
            raise InvalidStateError(f"Fine {fine_id} is already paid")

        stmt = (
            update(FineDB)
            .where(FineDB.id == fine_id, FineDB.status != FineStatus.PAID)
            .values(status=FineStatus.PAID, paid_date=self.today())
            .execution_options(synchronize_session=False)
        )
        result = safe_query(self.session, lambda s: s.execute(stmt), "Failed to pay fine")
        if result.rowcount == 0:
            raise InvalidStateError(f"Fine {fine_id} is already paid")

        logger.info("Fine %d paid (%s, user %d)", fine_id, fine.amount, fine.user_id)
        return self._reload(fine_id)

    def waive(self, fine_id: int) -> FineModel:
        """
        Forgive a fine. Waiving a waived fine is a no-op.

        Raises:
            NotFoundError: If the fine does not exist
            InvalidStateError: If the fine is already paid
        """
        fine = self._reload(fine_id)
        if fine.status == FineStatus.WAIVED:
            return fine
        if fine.status == FineStatus.PAID:
            raise InvalidStateError(f"Fine {fine_id} is already paid and cannot be waived")

        stmt = (
            update(FineDB)
            .where(FineDB.id == fine_id, FineDB.status == FineStatus.PENDING)
            .values(status=FineStatus.WAIVED)
            .execution_options(synchronize_session=False)
        )
        result = safe_query(self.session, lambda s: s.execute(stmt), "Failed to waive fine")
        if result.rowcount == 0:
            # Settled concurrently; decide again on the fresh status
            return self.waive(fine_id)

        logger.info("Fine %d waived (%s, user %d)", fine_id, fine.amount, fine.user_id)
        return self._reload(fine_id)

    # === Queries ===

    def for_user(self, user_id: int, status: FineStatus | None = None) -> list[FineModel]:
        query = select(FineDB).where(FineDB.user_id == user_id)
        if status is not None:
            query = query.where(FineDB.status == status)
        query = query.order_by(desc(FineDB.issue_date), desc(FineDB.id))
        results = safe_query(
            self.session, lambda s: s.execute(query).scalars().all(), "Failed to get user fines"
        )
        return [self._to_response_model(f) for f in results]

    def list_fines(self, status: FineStatus | None = None) -> list[FineModel]:
        query = select(FineDB)
        if status is not None:
            query = query.where(FineDB.status == status)
        query = query.order_by(desc(FineDB.issue_date), desc(FineDB.id))
        results = safe_query(
            self.session, lambda s: s.execute(query).scalars().all(), "Failed to get fines"
        )
        return [self._to_response_model(f) for f in results]

    def outstanding_total(self, user_id: int) -> Decimal:
        """Sum of a user's PENDING fines."""
        query = select(func.coalesce(func.sum(FineDB.amount), 0)).where(
            FineDB.user_id == user_id, FineDB.status == FineStatus.PENDING
        )
        total = safe_query(
            self.session, lambda s: s.execute(query).scalar(), "Failed to total fines"
        )
        return Decimal(str(total)).quantize(Decimal("0.01"))
