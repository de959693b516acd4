from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Iterator, Optional

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from errors import ConflictError, NotFoundError, StoreError
from models import Budget, ReconciliationEvent, Transaction, TransactionType
from periods import BudgetPeriodKey, DateRange


@contextmanager
def store_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except (ConflictError, NotFoundError):
        raise
    except SQLAlchemyError as exc:
        raise StoreError(f"{operation} failed: {exc}") from exc


def budget_owner_ids(session: Session) -> list[int]:
    return list(
        session.scalars(select(Budget.user_id).distinct().order_by(Budget.user_id))
    )


def prune_orphan_events(session: Session, before: datetime) -> int:
    """Drop idempotency rows of deleted transactions recorded before ``before``."""
    with store_errors("event prune"):
        result = session.execute(
            delete(ReconciliationEvent)
            .where(
                ReconciliationEvent.created_at < before,
                ReconciliationEvent.transaction_id.not_in(select(Transaction.id)),
            )
            .execution_options(synchronize_session=False)
        )
    return result.rowcount or 0


@dataclass
class TransactionFilters:
    type: Optional[TransactionType] = None
    category: Optional[str] = None
    window: DateRange = DateRange(None, None)


@dataclass(frozen=True)
class GroupTotal:
    key: str
    total_cents: int
    count: int


class LedgerStore:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def add(self, txn: Transaction) -> Transaction:
        with store_errors("transaction insert"):
            txn.user_id = self.user_id
            self.session.add(txn)
            self.session.flush()
        return txn

    def get(self, transaction_id: int) -> Transaction:
        txn = self.session.scalar(
            select(Transaction).where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
        )
        if not txn:
            raise NotFoundError("Transaction not found")
        return txn

    @contextmanager
    def _version_checked(self) -> Iterator[None]:
        try:
            yield
        except StaleDataError as exc:
            self.session.rollback()
            raise ConflictError(
                "Transaction was changed by another request; reload and retry"
            ) from exc

    def save(self, txn: Transaction) -> Transaction:
        """Flush pending changes, failing if another writer bumped ``revision``."""
        with store_errors("transaction update"), self._version_checked():
            self.session.flush()
        return txn

    def delete(self, txn: Transaction) -> None:
        with store_errors("transaction delete"), self._version_checked():
            self.session.delete(txn)
            self.session.flush()

    def _filtered(self, stmt, filters: TransactionFilters):
        stmt = stmt.where(Transaction.user_id == self.user_id)
        if filters.type:
            stmt = stmt.where(Transaction.type == filters.type)
        if filters.category:
            like = f"%{filters.category.lower()}%"
            stmt = stmt.where(func.lower(Transaction.category).like(like))
        if filters.window.start:
            stmt = stmt.where(Transaction.date >= filters.window.start)
        if filters.window.end:
            stmt = stmt.where(Transaction.date <= filters.window.end)
        return stmt

    def count(self, filters: TransactionFilters) -> int:
        stmt = self._filtered(select(func.count(Transaction.id)), filters)
        return int(self.session.execute(stmt).scalar_one() or 0)

    def list(
        self, filters: TransactionFilters, limit: int = 50, offset: int = 0
    ) -> list[Transaction]:
        stmt = (
            self._filtered(select(Transaction), filters)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .offset(offset)
            .limit(limit)
        )
        return self.session.scalars(stmt).all()

    def expense_sum(self, category: str, start: datetime, end: datetime) -> int:
        """Sum of expense amounts for one category in ``[start, end)``."""
        with store_errors("expense sum"):
            total = self.session.execute(
                select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
                    Transaction.user_id == self.user_id,
                    Transaction.type == TransactionType.expense,
                    Transaction.category == category,
                    Transaction.date >= start,
                    Transaction.date < end,
                )
            ).scalar_one()
        return int(total or 0)

    def totals_by_type(self, window: DateRange) -> dict[TransactionType, GroupTotal]:
        stmt = self._filtered(
            select(
                Transaction.type,
                func.coalesce(func.sum(Transaction.amount_cents), 0).label("total"),
                func.count(Transaction.id).label("count"),
            ),
            TransactionFilters(window=window),
        ).group_by(Transaction.type)
        return {
            row.type: GroupTotal(row.type.value, int(row.total or 0), int(row.count))
            for row in self.session.execute(stmt)
        }

    def expense_totals_by_category(self, window: DateRange) -> list[GroupTotal]:
        total = func.coalesce(func.sum(Transaction.amount_cents), 0).label("total")
        stmt = (
            self._filtered(
                select(
                    Transaction.category,
                    total,
                    func.count(Transaction.id).label("count"),
                ),
                TransactionFilters(type=TransactionType.expense, window=window),
            )
            .group_by(Transaction.category)
            .order_by(total.desc(), Transaction.category.asc())
        )
        return [
            GroupTotal(row.category, int(row.total or 0), int(row.count))
            for row in self.session.execute(stmt)
        ]


class BudgetStore:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def add(self, budget: Budget) -> Budget:
        budget.user_id = self.user_id
        self.session.add(budget)
        try:
            self.session.flush()
        except IntegrityError as exc:
            self.session.rollback()
            raise ConflictError(
                "Budget for this category and period already exists"
            ) from exc
        return budget

    def get(self, budget_id: int) -> Budget:
        budget = self.session.scalar(
            select(Budget).where(Budget.user_id == self.user_id, Budget.id == budget_id)
        )
        if not budget:
            raise NotFoundError("Budget not found")
        return budget

    def find(self, category: str, period: BudgetPeriodKey) -> Optional[Budget]:
        with store_errors("budget lookup"):
            return self.session.scalar(
                select(Budget).where(
                    Budget.user_id == self.user_id,
                    Budget.category == category,
                    Budget.month == period.month,
                    Budget.year == period.year,
                )
            )

    def list_for_period(self, period: BudgetPeriodKey) -> list[Budget]:
        stmt = (
            select(Budget)
            .where(
                Budget.user_id == self.user_id,
                Budget.month == period.month,
                Budget.year == period.year,
            )
            .order_by(Budget.category.asc(), Budget.id.asc())
        )
        return self.session.scalars(stmt).all()

    def list_all(self) -> list[Budget]:
        stmt = (
            select(Budget)
            .where(Budget.user_id == self.user_id)
            .order_by(Budget.year, Budget.month, Budget.category)
        )
        return self.session.scalars(stmt).all()

    def rekey(self, budget: Budget, category: str) -> None:
        budget.category = category
        try:
            self.session.flush()
        except IntegrityError as exc:
            self.session.rollback()
            raise ConflictError(
                "Budget for this category and period already exists"
            ) from exc

    def delete(self, budget: Budget) -> None:
        with store_errors("budget delete"):
            self.session.delete(budget)
            self.session.flush()

    def adjust_spent(self, budget_id: int, delta_cents: int) -> int:
        """Atomically add ``delta_cents`` to ``spent``, flooring at zero.

        Runs as one UPDATE so concurrent adjustments to the same row cannot
        lose each other. Returns the stored value after the update.
        """
        new_value = Budget.spent_cents + delta_cents
        with store_errors("budget adjust"):
            self.session.execute(
                update(Budget)
                .where(Budget.id == budget_id, Budget.user_id == self.user_id)
                .values(
                    spent_cents=case((new_value < 0, 0), else_=new_value),
                    updated_at=datetime.utcnow(),
                )
                .execution_options(synchronize_session="fetch")
            )
            return int(
                self.session.execute(
                    select(Budget.spent_cents).where(Budget.id == budget_id)
                ).scalar_one()
            )

    def set_spent(self, budget_id: int, spent_cents: int) -> None:
        with store_errors("budget set spent"):
            self.session.execute(
                update(Budget)
                .where(Budget.id == budget_id, Budget.user_id == self.user_id)
                .values(spent_cents=max(0, spent_cents), updated_at=datetime.utcnow())
                .execution_options(synchronize_session="fetch")
            )
