from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import date
from typing import Optional

from sqlalchemy.orm import Session

from config import get_settings
from errors import ReconciliationError
from models import Budget, Transaction, TransactionType
from periods import (
    BudgetPeriodKey,
    DateRange,
    PeriodPolicy,
    current_period,
    resolve_budget_period,
    to_local_naive,
)
from reconciler import SpendReconciler, TransactionSnapshot
from schemas import BudgetIn, BudgetUpdate, TransactionIn, TransactionUpdate
from stores import BudgetStore, LedgerStore, TransactionFilters


logger = logging.getLogger(__name__)


def get_current_user_id() -> int:
    return 1


def percentage_of(spent_cents: int, amount_cents: int) -> float:
    if amount_cents == 0:
        return 0.0
    return spent_cents / amount_cents * 100


@dataclass
class TransactionPage:
    transactions: list[Transaction]
    total: int
    total_pages: int
    current_page: int


class TransactionService:
    """Transaction writes, each followed by budget reconciliation.

    The transaction change is committed before reconciliation runs, and a
    failed reconciliation is logged rather than raised: the ledger is the
    system of record and ``Budget.spent_cents`` can be rebuilt from it.
    """

    def __init__(
        self,
        session: Session,
        user_id: Optional[int] = None,
        *,
        policy: Optional[PeriodPolicy] = None,
        today: Optional[date] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.ledger = LedgerStore(session, self.user_id)
        self.reconciler = SpendReconciler(
            session, self.user_id, policy=policy, today=today
        )

    def _reconcile(self, action, *snapshots: TransactionSnapshot) -> None:
        try:
            action(*snapshots)
        except ReconciliationError as exc:
            logger.error(
                f"reconcile_failed: user={self.user_id} event={exc.event_key} "
                f"error={exc}"
            )

    def create(self, data: TransactionIn) -> Transaction:
        txn = Transaction(
            type=data.type,
            category=data.category,
            amount_cents=data.amount_cents,
            description=data.description,
            date=to_local_naive(data.date),
        )
        self.ledger.add(txn)
        self.session.commit()
        logger.info(f"transaction_created: user={self.user_id} id={txn.id}")

        self._reconcile(
            self.reconciler.on_transaction_created, TransactionSnapshot.from_model(txn)
        )
        return txn

    def get(self, transaction_id: int) -> Transaction:
        return self.ledger.get(transaction_id)

    def update(self, transaction_id: int, data: TransactionUpdate) -> Transaction:
        txn = self.ledger.get(transaction_id)
        old = TransactionSnapshot.from_model(txn)

        if data.type is not None:
            txn.type = data.type
        if data.amount_cents is not None:
            txn.amount_cents = data.amount_cents
        if data.category is not None:
            txn.category = data.category
        if data.description is not None:
            txn.description = data.description
        if data.date is not None:
            txn.date = to_local_naive(data.date)
        self.ledger.save(txn)
        self.session.commit()
        logger.info(
            f"transaction_updated: user={self.user_id} id={txn.id} "
            f"revision={txn.revision}"
        )

        self._reconcile(
            self.reconciler.on_transaction_updated,
            old,
            TransactionSnapshot.from_model(txn),
        )
        return txn

    def delete(self, transaction_id: int) -> None:
        txn = self.ledger.get(transaction_id)
        snapshot = TransactionSnapshot.from_model(txn)
        self.ledger.delete(txn)
        self.session.commit()
        logger.info(f"transaction_deleted: user={self.user_id} id={snapshot.id}")

        self._reconcile(self.reconciler.on_transaction_deleted, snapshot)

    def list(
        self, filters: TransactionFilters, page: int = 1, limit: int = 50
    ) -> TransactionPage:
        page = max(1, page)
        limit = min(max(1, limit), 100)
        total = self.ledger.count(filters)
        transactions = self.ledger.list(filters, limit=limit, offset=(page - 1) * limit)
        return TransactionPage(
            transactions=transactions,
            total=total,
            total_pages=math.ceil(total / limit),
            current_page=page,
        )


class BudgetService:
    def __init__(
        self,
        session: Session,
        user_id: Optional[int] = None,
        *,
        today: Optional[date] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.today = today
        self.store = BudgetStore(session, self.user_id)
        self.ledger = LedgerStore(session, self.user_id)

    def list_for_month(
        self, month: Optional[int] = None, year: Optional[int] = None
    ) -> list[Budget]:
        period = resolve_budget_period(month, year, today=self.today)
        return self.store.list_for_period(period)

    def get(self, budget_id: int) -> Budget:
        return self.store.get(budget_id)

    def create(self, data: BudgetIn) -> Budget:
        period = resolve_budget_period(data.month, data.year, today=self.today)
        # one-time seed; incremental updates take over from here
        spent = self.ledger.expense_sum(data.category, period.start, period.next_start)
        budget = Budget(
            category=data.category,
            amount_cents=data.amount_cents,
            period=data.period,
            month=period.month,
            year=period.year,
            spent_cents=spent,
        )
        self.store.add(budget)
        self.session.commit()
        logger.info(
            f"budget_created: user={self.user_id} id={budget.id} "
            f"category={budget.category} period={period.year:04d}-{period.month:02d} "
            f"seeded_spent={spent}"
        )
        return budget

    def update(self, budget_id: int, data: BudgetUpdate) -> Budget:
        budget = self.store.get(budget_id)
        if data.amount_cents is not None:
            budget.amount_cents = data.amount_cents
        if data.period is not None:
            budget.period = data.period
        rekeyed = data.category is not None and data.category != budget.category
        if rekeyed:
            self.store.rekey(budget, data.category)
        self.session.flush()
        if rekeyed:
            # spent belongs to the old category; rebuild it for the new one
            SpendReconciler(self.session, self.user_id).resync(budget)
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def delete(self, budget_id: int) -> None:
        budget = self.store.get(budget_id)
        self.store.delete(budget)
        self.session.commit()
        logger.info(f"budget_deleted: user={self.user_id} id={budget_id}")

    def resync(self) -> tuple[int, int]:
        checked, corrections = SpendReconciler(self.session, self.user_id).resync_all()
        return checked, len(corrections)


@dataclass(frozen=True)
class CategoryProgress:
    category: str
    budgeted_cents: int
    spent_cents: int
    remaining_cents: int
    percentage: float


@dataclass(frozen=True)
class BudgetOverview:
    period: BudgetPeriodKey
    total_budgeted_cents: int
    total_spent_cents: int
    budget_count: int
    over_budget_count: int
    categories: list[CategoryProgress]


@dataclass(frozen=True)
class BudgetAlert:
    category: str
    spent_cents: int
    amount_cents: int
    percentage: float


class BudgetAggregator:
    """Read-only views over stored budgets; never writes ``spent``."""

    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.store = BudgetStore(session, self.user_id)

    def overview(
        self,
        month: Optional[int] = None,
        year: Optional[int] = None,
        *,
        today: Optional[date] = None,
    ) -> BudgetOverview:
        period = resolve_budget_period(month, year, today=today)
        budgets = self.store.list_for_period(period)
        categories = [
            CategoryProgress(
                category=b.category,
                budgeted_cents=b.amount_cents,
                spent_cents=b.spent_cents,
                remaining_cents=b.amount_cents - b.spent_cents,
                percentage=percentage_of(b.spent_cents, b.amount_cents),
            )
            for b in budgets
        ]
        return BudgetOverview(
            period=period,
            total_budgeted_cents=sum(b.amount_cents for b in budgets),
            total_spent_cents=sum(b.spent_cents for b in budgets),
            budget_count=len(budgets),
            over_budget_count=sum(1 for b in budgets if b.spent_cents > b.amount_cents),
            categories=categories,
        )

    def alerts(
        self, *, today: Optional[date] = None, threshold: Optional[float] = None
    ) -> list[BudgetAlert]:
        threshold = threshold if threshold is not None else get_settings().alert_threshold
        budgets = self.store.list_for_period(current_period(today))
        return [
            BudgetAlert(
                category=b.category,
                spent_cents=b.spent_cents,
                amount_cents=b.amount_cents,
                percentage=percentage_of(b.spent_cents, b.amount_cents),
            )
            for b in budgets
            if b.spent_cents > b.amount_cents * threshold
        ]


@dataclass(frozen=True)
class CategoryTotal:
    category: str
    total_cents: int
    count: int


@dataclass(frozen=True)
class TransactionStats:
    income_cents: int
    expense_cents: int
    balance_cents: int
    category_breakdown: list[CategoryTotal]


class StatsService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.ledger = LedgerStore(session, self.user_id)

    def stats(self, window: Optional[DateRange] = None) -> TransactionStats:
        window = window or DateRange(None, None)
        by_type = self.ledger.totals_by_type(window)
        income = by_type.get(TransactionType.income)
        expense = by_type.get(TransactionType.expense)
        income_cents = income.total_cents if income else 0
        expense_cents = expense.total_cents if expense else 0
        return TransactionStats(
            income_cents=income_cents,
            expense_cents=expense_cents,
            balance_cents=income_cents - expense_cents,
            category_breakdown=[
                CategoryTotal(row.key, row.total_cents, row.count)
                for row in self.ledger.expense_totals_by_category(window)
            ],
        )
