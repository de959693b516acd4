import logging
from datetime import date, datetime, timedelta

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

from database import Base
from errors import ReconciliationError, StoreError
from models import ReconciliationEvent, Transaction, TransactionType
from periods import PeriodPolicy
from reconciler import SpendReconciler, TransactionSnapshot, prune_events
from schemas import BudgetIn, TransactionIn, TransactionUpdate
from services import BudgetService, TransactionService
from stores import BudgetStore


TODAY = date(2025, 1, 15)


def _engine():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return engine


def _txn(category: str, amount, *, type=TransactionType.expense, when=None):
    return TransactionIn(
        type=type,
        amount=amount,
        category=category,
        description=f"{category} purchase",
        date=when or datetime(2025, 1, 10, 12, 0),
    )


def _budget(session: Session, category: str, *, month: int = 1, year: int = 2025):
    return BudgetService(session, today=TODAY).create(
        BudgetIn(category=category, amount=500, month=month, year=year)
    )


def _spent(session: Session, budget_id: int) -> int:
    session.expire_all()
    return BudgetStore(session, 1).get(budget_id).spent_cents


def test_create_expense_adds_to_matching_budget() -> None:
    with Session(_engine()) as session:
        food = _budget(session, "Food")
        txns = TransactionService(session, today=TODAY)

        txns.create(_txn("Food", 12))
        txns.create(_txn("Food", "3.50"))

        assert _spent(session, food.id) == 1_550


def test_expense_without_budget_is_noop() -> None:
    with Session(_engine()) as session:
        food = _budget(session, "Food")
        txn = TransactionService(session, today=TODAY).create(_txn("Travel", 80))

        assert txn.id is not None
        assert _spent(session, food.id) == 0


def test_same_category_update_applies_difference() -> None:
    with Session(_engine()) as session:
        food = _budget(session, "Food")
        txns = TransactionService(session, today=TODAY)
        txns.create(_txn("Food", 70))
        lunch = txns.create(_txn("Food", 30))
        assert _spent(session, food.id) == 10_000

        txns.update(lunch.id, TransactionUpdate(amount=50))
        assert _spent(session, food.id) == 12_000

        txns.update(lunch.id, TransactionUpdate(amount=5))
        assert _spent(session, food.id) == 7_500


def test_category_change_moves_amount_between_budgets() -> None:
    with Session(_engine()) as session:
        food = _budget(session, "Food")
        transport = _budget(session, "Transport")
        txns = TransactionService(session, today=TODAY)
        txns.create(_txn("Food", 40))
        snack = txns.create(_txn("Food", 10))
        txns.create(_txn("Transport", 20))
        assert _spent(session, food.id) == 5_000
        assert _spent(session, transport.id) == 2_000

        txns.update(snack.id, TransactionUpdate(category="Transport"))

        assert _spent(session, food.id) == 4_000
        assert _spent(session, transport.id) == 3_000


def test_delete_floors_spent_at_zero() -> None:
    with Session(_engine()) as session:
        food = _budget(session, "Food")
        txns = TransactionService(session, today=TODAY)
        groceries = txns.create(_txn("Food", 20))

        BudgetStore(session, 1).set_spent(food.id, 500)
        session.commit()

        txns.delete(groceries.id)
        assert _spent(session, food.id) == 0


def test_income_never_touches_budgets() -> None:
    with Session(_engine()) as session:
        salary = _budget(session, "Salary")
        txns = TransactionService(session, today=TODAY)

        pay = txns.create(_txn("Salary", 3000, type=TransactionType.income))
        txns.update(pay.id, TransactionUpdate(amount=3200))
        txns.delete(pay.id)

        assert _spent(session, salary.id) == 0


def test_type_transitions_are_handled_independently() -> None:
    with Session(_engine()) as session:
        food = _budget(session, "Food")
        txns = TransactionService(session, today=TODAY)
        refund = txns.create(_txn("Food", 25))
        assert _spent(session, food.id) == 2_500

        txns.update(refund.id, TransactionUpdate(type=TransactionType.income))
        assert _spent(session, food.id) == 0

        txns.update(
            refund.id, TransactionUpdate(type=TransactionType.expense, amount=40)
        )
        assert _spent(session, food.id) == 4_000


def test_current_month_policy_ignores_transaction_date() -> None:
    with Session(_engine()) as session:
        december = _budget(session, "Food", month=12, year=2024)
        january = _budget(session, "Food", month=1, year=2025)
        txns = TransactionService(
            session, policy=PeriodPolicy.current_month, today=TODAY
        )

        txns.create(_txn("Food", 15, when=datetime(2024, 12, 28, 9, 0)))

        assert _spent(session, december.id) == 0
        assert _spent(session, january.id) == 1_500


def test_transaction_date_policy_uses_transaction_month() -> None:
    with Session(_engine()) as session:
        december = _budget(session, "Food", month=12, year=2024)
        january = _budget(session, "Food", month=1, year=2025)
        txns = TransactionService(
            session, policy=PeriodPolicy.transaction_date, today=TODAY
        )

        late = txns.create(_txn("Food", 15, when=datetime(2024, 12, 28, 9, 0)))
        assert _spent(session, december.id) == 1_500
        assert _spent(session, january.id) == 0

        # moving the date across months is a move, not a difference
        txns.update(late.id, TransactionUpdate(date=datetime(2025, 1, 2, 9, 0)))
        assert _spent(session, december.id) == 0
        assert _spent(session, january.id) == 1_500


def test_steady_state_matches_ledger_sum() -> None:
    with Session(_engine()) as session:
        budgets = {
            (category, month): _budget(session, category, month=month)
            for category in ("Food", "Transport")
            for month in (1, 2)
        }
        txns = TransactionService(
            session, policy=PeriodPolicy.transaction_date, today=TODAY
        )

        created = []
        for i in range(12):
            created.append(
                txns.create(
                    _txn(
                        "Food" if i % 3 else "Transport",
                        10 + i,
                        type=TransactionType.income if i % 5 == 0 else TransactionType.expense,
                        when=datetime(2025, 1 + (i % 2), 1 + i, 8, 0),
                    )
                )
            )
        txns.update(created[1].id, TransactionUpdate(category="Transport", amount=99))
        txns.update(created[2].id, TransactionUpdate(date=datetime(2025, 1, 20, 8, 0)))
        txns.update(created[5].id, TransactionUpdate(type=TransactionType.expense))
        txns.delete(created[7].id)
        txns.delete(created[10].id)

        session.expire_all()
        reconciler = SpendReconciler(session, 1, policy=PeriodPolicy.transaction_date)
        ledger = session.scalars(select(Transaction)).all()
        for (category, month), budget in budgets.items():
            expected = sum(
                t.amount_cents
                for t in ledger
                if t.type == TransactionType.expense
                and t.category == category
                and t.date.month == month
            )
            assert budget.spent_cents == expected
            assert reconciler.expected_spent(budget) == expected


def test_replayed_event_is_applied_once() -> None:
    with Session(_engine()) as session:
        food = _budget(session, "Food")
        txn = TransactionService(session, today=TODAY).create(_txn("Food", 30))
        snapshot = TransactionSnapshot.from_model(txn)

        reconciler = SpendReconciler(session, 1, today=TODAY)
        assert reconciler.on_transaction_created(snapshot) is False
        assert reconciler.on_transaction_created(snapshot) is False

        assert _spent(session, food.id) == 3_000
        events = session.execute(select(func.count(ReconciliationEvent.id))).scalar_one()
        assert events == 1


def test_store_failure_does_not_fail_transaction_write(monkeypatch) -> None:
    with Session(_engine()) as session:
        food = _budget(session, "Food")
        calls = []

        def broken_adjust(self, budget_id, delta_cents):
            calls.append(budget_id)
            raise StoreError("budget adjust failed: database is locked")

        monkeypatch.setattr(BudgetStore, "adjust_spent", broken_adjust)
        txns = TransactionService(session, today=TODAY)
        txn = txns.create(_txn("Food", 45))

        assert session.get(Transaction, txn.id) is not None
        assert len(calls) == txns.reconciler.max_attempts
        assert _spent(session, food.id) == 0
        # the failed attempts left no event behind, so a later retry can apply
        assert session.scalar(select(func.count(ReconciliationEvent.id))) == 0

        monkeypatch.undo()
        assert txns.reconciler.on_transaction_created(
            TransactionSnapshot.from_model(txn)
        )
        assert _spent(session, food.id) == 4_500


def test_reconciliation_error_carries_event_key(monkeypatch) -> None:
    with Session(_engine()) as session:
        _budget(session, "Food")
        txn = Transaction(
            user_id=1,
            type=TransactionType.expense,
            category="Food",
            amount_cents=100,
            description="Bread",
            date=datetime(2025, 1, 3),
            revision=1,
        )
        session.add(txn)
        session.commit()

        def broken_find(self, category, period):
            raise StoreError("budget lookup failed")

        monkeypatch.setattr(BudgetStore, "find", broken_find)
        reconciler = SpendReconciler(session, 1, today=TODAY, max_attempts=2)
        with pytest.raises(ReconciliationError) as excinfo:
            reconciler.on_transaction_created(TransactionSnapshot.from_model(txn))
        assert excinfo.value.event_key == f"tx:{txn.id}:r1:created"


def test_resync_corrects_drift() -> None:
    with Session(_engine()) as session:
        food = _budget(session, "Food")
        TransactionService(session, today=TODAY).create(_txn("Food", 30))
        BudgetStore(session, 1).set_spent(food.id, 9_999)
        session.commit()

        checked, corrections = SpendReconciler(session, 1, today=TODAY).resync_all()

        assert checked == 1
        assert [(c.stored_cents, c.expected_cents) for c in corrections] == [
            (9_999, 3_000)
        ]
        assert _spent(session, food.id) == 3_000


def test_resync_log_names_the_period_policy(caplog) -> None:
    with Session(_engine()) as session:
        food = _budget(session, "Food")
        TransactionService(
            session, policy=PeriodPolicy.current_month, today=TODAY
        ).create(_txn("Food", 15, when=datetime(2024, 12, 28, 9, 0)))
        assert _spent(session, food.id) == 1_500

        reconciler = SpendReconciler(
            session, 1, policy=PeriodPolicy.current_month, today=TODAY
        )
        with caplog.at_level(logging.INFO, logger="reconciler"):
            _, corrections = reconciler.resync_all()

        assert [(c.stored_cents, c.expected_cents) for c in corrections] == [(1_500, 0)]
        assert "policy=current_month" in caplog.text


def test_prune_drops_events_of_deleted_transactions_only() -> None:
    with Session(_engine()) as session:
        _budget(session, "Food")
        txns = TransactionService(session, today=TODAY)
        kept_id = txns.create(_txn("Food", 10)).id
        gone_id = txns.create(_txn("Food", 20)).id
        txns.delete(gone_id)
        assert session.scalar(select(func.count(ReconciliationEvent.id))) == 3

        # fresh rows survive so in-flight retries still find their key
        assert prune_events(session) == 0

        later = datetime.utcnow() + timedelta(days=2)
        assert prune_events(session, now=later) == 2
        remaining = session.scalars(select(ReconciliationEvent.transaction_id)).all()
        assert remaining == [kept_id]
