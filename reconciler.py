"""Incremental maintenance of ``Budget.spent_cents``.

Every transaction mutation is turned into a reconciliation event. An event is
applied in a single database transaction: its idempotency row is inserted
first, then each budget adjustment runs as one atomic UPDATE. A retried event
whose key is already recorded is skipped, so retries never double count.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from config import get_settings
from errors import ReconciliationError, StoreError
from models import (
    Budget,
    ReconciliationEvent,
    ReconciliationKind,
    Transaction,
    TransactionType,
)
from periods import (
    BudgetPeriodKey,
    PeriodPolicy,
    local_today,
    period_for_transaction,
    resolve_policy,
)
from stores import BudgetStore, LedgerStore, budget_owner_ids, prune_orphan_events


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransactionSnapshot:
    id: int
    user_id: int
    type: TransactionType
    category: str
    amount_cents: int
    date: datetime
    revision: int

    @classmethod
    def from_model(cls, txn: Transaction) -> "TransactionSnapshot":
        return cls(
            id=txn.id,
            user_id=txn.user_id,
            type=txn.type,
            category=txn.category,
            amount_cents=txn.amount_cents,
            date=txn.date,
            revision=txn.revision,
        )

    @property
    def is_expense(self) -> bool:
        return self.type == TransactionType.expense


@dataclass(frozen=True)
class Adjustment:
    category: str
    period: BudgetPeriodKey
    delta_cents: int


@dataclass(frozen=True)
class BudgetCorrection:
    budget_id: int
    category: str
    period: BudgetPeriodKey
    stored_cents: int
    expected_cents: int


class SpendReconciler:
    def __init__(
        self,
        session: Session,
        user_id: int,
        *,
        policy: Optional[PeriodPolicy] = None,
        today: Optional[date] = None,
        max_attempts: Optional[int] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.policy = policy or resolve_policy()
        self.today = today
        self.max_attempts = max_attempts or get_settings().reconcile_max_attempts
        self.budgets = BudgetStore(session, user_id)
        self.ledger = LedgerStore(session, user_id)

    def _period(self, txn: TransactionSnapshot, today: date) -> BudgetPeriodKey:
        return period_for_transaction(txn.date, self.policy, today)

    def _event_key(self, txn: TransactionSnapshot, kind: ReconciliationKind) -> str:
        return f"tx:{txn.id}:r{txn.revision}:{kind.value}"

    def on_transaction_created(self, txn: TransactionSnapshot) -> bool:
        if not txn.is_expense:
            return False
        today = self.today or local_today()
        return self._apply(
            txn,
            ReconciliationKind.created,
            [Adjustment(txn.category, self._period(txn, today), txn.amount_cents)],
        )

    def on_transaction_deleted(self, txn: TransactionSnapshot) -> bool:
        if not txn.is_expense:
            return False
        today = self.today or local_today()
        return self._apply(
            txn,
            ReconciliationKind.deleted,
            [Adjustment(txn.category, self._period(txn, today), -txn.amount_cents)],
        )

    def on_transaction_updated(
        self, old: TransactionSnapshot, new: TransactionSnapshot
    ) -> bool:
        today = self.today or local_today()
        adjustments: list[Adjustment] = []
        old_key = (old.category, self._period(old, today))
        new_key = (new.category, self._period(new, today))

        if old.is_expense and new.is_expense and old_key == new_key:
            diff = new.amount_cents - old.amount_cents
            if diff:
                adjustments.append(Adjustment(new.category, new_key[1], diff))
        else:
            if old.is_expense:
                adjustments.append(
                    Adjustment(old.category, old_key[1], -old.amount_cents)
                )
            if new.is_expense:
                adjustments.append(
                    Adjustment(new.category, new_key[1], new.amount_cents)
                )

        if not adjustments:
            return False
        return self._apply(new, ReconciliationKind.updated, adjustments)

    def _apply(
        self,
        txn: TransactionSnapshot,
        kind: ReconciliationKind,
        adjustments: list[Adjustment],
    ) -> bool:
        event_key = self._event_key(txn, kind)
        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                applied = self._apply_once(txn, kind, event_key, adjustments)
                self.session.commit()
                return applied
            except (StoreError, SQLAlchemyError) as exc:
                self.session.rollback()
                last_error = exc
                logger.warning(
                    f"reconcile_retry: event={event_key} attempt={attempt} "
                    f"max_attempts={self.max_attempts} error={exc}"
                )
        raise ReconciliationError(event_key, str(last_error))

    def _apply_once(
        self,
        txn: TransactionSnapshot,
        kind: ReconciliationKind,
        event_key: str,
        adjustments: list[Adjustment],
    ) -> bool:
        if not self._claim_event(txn, kind, event_key):
            logger.info(f"reconcile_skipped: event={event_key} reason=already_applied")
            return False

        for adj in adjustments:
            budget = self.budgets.find(adj.category, adj.period)
            if budget is None:
                logger.debug(
                    f"reconcile_no_budget: event={event_key} category={adj.category} "
                    f"period={adj.period.year:04d}-{adj.period.month:02d}"
                )
                continue
            spent = self.budgets.adjust_spent(budget.id, adj.delta_cents)
            logger.info(
                f"reconcile_applied: event={event_key} budget={budget.id} "
                f"delta={adj.delta_cents} spent={spent}"
            )
        return True

    def _claim_event(
        self, txn: TransactionSnapshot, kind: ReconciliationKind, event_key: str
    ) -> bool:
        existing = self.session.scalar(
            select(ReconciliationEvent.id).where(
                ReconciliationEvent.event_key == event_key
            )
        )
        if existing:
            return False
        self.session.add(
            ReconciliationEvent(
                user_id=self.user_id,
                transaction_id=txn.id,
                kind=kind,
                event_key=event_key,
            )
        )
        try:
            self.session.flush()
        except IntegrityError:
            # a concurrent attempt recorded the same event first
            self.session.rollback()
            return False
        return True

    def expected_spent(self, budget: Budget) -> int:
        period = BudgetPeriodKey(budget.year, budget.month)
        return self.ledger.expense_sum(budget.category, period.start, period.next_start)

    def resync(self, budget: Budget) -> Optional[BudgetCorrection]:
        """Recompute ``spent`` for one budget from the ledger by transaction date.

        Returns the correction when the stored value had drifted. Under the
        ``current_month`` policy a backdated expense counted this month is
        also reported here; the log line carries the policy to tell the two
        apart.
        """
        expected = self.expected_spent(budget)
        stored = budget.spent_cents
        if stored == expected:
            return None
        self.budgets.set_spent(budget.id, expected)
        correction = BudgetCorrection(
            budget_id=budget.id,
            category=budget.category,
            period=BudgetPeriodKey(budget.year, budget.month),
            stored_cents=stored,
            expected_cents=expected,
        )
        logger.info(
            f"budget_resynced: budget={budget.id} category={budget.category} "
            f"stored={stored} expected={expected} policy={self.policy.value}"
        )
        return correction

    def resync_all(self) -> tuple[int, list[BudgetCorrection]]:
        budgets = self.budgets.list_all()
        corrections = [c for c in (self.resync(b) for b in budgets) if c]
        self.session.commit()
        return len(budgets), corrections


def resync_every_user(session: Session) -> int:
    corrected = 0
    for user_id in budget_owner_ids(session):
        checked, corrections = SpendReconciler(session, user_id).resync_all()
        corrected += len(corrections)
        logger.info(
            f"resync_user: user={user_id} checked={checked} "
            f"corrected={len(corrections)}"
        )
    return corrected


def prune_events(session: Session, *, now: Optional[datetime] = None) -> int:
    """Delete idempotency rows of transactions that no longer exist.

    Rows younger than a day are kept so a retry still in flight for a just
    deleted transaction finds its key.
    """
    cutoff = (now or datetime.utcnow()) - timedelta(days=1)
    pruned = prune_orphan_events(session, cutoff)
    session.commit()
    logger.info(f"events_pruned: count={pruned} before={cutoff.isoformat()}")
    return pruned
