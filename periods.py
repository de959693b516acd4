from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings


class PeriodPolicy(str, Enum):
    """Which calendar month a transaction reconciles against.

    ``current_month`` looks the budget up by the month the reconciliation runs
    in, whatever the transaction is dated. ``transaction_date`` uses the
    transaction's own month.
    """

    current_month = "current_month"
    transaction_date = "transaction_date"


@dataclass(frozen=True, order=True)
class BudgetPeriodKey:
    year: int
    month: int

    @classmethod
    def for_date(cls, value: date) -> "BudgetPeriodKey":
        return cls(value.year, value.month)

    @property
    def start(self) -> datetime:
        return datetime(self.year, self.month, 1)

    @property
    def next_start(self) -> datetime:
        if self.month == 12:
            return datetime(self.year + 1, 1, 1)
        return datetime(self.year, self.month + 1, 1)


@dataclass(frozen=True)
class DateRange:
    start: Optional[datetime]
    end: Optional[datetime]


def local_today() -> date:
    return datetime.now(ZoneInfo(get_settings().timezone)).date()


def current_period(today: Optional[date] = None) -> BudgetPeriodKey:
    return BudgetPeriodKey.for_date(today or local_today())


def resolve_policy(value: Optional[str] = None) -> PeriodPolicy:
    raw = value or get_settings().period_policy
    try:
        return PeriodPolicy(raw)
    except ValueError as exc:
        raise ValueError(f"Unknown period policy: {raw}") from exc


def period_for_transaction(
    txn_date: datetime, policy: PeriodPolicy, today: date
) -> BudgetPeriodKey:
    if policy == PeriodPolicy.transaction_date:
        return BudgetPeriodKey.for_date(txn_date)
    return BudgetPeriodKey.for_date(today)


def resolve_budget_period(
    month: Optional[int], year: Optional[int], *, today: Optional[date] = None
) -> BudgetPeriodKey:
    now = current_period(today)
    return BudgetPeriodKey(year or now.year, month or now.month)


def to_local_naive(value: datetime) -> datetime:
    """Stored dates are naive wall-clock times in the configured timezone."""
    if value.tzinfo is None:
        return value
    tz = ZoneInfo(get_settings().timezone)
    return value.astimezone(tz).replace(tzinfo=None)


def resolve_range(start: Optional[str], end: Optional[str]) -> DateRange:
    start_at = to_local_naive(datetime.fromisoformat(start)) if start else None
    end_at = to_local_naive(datetime.fromisoformat(end)) if end else None
    if start_at and end_at and start_at > end_at:
        raise ValueError("Start date must be before end date")
    return DateRange(start_at, end_at)
