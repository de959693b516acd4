from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import BudgetPeriod, TransactionType


def to_cents(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1")))


def cents_to_amount(cents: int) -> float:
    return cents / 100


class TransactionIn(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    type: TransactionType
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    category: str = Field(..., min_length=1, max_length=100)
    description: str = Field(..., min_length=1, max_length=200)
    date: datetime

    @property
    def amount_cents(self) -> int:
        return to_cents(self.amount)


class TransactionUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    type: Optional[TransactionType] = None
    amount: Optional[Decimal] = Field(None, gt=0, max_digits=12, decimal_places=2)
    category: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, min_length=1, max_length=200)
    date: Optional[datetime] = None

    @property
    def amount_cents(self) -> Optional[int]:
        return to_cents(self.amount) if self.amount is not None else None


class BudgetIn(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    category: str = Field(..., min_length=1, max_length=100)
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    period: BudgetPeriod = BudgetPeriod.monthly
    month: Optional[int] = Field(None, ge=1, le=12)
    year: Optional[int] = Field(None, ge=2020, le=2030)

    @property
    def amount_cents(self) -> int:
        return to_cents(self.amount)


class BudgetUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    category: Optional[str] = Field(None, min_length=1, max_length=100)
    amount: Optional[Decimal] = Field(None, gt=0, max_digits=12, decimal_places=2)
    period: Optional[BudgetPeriod] = None

    @property
    def amount_cents(self) -> Optional[int]:
        return to_cents(self.amount) if self.amount is not None else None


class TransactionOut(BaseModel):
    id: int
    type: TransactionType
    amount: float
    category: str
    description: str
    date: datetime
    created_at: datetime

    @classmethod
    def from_model(cls, txn) -> "TransactionOut":
        return cls(
            id=txn.id,
            type=txn.type,
            amount=cents_to_amount(txn.amount_cents),
            category=txn.category,
            description=txn.description,
            date=txn.date,
            created_at=txn.created_at,
        )


class TransactionPageOut(BaseModel):
    transactions: list[TransactionOut]
    total: int
    total_pages: int
    current_page: int


class BudgetOut(BaseModel):
    id: int
    category: str
    amount: float
    spent: float
    period: BudgetPeriod
    month: int
    year: int
    created_at: datetime

    @classmethod
    def from_model(cls, budget) -> "BudgetOut":
        return cls(
            id=budget.id,
            category=budget.category,
            amount=cents_to_amount(budget.amount_cents),
            spent=cents_to_amount(budget.spent_cents),
            period=budget.period,
            month=budget.month,
            year=budget.year,
            created_at=budget.created_at,
        )


class CategoryProgressOut(BaseModel):
    category: str
    budgeted: float
    spent: float
    remaining: float
    percentage: float


class BudgetOverviewOut(BaseModel):
    month: int
    year: int
    total_budgeted: float
    total_spent: float
    budget_count: int
    over_budget_count: int
    categories: list[CategoryProgressOut]

    @classmethod
    def from_overview(cls, overview) -> "BudgetOverviewOut":
        return cls(
            month=overview.period.month,
            year=overview.period.year,
            total_budgeted=cents_to_amount(overview.total_budgeted_cents),
            total_spent=cents_to_amount(overview.total_spent_cents),
            budget_count=overview.budget_count,
            over_budget_count=overview.over_budget_count,
            categories=[
                CategoryProgressOut(
                    category=row.category,
                    budgeted=cents_to_amount(row.budgeted_cents),
                    spent=cents_to_amount(row.spent_cents),
                    remaining=cents_to_amount(row.remaining_cents),
                    percentage=row.percentage,
                )
                for row in overview.categories
            ],
        )


class BudgetAlertOut(BaseModel):
    category: str
    spent: float
    amount: float
    percentage: float

    @classmethod
    def from_alert(cls, alert) -> "BudgetAlertOut":
        return cls(
            category=alert.category,
            spent=cents_to_amount(alert.spent_cents),
            amount=cents_to_amount(alert.amount_cents),
            percentage=alert.percentage,
        )


class CategoryTotalOut(BaseModel):
    category: str
    total: float
    count: int


class StatsOut(BaseModel):
    income: float
    expense: float
    balance: float
    category_breakdown: list[CategoryTotalOut]

    @classmethod
    def from_stats(cls, stats) -> "StatsOut":
        return cls(
            income=cents_to_amount(stats.income_cents),
            expense=cents_to_amount(stats.expense_cents),
            balance=cents_to_amount(stats.balance_cents),
            category_breakdown=[
                CategoryTotalOut(
                    category=row.category,
                    total=cents_to_amount(row.total_cents),
                    count=row.count,
                )
                for row in stats.category_breakdown
            ],
        )


class ResyncOut(BaseModel):
    checked: int
    corrected: int
