"""transactions, budgets and reconciliation events

Revision ID: 202610190900
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610190900"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column(
            "type", sa.Enum("income", "expense", name="transactiontype"), nullable=False
        ),
        sa.Column("category", sa.String(length=100), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(length=200), nullable=False),
        sa.Column("date", sa.DateTime(), nullable=False),
        sa.Column("revision", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_transactions_user_date", "transactions", ["user_id", "date"])
    op.create_index(
        "ix_transactions_user_category_date",
        "transactions",
        ["user_id", "category", "date"],
    )
    op.create_index(
        "ix_transactions_user_type_date", "transactions", ["user_id", "type", "date"]
    )

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("category", sa.String(length=100), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "period",
            sa.Enum("weekly", "monthly", "yearly", name="budgetperiod"),
            nullable=False,
            server_default="monthly",
        ),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("spent_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount_cents >= 0", name="ck_budget_amount_positive"),
        sa.CheckConstraint("spent_cents >= 0", name="ck_budget_spent_positive"),
        sa.CheckConstraint("month BETWEEN 1 AND 12", name="ck_budget_month_range"),
        sa.UniqueConstraint(
            "user_id",
            "category",
            "month",
            "year",
            name="uq_budget_user_category_month",
        ),
    )
    op.create_index("ix_budget_user_month", "budgets", ["user_id", "year", "month"])

    op.create_table(
        "reconciliation_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("transaction_id", sa.Integer(), nullable=False),
        sa.Column(
            "kind",
            sa.Enum("created", "updated", "deleted", name="reconciliationkind"),
            nullable=False,
        ),
        sa.Column("event_key", sa.String(length=120), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("event_key", name="uq_reconciliation_event_key"),
    )
    op.create_index(
        "ix_reconciliation_event_txn",
        "reconciliation_events",
        ["user_id", "transaction_id"],
    )


def downgrade():
    op.drop_index("ix_reconciliation_event_txn", table_name="reconciliation_events")
    op.drop_table("reconciliation_events")
    op.drop_index("ix_budget_user_month", table_name="budgets")
    op.drop_table("budgets")
    op.drop_index("ix_transactions_user_type_date", table_name="transactions")
    op.drop_index("ix_transactions_user_category_date", table_name="transactions")
    op.drop_index("ix_transactions_user_date", table_name="transactions")
    op.drop_table("transactions")
