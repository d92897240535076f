"""initial ledger schema

Revision ID: 202610191200
Revises:
Create Date: 2026-10-19 12:00:00.000000

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "202610191200"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


item_type = sa.Enum("event", "task", name="itemtype")


def upgrade() -> None:
    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "type",
            sa.Enum("checking", "savings", "cash", "credit_card", name="accounttype"),
            nullable=False,
        ),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="BRL"),
        sa.Column(
            "current_balance_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("last_balance_update", sa.DateTime()),
        sa.Column("closing_day", sa.Integer()),
        sa.Column("payment_due_day", sa.Integer()),
        sa.Column("credit_limit_cents", sa.Integer()),
        *_timestamps(),
        sa.CheckConstraint(
            "closing_day IS NULL OR (closing_day BETWEEN 1 AND 28)",
            name="ck_accounts_closing_day",
        ),
        sa.CheckConstraint(
            "payment_due_day IS NULL OR (payment_due_day BETWEEN 1 AND 28)",
            name="ck_accounts_payment_due_day",
        ),
    )
    op.create_index("ix_accounts_user", "accounts", ["user_id"])

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "type", sa.Enum("expense", "income", name="categorytype"), nullable=False
        ),
        sa.Column("color", sa.String(length=9), nullable=False, server_default="#6b7280"),
        sa.Column("icon", sa.String(length=50)),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "type", "name", name="uq_category_user_type_name"),
    )

    op.create_table(
        "expenses",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("description", sa.Text()),
        sa.Column("total_amount_cents", sa.Integer(), nullable=False),
        sa.Column("total_installments", sa.Integer(), nullable=False, server_default="1"),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("ignored", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.CheckConstraint("total_amount_cents > 0", name="ck_expenses_amount_positive"),
        sa.CheckConstraint("total_installments >= 1", name="ck_expenses_installments"),
    )

    op.create_table(
        "entries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column(
            "expense_id",
            sa.Integer(),
            sa.ForeignKey("expenses.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("purchase_date", sa.Date(), nullable=False),
        sa.Column("fatura_month", sa.String(length=7), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("paid_at", sa.DateTime()),
        sa.Column("installment_number", sa.Integer(), nullable=False, server_default="1"),
        *_timestamps(),
        sa.CheckConstraint("amount_cents >= 0", name="ck_entries_amount_positive"),
    )
    op.create_index("ix_entries_user_account", "entries", ["user_id", "account_id"])
    op.create_index("ix_entries_user_due_date", "entries", ["user_id", "due_date"])
    op.create_index(
        "ix_entries_account_fatura_month", "entries", ["account_id", "fatura_month"]
    )

    op.create_table(
        "income",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("description", sa.Text()),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False),
        sa.Column("received_date", sa.Date(), nullable=False),
        sa.Column("received_at", sa.DateTime()),
        sa.Column("ignored", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.CheckConstraint("amount_cents > 0", name="ck_income_amount_positive"),
    )
    op.create_index("ix_income_user_account", "income", ["user_id", "account_id"])
    op.create_index(
        "ix_income_user_received_date", "income", ["user_id", "received_date"]
    )

    op.create_table(
        "faturas",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column(
            "account_id",
            sa.Integer(),
            sa.ForeignKey("accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("year_month", sa.String(length=7), nullable=False),
        sa.Column("closing_date", sa.Date(), nullable=False),
        sa.Column("total_amount_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("paid_at", sa.DateTime()),
        sa.Column("paid_from_account_id", sa.Integer(), sa.ForeignKey("accounts.id")),
        *_timestamps(),
        sa.UniqueConstraint("account_id", "year_month", name="uq_fatura_account_month"),
    )
    op.create_index("ix_faturas_user_month", "faturas", ["user_id", "year_month"])

    op.create_table(
        "transfers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("from_account_id", sa.Integer(), sa.ForeignKey("accounts.id")),
        sa.Column("to_account_id", sa.Integer(), sa.ForeignKey("accounts.id")),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column(
            "type",
            sa.Enum(
                "fatura_payment",
                "internal_transfer",
                "deposit",
                "withdrawal",
                name="transfertype",
            ),
            nullable=False,
        ),
        sa.Column("fatura_id", sa.Integer(), sa.ForeignKey("faturas.id")),
        sa.Column("description", sa.Text()),
        sa.Column("ignored", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.CheckConstraint("amount_cents > 0", name="ck_transfers_amount_positive"),
    )
    op.create_index("ix_transfers_user_from", "transfers", ["user_id", "from_account_id"])
    op.create_index("ix_transfers_user_to", "transfers", ["user_id", "to_account_id"])

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("categories.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("year_month", sa.String(length=7), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint(
            "user_id", "category_id", "year_month", name="uq_budget_user_category_month"
        ),
        sa.CheckConstraint("amount_cents >= 0", name="ck_budget_amount_positive"),
    )

    op.create_table(
        "monthly_budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("year_month", sa.String(length=7), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "year_month", name="uq_monthly_budget_user_month"),
        sa.CheckConstraint("amount_cents >= 0", name="ck_monthly_budget_amount_positive"),
    )

    op.create_table(
        "events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("start_at", sa.DateTime(), nullable=False),
        sa.Column("end_at", sa.DateTime(), nullable=False),
        sa.Column("is_all_day", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "status",
            sa.Enum("scheduled", "cancelled", "completed", name="eventstatus"),
            nullable=False,
            server_default="scheduled",
        ),
        *_timestamps(),
        sa.CheckConstraint("start_at < end_at", name="ck_events_start_before_end"),
    )
    op.create_index("ix_events_status_end", "events", ["status", "end_at"])

    op.create_table(
        "tasks",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("due_at", sa.DateTime(), nullable=False),
        sa.Column("start_at", sa.DateTime()),
        sa.Column("duration_minutes", sa.Integer()),
        sa.Column(
            "status",
            sa.Enum(
                "pending",
                "in_progress",
                "completed",
                "cancelled",
                "overdue",
                name="taskstatus",
            ),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("completed_at", sa.DateTime()),
        *_timestamps(),
        sa.CheckConstraint(
            "start_at IS NULL OR start_at <= due_at", name="ck_tasks_start_before_due"
        ),
        sa.CheckConstraint(
            "duration_minutes IS NULL OR duration_minutes > 0",
            name="ck_tasks_duration_positive",
        ),
    )
    op.create_index("ix_tasks_status_due", "tasks", ["status", "due_at"])

    op.create_table(
        "recurrence_rules",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("item_type", item_type, nullable=False),
        sa.Column("item_id", sa.Integer(), nullable=False),
        sa.Column("rrule", sa.Text(), nullable=False),
        *_timestamps(),
    )
    op.create_index(
        "ix_recurrence_rules_item", "recurrence_rules", ["item_type", "item_id"]
    )

    op.create_table(
        "push_tokens",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("token", sa.Text(), nullable=False),
        sa.Column("device_name", sa.String(length=120)),
        sa.Column("last_used_at", sa.DateTime()),
        *_timestamps(),
        sa.UniqueConstraint("token", name="uq_push_tokens_token"),
    )

    op.create_table(
        "notification_jobs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("item_type", item_type, nullable=False),
        sa.Column("item_id", sa.Integer(), nullable=False),
        sa.Column("scheduled_at", sa.DateTime(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "sent", "failed", "cancelled", name="notificationstatus"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text()),
        sa.Column("sent_at", sa.DateTime()),
        *_timestamps(),
    )
    op.create_index(
        "ix_notification_jobs_status_scheduled",
        "notification_jobs",
        ["status", "scheduled_at"],
    )


def downgrade() -> None:
    op.drop_table("notification_jobs")
    op.drop_table("push_tokens")
    op.drop_table("recurrence_rules")
    op.drop_table("tasks")
    op.drop_table("events")
    op.drop_table("monthly_budgets")
    op.drop_table("budgets")
    op.drop_table("transfers")
    op.drop_table("faturas")
    op.drop_table("income")
    op.drop_table("entries")
    op.drop_table("expenses")
    op.drop_table("categories")
    op.drop_table("accounts")
