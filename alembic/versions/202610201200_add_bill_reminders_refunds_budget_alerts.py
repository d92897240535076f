"""add bill reminders, refunds and budget alerts

Revision ID: 202610201200
Revises: 202610191200
Create Date: 2026-10-20 12:00:00.000000

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "202610201200"
down_revision = "202610191200"
branch_labels = None
depends_on = None


def upgrade() -> None:
    if op.get_bind().dialect.name == "postgresql":
        op.execute("ALTER TYPE itemtype ADD VALUE IF NOT EXISTS 'bill_reminder'")

    with op.batch_alter_table("expenses") as batch_op:
        batch_op.add_column(
            sa.Column(
                "refunded_amount_cents",
                sa.Integer(),
                nullable=False,
                server_default="0",
            )
        )

    with op.batch_alter_table("income") as batch_op:
        batch_op.add_column(sa.Column("refund_of_expense_id", sa.Integer()))
        batch_op.add_column(sa.Column("replenish_category_id", sa.Integer()))
        batch_op.add_column(sa.Column("fatura_month", sa.String(length=7)))
        batch_op.create_foreign_key(
            "fk_income_refund_of_expense_id_expenses",
            "expenses",
            ["refund_of_expense_id"],
            ["id"],
        )
        batch_op.create_foreign_key(
            "fk_income_replenish_category_id_categories",
            "categories",
            ["replenish_category_id"],
            ["id"],
            ondelete="SET NULL",
        )
        batch_op.create_index("ix_income_refund_of_expense", ["refund_of_expense_id"])

    op.create_table(
        "bill_reminders",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("categories.id", ondelete="SET NULL"),
        ),
        sa.Column("amount_cents", sa.Integer()),
        sa.Column("due_day", sa.Integer(), nullable=False),
        sa.Column("due_time", sa.String(length=5)),
        sa.Column(
            "status",
            sa.Enum("active", "paused", "completed", name="billreminderstatus"),
            nullable=False,
            server_default="active",
        ),
        sa.Column(
            "recurrence_type",
            sa.Enum(
                "once",
                "weekly",
                "biweekly",
                "monthly",
                "quarterly",
                "yearly",
                name="billrecurrence",
            ),
            nullable=False,
            server_default="monthly",
        ),
        sa.Column("start_month", sa.String(length=7), nullable=False),
        sa.Column("end_month", sa.String(length=7)),
        sa.Column(
            "notify_2_days_before", sa.Boolean(), nullable=False, server_default=sa.text("1")
        ),
        sa.Column(
            "notify_1_day_before", sa.Boolean(), nullable=False, server_default=sa.text("1")
        ),
        sa.Column(
            "notify_on_due_day", sa.Boolean(), nullable=False, server_default=sa.text("1")
        ),
        sa.Column("last_acknowledged_month", sa.String(length=7)),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint(
            "amount_cents IS NULL OR amount_cents >= 0",
            name="ck_bill_reminders_amount_positive",
        ),
    )
    op.create_index(
        "ix_bill_reminders_user_status", "bill_reminders", ["user_id", "status"]
    )

    op.create_table(
        "budget_alerts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("categories.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("year_month", sa.String(length=7), nullable=False),
        sa.Column("threshold", sa.Integer(), nullable=False),
        sa.Column("last_sent_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "user_id",
            "category_id",
            "year_month",
            "threshold",
            name="uq_budget_alert_user_category_month_threshold",
        ),
    )


def downgrade() -> None:
    op.drop_table("budget_alerts")
    op.drop_index("ix_bill_reminders_user_status", table_name="bill_reminders")
    op.drop_table("bill_reminders")
    sa.Enum(name="billrecurrence").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="billreminderstatus").drop(op.get_bind(), checkfirst=True)

    with op.batch_alter_table("income") as batch_op:
        batch_op.drop_index("ix_income_refund_of_expense")
        batch_op.drop_constraint(
            "fk_income_replenish_category_id_categories", type_="foreignkey"
        )
        batch_op.drop_constraint(
            "fk_income_refund_of_expense_id_expenses", type_="foreignkey"
        )
        batch_op.drop_column("fatura_month")
        batch_op.drop_column("replenish_category_id")
        batch_op.drop_column("refund_of_expense_id")

    with op.batch_alter_table("expenses") as batch_op:
        batch_op.drop_column("refunded_amount_cents")
