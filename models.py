from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class AccountType(str, Enum):
    checking = "checking"
    savings = "savings"
    cash = "cash"
    credit_card = "credit_card"


class CategoryType(str, Enum):
    expense = "expense"
    income = "income"


class TransferType(str, Enum):
    fatura_payment = "fatura_payment"
    internal_transfer = "internal_transfer"
    deposit = "deposit"
    withdrawal = "withdrawal"


class FaturaStatus(str, Enum):
    pending = "pending"
    overdue = "overdue"
    paid = "paid"


class PaymentStatus(str, Enum):
    pending = "pending"
    paid = "paid"


class EventStatus(str, Enum):
    scheduled = "scheduled"
    cancelled = "cancelled"
    completed = "completed"


class TaskStatus(str, Enum):
    pending = "pending"
    in_progress = "in_progress"
    completed = "completed"
    cancelled = "cancelled"
    overdue = "overdue"


class ItemType(str, Enum):
    event = "event"
    task = "task"
    bill_reminder = "bill_reminder"


class BillReminderStatus(str, Enum):
    active = "active"
    paused = "paused"
    completed = "completed"


class BillRecurrence(str, Enum):
    once = "once"
    weekly = "weekly"
    biweekly = "biweekly"
    monthly = "monthly"
    quarterly = "quarterly"
    yearly = "yearly"


class NotificationStatus(str, Enum):
    pending = "pending"
    sent = "sent"
    failed = "failed"
    cancelled = "cancelled"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[AccountType] = mapped_column(SAEnum(AccountType), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="BRL")
    current_balance_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    last_balance_update: Mapped[Optional[datetime]] = mapped_column(DateTime)
    # Billing cycle for credit cards, 1-28.
    closing_day: Mapped[Optional[int]] = mapped_column(Integer)
    payment_due_day: Mapped[Optional[int]] = mapped_column(Integer)
    credit_limit_cents: Mapped[Optional[int]] = mapped_column(Integer)

    __table_args__ = (
        Index("ix_accounts_user", "user_id"),
        CheckConstraint(
            "closing_day IS NULL OR (closing_day BETWEEN 1 AND 28)",
            name="ck_accounts_closing_day",
        ),
        CheckConstraint(
            "payment_due_day IS NULL OR (payment_due_day BETWEEN 1 AND 28)",
            name="ck_accounts_payment_due_day",
        ),
    )

    @property
    def has_billing_config(self) -> bool:
        return (
            self.type == AccountType.credit_card
            and bool(self.closing_day)
            and bool(self.payment_due_day)
        )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[CategoryType] = mapped_column(
        SAEnum(CategoryType), nullable=False, default=CategoryType.expense
    )
    color: Mapped[str] = mapped_column(String(9), nullable=False, default="#6b7280")
    icon: Mapped[Optional[str]] = mapped_column(String(50))

    __table_args__ = (
        UniqueConstraint("user_id", "type", "name", name="uq_category_user_type_name"),
    )


class Expense(Base, TimestampMixin):
    """A purchase; its charges live in ``entries`` (one per installment)."""

    __tablename__ = "expenses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    description: Mapped[Optional[str]] = mapped_column(Text)
    total_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    total_installments: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    ignored: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Cached sum of the refunds recorded against this purchase.
    refunded_amount_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )

    category: Mapped["Category"] = relationship("Category")
    entries: Mapped[list["Entry"]] = relationship(
        "Entry",
        back_populates="expense",
        cascade="all, delete-orphan",
        order_by="Entry.installment_number",
    )

    __table_args__ = (
        CheckConstraint("total_amount_cents > 0", name="ck_expenses_amount_positive"),
        CheckConstraint("total_installments >= 1", name="ck_expenses_installments"),
    )


class Entry(Base, TimestampMixin):
    __tablename__ = "entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    expense_id: Mapped[int] = mapped_column(
        ForeignKey("expenses.id", ondelete="CASCADE"), nullable=False
    )
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    purchase_date: Mapped[date] = mapped_column(Date, nullable=False)
    fatura_month: Mapped[str] = mapped_column(String(7), nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    installment_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    expense: Mapped["Expense"] = relationship("Expense", back_populates="entries")
    account: Mapped["Account"] = relationship("Account")

    __table_args__ = (
        Index("ix_entries_user_account", "user_id", "account_id"),
        Index("ix_entries_user_due_date", "user_id", "due_date"),
        Index("ix_entries_account_fatura_month", "account_id", "fatura_month"),
        CheckConstraint("amount_cents >= 0", name="ck_entries_amount_positive"),
    )

    @property
    def status(self) -> PaymentStatus:
        return PaymentStatus.paid if self.paid_at else PaymentStatus.pending


class Income(Base, TimestampMixin):
    __tablename__ = "income"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    description: Mapped[Optional[str]] = mapped_column(Text)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    received_date: Mapped[date] = mapped_column(Date, nullable=False)
    received_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    ignored: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Refund links: the purchase being refunded, the expense category whose
    # budget gets the money back and the card statement that is credited.
    refund_of_expense_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("expenses.id")
    )
    replenish_category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("categories.id", ondelete="SET NULL")
    )
    fatura_month: Mapped[Optional[str]] = mapped_column(String(7))

    category: Mapped["Category"] = relationship("Category", foreign_keys=[category_id])
    account: Mapped["Account"] = relationship("Account")

    __table_args__ = (
        Index("ix_income_user_account", "user_id", "account_id"),
        Index("ix_income_user_received_date", "user_id", "received_date"),
        Index("ix_income_refund_of_expense", "refund_of_expense_id"),
        CheckConstraint("amount_cents > 0", name="ck_income_amount_positive"),
    )

    @property
    def status(self) -> PaymentStatus:
        return PaymentStatus.paid if self.received_at else PaymentStatus.pending

    @property
    def is_refund(self) -> bool:
        return self.refund_of_expense_id is not None


class Fatura(Base, TimestampMixin):
    __tablename__ = "faturas"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    year_month: Mapped[str] = mapped_column(String(7), nullable=False)
    closing_date: Mapped[date] = mapped_column(Date, nullable=False)
    total_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    paid_from_account_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("accounts.id")
    )

    account: Mapped["Account"] = relationship("Account", foreign_keys=[account_id])
    paid_from_account: Mapped[Optional["Account"]] = relationship(
        "Account", foreign_keys=[paid_from_account_id]
    )

    __table_args__ = (
        UniqueConstraint("account_id", "year_month", name="uq_fatura_account_month"),
        Index("ix_faturas_user_month", "user_id", "year_month"),
    )

    def status_on(self, today: date) -> FaturaStatus:
        if self.paid_at:
            return FaturaStatus.paid
        if self.due_date < today:
            return FaturaStatus.overdue
        return FaturaStatus.pending


class Transfer(Base, TimestampMixin):
    __tablename__ = "transfers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    from_account_id: Mapped[Optional[int]] = mapped_column(ForeignKey("accounts.id"))
    to_account_id: Mapped[Optional[int]] = mapped_column(ForeignKey("accounts.id"))
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    type: Mapped[TransferType] = mapped_column(SAEnum(TransferType), nullable=False)
    fatura_id: Mapped[Optional[int]] = mapped_column(ForeignKey("faturas.id"))
    description: Mapped[Optional[str]] = mapped_column(Text)
    ignored: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    __table_args__ = (
        Index("ix_transfers_user_from", "user_id", "from_account_id"),
        Index("ix_transfers_user_to", "user_id", "to_account_id"),
        CheckConstraint("amount_cents > 0", name="ck_transfers_amount_positive"),
    )


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id", ondelete="CASCADE"), nullable=False
    )
    year_month: Mapped[str] = mapped_column(String(7), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)

    category: Mapped["Category"] = relationship("Category")

    __table_args__ = (
        UniqueConstraint(
            "user_id", "category_id", "year_month", name="uq_budget_user_category_month"
        ),
        CheckConstraint("amount_cents >= 0", name="ck_budget_amount_positive"),
    )


class MonthlyBudget(Base, TimestampMixin):
    __tablename__ = "monthly_budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    year_month: Mapped[str] = mapped_column(String(7), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "year_month", name="uq_monthly_budget_user_month"),
        CheckConstraint("amount_cents >= 0", name="ck_monthly_budget_amount_positive"),
    )


class Event(Base, TimestampMixin):
    __tablename__ = "events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    start_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    is_all_day: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    status: Mapped[EventStatus] = mapped_column(
        SAEnum(EventStatus), nullable=False, default=EventStatus.scheduled
    )

    __table_args__ = (
        CheckConstraint("start_at < end_at", name="ck_events_start_before_end"),
        Index("ix_events_status_end", "status", "end_at"),
    )


class Task(Base, TimestampMixin):
    __tablename__ = "tasks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    due_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    start_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    duration_minutes: Mapped[Optional[int]] = mapped_column(Integer)
    status: Mapped[TaskStatus] = mapped_column(
        SAEnum(TaskStatus), nullable=False, default=TaskStatus.pending
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (
        CheckConstraint(
            "start_at IS NULL OR start_at <= due_at", name="ck_tasks_start_before_due"
        ),
        CheckConstraint(
            "duration_minutes IS NULL OR duration_minutes > 0",
            name="ck_tasks_duration_positive",
        ),
        Index("ix_tasks_status_due", "status", "due_at"),
    )


class RecurrenceRule(Base, TimestampMixin):
    __tablename__ = "recurrence_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    item_type: Mapped[ItemType] = mapped_column(SAEnum(ItemType), nullable=False)
    item_id: Mapped[int] = mapped_column(Integer, nullable=False)
    rrule: Mapped[str] = mapped_column(Text, nullable=False)

    __table_args__ = (Index("ix_recurrence_rules_item", "item_type", "item_id"),)


class PushToken(Base, TimestampMixin):
    __tablename__ = "push_tokens"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    token: Mapped[str] = mapped_column(Text, nullable=False)
    device_name: Mapped[Optional[str]] = mapped_column(String(120))
    last_used_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (UniqueConstraint("token", name="uq_push_tokens_token"),)


class NotificationJob(Base, TimestampMixin):
    __tablename__ = "notification_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    item_type: Mapped[ItemType] = mapped_column(SAEnum(ItemType), nullable=False)
    item_id: Mapped[int] = mapped_column(Integer, nullable=False)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    status: Mapped[NotificationStatus] = mapped_column(
        SAEnum(NotificationStatus), nullable=False, default=NotificationStatus.pending
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (
        Index("ix_notification_jobs_status_scheduled", "status", "scheduled_at"),
    )


class BillReminder(Base, TimestampMixin):
    __tablename__ = "bill_reminders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("categories.id", ondelete="SET NULL")
    )
    amount_cents: Mapped[Optional[int]] = mapped_column(Integer)
    # Day of month (1-31), or weekday (0 = Sunday) for weekly reminders.
    due_day: Mapped[int] = mapped_column(Integer, nullable=False)
    due_time: Mapped[Optional[str]] = mapped_column(String(5))
    status: Mapped[BillReminderStatus] = mapped_column(
        SAEnum(BillReminderStatus), nullable=False, default=BillReminderStatus.active
    )
    recurrence_type: Mapped[BillRecurrence] = mapped_column(
        SAEnum(BillRecurrence), nullable=False, default=BillRecurrence.monthly
    )
    start_month: Mapped[str] = mapped_column(String(7), nullable=False)
    end_month: Mapped[Optional[str]] = mapped_column(String(7))
    notify_2_days_before: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False
    )
    notify_1_day_before: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False
    )
    notify_on_due_day: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_acknowledged_month: Mapped[Optional[str]] = mapped_column(String(7))

    __table_args__ = (
        Index("ix_bill_reminders_user_status", "user_id", "status"),
        CheckConstraint(
            "amount_cents IS NULL OR amount_cents >= 0",
            name="ck_bill_reminders_amount_positive",
        ),
    )


class BudgetAlert(Base):
    """Last time a budget threshold alert went out, per category and month."""

    __tablename__ = "budget_alerts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id", ondelete="CASCADE"), nullable=False
    )
    year_month: Mapped[str] = mapped_column(String(7), nullable=False)
    threshold: Mapped[int] = mapped_column(Integer, nullable=False)
    last_sent_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "user_id",
            "category_id",
            "year_month",
            "threshold",
            name="uq_budget_alert_user_category_month_threshold",
        ),
    )
