from datetime import date, datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models import (
    AccountType,
    BillRecurrence,
    BillReminderStatus,
    CategoryType,
    ItemType,
    TransferType,
)

YEAR_MONTH_PATTERN = r"^\d{4}-(0[1-9]|1[0-2])$"


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: AccountType
    currency: str = Field(default="BRL", min_length=3, max_length=3)
    closing_day: Optional[int] = Field(default=None, ge=1, le=28)
    payment_due_day: Optional[int] = Field(default=None, ge=1, le=28)
    credit_limit_cents: Optional[int] = Field(default=None, ge=0)


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: CategoryType = CategoryType.expense
    color: str = Field(default="#6b7280", max_length=9)
    icon: Optional[str] = Field(default=None, max_length=50)


class ExpenseIn(BaseModel):
    description: Optional[str] = Field(default=None, max_length=200)
    total_amount_cents: int = Field(..., gt=0)
    category_id: int = Field(..., gt=0)
    account_id: int = Field(..., gt=0)
    purchase_date: date
    installments: int = Field(default=1, ge=1, le=72)


class IncomeIn(BaseModel):
    description: str = Field(..., min_length=1, max_length=200)
    amount_cents: int = Field(..., gt=0)
    category_id: int = Field(..., gt=0)
    account_id: int = Field(..., gt=0)
    received_date: date
    received_at: Optional[datetime] = None


class TransferIn(BaseModel):
    type: TransferType
    amount_cents: int = Field(..., gt=0)
    date: date
    from_account_id: Optional[int] = None
    to_account_id: Optional[int] = None
    fatura_id: Optional[int] = None
    description: Optional[str] = Field(default=None, max_length=200)

    @model_validator(mode="after")
    def _check_accounts(self) -> "TransferIn":
        if self.type in (TransferType.internal_transfer, TransferType.fatura_payment):
            if self.from_account_id is None or self.to_account_id is None:
                raise ValueError("Transfers need both a source and a destination account")
            if self.from_account_id == self.to_account_id:
                raise ValueError("Source and destination accounts must differ")
        elif self.type == TransferType.deposit:
            if self.to_account_id is None or self.from_account_id is not None:
                raise ValueError("Deposits need only a destination account")
        elif self.type == TransferType.withdrawal:
            if self.from_account_id is None or self.to_account_id is not None:
                raise ValueError("Withdrawals need only a source account")
        return self


class BudgetIn(BaseModel):
    category_id: int = Field(..., gt=0)
    year_month: str = Field(..., pattern=YEAR_MONTH_PATTERN)
    amount_cents: int = Field(..., ge=0)


class MonthlyBudgetIn(BaseModel):
    year_month: str = Field(..., pattern=YEAR_MONTH_PATTERN)
    amount_cents: int = Field(..., ge=0)


class CopyBudgetsIn(BaseModel):
    source_month: str = Field(..., pattern=YEAR_MONTH_PATTERN)
    target_month: str = Field(..., pattern=YEAR_MONTH_PATTERN)


class PayFaturaIn(BaseModel):
    from_account_id: int = Field(..., gt=0)
    create_transfer: bool = True


class ConvertToFaturaIn(BaseModel):
    entry_id: int = Field(..., gt=0)
    fatura_id: int = Field(..., gt=0)


class EventIn(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    start_at: datetime
    end_at: datetime
    is_all_day: bool = False

    @model_validator(mode="after")
    def _check_range(self) -> "EventIn":
        if self.start_at >= self.end_at:
            raise ValueError("Event must start before it ends")
        return self


class TaskIn(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    due_at: datetime
    start_at: Optional[datetime] = None
    duration_minutes: Optional[int] = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _check_range(self) -> "TaskIn":
        if self.start_at is not None and self.start_at > self.due_at:
            raise ValueError("Task cannot start after it is due")
        return self


class RecurrenceRuleIn(BaseModel):
    item_type: ItemType
    item_id: int = Field(..., gt=0)
    rrule: str = Field(..., min_length=1, max_length=500)


class PushTokenIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    token: str = Field(..., min_length=1)
    device_name: Optional[str] = Field(default=None, max_length=120)


class PushPayload(BaseModel):
    title: str
    body: str
    url: str = "/dashboard"
    tag: str = "default"
    type: str = "default"


class NotificationJobIn(BaseModel):
    item_type: ItemType
    item_id: int = Field(..., gt=0)
    scheduled_at: datetime


class IncomeFiltersIn(BaseModel):
    year_month: Optional[str] = Field(default=None, pattern=YEAR_MONTH_PATTERN)
    category_id: Optional[int] = None
    account_id: Optional[int] = None
    status: Literal["all", "received", "pending"] = "all"


class RefundIn(BaseModel):
    expense_id: int = Field(..., gt=0)
    amount_cents: int = Field(..., gt=0)
    refund_date: date
    fatura_month: str = Field(..., pattern=YEAR_MONTH_PATTERN)
    description: Optional[str] = Field(default=None, max_length=200)


class BillReminderIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    category_id: Optional[int] = None
    amount_cents: Optional[int] = Field(default=None, ge=0)
    due_day: int
    due_time: Optional[str] = Field(default=None, pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
    status: BillReminderStatus = BillReminderStatus.active
    recurrence_type: BillRecurrence = BillRecurrence.monthly
    start_month: str = Field(..., pattern=YEAR_MONTH_PATTERN)
    end_month: Optional[str] = Field(default=None, pattern=YEAR_MONTH_PATTERN)
    notify_2_days_before: bool = True
    notify_1_day_before: bool = True
    notify_on_due_day: bool = True

    @model_validator(mode="after")
    def _check_schedule(self) -> "BillReminderIn":
        if self.recurrence_type == BillRecurrence.weekly:
            if not 0 <= self.due_day <= 6:
                raise ValueError("Weekly reminders need a weekday between 0 and 6")
        elif not 1 <= self.due_day <= 31:
            raise ValueError("Due day must be between 1 and 31")
        if self.end_month is not None and self.end_month < self.start_month:
            raise ValueError("End month cannot be before the start month")
        return self
