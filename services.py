from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Optional

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from config import get_settings
from database import SessionFactory, session_scope
from models import (
    Account,
    AccountType,
    BillReminder,
    BillReminderStatus,
    Budget,
    BudgetAlert,
    Category,
    CategoryType,
    Entry,
    Event,
    EventStatus,
    Expense,
    Fatura,
    FaturaStatus,
    Income,
    ItemType,
    MonthlyBudget,
    NotificationJob,
    NotificationStatus,
    PushToken,
    RecurrenceRule,
    Task,
    TaskStatus,
    Transfer,
    TransferType,
)
from periods import (
    add_months,
    fatura_closing_date,
    fatura_month_for,
    fatura_window_start,
    local_today,
    month_period,
    parse_year_month,
    payment_due_date,
    shift_date_by_months,
    to_local_date,
    to_naive_utc,
    utcnow,
    year_month_of,
)
from push import PushSender
from recurrence import Occurrence, expand_occurrences, parse_rrule
from reminders import due_dates_between, next_due_at
from schemas import (
    AccountIn,
    BillReminderIn,
    BudgetIn,
    CategoryIn,
    EventIn,
    ExpenseIn,
    IncomeFiltersIn,
    IncomeIn,
    MonthlyBudgetIn,
    NotificationJobIn,
    PushPayload,
    PushTokenIn,
    RecurrenceRuleIn,
    RefundIn,
    TaskIn,
    TransferIn,
)

logger = logging.getLogger(__name__)

NOTIFICATION_BATCH_SIZE = 100
NOTIFICATION_MAX_ATTEMPTS = 3
BUDGET_ALERT_THRESHOLDS = (120, 100, 80)
BUDGET_ALERT_COOLDOWN = timedelta(hours=6)
BILL_REMINDER_LOOKAHEAD = timedelta(days=7)
BILL_REMINDER_PENDING_DAYS = 3


def get_current_user_id() -> int:
    return get_settings().default_user_id


def compute_balance(
    income_cents: int,
    transfers_in_cents: int,
    expenses_cents: int,
    transfers_out_cents: int,
) -> int:
    return income_cents + transfers_in_cents - expenses_cents - transfers_out_cents


def _scalar_sum(session: Session, stmt) -> int:
    return int(session.execute(stmt).scalar_one() or 0)


class CategoryService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self, type: Optional[CategoryType] = None) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.type, Category.name)
        )
        if type:
            stmt = stmt.where(Category.type == type)
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise ValueError("Category not found")
        return category

    def create(self, data: CategoryIn) -> Category:
        existing = self.session.scalar(
            select(Category).where(
                Category.user_id == self.user_id,
                Category.type == data.type,
                func.lower(Category.name) == data.name.strip().lower(),
            )
        )
        if existing:
            raise ValueError("Category with this name already exists")
        category = Category(
            user_id=self.user_id,
            name=data.name.strip(),
            type=data.type,
            color=data.color,
            icon=data.icon,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def update(self, category_id: int, data: CategoryIn) -> Category:
        category = self.get(category_id)
        category.name = data.name.strip()
        category.color = data.color
        category.icon = data.icon
        self.session.commit()
        return category

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        in_use = self.session.scalar(
            select(func.count(Expense.id)).where(Expense.category_id == category.id)
        ) or self.session.scalar(
            select(func.count(Income.id)).where(Income.category_id == category.id)
        )
        if in_use:
            raise ValueError("Category is in use")
        self.session.delete(category)
        self.session.commit()


class AccountService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self) -> list[Account]:
        stmt = (
            select(Account)
            .where(Account.user_id == self.user_id)
            .order_by(Account.name, Account.id)
        )
        return self.session.scalars(stmt).all()

    def get(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account or account.user_id != self.user_id:
            raise ValueError("Account not found")
        return account

    def create(self, data: AccountIn) -> Account:
        account = Account(
            user_id=self.user_id,
            name=data.name.strip(),
            type=data.type,
            currency=data.currency.upper(),
            closing_day=data.closing_day,
            payment_due_day=data.payment_due_day,
            credit_limit_cents=data.credit_limit_cents,
            current_balance_cents=0,
        )
        self.session.add(account)
        self.session.commit()
        self.session.refresh(account)
        return account

    def update(self, account_id: int, data: AccountIn) -> Account:
        account = self.get(account_id)
        account.name = data.name.strip()
        account.type = data.type
        account.currency = data.currency.upper()
        account.closing_day = data.closing_day
        account.payment_due_day = data.payment_due_day
        account.credit_limit_cents = data.credit_limit_cents
        self.session.commit()
        return account

    def delete(self, account_id: int) -> None:
        account = self.get(account_id)
        has_rows = any(
            self.session.scalar(stmt)
            for stmt in (
                select(func.count(Entry.id)).where(Entry.account_id == account.id),
                select(func.count(Income.id)).where(Income.account_id == account.id),
                select(func.count(Transfer.id)).where(
                    or_(
                        Transfer.from_account_id == account.id,
                        Transfer.to_account_id == account.id,
                    )
                ),
            )
        )
        if has_rows:
            raise ValueError("Account has transactions")
        self.session.execute(delete(Fatura).where(Fatura.account_id == account.id))
        self.session.delete(account)
        self.session.commit()

    def calculate_balance(self, account_id: int) -> int:
        """Balance derived from the ledger rows of one account.

        Only paid expense entries and received income count, plus refunds
        credited to a statement that has been paid. Ignored rows on either side
        are skipped.
        """
        expenses = _scalar_sum(
            self.session,
            select(func.coalesce(func.sum(Entry.amount_cents), 0))
            .join(Expense, Entry.expense_id == Expense.id)
            .where(
                Entry.user_id == self.user_id,
                Entry.account_id == account_id,
                Entry.paid_at.is_not(None),
                Expense.ignored.is_(False),
            ),
        )
        paid_months = select(Fatura.year_month).where(
            Fatura.account_id == account_id, Fatura.paid_at.is_not(None)
        )
        income = _scalar_sum(
            self.session,
            select(func.coalesce(func.sum(Income.amount_cents), 0)).where(
                Income.user_id == self.user_id,
                Income.account_id == account_id,
                Income.ignored.is_(False),
                # Card refunds settle together with the statement they credit.
                or_(
                    Income.received_at.is_not(None),
                    Income.refund_of_expense_id.is_not(None)
                    & Income.fatura_month.in_(paid_months),
                ),
            ),
        )
        transfers_out = _scalar_sum(
            self.session,
            select(func.coalesce(func.sum(Transfer.amount_cents), 0)).where(
                Transfer.user_id == self.user_id,
                Transfer.from_account_id == account_id,
                Transfer.ignored.is_(False),
            ),
        )
        transfers_in = _scalar_sum(
            self.session,
            select(func.coalesce(func.sum(Transfer.amount_cents), 0)).where(
                Transfer.user_id == self.user_id,
                Transfer.to_account_id == account_id,
                Transfer.ignored.is_(False),
            ),
        )
        return compute_balance(income, transfers_in, expenses, transfers_out)

    def sync_balance(self, account_id: int) -> bool:
        self.session.flush()
        account = self.get(account_id)
        balance = self.calculate_balance(account_id)
        if account.current_balance_cents == balance:
            return False
        account.current_balance_cents = balance
        account.last_balance_update = utcnow()
        self.session.flush()
        return True

    def sync_many(self, account_ids) -> int:
        updated = 0
        for account_id in sorted({a for a in account_ids if a}):
            if self.sync_balance(account_id):
                updated += 1
        return updated

    def reconcile_all(self) -> int:
        account_ids = self.session.scalars(
            select(Account.id).where(Account.user_id == self.user_id)
        ).all()
        return self.sync_many(account_ids)


def reconcile_account_balances_for_user(
    user_id: int, factory: Optional[SessionFactory] = None
) -> dict[str, object]:
    try:
        with session_scope(factory) as session:
            updated = AccountService(session, user_id).reconcile_all()
    except SQLAlchemyError as exc:
        logger.exception(f"reconcile_failed: user_id={user_id}")
        return {"success": False, "error": str(exc)}
    logger.info(f"reconcile_user: user_id={user_id} updated={updated}")
    return {"success": True, "updated": updated}


def reconcile_all_account_balances(
    factory: Optional[SessionFactory] = None,
) -> dict[str, int]:
    with session_scope(factory) as session:
        user_ids = session.scalars(
            select(Account.user_id).distinct().order_by(Account.user_id)
        ).all()

    users = 0
    accounts = 0
    failed = 0
    for user_id in user_ids:
        result = reconcile_account_balances_for_user(user_id, factory)
        if result["success"]:
            users += 1
            accounts += int(result["updated"])
        else:
            failed += 1
    logger.info(
        f"reconcile_all: users={users} accounts_updated={accounts} failed={failed}"
    )
    return {"users": users, "accounts": accounts, "failed": failed}


class FaturaService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.accounts = AccountService(session, self.user_id)

    def get(self, fatura_id: int) -> Fatura:
        fatura = self.session.get(Fatura, fatura_id)
        if not fatura or fatura.user_id != self.user_id:
            raise ValueError("Fatura not found")
        return fatura

    def find(self, account_id: int, year_month: str) -> Optional[Fatura]:
        return self.session.scalar(
            select(Fatura).where(
                Fatura.user_id == self.user_id,
                Fatura.account_id == account_id,
                Fatura.year_month == year_month,
            )
        )

    def ensure_exists(self, account_id: int, year_month: str) -> Fatura:
        parse_year_month(year_month)
        existing = self.find(account_id, year_month)
        if existing:
            return existing

        account = self.accounts.get(account_id)
        # Cards without billing config settle on the 1st.
        closing_day = account.closing_day or 1
        due_day = account.payment_due_day or 1
        fatura = Fatura(
            user_id=self.user_id,
            account_id=account_id,
            year_month=year_month,
            closing_date=fatura_closing_date(year_month, closing_day),
            due_date=payment_due_date(year_month, due_day, closing_day),
            total_amount_cents=0,
        )
        self.session.add(fatura)
        self.session.flush()
        return fatura

    def update_total(self, account_id: int, year_month: str) -> int:
        """Recompute a statement total: its entries minus the refunds credited to it."""
        self.session.flush()
        charges = _scalar_sum(
            self.session,
            select(func.coalesce(func.sum(Entry.amount_cents), 0)).where(
                Entry.user_id == self.user_id,
                Entry.account_id == account_id,
                Entry.fatura_month == year_month,
            ),
        )
        refunds = _scalar_sum(
            self.session,
            select(func.coalesce(func.sum(Income.amount_cents), 0)).where(
                Income.user_id == self.user_id,
                Income.account_id == account_id,
                Income.fatura_month == year_month,
                Income.refund_of_expense_id.is_not(None),
                Income.ignored.is_(False),
            ),
        )
        total = max(0, charges - refunds)
        fatura = self.find(account_id, year_month)
        if fatura and fatura.total_amount_cents != total:
            fatura.total_amount_cents = total
            self.session.flush()
        return total

    def status_of(self, fatura: Fatura, today: Optional[date] = None) -> FaturaStatus:
        return fatura.status_on(today or local_today())

    def _entries_of(self, fatura: Fatura):
        return (
            Entry.user_id == self.user_id,
            Entry.account_id == fatura.account_id,
            Entry.fatura_month == fatura.year_month,
        )

    def _payment_transfer(self, fatura_id: int) -> Optional[Transfer]:
        return self.session.scalar(
            select(Transfer)
            .where(
                Transfer.user_id == self.user_id,
                Transfer.fatura_id == fatura_id,
                Transfer.type == TransferType.fatura_payment,
            )
            .order_by(Transfer.created_at.desc(), Transfer.id.desc())
            .limit(1)
        )

    def pay(
        self,
        fatura_id: int,
        from_account_id: int,
        create_transfer: bool = True,
        now: Optional[datetime] = None,
    ) -> Fatura:
        fatura = self.get(fatura_id)
        if fatura.paid_at:
            raise ValueError("Fatura already paid")
        source = self.accounts.get(from_account_id)
        if source.type == AccountType.credit_card:
            raise ValueError("Cannot pay a fatura from a credit card")

        paid_at = to_naive_utc(now) if now else utcnow()
        # A statement refunded down to zero is settled without moving money.
        if create_transfer and fatura.total_amount_cents > 0:
            self.session.add(
                Transfer(
                    user_id=self.user_id,
                    from_account_id=source.id,
                    to_account_id=fatura.account_id,
                    amount_cents=fatura.total_amount_cents,
                    date=paid_at.date(),
                    type=TransferType.fatura_payment,
                    fatura_id=fatura.id,
                    description=f"Fatura {fatura.year_month}",
                )
            )
        fatura.paid_at = paid_at
        fatura.paid_from_account_id = source.id
        self.session.execute(
            update(Entry).where(*self._entries_of(fatura)).values(paid_at=paid_at)
        )
        self.accounts.sync_many([source.id, fatura.account_id])
        self.session.commit()
        logger.info(
            f"fatura_paid: fatura_id={fatura.id} from_account_id={source.id} "
            f"amount_cents={fatura.total_amount_cents}"
        )
        return fatura

    def mark_unpaid(self, fatura_id: int, now: Optional[datetime] = None) -> Fatura:
        fatura = self.get(fatura_id)
        was_paid = fatura.paid_at is not None
        paid_from = fatura.paid_from_account_id
        payment = self._payment_transfer(fatura.id)
        reversal_date = (to_naive_utc(now) if now else utcnow()).date()

        fatura.paid_at = None
        fatura.paid_from_account_id = None
        self.session.execute(
            update(Entry).where(*self._entries_of(fatura)).values(paid_at=None)
        )
        if was_paid and payment and payment.from_account_id and payment.to_account_id:
            self.session.add(
                Transfer(
                    user_id=self.user_id,
                    from_account_id=payment.to_account_id,
                    to_account_id=payment.from_account_id,
                    amount_cents=payment.amount_cents,
                    date=reversal_date,
                    type=TransferType.internal_transfer,
                    fatura_id=fatura.id,
                    description=f"Reversal: {payment.description or 'Fatura payment'}",
                )
            )
        self.accounts.sync_many([paid_from, fatura.account_id])
        self.session.commit()
        logger.info(f"fatura_unpaid: fatura_id={fatura.id} reversed={was_paid}")
        return fatura

    def convert_expense_to_payment(self, entry_id: int, fatura_id: int) -> Fatura:
        """Turn a checking-account expense into the payment of a fatura.

        The expense must be a single charge from a non-credit-card account
        whose amount equals the unpaid fatura total. The expense is removed
        and replaced by a ``fatura_payment`` transfer.
        """
        entry = self.session.get(Entry, entry_id)
        if not entry or entry.user_id != self.user_id:
            raise ValueError("Expense not found")
        expense = entry.expense
        source = self.accounts.get(entry.account_id)
        if source.type == AccountType.credit_card or expense.total_installments != 1:
            raise ValueError("Only single-charge expenses from cash accounts can be converted")

        fatura = self.get(fatura_id)
        if fatura.paid_at:
            raise ValueError("Fatura already paid")
        if fatura.total_amount_cents != entry.amount_cents:
            raise ValueError("Expense amount does not match the fatura total")

        paid_at = datetime.combine(entry.purchase_date, datetime.min.time())
        self.session.add(
            Transfer(
                user_id=self.user_id,
                from_account_id=source.id,
                to_account_id=fatura.account_id,
                amount_cents=entry.amount_cents,
                date=entry.purchase_date,
                type=TransferType.fatura_payment,
                fatura_id=fatura.id,
                description=f"Fatura {fatura.year_month}",
            )
        )
        fatura.paid_at = paid_at
        fatura.paid_from_account_id = source.id
        self.session.execute(
            update(Entry).where(*self._entries_of(fatura)).values(paid_at=paid_at)
        )
        self.session.delete(expense)
        self.accounts.sync_many([source.id, fatura.account_id])
        self.session.commit()
        return fatura

    def backfill(self) -> dict[str, object]:
        try:
            combos = self.session.execute(
                select(Entry.account_id, Entry.fatura_month)
                .join(Account, Entry.account_id == Account.id)
                .where(
                    Entry.user_id == self.user_id,
                    Account.type == AccountType.credit_card,
                )
                .distinct()
                .order_by(Entry.account_id, Entry.fatura_month)
            ).all()

            created = 0
            for account_id, year_month in combos:
                if self.find(account_id, year_month):
                    continue
                self.ensure_exists(account_id, year_month)
                self.update_total(account_id, year_month)
                created += 1
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            logger.exception(f"fatura_backfill_failed: user_id={self.user_id}")
            return {"error": "Failed to backfill faturas"}
        logger.info(f"fatura_backfill: user_id={self.user_id} created={created}")
        return {"created": created}

    def list_by_account(self, account_id: int) -> list[Fatura]:
        self.accounts.get(account_id)
        stmt = (
            select(Fatura)
            .where(Fatura.user_id == self.user_id, Fatura.account_id == account_id)
            .order_by(Fatura.year_month.desc())
        )
        return self.session.scalars(stmt).all()

    def list_by_month(self, year_month: str) -> list[Fatura]:
        parse_year_month(year_month)
        stmt = (
            select(Fatura)
            .options(joinedload(Fatura.account))
            .join(Account, Fatura.account_id == Account.id)
            .where(Fatura.user_id == self.user_id, Fatura.year_month == year_month)
            .order_by(Account.name)
        )
        return self.session.scalars(stmt).all()

    def list_unpaid(self) -> list[Fatura]:
        stmt = (
            select(Fatura)
            .options(joinedload(Fatura.account))
            .join(Account, Fatura.account_id == Account.id)
            .where(Fatura.user_id == self.user_id, Fatura.paid_at.is_(None))
            .order_by(Fatura.year_month.desc(), Account.name)
        )
        return self.session.scalars(stmt).all()

    def get_with_entries(self, fatura_id: int) -> tuple[Fatura, list[Entry]]:
        fatura = self.get(fatura_id)
        entries = self.session.scalars(
            select(Entry)
            .options(joinedload(Entry.expense).joinedload(Expense.category))
            .where(*self._entries_of(fatura))
            .order_by(Entry.purchase_date.desc(), Entry.id.desc())
        ).all()
        return fatura, entries


@dataclass
class ExpenseFilters:
    year_month: Optional[str] = None
    category_id: Optional[int] = None
    account_id: Optional[int] = None
    status: str = "all"


def split_installments(total_cents: int, installments: int) -> list[int]:
    if installments < 1:
        raise ValueError("Installments must be at least 1")
    if total_cents < installments:
        raise ValueError("Amount is too small for the number of installments")
    per_installment = total_cents // installments
    amounts = [per_installment] * (installments - 1)
    amounts.append(total_cents - per_installment * (installments - 1))
    return amounts


class ExpenseService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.accounts = AccountService(session, self.user_id)
        self.faturas = FaturaService(session, self.user_id)

    def get(self, expense_id: int) -> Expense:
        expense = self.session.get(Expense, expense_id)
        if not expense or expense.user_id != self.user_id:
            raise ValueError("Expense not found")
        return expense

    def _get_entry(self, entry_id: int) -> Entry:
        entry = self.session.get(Entry, entry_id)
        if not entry or entry.user_id != self.user_id:
            raise ValueError("Expense not found")
        return entry

    def _build_entries(self, account: Account, data: ExpenseIn) -> list[Entry]:
        amounts = split_installments(data.total_amount_cents, data.installments)
        entries: list[Entry] = []
        if account.has_billing_config:
            base_month = fatura_month_for(data.purchase_date, account.closing_day)
            for i, amount in enumerate(amounts):
                fatura_month = add_months(base_month, i)
                # Later installments land at the start of their billing window.
                purchase_date = (
                    data.purchase_date
                    if i == 0
                    else fatura_window_start(fatura_month, account.closing_day)
                )
                entries.append(
                    Entry(
                        user_id=self.user_id,
                        account_id=account.id,
                        amount_cents=amount,
                        purchase_date=purchase_date,
                        fatura_month=fatura_month,
                        due_date=payment_due_date(
                            fatura_month, account.payment_due_day, account.closing_day
                        ),
                        installment_number=i + 1,
                    )
                )
            return entries

        for i, amount in enumerate(amounts):
            purchase_date = shift_date_by_months(data.purchase_date, i)
            entries.append(
                Entry(
                    user_id=self.user_id,
                    account_id=account.id,
                    amount_cents=amount,
                    purchase_date=purchase_date,
                    fatura_month=year_month_of(purchase_date),
                    due_date=purchase_date,
                    installment_number=i + 1,
                )
            )
        return entries

    def create(self, data: ExpenseIn) -> Expense:
        account = self.accounts.get(data.account_id)
        category = CategoryService(self.session, self.user_id).get(data.category_id)
        description = (data.description or "").strip() or category.name

        expense = Expense(
            user_id=self.user_id,
            description=description,
            total_amount_cents=data.total_amount_cents,
            total_installments=data.installments,
            category_id=category.id,
        )
        expense.entries = self._build_entries(account, data)
        self.session.add(expense)
        self.session.flush()

        if account.has_billing_config:
            for month in sorted({e.fatura_month for e in expense.entries}):
                self.faturas.ensure_exists(account.id, month)
                self.faturas.update_total(account.id, month)

        self.accounts.sync_balance(account.id)
        self.session.commit()
        self.session.refresh(expense)
        logger.info(
            f"expense_created: expense_id={expense.id} account_id={account.id} "
            f"amount_cents={data.total_amount_cents} installments={data.installments}"
        )
        return expense

    def _refresh_faturas(self, touched: set[tuple[int, str]]) -> None:
        for account_id, month in sorted(touched):
            self.faturas.update_total(account_id, month)

    def update(self, expense_id: int, data: ExpenseIn) -> Expense:
        """Rewrite a purchase and regenerate its installments.

        The new installments start out pending. Statements of both the old and
        the new schedule are re-totalled and both accounts re-synced.
        """
        expense = self.get(expense_id)
        if data.total_amount_cents < expense.refunded_amount_cents:
            raise ValueError("Expense amount cannot be less than refunded total")
        account = self.accounts.get(data.account_id)
        category = CategoryService(self.session, self.user_id).get(data.category_id)

        touched = {(e.account_id, e.fatura_month) for e in expense.entries}
        account_ids = {e.account_id for e in expense.entries}

        expense.description = (data.description or "").strip() or category.name
        expense.total_amount_cents = data.total_amount_cents
        expense.total_installments = data.installments
        expense.category_id = category.id
        expense.entries = self._build_entries(account, data)
        self.session.flush()

        if account.has_billing_config:
            for month in sorted({e.fatura_month for e in expense.entries}):
                self.faturas.ensure_exists(account.id, month)
        touched.update((e.account_id, e.fatura_month) for e in expense.entries)
        account_ids.add(account.id)
        self._refresh_faturas(touched)
        self.accounts.sync_many(account_ids)
        self.session.commit()
        self.session.refresh(expense)
        logger.info(
            f"expense_updated: expense_id={expense.id} account_id={account.id} "
            f"amount_cents={data.total_amount_cents} installments={data.installments}"
        )
        return expense

    def delete(self, expense_id: int) -> None:
        expense = self.get(expense_id)
        if expense.refunded_amount_cents > 0:
            raise ValueError("Expense has refunds; delete them first")
        touched = {(e.account_id, e.fatura_month) for e in expense.entries}
        account_ids = {e.account_id for e in expense.entries}
        self.session.delete(expense)
        self.session.flush()
        self._refresh_faturas(touched)
        self.accounts.sync_many(account_ids)
        self.session.commit()

    def mark_entry_paid(self, entry_id: int, now: Optional[datetime] = None) -> Entry:
        entry = self._get_entry(entry_id)
        entry.paid_at = to_naive_utc(now) if now else utcnow()
        self.accounts.sync_balance(entry.account_id)
        self.session.commit()
        return entry

    def mark_entry_pending(self, entry_id: int) -> Entry:
        entry = self._get_entry(entry_id)
        entry.paid_at = None
        self.accounts.sync_balance(entry.account_id)
        self.session.commit()
        return entry

    def toggle_ignore(self, expense_id: int) -> bool:
        expense = self.get(expense_id)
        expense.ignored = not expense.ignored
        self.accounts.sync_many({e.account_id for e in expense.entries})
        self.session.commit()
        return expense.ignored

    def list(self, filters: Optional[ExpenseFilters] = None) -> list[Entry]:
        filters = filters or ExpenseFilters()
        stmt = (
            select(Entry)
            .join(Expense, Entry.expense_id == Expense.id)
            .options(joinedload(Entry.expense).joinedload(Expense.category))
            .where(Entry.user_id == self.user_id)
            .order_by(Entry.due_date.desc(), Entry.id.desc())
        )
        if filters.year_month:
            period = month_period(filters.year_month)
            stmt = stmt.where(Entry.purchase_date.between(period.start, period.end))
        if filters.category_id:
            stmt = stmt.where(Expense.category_id == filters.category_id)
        if filters.account_id:
            stmt = stmt.where(Entry.account_id == filters.account_id)
        if filters.status == "paid":
            stmt = stmt.where(Entry.paid_at.is_not(None))
        elif filters.status == "pending":
            stmt = stmt.where(Entry.paid_at.is_(None))
        return self.session.scalars(stmt).unique().all()


class IncomeService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.accounts = AccountService(session, self.user_id)

    def get(self, income_id: int) -> Income:
        income = self.session.get(Income, income_id)
        if not income or income.user_id != self.user_id:
            raise ValueError("Income not found")
        return income

    def _check_refs(self, data: IncomeIn) -> None:
        self.accounts.get(data.account_id)
        CategoryService(self.session, self.user_id).get(data.category_id)

    def create(self, data: IncomeIn) -> Income:
        self._check_refs(data)
        income = Income(
            user_id=self.user_id,
            description=data.description.strip(),
            amount_cents=data.amount_cents,
            category_id=data.category_id,
            account_id=data.account_id,
            received_date=data.received_date,
            received_at=to_naive_utc(data.received_at) if data.received_at else None,
        )
        self.session.add(income)
        self.accounts.sync_balance(data.account_id)
        self.session.commit()
        self.session.refresh(income)
        return income

    def _editable(self, income_id: int) -> Income:
        income = self.get(income_id)
        if income.is_refund:
            raise ValueError("Refunds are managed from the expense")
        return income

    def update(self, income_id: int, data: IncomeIn) -> Income:
        income = self._editable(income_id)
        self._check_refs(data)
        previous_account = income.account_id
        income.description = data.description.strip()
        income.amount_cents = data.amount_cents
        income.category_id = data.category_id
        income.account_id = data.account_id
        income.received_date = data.received_date
        self.accounts.sync_many([previous_account, data.account_id])
        self.session.commit()
        return income

    def delete(self, income_id: int) -> None:
        income = self._editable(income_id)
        account_id = income.account_id
        self.session.delete(income)
        self.accounts.sync_balance(account_id)
        self.session.commit()

    def mark_received(self, income_id: int, now: Optional[datetime] = None) -> Income:
        income = self.get(income_id)
        if income.is_refund and income.account.has_billing_config:
            raise ValueError("Card refunds are credited on the statement")
        income.received_at = to_naive_utc(now) if now else utcnow()
        self.accounts.sync_balance(income.account_id)
        self.session.commit()
        return income

    def mark_pending(self, income_id: int) -> Income:
        income = self.get(income_id)
        income.received_at = None
        self.accounts.sync_balance(income.account_id)
        self.session.commit()
        return income

    def toggle_ignore(self, income_id: int) -> bool:
        income = self.get(income_id)
        income.ignored = not income.ignored
        if income.is_refund and income.fatura_month:
            FaturaService(self.session, self.user_id).update_total(
                income.account_id, income.fatura_month
            )
        self.accounts.sync_balance(income.account_id)
        self.session.commit()
        return income.ignored

    def list(self, filters: Optional[IncomeFiltersIn] = None) -> list[Income]:
        filters = filters or IncomeFiltersIn()
        stmt = (
            select(Income)
            .options(joinedload(Income.category), joinedload(Income.account))
            .where(Income.user_id == self.user_id)
            .order_by(Income.received_date.desc(), Income.created_at.desc())
        )
        if filters.year_month:
            period = month_period(filters.year_month)
            stmt = stmt.where(Income.received_date.between(period.start, period.end))
        if filters.category_id:
            stmt = stmt.where(Income.category_id == filters.category_id)
        if filters.account_id:
            stmt = stmt.where(Income.account_id == filters.account_id)
        if filters.status == "received":
            stmt = stmt.where(Income.received_at.is_not(None))
        elif filters.status == "pending":
            stmt = stmt.where(Income.received_at.is_(None))
        return self.session.scalars(stmt).all()


class RefundService:
    """Refunds are income rows linked back to the purchase they reverse.

    A refund credits the statement of the card it was charged to (through
    ``fatura_month``) and gives the money back to the expense category budget.
    """

    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.accounts = AccountService(session, self.user_id)
        self.faturas = FaturaService(session, self.user_id)

    def _income_category(self) -> Category:
        category = self.session.scalar(
            select(Category)
            .where(
                Category.user_id == self.user_id,
                Category.type == CategoryType.income,
            )
            .order_by(Category.name, Category.id)
            .limit(1)
        )
        if category is None:
            raise ValueError("No income category found")
        return category

    def _check_open(self, account_id: int, year_month: Optional[str]) -> None:
        fatura = self.faturas.find(account_id, year_month) if year_month else None
        if fatura and fatura.paid_at:
            raise ValueError("Fatura already paid")

    def _retotal(self, account_id: int, year_month: Optional[str]) -> None:
        if year_month and self.faturas.find(account_id, year_month):
            self.faturas.update_total(account_id, year_month)

    def list_for_expense(self, expense_id: int) -> list[Income]:
        ExpenseService(self.session, self.user_id).get(expense_id)
        stmt = (
            select(Income)
            .where(
                Income.user_id == self.user_id,
                Income.refund_of_expense_id == expense_id,
            )
            .order_by(Income.received_date, Income.id)
        )
        return self.session.scalars(stmt).all()

    def create(self, data: RefundIn) -> Income:
        expense = ExpenseService(self.session, self.user_id).get(data.expense_id)
        remaining = expense.total_amount_cents - expense.refunded_amount_cents
        if data.amount_cents > remaining:
            raise ValueError("Refund exceeds the remaining refundable amount")
        if not expense.entries:
            raise ValueError("Expense has no installments to refund")
        account = self.accounts.get(expense.entries[0].account_id)
        self._check_open(account.id, data.fatura_month)
        category = self._income_category()

        refund = Income(
            user_id=self.user_id,
            description=(data.description or "").strip()
            or f"Refund - {expense.description or category.name}",
            amount_cents=data.amount_cents,
            category_id=category.id,
            account_id=account.id,
            received_date=data.refund_date,
            received_at=None,
            refund_of_expense_id=expense.id,
            replenish_category_id=expense.category_id,
            fatura_month=data.fatura_month,
        )
        self.session.add(refund)
        expense.refunded_amount_cents += data.amount_cents
        self.session.flush()

        if account.has_billing_config:
            self.faturas.ensure_exists(account.id, data.fatura_month)
        self._retotal(account.id, data.fatura_month)
        self.accounts.sync_balance(account.id)
        self.session.commit()
        self.session.refresh(refund)
        logger.info(
            f"refund_created: income_id={refund.id} expense_id={expense.id} "
            f"amount_cents={data.amount_cents} fatura_month={data.fatura_month}"
        )
        return refund

    def delete(self, income_id: int) -> None:
        refund = IncomeService(self.session, self.user_id).get(income_id)
        if not refund.is_refund:
            raise ValueError("Income is not a refund")
        self._check_open(refund.account_id, refund.fatura_month)
        expense = self.session.get(Expense, refund.refund_of_expense_id)
        if expense is not None:
            expense.refunded_amount_cents = max(
                0, expense.refunded_amount_cents - refund.amount_cents
            )
        account_id, year_month = refund.account_id, refund.fatura_month
        self.session.delete(refund)
        self.session.flush()
        self._retotal(account_id, year_month)
        self.accounts.sync_balance(account_id)
        self.session.commit()
        logger.info(f"refund_deleted: income_id={income_id}")


class TransferService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.accounts = AccountService(session, self.user_id)

    def get(self, transfer_id: int) -> Transfer:
        transfer = self.session.get(Transfer, transfer_id)
        if not transfer or transfer.user_id != self.user_id:
            raise ValueError("Transfer not found")
        return transfer

    def _check_accounts(self, data: TransferIn) -> None:
        for account_id in (data.from_account_id, data.to_account_id):
            if account_id is not None:
                self.accounts.get(account_id)
        if data.fatura_id is not None:
            FaturaService(self.session, self.user_id).get(data.fatura_id)

    def create(self, data: TransferIn) -> Transfer:
        self._check_accounts(data)
        transfer = Transfer(
            user_id=self.user_id,
            from_account_id=data.from_account_id,
            to_account_id=data.to_account_id,
            amount_cents=data.amount_cents,
            date=data.date,
            type=data.type,
            fatura_id=data.fatura_id,
            description=(data.description or "").strip() or None,
        )
        self.session.add(transfer)
        self.accounts.sync_many([data.from_account_id, data.to_account_id])
        self.session.commit()
        self.session.refresh(transfer)
        return transfer

    def _editable(self, transfer_id: int) -> Transfer:
        transfer = self.get(transfer_id)
        if transfer.fatura_id:
            raise ValueError("Fatura payments are managed from the fatura")
        return transfer

    def update(self, transfer_id: int, data: TransferIn) -> Transfer:
        transfer = self._editable(transfer_id)
        self._check_accounts(data)
        affected = [transfer.from_account_id, transfer.to_account_id]
        transfer.from_account_id = data.from_account_id
        transfer.to_account_id = data.to_account_id
        transfer.amount_cents = data.amount_cents
        transfer.date = data.date
        transfer.type = data.type
        transfer.description = (data.description or "").strip() or None
        affected += [data.from_account_id, data.to_account_id]
        self.accounts.sync_many(affected)
        self.session.commit()
        return transfer

    def delete(self, transfer_id: int) -> None:
        transfer = self._editable(transfer_id)
        affected = [transfer.from_account_id, transfer.to_account_id]
        self.session.delete(transfer)
        self.accounts.sync_many(affected)
        self.session.commit()

    def toggle_ignore(self, transfer_id: int) -> bool:
        transfer = self._editable(transfer_id)
        transfer.ignored = not transfer.ignored
        self.accounts.sync_many([transfer.from_account_id, transfer.to_account_id])
        self.session.commit()
        return transfer.ignored

    def list(
        self,
        account_id: Optional[int] = None,
        year_month: Optional[str] = None,
        type: Optional[TransferType] = None,
    ) -> list[Transfer]:
        stmt = (
            select(Transfer)
            .where(Transfer.user_id == self.user_id)
            .order_by(Transfer.date.desc(), Transfer.created_at.desc())
        )
        if type:
            stmt = stmt.where(Transfer.type == type)
        if account_id:
            stmt = stmt.where(
                or_(
                    Transfer.from_account_id == account_id,
                    Transfer.to_account_id == account_id,
                )
            )
        if year_month:
            period = month_period(year_month)
            stmt = stmt.where(Transfer.date.between(period.start, period.end))
        return self.session.scalars(stmt).all()

    def backfill_payment_transfers(self) -> dict[str, object]:
        try:
            paid = self.session.scalars(
                select(Fatura)
                .where(
                    Fatura.user_id == self.user_id,
                    Fatura.paid_at.is_not(None),
                    Fatura.paid_from_account_id.is_not(None),
                    Fatura.total_amount_cents > 0,
                )
                .order_by(Fatura.id)
            ).all()
            created = 0
            for fatura in paid:
                existing = self.session.scalar(
                    select(Transfer.id).where(
                        Transfer.user_id == self.user_id,
                        Transfer.fatura_id == fatura.id,
                        Transfer.type == TransferType.fatura_payment,
                    )
                )
                if existing:
                    continue
                self.session.add(
                    Transfer(
                        user_id=self.user_id,
                        from_account_id=fatura.paid_from_account_id,
                        to_account_id=fatura.account_id,
                        amount_cents=fatura.total_amount_cents,
                        date=fatura.paid_at.date(),
                        type=TransferType.fatura_payment,
                        fatura_id=fatura.id,
                        description=f"Fatura {fatura.year_month}",
                    )
                )
                created += 1
            if created:
                affected = set()
                for fatura in paid:
                    affected.update({fatura.paid_from_account_id, fatura.account_id})
                self.accounts.sync_many(affected)
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            logger.exception(f"transfer_backfill_failed: user_id={self.user_id}")
            return {"error": "Failed to backfill fatura transfers"}
        return {"created": created}


@dataclass(frozen=True)
class BudgetProgress:
    category_id: int
    name: str
    color: str
    icon: Optional[str]
    spent: int
    budget: int

    @property
    def remaining(self) -> int:
        return self.budget - self.spent


@dataclass(frozen=True)
class UnbudgetedSpending:
    category_id: int
    name: str
    color: str
    icon: Optional[str]
    spent: int


@dataclass
class BudgetSummary:
    year_month: str
    budgets: list[BudgetProgress] = field(default_factory=list)
    unbudgeted: list[UnbudgetedSpending] = field(default_factory=list)
    total_budget: int = 0
    total_spent: int = 0
    monthly_budget: Optional[int] = None


class BudgetService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_for_month(self, year_month: str) -> list[tuple[Category, Optional[Budget]]]:
        parse_year_month(year_month)
        stmt = (
            select(Category, Budget)
            .outerjoin(
                Budget,
                (Budget.category_id == Category.id)
                & (Budget.year_month == year_month)
                & (Budget.user_id == self.user_id),
            )
            .where(
                Category.user_id == self.user_id,
                Category.type == CategoryType.expense,
            )
            .order_by(Category.name)
        )
        return [(row[0], row[1]) for row in self.session.execute(stmt)]

    def upsert_budget(self, data: BudgetIn) -> Budget:
        parse_year_month(data.year_month)
        category = CategoryService(self.session, self.user_id).get(data.category_id)
        if category.type != CategoryType.expense:
            raise ValueError("Budgets can only be set for expense categories")

        existing = self.session.scalar(
            select(Budget).where(
                Budget.user_id == self.user_id,
                Budget.category_id == data.category_id,
                Budget.year_month == data.year_month,
            )
        )
        if existing:
            existing.amount_cents = data.amount_cents
            self.session.commit()
            return existing

        budget = Budget(
            user_id=self.user_id,
            category_id=data.category_id,
            year_month=data.year_month,
            amount_cents=data.amount_cents,
        )
        self.session.add(budget)
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def delete_budget(self, category_id: int, year_month: str) -> None:
        budget = self.session.scalar(
            select(Budget).where(
                Budget.user_id == self.user_id,
                Budget.category_id == category_id,
                Budget.year_month == year_month,
            )
        )
        if not budget:
            raise ValueError("Budget not found")
        self.session.delete(budget)
        self.session.commit()

    def get_monthly_budget(self, year_month: str) -> Optional[int]:
        parse_year_month(year_month)
        return self.session.scalar(
            select(MonthlyBudget.amount_cents).where(
                MonthlyBudget.user_id == self.user_id,
                MonthlyBudget.year_month == year_month,
            )
        )

    def upsert_monthly_budget(self, data: MonthlyBudgetIn) -> MonthlyBudget:
        parse_year_month(data.year_month)
        existing = self.session.scalar(
            select(MonthlyBudget).where(
                MonthlyBudget.user_id == self.user_id,
                MonthlyBudget.year_month == data.year_month,
            )
        )
        if existing:
            existing.amount_cents = data.amount_cents
            self.session.commit()
            return existing
        monthly = MonthlyBudget(
            user_id=self.user_id,
            year_month=data.year_month,
            amount_cents=data.amount_cents,
        )
        self.session.add(monthly)
        self.session.commit()
        self.session.refresh(monthly)
        return monthly

    def spent_by_category_for_month(self, year_month: str) -> dict[int, int]:
        period = month_period(year_month)
        stmt = (
            select(
                Expense.category_id,
                func.coalesce(func.sum(Entry.amount_cents), 0).label("spent"),
            )
            .join(Expense, Entry.expense_id == Expense.id)
            .where(
                Entry.user_id == self.user_id,
                Expense.ignored.is_(False),
                Entry.due_date.between(period.start, period.end),
            )
            .group_by(Expense.category_id)
        )
        spent = {
            row.category_id: int(row.spent or 0) for row in self.session.execute(stmt)
        }
        # Refunds give the money back to the category they replenish.
        refunds = self.session.execute(
            select(
                Income.replenish_category_id,
                func.coalesce(func.sum(Income.amount_cents), 0).label("refunded"),
            )
            .where(
                Income.user_id == self.user_id,
                Income.replenish_category_id.is_not(None),
                Income.ignored.is_(False),
                Income.received_date.between(period.start, period.end),
            )
            .group_by(Income.replenish_category_id)
        )
        for row in refunds:
            if row.replenish_category_id in spent:
                spent[row.replenish_category_id] = max(
                    0, spent[row.replenish_category_id] - int(row.refunded or 0)
                )
        return spent

    def budgets_with_spending(self, year_month: str) -> BudgetSummary:
        parse_year_month(year_month)
        spent_by_category = self.spent_by_category_for_month(year_month)

        rows = self.session.execute(
            select(Budget, Category)
            .join(Category, Budget.category_id == Category.id)
            .where(Budget.user_id == self.user_id, Budget.year_month == year_month)
            .order_by(Category.name)
        ).all()

        summary = BudgetSummary(
            year_month=year_month,
            monthly_budget=self.get_monthly_budget(year_month),
        )
        budgeted_ids: set[int] = set()
        for budget, category in rows:
            budgeted_ids.add(category.id)
            summary.budgets.append(
                BudgetProgress(
                    category_id=category.id,
                    name=category.name,
                    color=category.color,
                    icon=category.icon,
                    spent=spent_by_category.get(category.id, 0),
                    budget=budget.amount_cents,
                )
            )

        unbudgeted_ids = [
            cid for cid, spent in spent_by_category.items() if cid not in budgeted_ids and spent
        ]
        if unbudgeted_ids:
            categories = self.session.scalars(
                select(Category)
                .where(Category.id.in_(unbudgeted_ids))
                .order_by(Category.name)
            ).all()
            for category in categories:
                summary.unbudgeted.append(
                    UnbudgetedSpending(
                        category_id=category.id,
                        name=category.name,
                        color=category.color,
                        icon=category.icon,
                        spent=spent_by_category[category.id],
                    )
                )

        summary.total_budget = sum(b.budget for b in summary.budgets)
        summary.total_spent = sum(b.spent for b in summary.budgets) + sum(
            u.spent for u in summary.unbudgeted
        )
        return summary

    def copy_from_month(self, source_month: str, target_month: str) -> dict[str, object]:
        parse_year_month(source_month)
        parse_year_month(target_month)
        if source_month == target_month:
            raise ValueError("Source and target months must differ")

        source = self.session.scalars(
            select(Budget).where(
                Budget.user_id == self.user_id, Budget.year_month == source_month
            )
        ).all()
        existing_ids = set(
            self.session.scalars(
                select(Budget.category_id).where(
                    Budget.user_id == self.user_id, Budget.year_month == target_month
                )
            ).all()
        )

        copied = 0
        for budget in source:
            if budget.category_id in existing_ids:
                continue
            self.session.add(
                Budget(
                    user_id=self.user_id,
                    category_id=budget.category_id,
                    year_month=target_month,
                    amount_cents=budget.amount_cents,
                )
            )
            copied += 1

        monthly_copied = False
        source_monthly = self.get_monthly_budget(source_month)
        if source_monthly is not None and self.get_monthly_budget(target_month) is None:
            self.session.add(
                MonthlyBudget(
                    user_id=self.user_id,
                    year_month=target_month,
                    amount_cents=source_monthly,
                )
            )
            monthly_copied = True

        self.session.commit()
        return {
            "copied": copied,
            "skipped": len(source) - copied,
            "total": len(source),
            "monthly_budget_copied": monthly_copied,
        }


class EventService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def get(self, event_id: int) -> Event:
        event = self.session.get(Event, event_id)
        if not event or event.user_id != self.user_id:
            raise ValueError("Event not found")
        return event

    def create(self, data: EventIn) -> Event:
        event = Event(
            user_id=self.user_id,
            title=data.title.strip(),
            description=data.description,
            start_at=to_naive_utc(data.start_at),
            end_at=to_naive_utc(data.end_at),
            is_all_day=data.is_all_day,
        )
        self.session.add(event)
        self.session.commit()
        self.session.refresh(event)
        return event

    def list_between(self, start: datetime, end: datetime) -> list[Event]:
        stmt = (
            select(Event)
            .where(
                Event.user_id == self.user_id,
                Event.start_at < to_naive_utc(end),
                Event.end_at > to_naive_utc(start),
            )
            .order_by(Event.start_at)
        )
        return self.session.scalars(stmt).all()

    def cancel(self, event_id: int) -> Event:
        event = self.get(event_id)
        event.status = EventStatus.cancelled
        self.session.commit()
        return event

    def delete(self, event_id: int) -> None:
        event = self.get(event_id)
        RecurrenceService(self.session, self.user_id).delete_rule(ItemType.event, event.id)
        self.session.delete(event)
        self.session.commit()


class TaskService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def get(self, task_id: int) -> Task:
        task = self.session.get(Task, task_id)
        if not task or task.user_id != self.user_id:
            raise ValueError("Task not found")
        return task

    def create(self, data: TaskIn) -> Task:
        task = Task(
            user_id=self.user_id,
            title=data.title.strip(),
            description=data.description,
            due_at=to_naive_utc(data.due_at),
            start_at=to_naive_utc(data.start_at) if data.start_at else None,
            duration_minutes=data.duration_minutes,
        )
        self.session.add(task)
        self.session.commit()
        self.session.refresh(task)
        return task

    def list_open(self) -> list[Task]:
        stmt = (
            select(Task)
            .where(
                Task.user_id == self.user_id,
                Task.status.in_(
                    [TaskStatus.pending, TaskStatus.in_progress, TaskStatus.overdue]
                ),
            )
            .order_by(Task.due_at)
        )
        return self.session.scalars(stmt).all()

    def set_status(
        self, task_id: int, status: TaskStatus, now: Optional[datetime] = None
    ) -> Task:
        task = self.get(task_id)
        task.status = status
        if status == TaskStatus.completed:
            task.completed_at = to_naive_utc(now) if now else utcnow()
        else:
            task.completed_at = None
        self.session.commit()
        return task

    def delete(self, task_id: int) -> None:
        task = self.get(task_id)
        RecurrenceService(self.session, self.user_id).delete_rule(ItemType.task, task.id)
        self.session.delete(task)
        self.session.commit()


class BudgetAlertService:
    """Push an alert when a category's spending crosses 80, 100 or 120 percent.

    Only the highest crossed threshold is considered. Each threshold is sent
    at most once per cooldown window for a category and month.
    """

    def __init__(
        self, session: Session, sender: PushSender, user_id: Optional[int] = None
    ) -> None:
        self.session = session
        self.sender = sender
        self.user_id = user_id or get_current_user_id()

    def _payload(
        self, category: Category, year_month: str, threshold: int, percent: int
    ) -> PushPayload:
        if threshold >= 120:
            title = "Budget exceeded"
            body = f"{category.name} is at {percent}% of its budget"
        elif threshold >= 100:
            title = "Budget reached"
            body = f"You have used all of the {category.name} budget"
        else:
            title = "Budget almost used"
            body = f"{category.name} is at {percent}% of its budget"
        return PushPayload(
            title=title,
            body=body,
            url=f"/budgets?month={year_month}&category={category.id}",
            tag=f"budget-alert-{category.id}-{year_month}-{threshold}",
            type="budget_alert",
        )

    def check(
        self,
        category_id: int,
        year_month: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> dict[str, object]:
        now = to_naive_utc(now) if now else utcnow()
        year_month = year_month or year_month_of(to_local_date(now))
        category = CategoryService(self.session, self.user_id).get(category_id)
        budget = self.session.scalar(
            select(Budget).where(
                Budget.user_id == self.user_id,
                Budget.category_id == category_id,
                Budget.year_month == year_month,
            )
        )
        if budget is None or budget.amount_cents <= 0:
            return {"sent": False, "error": "No budget found for category"}

        spent = BudgetService(self.session, self.user_id).spent_by_category_for_month(
            year_month
        ).get(category_id, 0)
        percent = spent * 100 // budget.amount_cents
        threshold = next((t for t in BUDGET_ALERT_THRESHOLDS if percent >= t), None)
        if threshold is None:
            return {"sent": False}

        alert = self.session.scalar(
            select(BudgetAlert).where(
                BudgetAlert.user_id == self.user_id,
                BudgetAlert.category_id == category_id,
                BudgetAlert.year_month == year_month,
                BudgetAlert.threshold == threshold,
            )
        )
        if alert and now - alert.last_sent_at < BUDGET_ALERT_COOLDOWN:
            return {"sent": False, "threshold": threshold}

        try:
            result = self.sender.send_to_user(
                self.user_id, self._payload(category, year_month, threshold, percent)
            )
            if result["sent"] > 0:
                if alert is None:
                    self.session.add(
                        BudgetAlert(
                            user_id=self.user_id,
                            category_id=category_id,
                            year_month=year_month,
                            threshold=threshold,
                            last_sent_at=now,
                        )
                    )
                else:
                    alert.last_sent_at = now
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.exception(
                f"budget_alert_failed: user_id={self.user_id} category_id={category_id}"
            )
            return {"sent": False, "error": str(exc)}

        sent = result["sent"] > 0
        logger.info(
            f"budget_alert: category_id={category_id} year_month={year_month} "
            f"threshold={threshold} sent={sent}"
        )
        return {"sent": sent, "threshold": threshold}


def _owned_item(
    session: Session, user_id: int, item_type: ItemType, item_id: int
) -> Event | Task | BillReminder:
    if item_type == ItemType.event:
        return EventService(session, user_id).get(item_id)
    if item_type == ItemType.bill_reminder:
        return BillReminderService(session, user_id).get(item_id)
    return TaskService(session, user_id).get(item_id)


def _recurring_item(
    session: Session, user_id: int, item_type: ItemType, item_id: int
) -> Event | Task:
    if item_type == ItemType.bill_reminder:
        raise ValueError("Bill reminders recur through their own schedule")
    return _owned_item(session, user_id, item_type, item_id)


class RecurrenceService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def get_rule(self, item_type: ItemType, item_id: int) -> Optional[RecurrenceRule]:
        return self.session.scalar(
            select(RecurrenceRule).where(
                RecurrenceRule.item_type == item_type,
                RecurrenceRule.item_id == item_id,
            )
        )

    def set_rule(self, data: RecurrenceRuleIn) -> RecurrenceRule:
        item = _recurring_item(self.session, self.user_id, data.item_type, data.item_id)
        base_start = item.start_at if isinstance(item, Event) else (item.start_at or item.due_at)
        parse_rrule(data.rrule, dtstart=base_start)

        rule = self.get_rule(data.item_type, data.item_id)
        if rule:
            rule.rrule = data.rrule.strip()
        else:
            rule = RecurrenceRule(
                item_type=data.item_type, item_id=data.item_id, rrule=data.rrule.strip()
            )
            self.session.add(rule)
        self.session.commit()
        self.session.refresh(rule)
        return rule

    def delete_rule(self, item_type: ItemType, item_id: int) -> None:
        self.session.execute(
            delete(RecurrenceRule).where(
                RecurrenceRule.item_type == item_type,
                RecurrenceRule.item_id == item_id,
            )
        )
        self.session.flush()

    def occurrences_for_item(
        self, item_type: ItemType, item_id: int, start: datetime, end: datetime
    ) -> list[Occurrence]:
        item = _recurring_item(self.session, self.user_id, item_type, item_id)
        if isinstance(item, Event):
            base_start, base_end, base_due, duration = item.start_at, item.end_at, None, None
        else:
            base_start = item.start_at or item.due_at
            base_end, base_due, duration = None, item.due_at, item.duration_minutes

        rule = self.get_rule(item_type, item_id)
        if rule is None:
            if end <= start:
                raise ValueError("Recurrence window end must be after its start")
            if to_naive_utc(start) <= base_start < to_naive_utc(end):
                return [Occurrence(0, base_start, base_end, base_due)]
            return []
        return list(
            expand_occurrences(
                rule.rrule,
                start,
                end,
                base_start_at=base_start,
                base_end_at=base_end,
                base_due_at=base_due,
                duration_minutes=duration,
            )
        )


class PushTokenService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def register(self, data: PushTokenIn) -> PushToken:
        token = self.session.scalar(select(PushToken).where(PushToken.token == data.token))
        if token:
            token.user_id = self.user_id
            token.device_name = data.device_name or token.device_name
        else:
            token = PushToken(
                user_id=self.user_id, token=data.token, device_name=data.device_name
            )
            self.session.add(token)
        self.session.commit()
        self.session.refresh(token)
        return token

    def unregister(self, token_value: str) -> None:
        self.session.execute(
            delete(PushToken).where(
                PushToken.user_id == self.user_id, PushToken.token == token_value
            )
        )
        self.session.commit()


class NotificationService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def schedule(self, data: NotificationJobIn) -> NotificationJob:
        _owned_item(self.session, self.user_id, data.item_type, data.item_id)
        job = NotificationJob(
            item_type=data.item_type,
            item_id=data.item_id,
            scheduled_at=to_naive_utc(data.scheduled_at),
        )
        self.session.add(job)
        self.session.commit()
        self.session.refresh(job)
        return job

    def cancel_for_item(self, item_type: ItemType, item_id: int) -> int:
        _owned_item(self.session, self.user_id, item_type, item_id)
        result = self.session.execute(
            update(NotificationJob)
            .where(
                NotificationJob.item_type == item_type,
                NotificationJob.item_id == item_id,
                NotificationJob.status == NotificationStatus.pending,
            )
            .values(status=NotificationStatus.cancelled)
        )
        self.session.commit()
        return result.rowcount or 0


@dataclass(frozen=True)
class PendingBill:
    reminder: BillReminder
    next_due_at: datetime
    days_until: int


class BillReminderService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def get(self, reminder_id: int) -> BillReminder:
        reminder = self.session.get(BillReminder, reminder_id)
        if not reminder or reminder.user_id != self.user_id:
            raise ValueError("Bill reminder not found")
        return reminder

    def list_all(self, status: Optional[BillReminderStatus] = None) -> list[BillReminder]:
        stmt = (
            select(BillReminder)
            .where(BillReminder.user_id == self.user_id)
            .order_by(BillReminder.name, BillReminder.id)
        )
        if status:
            stmt = stmt.where(BillReminder.status == status)
        return self.session.scalars(stmt).all()

    def list_active(self) -> list[BillReminder]:
        return self.list_all(BillReminderStatus.active)

    def _apply(self, reminder: BillReminder, data: BillReminderIn) -> None:
        if data.category_id is not None:
            CategoryService(self.session, self.user_id).get(data.category_id)
        reminder.name = data.name.strip()
        reminder.category_id = data.category_id
        reminder.amount_cents = data.amount_cents
        reminder.due_day = data.due_day
        reminder.due_time = data.due_time
        reminder.status = data.status
        reminder.recurrence_type = data.recurrence_type
        reminder.start_month = data.start_month
        reminder.end_month = data.end_month
        reminder.notify_2_days_before = data.notify_2_days_before
        reminder.notify_1_day_before = data.notify_1_day_before
        reminder.notify_on_due_day = data.notify_on_due_day

    def create(self, data: BillReminderIn) -> BillReminder:
        reminder = BillReminder(user_id=self.user_id)
        self._apply(reminder, data)
        self.session.add(reminder)
        self.session.commit()
        self.session.refresh(reminder)
        return reminder

    def update(self, reminder_id: int, data: BillReminderIn) -> BillReminder:
        reminder = self.get(reminder_id)
        self._apply(reminder, data)
        # Jobs queued for the old schedule no longer apply.
        self._cancel_jobs(reminder.id)
        self.session.commit()
        return reminder

    def _cancel_jobs(self, reminder_id: int) -> int:
        result = self.session.execute(
            update(NotificationJob)
            .where(
                NotificationJob.item_type == ItemType.bill_reminder,
                NotificationJob.item_id == reminder_id,
                NotificationJob.status == NotificationStatus.pending,
            )
            .values(status=NotificationStatus.cancelled)
        )
        return result.rowcount or 0

    def delete(self, reminder_id: int) -> None:
        reminder = self.get(reminder_id)
        self._cancel_jobs(reminder.id)
        self.session.delete(reminder)
        self.session.commit()

    def acknowledge(self, reminder_id: int, today: Optional[date] = None) -> BillReminder:
        """Mark this month's bill as handled so it stops showing as pending."""
        reminder = self.get(reminder_id)
        reminder.last_acknowledged_month = year_month_of(today or local_today())
        self.session.commit()
        return reminder

    def pending(
        self, now: Optional[datetime] = None, days: int = BILL_REMINDER_PENDING_DAYS
    ) -> list[PendingBill]:
        now = to_naive_utc(now) if now else utcnow()
        current_month = year_month_of(to_local_date(now))
        reminders = self.session.scalars(
            select(BillReminder)
            .where(
                BillReminder.user_id == self.user_id,
                BillReminder.status == BillReminderStatus.active,
                or_(
                    BillReminder.last_acknowledged_month.is_(None),
                    BillReminder.last_acknowledged_month != current_month,
                ),
            )
            .order_by(BillReminder.id)
        ).all()

        pending: list[PendingBill] = []
        for reminder in reminders:
            due = next_due_at(reminder, now)
            if due is None:
                continue
            days_until = (due - now).days
            if 0 <= days_until <= days:
                pending.append(PendingBill(reminder, due, days_until))
        pending.sort(key=lambda p: (p.next_due_at, p.reminder.id))
        return pending

    def schedule(
        self, reminder_id: int, start: datetime, end: datetime
    ) -> list[datetime]:
        """Due moments of one reminder inside ``[start, end)``."""
        return due_dates_between(self.get(reminder_id), start, end)


def _bill_notification_times(reminder: BillReminder, due: datetime) -> list[datetime]:
    times = []
    if reminder.notify_2_days_before:
        times.append(due - timedelta(days=2))
    if reminder.notify_1_day_before:
        times.append(due - timedelta(days=1))
    if reminder.notify_on_due_day:
        times.append(due)
    return times


def schedule_bill_reminder_notifications(
    session: Session, now: Optional[datetime] = None
) -> dict[str, int]:
    """Queue push jobs for active reminders due within the next week, all users.

    A job identical to one already pending is counted as skipped.
    """
    now = to_naive_utc(now) if now else utcnow()
    horizon = now + BILL_REMINDER_LOOKAHEAD
    reminders = session.scalars(
        select(BillReminder)
        .where(BillReminder.status == BillReminderStatus.active)
        .order_by(BillReminder.id)
    ).all()

    scheduled = 0
    skipped = 0
    for reminder in reminders:
        try:
            due = next_due_at(reminder, now)
        except ValueError:
            logger.exception(f"bill_reminder_schedule_failed: reminder_id={reminder.id}")
            continue
        if due is None or due > horizon:
            continue
        for scheduled_at in _bill_notification_times(reminder, due):
            if scheduled_at <= now:
                continue
            existing = session.scalar(
                select(NotificationJob.id).where(
                    NotificationJob.item_type == ItemType.bill_reminder,
                    NotificationJob.item_id == reminder.id,
                    NotificationJob.scheduled_at == scheduled_at,
                    NotificationJob.status == NotificationStatus.pending,
                )
            )
            if existing:
                skipped += 1
                continue
            session.add(
                NotificationJob(
                    item_type=ItemType.bill_reminder,
                    item_id=reminder.id,
                    scheduled_at=scheduled_at,
                )
            )
            scheduled += 1
        session.flush()

    logger.info(
        f"bill_reminders_scheduled: scheduled={scheduled} skipped={skipped} "
        f"reminders={len(reminders)}"
    )
    return {"scheduled": scheduled, "skipped": skipped}


def update_past_item_statuses(
    session: Session, now: Optional[datetime] = None
) -> dict[str, int]:
    """Complete finished events and flag late tasks across all users."""
    now = to_naive_utc(now) if now else utcnow()
    events = session.execute(
        update(Event)
        .where(Event.status == EventStatus.scheduled, Event.end_at < now)
        .values(status=EventStatus.completed, updated_at=now)
    )
    tasks = session.execute(
        update(Task)
        .where(
            Task.status.in_([TaskStatus.pending, TaskStatus.in_progress]),
            Task.due_at < now,
        )
        .values(status=TaskStatus.overdue, updated_at=now)
    )
    session.flush()
    result = {
        "events_completed": events.rowcount or 0,
        "tasks_marked_overdue": tasks.rowcount or 0,
    }
    logger.info(
        f"status_updates: events_completed={result['events_completed']} "
        f"tasks_marked_overdue={result['tasks_marked_overdue']}"
    )
    return result


def reset_all_transactions(
    user_id: Optional[int] = None, factory: Optional[SessionFactory] = None
) -> dict[str, object]:
    user_id = user_id or get_current_user_id()
    try:
        with session_scope(factory) as session:
            counts = {}
            # Transfers reference faturas and entries reference expenses.
            for key, model in (
                ("deleted_transfers", Transfer),
                ("deleted_income", Income),
                ("deleted_entries", Entry),
                ("deleted_faturas", Fatura),
                ("deleted_transactions", Expense),
            ):
                result = session.execute(delete(model).where(model.user_id == user_id))
                counts[key] = result.rowcount or 0
            reconciled = AccountService(session, user_id).reconcile_all()
    except SQLAlchemyError:
        logger.exception(f"reset_transactions_failed: user_id={user_id}")
        return {"success": False, "error": "Failed to reset transactions"}
    logger.info(f"reset_transactions: user_id={user_id} accounts_reconciled={reconciled}")
    return {"success": True, **counts, "accounts_reconciled": reconciled}


def _format_cents(amount_cents: int) -> str:
    units, cents = divmod(amount_cents, 100)
    return f"{units:,}.{cents:02d}"


def _notification_payload(item: Event | Task | BillReminder) -> PushPayload:
    if isinstance(item, BillReminder):
        body = (
            f"Amount due: {_format_cents(item.amount_cents)}"
            if item.amount_cents
            else "A bill is due soon"
        )
        return PushPayload(
            title=f"Bill Reminder: {item.name}",
            body=body,
            url="/reminders",
            tag=f"bill-reminder-{item.id}",
            type="bill_reminder",
        )
    if isinstance(item, Event):
        return PushPayload(
            title=f"Event Reminder: {item.title}",
            body=f"Starts at {item.start_at:%Y-%m-%d %H:%M} UTC",
            url="/calendar",
            tag=f"event-{item.id}",
            type="event_reminder",
        )
    return PushPayload(
        title=f"Task Reminder: {item.title}",
        body=f"Due at {item.due_at:%Y-%m-%d %H:%M} UTC",
        url="/tasks",
        tag=f"task-{item.id}",
        type="task_reminder",
    )


def _notification_target(
    session: Session, job: NotificationJob
) -> Optional[Event | Task | BillReminder]:
    if job.item_type == ItemType.bill_reminder:
        reminder = session.get(BillReminder, job.item_id)
        if reminder and reminder.status == BillReminderStatus.active:
            return reminder
        return None
    if job.item_type == ItemType.event:
        event = session.get(Event, job.item_id)
        if event and event.status == EventStatus.scheduled:
            return event
        return None
    task = session.get(Task, job.item_id)
    if task and task.status in (
        TaskStatus.pending,
        TaskStatus.in_progress,
        TaskStatus.overdue,
    ):
        return task
    return None


def process_pending_notification_jobs(
    session: Session, sender: PushSender, now: Optional[datetime] = None
) -> dict[str, int]:
    now = to_naive_utc(now) if now else utcnow()
    jobs = session.scalars(
        select(NotificationJob)
        .where(
            NotificationJob.status == NotificationStatus.pending,
            NotificationJob.scheduled_at <= now,
        )
        .order_by(NotificationJob.scheduled_at, NotificationJob.id)
        .limit(NOTIFICATION_BATCH_SIZE)
    ).all()

    processed = 0
    failed = 0
    for job in jobs:
        item = _notification_target(session, job)
        if item is None:
            logger.warning(
                f"notification_cancelled: job_id={job.id} item_type={job.item_type.value} "
                f"item_id={job.item_id}"
            )
            job.status = NotificationStatus.cancelled
            job.last_error = "Item no longer valid"
            continue

        result = sender.send_to_user(item.user_id, _notification_payload(item))
        if result["sent"] > 0:
            job.status = NotificationStatus.sent
            job.sent_at = now
            processed += 1
            continue

        failed += 1
        job.attempts += 1
        job.last_error = (
            "Push delivery failed" if result["failed"] else "No registered devices"
        )
        if job.attempts >= NOTIFICATION_MAX_ATTEMPTS:
            job.status = NotificationStatus.failed
        logger.warning(
            f"notification_failed: job_id={job.id} attempts={job.attempts} "
            f"error={job.last_error}"
        )

    session.flush()
    return {"processed": processed, "failed": failed}
