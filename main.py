import hmac
import logging
from dataclasses import asdict
from datetime import datetime
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from config import get_settings
from csrf import CSRF_HEADER, generate_csrf_token, validate_csrf_token
from database import SessionFactory, SessionLocal, dispose_engine
from models import (
    Account,
    BillReminder,
    BillReminderStatus,
    Category,
    Entry,
    Event,
    Expense,
    Fatura,
    Income,
    ItemType,
    Task,
    TaskStatus,
    Transfer,
    TransferType,
)
from periods import local_today, resolve_month
from push import PushClient, PushSender
from recurrence import Occurrence
from scheduler import SchedulerManager, run_cron_jobs, selected_jobs
from schemas import (
    AccountIn,
    BillReminderIn,
    BudgetIn,
    CategoryIn,
    ConvertToFaturaIn,
    CopyBudgetsIn,
    EventIn,
    ExpenseIn,
    IncomeFiltersIn,
    IncomeIn,
    MonthlyBudgetIn,
    NotificationJobIn,
    PayFaturaIn,
    PushTokenIn,
    RecurrenceRuleIn,
    RefundIn,
    TaskIn,
    TransferIn,
)
from services import (
    AccountService,
    BillReminderService,
    BudgetAlertService,
    BudgetService,
    CategoryService,
    EventService,
    ExpenseFilters,
    ExpenseService,
    FaturaService,
    IncomeService,
    NotificationService,
    PendingBill,
    PushTokenService,
    RecurrenceService,
    RefundService,
    TaskService,
    TransferService,
    get_current_user_id,
    reconcile_account_balances_for_user,
    reset_all_transactions,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Ledger")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory() -> SessionFactory:
    return SessionLocal


def get_push_client() -> Optional[PushClient]:
    return None


def csrf_protect(
    x_csrf_token: Optional[str] = Header(default=None, alias=CSRF_HEADER),
) -> None:
    if not validate_csrf_token(x_csrf_token, get_current_user_id()):
        raise HTTPException(status_code=400, detail="Invalid CSRF token")


def _http_error(exc: ValueError) -> HTTPException:
    message = str(exc)
    status = 404 if message.lower().endswith("not found") else 400
    return HTTPException(status_code=status, detail=message)


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    if get_settings().scheduler_enabled:
        scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()
    dispose_engine()


def account_out(account: Account) -> dict:
    return {
        "id": account.id,
        "name": account.name,
        "type": account.type,
        "currency": account.currency,
        "current_balance_cents": account.current_balance_cents,
        "last_balance_update": account.last_balance_update,
        "closing_day": account.closing_day,
        "payment_due_day": account.payment_due_day,
        "credit_limit_cents": account.credit_limit_cents,
    }


def category_out(category: Category) -> dict:
    return {
        "id": category.id,
        "name": category.name,
        "type": category.type,
        "color": category.color,
        "icon": category.icon,
    }


def entry_out(entry: Entry) -> dict:
    expense: Expense = entry.expense
    return {
        "id": entry.id,
        "expense_id": entry.expense_id,
        "description": expense.description,
        "category_id": expense.category_id,
        "account_id": entry.account_id,
        "amount_cents": entry.amount_cents,
        "purchase_date": entry.purchase_date,
        "fatura_month": entry.fatura_month,
        "due_date": entry.due_date,
        "paid_at": entry.paid_at,
        "status": entry.status,
        "installment_number": entry.installment_number,
        "total_installments": expense.total_installments,
        "ignored": expense.ignored,
    }


def expense_out(expense: Expense) -> dict:
    return {
        "id": expense.id,
        "description": expense.description,
        "total_amount_cents": expense.total_amount_cents,
        "total_installments": expense.total_installments,
        "category_id": expense.category_id,
        "ignored": expense.ignored,
        "refunded_amount_cents": expense.refunded_amount_cents,
        "entries": [entry_out(entry) for entry in expense.entries],
    }


def income_out(income: Income) -> dict:
    return {
        "id": income.id,
        "description": income.description,
        "amount_cents": income.amount_cents,
        "category_id": income.category_id,
        "account_id": income.account_id,
        "received_date": income.received_date,
        "received_at": income.received_at,
        "status": income.status,
        "ignored": income.ignored,
        "refund_of_expense_id": income.refund_of_expense_id,
        "replenish_category_id": income.replenish_category_id,
        "fatura_month": income.fatura_month,
    }


def transfer_out(transfer: Transfer) -> dict:
    return {
        "id": transfer.id,
        "type": transfer.type,
        "from_account_id": transfer.from_account_id,
        "to_account_id": transfer.to_account_id,
        "amount_cents": transfer.amount_cents,
        "date": transfer.date,
        "fatura_id": transfer.fatura_id,
        "description": transfer.description,
        "ignored": transfer.ignored,
    }


def fatura_out(fatura: Fatura) -> dict:
    return {
        "id": fatura.id,
        "account_id": fatura.account_id,
        "year_month": fatura.year_month,
        "closing_date": fatura.closing_date,
        "due_date": fatura.due_date,
        "total_amount_cents": fatura.total_amount_cents,
        "paid_at": fatura.paid_at,
        "paid_from_account_id": fatura.paid_from_account_id,
        "status": fatura.status_on(local_today()),
    }


def event_out(event: Event) -> dict:
    return {
        "id": event.id,
        "title": event.title,
        "description": event.description,
        "start_at": event.start_at,
        "end_at": event.end_at,
        "is_all_day": event.is_all_day,
        "status": event.status,
    }


def task_out(task: Task) -> dict:
    return {
        "id": task.id,
        "title": task.title,
        "description": task.description,
        "due_at": task.due_at,
        "start_at": task.start_at,
        "duration_minutes": task.duration_minutes,
        "status": task.status,
        "completed_at": task.completed_at,
    }


def occurrence_out(occurrence: Occurrence) -> dict:
    return asdict(occurrence)


def bill_reminder_out(reminder: BillReminder) -> dict:
    return {
        "id": reminder.id,
        "name": reminder.name,
        "category_id": reminder.category_id,
        "amount_cents": reminder.amount_cents,
        "due_day": reminder.due_day,
        "due_time": reminder.due_time,
        "status": reminder.status,
        "recurrence_type": reminder.recurrence_type,
        "start_month": reminder.start_month,
        "end_month": reminder.end_month,
        "notify_2_days_before": reminder.notify_2_days_before,
        "notify_1_day_before": reminder.notify_1_day_before,
        "notify_on_due_day": reminder.notify_on_due_day,
        "last_acknowledged_month": reminder.last_acknowledged_month,
    }


def pending_bill_out(pending: PendingBill) -> dict:
    return {
        **bill_reminder_out(pending.reminder),
        "next_due_at": pending.next_due_at,
        "days_until": pending.days_until,
    }


@app.get("/api/csrf-token")
def csrf_token():
    return {"csrf_token": generate_csrf_token(get_current_user_id())}


@app.get("/api/accounts")
def list_accounts(db: Session = Depends(get_db)):
    return [account_out(a) for a in AccountService(db).list_all()]


@app.post("/api/accounts", status_code=201, dependencies=[Depends(csrf_protect)])
def create_account(data: AccountIn, db: Session = Depends(get_db)):
    return account_out(AccountService(db).create(data))


@app.put("/api/accounts/{account_id}", dependencies=[Depends(csrf_protect)])
def update_account(account_id: int, data: AccountIn, db: Session = Depends(get_db)):
    try:
        return account_out(AccountService(db).update(account_id, data))
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.delete(
    "/api/accounts/{account_id}", status_code=204, dependencies=[Depends(csrf_protect)]
)
def delete_account(account_id: int, db: Session = Depends(get_db)):
    try:
        AccountService(db).delete(account_id)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.get("/api/accounts/{account_id}/balance")
def account_balance(account_id: int, db: Session = Depends(get_db)):
    service = AccountService(db)
    try:
        account = service.get(account_id)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return {
        "account_id": account.id,
        "cached_balance_cents": account.current_balance_cents,
        "calculated_balance_cents": service.calculate_balance(account.id),
    }


@app.post("/api/accounts/reconcile", dependencies=[Depends(csrf_protect)])
def reconcile_accounts(factory: SessionFactory = Depends(get_session_factory)):
    result = reconcile_account_balances_for_user(get_current_user_id(), factory)
    if not result["success"]:
        return JSONResponse(status_code=500, content=result)
    return result


@app.get("/api/categories")
def list_categories(db: Session = Depends(get_db)):
    return [category_out(c) for c in CategoryService(db).list_all()]


@app.post("/api/categories", status_code=201, dependencies=[Depends(csrf_protect)])
def create_category(data: CategoryIn, db: Session = Depends(get_db)):
    try:
        return category_out(CategoryService(db).create(data))
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.delete(
    "/api/categories/{category_id}",
    status_code=204,
    dependencies=[Depends(csrf_protect)],
)
def delete_category(category_id: int, db: Session = Depends(get_db)):
    try:
        CategoryService(db).delete(category_id)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.get("/api/expenses")
def list_expenses(
    month: Optional[str] = None,
    category_id: Optional[int] = None,
    account_id: Optional[int] = None,
    status: str = Query(default="all", pattern="^(all|paid|pending)$"),
    db: Session = Depends(get_db),
):
    filters = ExpenseFilters(
        year_month=month, category_id=category_id, account_id=account_id, status=status
    )
    try:
        return [entry_out(e) for e in ExpenseService(db).list(filters)]
    except ValueError as exc:
        raise _http_error(exc) from exc


def _check_budget_alert(
    db: Session, client: Optional[PushClient], category_id: int
) -> None:
    try:
        BudgetAlertService(db, PushSender(db, client)).check(category_id)
    except ValueError:
        logger.exception(f"budget_alert_skipped: category_id={category_id}")


@app.post("/api/expenses", status_code=201, dependencies=[Depends(csrf_protect)])
def create_expense(
    data: ExpenseIn,
    db: Session = Depends(get_db),
    client: Optional[PushClient] = Depends(get_push_client),
):
    try:
        expense = ExpenseService(db).create(data)
    except ValueError as exc:
        raise _http_error(exc) from exc
    _check_budget_alert(db, client, expense.category_id)
    return expense_out(expense)


@app.put("/api/expenses/{expense_id}", dependencies=[Depends(csrf_protect)])
def update_expense(
    expense_id: int,
    data: ExpenseIn,
    db: Session = Depends(get_db),
    client: Optional[PushClient] = Depends(get_push_client),
):
    try:
        expense = ExpenseService(db).update(expense_id, data)
    except ValueError as exc:
        raise _http_error(exc) from exc
    _check_budget_alert(db, client, expense.category_id)
    return expense_out(expense)


@app.get("/api/expenses/{expense_id}/refunds")
def list_refunds(expense_id: int, db: Session = Depends(get_db)):
    try:
        return [income_out(i) for i in RefundService(db).list_for_expense(expense_id)]
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.post("/api/refunds", status_code=201, dependencies=[Depends(csrf_protect)])
def create_refund(data: RefundIn, db: Session = Depends(get_db)):
    try:
        return income_out(RefundService(db).create(data))
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.delete(
    "/api/refunds/{income_id}", status_code=204, dependencies=[Depends(csrf_protect)]
)
def delete_refund(income_id: int, db: Session = Depends(get_db)):
    try:
        RefundService(db).delete(income_id)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.delete(
    "/api/expenses/{expense_id}", status_code=204, dependencies=[Depends(csrf_protect)]
)
def delete_expense(expense_id: int, db: Session = Depends(get_db)):
    try:
        ExpenseService(db).delete(expense_id)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.post(
    "/api/expenses/{expense_id}/toggle-ignore", dependencies=[Depends(csrf_protect)]
)
def toggle_ignore_expense(expense_id: int, db: Session = Depends(get_db)):
    try:
        return {"ignored": ExpenseService(db).toggle_ignore(expense_id)}
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.post("/api/entries/{entry_id}/paid", dependencies=[Depends(csrf_protect)])
def mark_entry_paid(entry_id: int, db: Session = Depends(get_db)):
    try:
        return entry_out(ExpenseService(db).mark_entry_paid(entry_id))
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.post("/api/entries/{entry_id}/pending", dependencies=[Depends(csrf_protect)])
def mark_entry_pending(entry_id: int, db: Session = Depends(get_db)):
    try:
        return entry_out(ExpenseService(db).mark_entry_pending(entry_id))
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.get("/api/income")
def list_income(filters: IncomeFiltersIn = Depends(), db: Session = Depends(get_db)):
    return [income_out(i) for i in IncomeService(db).list(filters)]


@app.post("/api/income", status_code=201, dependencies=[Depends(csrf_protect)])
def create_income(data: IncomeIn, db: Session = Depends(get_db)):
    try:
        return income_out(IncomeService(db).create(data))
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.put("/api/income/{income_id}", dependencies=[Depends(csrf_protect)])
def update_income(income_id: int, data: IncomeIn, db: Session = Depends(get_db)):
    try:
        return income_out(IncomeService(db).update(income_id, data))
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.delete(
    "/api/income/{income_id}", status_code=204, dependencies=[Depends(csrf_protect)]
)
def delete_income(income_id: int, db: Session = Depends(get_db)):
    try:
        IncomeService(db).delete(income_id)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.post("/api/income/{income_id}/received", dependencies=[Depends(csrf_protect)])
def mark_income_received(income_id: int, db: Session = Depends(get_db)):
    try:
        return income_out(IncomeService(db).mark_received(income_id))
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.post("/api/income/{income_id}/pending", dependencies=[Depends(csrf_protect)])
def mark_income_pending(income_id: int, db: Session = Depends(get_db)):
    try:
        return income_out(IncomeService(db).mark_pending(income_id))
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.get("/api/transfers")
def list_transfers(
    account_id: Optional[int] = None,
    month: Optional[str] = None,
    type: Optional[TransferType] = None,
    db: Session = Depends(get_db),
):
    try:
        transfers = TransferService(db).list(account_id, month, type)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return [transfer_out(t) for t in transfers]


@app.post("/api/transfers", status_code=201, dependencies=[Depends(csrf_protect)])
def create_transfer(data: TransferIn, db: Session = Depends(get_db)):
    try:
        return transfer_out(TransferService(db).create(data))
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.put("/api/transfers/{transfer_id}", dependencies=[Depends(csrf_protect)])
def update_transfer(transfer_id: int, data: TransferIn, db: Session = Depends(get_db)):
    try:
        return transfer_out(TransferService(db).update(transfer_id, data))
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.delete(
    "/api/transfers/{transfer_id}", status_code=204, dependencies=[Depends(csrf_protect)]
)
def delete_transfer(transfer_id: int, db: Session = Depends(get_db)):
    try:
        TransferService(db).delete(transfer_id)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.post("/api/transfers/backfill", dependencies=[Depends(csrf_protect)])
def backfill_transfers(db: Session = Depends(get_db)):
    return TransferService(db).backfill_payment_transfers()


@app.get("/api/faturas")
def list_faturas(
    month: Optional[str] = None,
    account_id: Optional[int] = None,
    unpaid: bool = False,
    db: Session = Depends(get_db),
):
    service = FaturaService(db)
    try:
        if unpaid:
            faturas = service.list_unpaid()
        elif account_id:
            faturas = service.list_by_account(account_id)
        else:
            faturas = service.list_by_month(resolve_month(month))
    except ValueError as exc:
        raise _http_error(exc) from exc
    return [fatura_out(f) for f in faturas]


@app.get("/api/faturas/{fatura_id}")
def get_fatura(fatura_id: int, db: Session = Depends(get_db)):
    try:
        fatura, entries = FaturaService(db).get_with_entries(fatura_id)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return {**fatura_out(fatura), "entries": [entry_out(e) for e in entries]}


@app.post("/api/faturas/{fatura_id}/pay", dependencies=[Depends(csrf_protect)])
def pay_fatura(fatura_id: int, data: PayFaturaIn, db: Session = Depends(get_db)):
    try:
        fatura = FaturaService(db).pay(
            fatura_id, data.from_account_id, create_transfer=data.create_transfer
        )
    except ValueError as exc:
        raise _http_error(exc) from exc
    return fatura_out(fatura)


@app.post("/api/faturas/{fatura_id}/unpay", dependencies=[Depends(csrf_protect)])
def unpay_fatura(fatura_id: int, db: Session = Depends(get_db)):
    try:
        return fatura_out(FaturaService(db).mark_unpaid(fatura_id))
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.post("/api/faturas/convert", dependencies=[Depends(csrf_protect)])
def convert_to_fatura_payment(data: ConvertToFaturaIn, db: Session = Depends(get_db)):
    try:
        fatura = FaturaService(db).convert_expense_to_payment(
            data.entry_id, data.fatura_id
        )
    except ValueError as exc:
        raise _http_error(exc) from exc
    return fatura_out(fatura)


@app.post("/api/faturas/backfill", dependencies=[Depends(csrf_protect)])
def backfill_faturas(db: Session = Depends(get_db)):
    return FaturaService(db).backfill()


@app.get("/api/budgets/{year_month}")
def budget_summary(year_month: str, db: Session = Depends(get_db)):
    try:
        summary = BudgetService(db).budgets_with_spending(year_month)
    except ValueError as exc:
        raise _http_error(exc) from exc
    data = asdict(summary)
    for row, progress in zip(data["budgets"], summary.budgets):
        row["remaining"] = progress.remaining
    return data


@app.put("/api/budgets", dependencies=[Depends(csrf_protect)])
def upsert_budget(data: BudgetIn, db: Session = Depends(get_db)):
    try:
        budget = BudgetService(db).upsert_budget(data)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return {
        "id": budget.id,
        "category_id": budget.category_id,
        "year_month": budget.year_month,
        "amount_cents": budget.amount_cents,
    }


@app.delete(
    "/api/budgets/{year_month}/{category_id}",
    status_code=204,
    dependencies=[Depends(csrf_protect)],
)
def delete_budget(year_month: str, category_id: int, db: Session = Depends(get_db)):
    try:
        BudgetService(db).delete_budget(category_id, year_month)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.put("/api/monthly-budget", dependencies=[Depends(csrf_protect)])
def upsert_monthly_budget(data: MonthlyBudgetIn, db: Session = Depends(get_db)):
    monthly = BudgetService(db).upsert_monthly_budget(data)
    return {"year_month": monthly.year_month, "amount_cents": monthly.amount_cents}


@app.post(
    "/api/budgets/{year_month}/alerts/{category_id}",
    dependencies=[Depends(csrf_protect)],
)
def check_budget_alert(
    year_month: str,
    category_id: int,
    db: Session = Depends(get_db),
    client: Optional[PushClient] = Depends(get_push_client),
):
    try:
        return BudgetAlertService(db, PushSender(db, client)).check(
            category_id, resolve_month(year_month)
        )
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.post("/api/budgets/copy", dependencies=[Depends(csrf_protect)])
def copy_budgets(data: CopyBudgetsIn, db: Session = Depends(get_db)):
    try:
        return BudgetService(db).copy_from_month(data.source_month, data.target_month)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.post("/api/events", status_code=201, dependencies=[Depends(csrf_protect)])
def create_event(data: EventIn, db: Session = Depends(get_db)):
    return event_out(EventService(db).create(data))


@app.post("/api/events/{event_id}/cancel", dependencies=[Depends(csrf_protect)])
def cancel_event(event_id: int, db: Session = Depends(get_db)):
    try:
        return event_out(EventService(db).cancel(event_id))
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.post("/api/tasks", status_code=201, dependencies=[Depends(csrf_protect)])
def create_task(data: TaskIn, db: Session = Depends(get_db)):
    return task_out(TaskService(db).create(data))


@app.post("/api/tasks/{task_id}/status", dependencies=[Depends(csrf_protect)])
def set_task_status(task_id: int, status: TaskStatus, db: Session = Depends(get_db)):
    try:
        return task_out(TaskService(db).set_status(task_id, status))
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.put("/api/recurrence", dependencies=[Depends(csrf_protect)])
def set_recurrence(data: RecurrenceRuleIn, db: Session = Depends(get_db)):
    try:
        rule = RecurrenceService(db).set_rule(data)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return {"item_type": rule.item_type, "item_id": rule.item_id, "rrule": rule.rrule}


@app.get("/api/recurrence/{item_type}/{item_id}/occurrences")
def list_occurrences(
    item_type: ItemType,
    item_id: int,
    start: datetime,
    end: datetime,
    db: Session = Depends(get_db),
):
    try:
        occurrences = RecurrenceService(db).occurrences_for_item(
            item_type, item_id, start, end
        )
    except ValueError as exc:
        raise _http_error(exc) from exc
    return [occurrence_out(o) for o in occurrences]


@app.get("/api/bill-reminders")
def list_bill_reminders(
    status: Optional[BillReminderStatus] = None, db: Session = Depends(get_db)
):
    return [bill_reminder_out(r) for r in BillReminderService(db).list_all(status)]


@app.get("/api/bill-reminders/pending")
def pending_bill_reminders(db: Session = Depends(get_db)):
    return [pending_bill_out(p) for p in BillReminderService(db).pending()]


@app.post(
    "/api/bill-reminders", status_code=201, dependencies=[Depends(csrf_protect)]
)
def create_bill_reminder(data: BillReminderIn, db: Session = Depends(get_db)):
    try:
        return bill_reminder_out(BillReminderService(db).create(data))
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.put("/api/bill-reminders/{reminder_id}", dependencies=[Depends(csrf_protect)])
def update_bill_reminder(
    reminder_id: int, data: BillReminderIn, db: Session = Depends(get_db)
):
    try:
        return bill_reminder_out(BillReminderService(db).update(reminder_id, data))
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.delete(
    "/api/bill-reminders/{reminder_id}",
    status_code=204,
    dependencies=[Depends(csrf_protect)],
)
def delete_bill_reminder(reminder_id: int, db: Session = Depends(get_db)):
    try:
        BillReminderService(db).delete(reminder_id)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.post(
    "/api/bill-reminders/{reminder_id}/acknowledge",
    dependencies=[Depends(csrf_protect)],
)
def acknowledge_bill_reminder(reminder_id: int, db: Session = Depends(get_db)):
    try:
        return bill_reminder_out(BillReminderService(db).acknowledge(reminder_id))
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.get("/api/bill-reminders/{reminder_id}/schedule")
def bill_reminder_schedule(
    reminder_id: int,
    start: datetime,
    end: datetime,
    db: Session = Depends(get_db),
):
    try:
        dues = BillReminderService(db).schedule(reminder_id, start, end)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return {"due_dates": dues}


@app.post("/api/push-tokens", status_code=201, dependencies=[Depends(csrf_protect)])
def register_push_token(data: PushTokenIn, db: Session = Depends(get_db)):
    token = PushTokenService(db).register(data)
    return {"id": token.id, "device_name": token.device_name}


@app.delete("/api/push-tokens", status_code=204, dependencies=[Depends(csrf_protect)])
def unregister_push_token(data: PushTokenIn, db: Session = Depends(get_db)):
    PushTokenService(db).unregister(data.token)


@app.post("/api/notifications", status_code=201, dependencies=[Depends(csrf_protect)])
def schedule_notification(data: NotificationJobIn, db: Session = Depends(get_db)):
    try:
        job = NotificationService(db).schedule(data)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return {"id": job.id, "scheduled_at": job.scheduled_at, "status": job.status}


@app.post("/api/reset-transactions", dependencies=[Depends(csrf_protect)])
def reset_transactions(factory: SessionFactory = Depends(get_session_factory)):
    result = reset_all_transactions(get_current_user_id(), factory)
    if not result["success"]:
        return JSONResponse(status_code=500, content=result)
    return result


def cron_authorized(authorization: Optional[str]) -> bool:
    secret = get_settings().cron_secret
    if not secret or not authorization:
        return False
    return hmac.compare_digest(authorization, f"Bearer {secret}")


def _cron_response(
    authorization: Optional[str],
    job: Optional[str],
    factory: SessionFactory,
    client: Optional[PushClient],
) -> tuple[Optional[JSONResponse], dict]:
    if not cron_authorized(authorization):
        logger.warning("cron_unauthorized")
        return JSONResponse(status_code=401, content={"error": "Unauthorized"}), {}
    try:
        selected_jobs(job)
    except ValueError as exc:
        return JSONResponse(status_code=400, content={"error": str(exc)}), {}
    try:
        results = run_cron_jobs(job, factory=factory, client=client)
    except Exception:
        logger.exception(f"cron_failed: job={job or 'all'}")
        return (
            JSONResponse(status_code=500, content={"error": "Internal server error"}),
            {},
        )
    return None, results


@app.get("/api/cron/daily")
def cron_daily(
    job: Optional[str] = None,
    authorization: Optional[str] = Header(default=None),
    factory: SessionFactory = Depends(get_session_factory),
    client: Optional[PushClient] = Depends(get_push_client),
):
    error, results = _cron_response(authorization, job, factory, client)
    if error:
        return error
    return {"success": True, **results}


@app.get("/api/cron/notifications")
def cron_notifications(
    authorization: Optional[str] = Header(default=None),
    factory: SessionFactory = Depends(get_session_factory),
    client: Optional[PushClient] = Depends(get_push_client),
):
    error, results = _cron_response(authorization, "notifications", factory, client)
    if error:
        return error
    outcome = results["notifications"]
    if "error" in outcome:
        return JSONResponse(status_code=500, content={"error": "Internal server error"})
    return {"success": True, **outcome}


@app.get("/api/cron/balance-reconciliation")
def cron_balance_reconciliation(
    authorization: Optional[str] = Header(default=None),
    factory: SessionFactory = Depends(get_session_factory),
):
    error, results = _cron_response(
        authorization, "balance-reconciliation", factory, None
    )
    if error:
        return error
    outcome = results["balance_reconciliation"]
    if "error" in outcome:
        return JSONResponse(status_code=500, content={"error": "Internal server error"})
    return {"success": True, **outcome}


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
