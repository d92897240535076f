from datetime import date, datetime

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base
from models import Account, AccountType, CategoryType, TransferType
from schemas import AccountIn, CategoryIn, ExpenseIn, IncomeIn, TransferIn
from services import (
    AccountService,
    CategoryService,
    ExpenseService,
    IncomeService,
    TransferService,
    compute_balance,
    reconcile_account_balances_for_user,
    reconcile_all_account_balances,
)


def make_factory():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def make_session():
    return make_factory()()


def _setup(session):
    accounts = AccountService(session)
    checking = accounts.create(AccountIn(name="Checking", type=AccountType.checking))
    savings = accounts.create(AccountIn(name="Savings", type=AccountType.savings))
    categories = CategoryService(session)
    food = categories.create(CategoryIn(name="Food"))
    salary = categories.create(CategoryIn(name="Salary", type=CategoryType.income))
    return checking, savings, food, salary


def test_compute_balance_formula() -> None:
    assert compute_balance(10_000, 2_500, 4_000, 1_000) == 7_500


def test_pending_income_does_not_count_until_received() -> None:
    session = make_session()
    checking, _, _, salary = _setup(session)
    income = IncomeService(session)

    salary_row = income.create(
        IncomeIn(
            description="Salary",
            amount_cents=500_000,
            category_id=salary.id,
            account_id=checking.id,
            received_date=date(2025, 3, 5),
        )
    )
    accounts = AccountService(session)
    assert accounts.calculate_balance(checking.id) == 0
    assert accounts.get(checking.id).current_balance_cents == 0

    income.mark_received(salary_row.id, now=datetime(2025, 3, 5, 12, 0))
    assert accounts.get(checking.id).current_balance_cents == 500_000

    income.mark_pending(salary_row.id)
    assert accounts.get(checking.id).current_balance_cents == 0


def test_balance_combines_income_expenses_and_transfers() -> None:
    session = make_session()
    checking, savings, food, salary = _setup(session)

    IncomeService(session).create(
        IncomeIn(
            description="Salary",
            amount_cents=300_000,
            category_id=salary.id,
            account_id=checking.id,
            received_date=date(2025, 3, 5),
            received_at=datetime(2025, 3, 5, 9, 0),
        )
    )
    expenses = ExpenseService(session)
    groceries = expenses.create(
        ExpenseIn(
            total_amount_cents=12_000,
            category_id=food.id,
            account_id=checking.id,
            purchase_date=date(2025, 3, 6),
        )
    )
    # Unpaid expenses do not move the balance.
    assert AccountService(session).get(checking.id).current_balance_cents == 300_000

    expenses.mark_entry_paid(groceries.entries[0].id, now=datetime(2025, 3, 6, 18, 0))
    TransferService(session).create(
        TransferIn(
            type=TransferType.internal_transfer,
            amount_cents=50_000,
            date=date(2025, 3, 7),
            from_account_id=checking.id,
            to_account_id=savings.id,
        )
    )

    accounts = AccountService(session)
    assert accounts.get(checking.id).current_balance_cents == 300_000 - 12_000 - 50_000
    assert accounts.get(savings.id).current_balance_cents == 50_000


def test_ignored_rows_are_excluded() -> None:
    session = make_session()
    checking, savings, food, _ = _setup(session)
    expenses = ExpenseService(session)
    expense = expenses.create(
        ExpenseIn(
            total_amount_cents=7_000,
            category_id=food.id,
            account_id=checking.id,
            purchase_date=date(2025, 4, 1),
        )
    )
    expenses.mark_entry_paid(expense.entries[0].id)
    assert AccountService(session).get(checking.id).current_balance_cents == -7_000

    assert expenses.toggle_ignore(expense.id) is True
    assert AccountService(session).get(checking.id).current_balance_cents == 0


def test_reconcile_repairs_drifted_cache() -> None:
    factory = make_factory()
    session = factory()
    checking, savings, _, salary = _setup(session)
    IncomeService(session).create(
        IncomeIn(
            description="Bonus",
            amount_cents=80_000,
            category_id=salary.id,
            account_id=checking.id,
            received_date=date(2025, 5, 1),
            received_at=datetime(2025, 5, 1, 10, 0),
        )
    )
    drifted = session.get(Account, checking.id)
    drifted.current_balance_cents = 1
    other = session.get(Account, savings.id)
    other.current_balance_cents = 99
    session.commit()
    session.close()

    result = reconcile_account_balances_for_user(1, factory)
    assert result == {"success": True, "updated": 2}

    check = factory()
    assert check.get(Account, checking.id).current_balance_cents == 80_000
    assert check.get(Account, savings.id).current_balance_cents == 0
    check.close()

    # Nothing left to fix on a second pass.
    assert reconcile_account_balances_for_user(1, factory)["updated"] == 0


def test_reconcile_all_counts_users() -> None:
    factory = make_factory()
    session = factory()
    for user_id in (1, 2):
        session.add(
            Account(
                user_id=user_id,
                name=f"Wallet {user_id}",
                type=AccountType.cash,
                current_balance_cents=500,
            )
        )
    session.commit()
    session.close()

    result = reconcile_all_account_balances(factory)
    assert result == {"users": 2, "accounts": 2, "failed": 0}


def test_reconcile_failure_rolls_back_only_that_user(monkeypatch) -> None:
    factory = make_factory()
    session = factory()
    for user_id in (1, 2):
        session.add(
            Account(
                user_id=user_id,
                name=f"Wallet {user_id}",
                type=AccountType.cash,
                current_balance_cents=500,
            )
        )
    session.commit()
    session.close()

    reconcile = AccountService.reconcile_all

    def failing_for_second_user(self):
        updated = reconcile(self)
        if self.user_id == 2:
            raise SQLAlchemyError("disk I/O error")
        return updated

    monkeypatch.setattr(AccountService, "reconcile_all", failing_for_second_user)

    result = reconcile_account_balances_for_user(2, factory)
    assert result["success"] is False
    assert "disk I/O error" in result["error"]

    assert reconcile_all_account_balances(factory) == {
        "users": 1,
        "accounts": 1,
        "failed": 1,
    }
    check = factory()
    balances = dict(
        check.execute(select(Account.user_id, Account.current_balance_cents)).all()
    )
    assert balances == {1: 0, 2: 500}
    failed = check.scalar(select(Account).where(Account.user_id == 2))
    assert failed.last_balance_update is None


def test_account_with_transactions_cannot_be_deleted() -> None:
    session = make_session()
    checking, _, food, _ = _setup(session)
    ExpenseService(session).create(
        ExpenseIn(
            total_amount_cents=1_000,
            category_id=food.id,
            account_id=checking.id,
            purchase_date=date(2025, 1, 2),
        )
    )
    with pytest.raises(ValueError, match="Account has transactions"):
        AccountService(session).delete(checking.id)
