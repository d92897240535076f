from datetime import datetime

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import main
from config import get_settings
from csrf import CSRF_HEADER
from database import Base
from main import app, get_db, get_push_client, get_session_factory
from models import Event

CRON_SECRET = "test-cron-secret"


def make_factory():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class NullPushClient:
    def send(self, token, payload):
        return "projects/test/messages/1"


@pytest.fixture
def factory(monkeypatch):
    monkeypatch.setattr(get_settings(), "cron_secret", CRON_SECRET)
    session_factory = make_factory()

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_push_client] = lambda: NullPushClient()
    yield session_factory
    app.dependency_overrides.clear()


@pytest.fixture
def client(factory):
    return TestClient(app)


def _auth(secret: str = CRON_SECRET) -> dict:
    return {"Authorization": f"Bearer {secret}"}


def _csrf(client: TestClient) -> dict:
    token = client.get("/api/csrf-token").json()["csrf_token"]
    return {CSRF_HEADER: token}


def test_cron_requires_bearer_token(client) -> None:
    res = client.get("/api/cron/daily")
    assert res.status_code == 401
    assert res.json() == {"error": "Unauthorized"}

    res = client.get("/api/cron/daily", headers=_auth("wrong"))
    assert res.status_code == 401

    res = client.get("/api/cron/notifications", headers={"Authorization": CRON_SECRET})
    assert res.status_code == 401


def test_cron_rejects_everything_without_configured_secret(client, monkeypatch) -> None:
    monkeypatch.setattr(get_settings(), "cron_secret", "")
    res = client.get("/api/cron/daily", headers={"Authorization": "Bearer "})
    assert res.status_code == 401


def test_cron_daily_runs_all_jobs(client, factory) -> None:
    session = factory()
    session.add(
        Event(
            title="Finished",
            start_at=datetime(2020, 1, 1, 9, 0),
            end_at=datetime(2020, 1, 1, 10, 0),
        )
    )
    session.commit()
    session.close()

    res = client.get("/api/cron/daily", headers=_auth())

    assert res.status_code == 200
    body = res.json()
    assert body["success"] is True
    assert body["bill_reminders"] == {"scheduled": 0, "skipped": 0}
    assert body["notifications"] == {"processed": 0, "failed": 0}
    assert body["balance_reconciliation"] == {"users": 0, "accounts": 0, "failed": 0}
    assert body["status_updates"] == {"events_completed": 1, "tasks_marked_overdue": 0}


def test_cron_daily_job_filter(client) -> None:
    res = client.get("/api/cron/daily", params={"job": "status-updates"}, headers=_auth())
    assert res.status_code == 200
    body = res.json()
    assert body["notifications"] is None
    assert body["balance_reconciliation"] is None
    assert body["status_updates"] == {"events_completed": 0, "tasks_marked_overdue": 0}

    res = client.get("/api/cron/daily", params={"job": "digests"}, headers=_auth())
    assert res.status_code == 400


def test_cron_single_job_endpoints(client) -> None:
    res = client.get("/api/cron/notifications", headers=_auth())
    assert res.status_code == 200
    assert res.json() == {"success": True, "processed": 0, "failed": 0}

    res = client.get("/api/cron/balance-reconciliation", headers=_auth())
    assert res.status_code == 200
    assert res.json() == {"success": True, "users": 0, "accounts": 0, "failed": 0}


def test_cron_unexpected_failure_returns_500(client, monkeypatch) -> None:
    def boom(*args, **kwargs):
        raise RuntimeError("scheduler exploded")

    monkeypatch.setattr(main, "run_cron_jobs", boom)
    res = client.get("/api/cron/daily", headers=_auth())
    assert res.status_code == 500
    assert res.json() == {"error": "Internal server error"}


def test_mutations_require_csrf_token(client) -> None:
    payload = {"name": "Checking", "type": "checking"}
    res = client.post("/api/accounts", json=payload)
    assert res.status_code == 400

    res = client.post("/api/accounts", json=payload, headers=_csrf(client))
    assert res.status_code == 201
    assert res.json()["current_balance_cents"] == 0


def test_expense_and_budget_flow(client) -> None:
    headers = _csrf(client)
    account = client.post(
        "/api/accounts", json={"name": "Checking", "type": "checking"}, headers=headers
    ).json()
    category = client.post(
        "/api/categories", json={"name": "Groceries"}, headers=headers
    ).json()
    res = client.put(
        "/api/budgets",
        json={
            "category_id": category["id"],
            "year_month": "2025-06",
            "amount_cents": 50_000,
        },
        headers=headers,
    )
    assert res.status_code == 200

    res = client.post(
        "/api/expenses",
        json={
            "total_amount_cents": 30_000,
            "category_id": category["id"],
            "account_id": account["id"],
            "purchase_date": "2025-06-10",
        },
        headers=headers,
    )
    assert res.status_code == 201
    entry_id = res.json()["entries"][0]["id"]

    summary = client.get("/api/budgets/2025-06").json()
    assert summary["total_budget"] == 50_000
    assert summary["total_spent"] == 30_000
    assert summary["budgets"][0]["remaining"] == 20_000

    res = client.post(f"/api/entries/{entry_id}/paid", headers=headers)
    assert res.status_code == 200
    assert res.json()["status"] == "paid"
    balance = client.get(f"/api/accounts/{account['id']}/balance").json()
    assert balance["cached_balance_cents"] == -30_000
    assert balance["calculated_balance_cents"] == -30_000


def test_missing_fatura_returns_404(client) -> None:
    res = client.get("/api/faturas/999")
    assert res.status_code == 404
    assert res.json()["detail"] == "Fatura not found"


def test_cron_daily_bill_reminders_job(client) -> None:
    res = client.get("/api/cron/daily", params={"job": "bill-reminders"}, headers=_auth())
    assert res.status_code == 200
    body = res.json()
    assert body["bill_reminders"] == {"scheduled": 0, "skipped": 0}
    assert body["notifications"] is None


def test_expense_update_and_refund_flow(client) -> None:
    headers = _csrf(client)
    account = client.post(
        "/api/accounts", json={"name": "Checking", "type": "checking"}, headers=headers
    ).json()
    food = client.post("/api/categories", json={"name": "Food"}, headers=headers).json()
    client.post(
        "/api/categories", json={"name": "Refunds", "type": "income"}, headers=headers
    )
    expense = client.post(
        "/api/expenses",
        json={
            "total_amount_cents": 8_000,
            "category_id": food["id"],
            "account_id": account["id"],
            "purchase_date": "2025-06-10",
        },
        headers=headers,
    ).json()

    res = client.put(
        f"/api/expenses/{expense['id']}",
        json={
            "total_amount_cents": 10_000,
            "category_id": food["id"],
            "account_id": account["id"],
            "purchase_date": "2025-06-11",
        },
        headers=headers,
    )
    assert res.status_code == 200
    assert res.json()["total_amount_cents"] == 10_000

    refund = {
        "expense_id": expense["id"],
        "amount_cents": 4_000,
        "refund_date": "2025-06-20",
        "fatura_month": "2025-06",
    }
    res = client.post("/api/refunds", json=refund, headers=headers)
    assert res.status_code == 201
    created = res.json()
    assert created["refund_of_expense_id"] == expense["id"]
    assert created["replenish_category_id"] == food["id"]

    res = client.post(
        "/api/refunds", json={**refund, "amount_cents": 6_001}, headers=headers
    )
    assert res.status_code == 400

    res = client.delete(f"/api/income/{created['id']}", headers=headers)
    assert res.status_code == 400
    assert res.json()["detail"] == "Refunds are managed from the expense"

    refunds = client.get(f"/api/expenses/{expense['id']}/refunds").json()
    assert [r["id"] for r in refunds] == [created["id"]]

    summary = client.get("/api/budgets/2025-06").json()
    assert summary["total_spent"] == 6_000

    res = client.delete(f"/api/refunds/{created['id']}", headers=headers)
    assert res.status_code == 204
    assert client.get(f"/api/expenses/{expense['id']}/refunds").json() == []


def test_bill_reminder_endpoints(client) -> None:
    headers = _csrf(client)
    payload = {
        "name": "Rent",
        "amount_cents": 150_000,
        "due_day": 10,
        "due_time": "09:00",
        "start_month": "2025-01",
    }
    res = client.post("/api/bill-reminders", json=payload, headers=headers)
    assert res.status_code == 201
    reminder = res.json()
    assert reminder["recurrence_type"] == "monthly"
    assert reminder["status"] == "active"

    res = client.post(
        "/api/bill-reminders",
        json={**payload, "recurrence_type": "weekly", "due_day": 9},
        headers=headers,
    )
    assert res.status_code == 422

    res = client.get(
        f"/api/bill-reminders/{reminder['id']}/schedule",
        params={"start": "2025-01-01T00:00:00", "end": "2025-04-01T00:00:00"},
    )
    assert res.status_code == 200
    assert len(res.json()["due_dates"]) == 3

    res = client.post(
        f"/api/bill-reminders/{reminder['id']}/acknowledge", headers=headers
    )
    assert res.status_code == 200
    assert res.json()["last_acknowledged_month"] is not None

    res = client.put(
        f"/api/bill-reminders/{reminder['id']}",
        json={**payload, "status": "paused"},
        headers=headers,
    )
    assert res.json()["status"] == "paused"
    assert client.get("/api/bill-reminders", params={"status": "active"}).json() == []
    assert client.get("/api/bill-reminders/pending").json() == []

    res = client.delete(f"/api/bill-reminders/{reminder['id']}", headers=headers)
    assert res.status_code == 204
    res = client.post("/api/bill-reminders/999/acknowledge", headers=headers)
    assert res.status_code == 404
    assert res.json()["detail"] == "Bill reminder not found"
