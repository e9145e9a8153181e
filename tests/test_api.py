from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from auth import issue_token
from config import get_settings
from database import Base, build_engine, build_session_factory
from fx_rates import CurrencyNormalizer, StaticRateProvider
from main import app, get_db, get_normalizer


@pytest.fixture()
def client():
    engine = build_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(engine)
    SessionLocal = build_session_factory(engine)

    def override_db():
        db = SessionLocal()
        try:
            yield db
        finally:
            db.close()

    normalizer = CurrencyNormalizer(
        StaticRateProvider({"USD": Decimal("5.0")}, "BRL"), "BRL"
    )
    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_normalizer] = lambda: normalizer
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _signup(client, auth_user_id="auth|ana"):
    resp = client.post(
        "/webhooks/signup",
        json={"auth_user_id": auth_user_id, "email": "ana@example.com"},
        headers={"X-Signup-Secret": get_settings().signup_secret},
    )
    assert resp.status_code == 201
    return {"Authorization": f"Bearer {issue_token(auth_user_id)}"}


def _seed(client, headers):
    owner = client.post("/api/owners", json={"name": "Shop"}, headers=headers).json()
    payer = client.post("/api/payers", json={"name": "Job"}, headers=headers).json()
    debt = client.post(
        "/api/debts",
        json={
            "owner_id": owner["id"],
            "name": "Laptop",
            "amount": "500,00",
            "first_payment_date": "2025-01-15",
            "installments": 3,
        },
        headers=headers,
    )
    assert debt.status_code == 201
    income = client.post(
        "/api/incomes",
        json={
            "payer_id": payer["id"],
            "name": "Salary",
            "amount_cents": 800_000,
            "first_income_date": "2024-01-05",
        },
        headers=headers,
    )
    assert income.status_code == 201
    return owner, debt.json(), income.json()


def test_api_requires_member_token(client):
    assert client.get("/api/owners").status_code == 401
    bad = client.get("/api/owners", headers={"Authorization": "Bearer nope"})
    assert bad.status_code == 401
    stranger = {"Authorization": f"Bearer {issue_token('auth|stranger')}"}
    assert client.get("/api/owners", headers=stranger).status_code == 401


def test_signup_requires_secret(client):
    resp = client.post(
        "/webhooks/signup",
        json={"auth_user_id": "auth|x", "email": "x@example.com"},
        headers={"X-Signup-Secret": "wrong"},
    )
    assert resp.status_code == 401


def test_kickstart_and_month_view(client):
    headers = _signup(client)
    owner, debt, income = _seed(client, headers)

    forecast = client.get("/api/cycles/2099-01", headers=headers).json()
    assert forecast["kind"] == "forecast"
    assert forecast["total_incomes"] == 800_000

    resp = client.post(
        "/api/cycles/kickstart",
        json={
            "date": "2025-02-01",
            "incomesOverride": [{"incomeId": income["id"], "amount": 810_000}],
        },
        headers=headers,
    )
    assert resp.status_code == 201
    body = resp.json()
    assert body["ok"] is True
    cycle_id = body["cycle_id"]

    again = client.post(
        "/api/cycles/kickstart", json={"date": "2025-02-20"}, headers=headers
    )
    assert again.status_code == 409
    assert "detail" in again.json()

    view = client.get("/api/cycles/2025-02", headers=headers).json()
    assert view["kind"] == "materialized"
    assert view["cycle_id"] == cycle_id
    assert view["total_debts"] == 50_000
    assert view["available"] == 810_000 - 50_000
    assert view["debt_groups"][0]["items"][0]["ordinal"] == 2

    status = client.post(
        f"/api/cycles/{cycle_id}/status",
        json={"kind": "debt", "counterparty_id": owner["id"], "status": "PAID"},
        headers=headers,
    )
    assert status.json() == {"ok": True, "updated": 1}
    view = client.get("/api/cycles/2025-02", headers=headers).json()
    assert view["debt_groups"][0]["status"] == "PAID"

    expense = client.post(
        f"/api/cycles/{cycle_id}/expenses",
        json={"name": "Lunch", "amount": "40,00", "date": "2025-02-03"},
        headers=headers,
    )
    assert expense.status_code == 201
    view = client.get("/api/cycles/2025-02", headers=headers).json()
    assert view["available"] == 810_000 - 50_000 - 4_000


def test_kickstart_validation_errors(client):
    headers = _signup(client)
    resp = client.post(
        "/api/cycles/kickstart",
        json={"date": "2025-02-01", "debtsOverride": [{"debtId": 999, "amount": 1}]},
        headers=headers,
    )
    assert resp.status_code == 400
    assert client.get("/api/cycles/2025-99", headers=headers).status_code == 400


def test_debt_update_syncs_materialized_month(client):
    headers = _signup(client)
    owner, debt, _ = _seed(client, headers)
    cycle_id = client.post(
        "/api/cycles/kickstart", json={"date": "2025-01-01"}, headers=headers
    ).json()["cycle_id"]

    resp = client.put(
        f"/api/debts/{debt['id']}",
        json={
            "owner_id": owner["id"],
            "name": "Laptop",
            "amount_cents": 55_000,
            "first_payment_date": "2025-01-15",
            "installments": 3,
        },
        headers=headers,
    )
    assert resp.status_code == 200

    view = client.get("/api/cycles/2025-01", headers=headers).json()
    assert view["cycle_id"] == cycle_id
    assert view["total_debts"] == 55_000


def test_sync_webhook(client):
    headers = _signup(client)
    _, debt, _ = _seed(client, headers)
    client.post("/api/cycles/kickstart", json={"date": "2025-03-01"}, headers=headers)
    event = {
        "type": "UPDATE",
        "table": "debts",
        "record": {
            "id": debt["id"],
            "workspace_id": 1,
            "amount": 50_000,
            "first_payment_date": "2025-01-15",
            "has_end": True,
            "installments": 3,
            "end_date": "2025-03-15",
        },
    }
    key = {"Authorization": f"Bearer {get_settings().webhook_key}"}

    assert client.post("/webhooks/sync", json=event).status_code == 401
    resp = client.post("/webhooks/sync", json=event, headers=key)
    assert resp.status_code == 200
    body = resp.json()
    assert body["ok"] is True
    assert body["upserted"] == ["2025-03-01"]

    bad = client.post("/webhooks/sync", json={**event, "table": "users"}, headers=key)
    assert bad.status_code == 400


def test_sync_webhook_rejects_incomplete_rows(client):
    key = {"Authorization": f"Bearer {get_settings().webhook_key}"}
    for event in (
        {"type": "UPDATE", "table": "debts", "record": {"id": 1}},
        {"type": "DELETE", "table": "incomes", "old_record": {"id": 1}},
    ):
        resp = client.post("/webhooks/sync", json=event, headers=key)
        assert resp.status_code == 400
        assert "Malformed" in resp.json()["detail"]


def test_fx_convert(client):
    headers = _signup(client)
    resp = client.post(
        "/api/fx/convert", json={"amount_cents": 1_001, "currency": "USD"}, headers=headers
    )
    assert resp.json() == {"amount_cents": 5_005, "currency": "BRL"}
