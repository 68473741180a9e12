from datetime import date, timedelta

import pytest
from fastapi.testclient import TestClient

import main
from batch_token import generate_batch_token
from errors import ConflictError, StorageError
from main import app, get_store


@pytest.fixture
def client(store):
    app.dependency_overrides[get_store] = lambda: store
    yield TestClient(app)
    app.dependency_overrides.clear()


def _headers(user_id):
    return {"X-User-Id": str(user_id)}


def test_health(client):
    res = client.get("/api/health")
    assert res.status_code == 200
    assert res.json()["status"] == "ok"


def test_missing_user_header(client):
    assert client.get("/api/balance/2024/3").status_code == 401


def test_unknown_user_is_404(client):
    res = client.get("/api/balance/2024/3", headers=_headers(999))
    assert res.status_code == 404
    assert res.json()["error"] == "NotFoundError"


def test_invalid_month_is_400(client, user_id):
    res = client.get("/api/balance/2024/13", headers=_headers(user_id))
    assert res.status_code == 400
    assert res.json()["retryable"] is False


def test_transaction_flow_updates_balance(client, user_id):
    res = client.put(
        "/api/balance/2024/3/opening",
        json={"opening_balance_cents": 100000},
        headers=_headers(user_id),
    )
    assert res.status_code == 200
    assert res.json()["opening_balance_is_override"] is True

    for txn_type, cents in (("income", 50000), ("expense", 20000)):
        res = client.post(
            "/api/transactions",
            json={"date": "2024-03-10", "type": txn_type, "amount_cents": cents},
            headers=_headers(user_id),
        )
        assert res.status_code == 201

    march = client.get("/api/balance/2024/3", headers=_headers(user_id)).json()
    april = client.get("/api/balance/2024/4", headers=_headers(user_id)).json()
    assert march["closing_balance_cents"] == 130000
    assert april["opening_balance_cents"] == 130000

    stats = client.get(
        "/api/analytics/stats",
        params={"start": "2024-03-01", "end": "2024-03-31"},
        headers=_headers(user_id),
    ).json()
    assert stats["net_balance_cents"] == 30000
    assert stats["transaction_count"] == 2


def test_update_and_delete_transaction(client, user_id):
    created = client.post(
        "/api/transactions",
        json={"date": "2024-03-10", "type": "expense", "amount_cents": 400},
        headers=_headers(user_id),
    ).json()

    res = client.put(
        f"/api/transactions/{created['id']}",
        json={"date": "2024-03-11", "type": "expense", "amount_cents": 900},
        headers=_headers(user_id),
    )
    assert res.status_code == 200
    assert res.json()["amount_cents"] == 900

    res = client.delete(f"/api/transactions/{created['id']}", headers=_headers(user_id))
    assert res.status_code == 204
    balance = client.get("/api/balance/2024/3", headers=_headers(user_id)).json()
    assert balance["closing_balance_cents"] == 0


def test_non_positive_amount_rejected(client, user_id):
    res = client.post(
        "/api/transactions",
        json={"date": "2024-03-10", "type": "expense", "amount_cents": 0},
        headers=_headers(user_id),
    )
    assert res.status_code == 422


def test_recurring_rule_processing(client, user_id):
    anchor = date.today() - timedelta(days=3)
    res = client.post(
        "/api/recurring",
        json={
            "name": "Gym",
            "type": "expense",
            "amount_cents": 2000,
            "frequency": "daily",
            "anchor_date": anchor.isoformat(),
            "end_date": (anchor + timedelta(days=1)).isoformat(),
        },
        headers=_headers(user_id),
    )
    assert res.status_code == 201
    rule_id = res.json()["id"]

    res = client.post("/api/recurring/process", headers=_headers(user_id))
    assert res.status_code == 200
    assert res.json()["transactions_created"] == 2

    res = client.post("/api/recurring/process", headers=_headers(user_id))
    assert res.json()["transactions_created"] == 0

    rules = client.get("/api/recurring", headers=_headers(user_id)).json()
    assert rules[0]["id"] == rule_id
    last_day = (anchor + timedelta(days=1)).isoformat()
    assert rules[0]["last_materialized_date"] == last_day

    res = client.delete(f"/api/recurring/{rule_id}", headers=_headers(user_id))
    assert res.status_code == 204


def test_batch_processing_requires_valid_token(client, user_id):
    res = client.post("/api/recurring/process", headers={"X-Batch-Token": "forged"})
    assert res.status_code == 401

    res = client.post(
        "/api/recurring/process", headers={"X-Batch-Token": generate_batch_token()}
    )
    assert res.status_code == 200
    assert res.json()["transactions_created"] == 0


def test_conflict_maps_to_409(client, user_id, monkeypatch):
    def busy(self, *args):
        raise ConflictError("Timed out waiting for a ledger lock")

    monkeypatch.setattr(main.LedgerService, "compute_or_fetch_balance", busy)

    res = client.get("/api/balance/2024/3", headers=_headers(user_id))
    assert res.status_code == 409
    assert res.json()["retryable"] is True


def test_storage_failure_maps_to_503(client, user_id, monkeypatch):
    def down(self, *args):
        raise StorageError("Ledger storage is unavailable")

    monkeypatch.setattr(main.LedgerService, "set_opening_balance", down)

    res = client.put(
        "/api/balance/2024/3/opening",
        json={"opening_balance_cents": 1},
        headers=_headers(user_id),
    )
    assert res.status_code == 503


def test_update_currency(client, user_id):
    res = client.put(
        "/api/user/currency", json={"currency": "eur"}, headers=_headers(user_id)
    )
    assert res.status_code == 200
    assert res.json()["currency"] == "EUR"

    res = client.put(
        "/api/user/currency", json={"currency": "ABC"}, headers=_headers(user_id)
    )
    assert res.status_code == 400
