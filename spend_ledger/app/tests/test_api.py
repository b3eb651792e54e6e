import uuid

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel

from ..core.db import create_engine_for_url, get_engine, get_session, init_db, set_engine
from ..core.dependencies import get_cache
from ..main import app
from ..services import InMemoryCache

@pytest.fixture
def client(tmp_path) -> TestClient:
    test_db = tmp_path / "test.db"
    engine = create_engine_for_url(f"sqlite:///{test_db}")
    original_engine = get_engine()
    set_engine(engine)
    SQLModel.metadata.drop_all(engine)
    SQLModel.metadata.create_all(engine)

    def _get_session_override():
        with Session(engine) as session:
            yield session

    cache = InMemoryCache()
    app.dependency_overrides[get_session] = _get_session_override
    app.dependency_overrides[get_cache] = lambda: cache
    init_db()

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    set_engine(original_engine)
    engine.dispose()


def _create_account(client: TestClient, owner: str, balance: int = 0) -> str:
    account_id = client.post("/accounts", json={"owner_name": owner}).json()["id"]
    if balance:
        client.post(
            f"/accounts/{account_id}/topups",
            json={"amount": balance},
            headers={"Idempotency-Key": str(uuid.uuid4())},
        )
    return account_id


def test_create_account_topup_debit(client: TestClient) -> None:
    response = client.post("/accounts", json={"owner_name": "Alice"})
    assert response.status_code == 201
    account = response.json()
    account_id = account["id"]
    assert account["available_balance"] == 0
    assert account["plan_name"] == "free"
    assert account["status"] == "zero"

    topup = client.post(
        f"/accounts/{account_id}/topups",
        json={"amount": 100_000},
        headers={"Idempotency-Key": str(uuid.uuid4())}
    )
    assert topup.status_code == 201
    assert topup.json()["balance_after"] == 100_000

    debit = client.post(
        f"/accounts/{account_id}/debits",
        json={"amount": 40_000},
        headers={"Idempotency-Key": "msg-1"},
    )
    assert debit.status_code == 201
    assert debit.json()["balance_before"] == 100_000
    assert debit.json()["balance_after"] == 60_000

    balance = client.get(f"/accounts/{account_id}/balance").json()
    assert balance == {"account_id": account_id, "balance": 60_000, "status": "normal"}

def test_debit_insufficient_balance(client: TestClient) -> None:
    account_id = _create_account(client, "Bob", balance=300)

    response = client.post(
        f"/accounts/{account_id}/debits",
        json={"amount": 500},
        headers={"Idempotency-Key": str(uuid.uuid4())},
    )
    assert response.status_code == 409
    body = response.json()
    assert body["code"] == "insufficient_balance"
    assert body["shortfall"] == 200
    assert client.get(f"/accounts/{account_id}/balance").json()["balance"] == 300

def test_duplicate_debit_is_rejected(client: TestClient) -> None:
    account_id = _create_account(client, "Carol", balance=2_000)

    for expected in (201, 409):
        response = client.post(
            f"/accounts/{account_id}/debits",
            json={"amount": 500},
            headers={"Idempotency-Key": "msg-dup"},
        )
        assert response.status_code == expected
    assert response.json()["code"] == "duplicate_transaction"
    assert client.get(f"/accounts/{account_id}/balance").json()["balance"] == 1_500

def test_topup_idempotency(client: TestClient) -> None:
    account_id = client.post("/accounts", json={"owner_name": "Eve"}).json()["id"]
    key = str(uuid.uuid4())
    first = client.post(
        f"/accounts/{account_id}/topups",
        json={"amount": 500},
        headers={"Idempotency-Key": key},
    )
    second = client.post(
        f"/accounts/{account_id}/topups",
        json={"amount": 500},
        headers={"Idempotency-Key": key},
    )
    assert first.status_code == 201
    assert second.status_code == 201
    assert first.json() == second.json()
    snapshot = client.get(f"/accounts/{account_id}")
    assert snapshot.json()["available_balance"] == 500

    conflict = client.post(
        f"/accounts/{account_id}/topups",
        json={"amount": 900},
        headers={"Idempotency-Key": key},
    )
    assert conflict.status_code == 409

def test_statement_pagination(client: TestClient) -> None:
    account_id = client.post("/accounts", json={"owner_name": "Frank"}).json()["id"]

    for amount in (100, 200, 300):
        client.post(
            f"/accounts/{account_id}/topups",
            json={"amount": amount},
            headers={"Idempotency-Key": str(uuid.uuid4())}
        )

    first_page = client.get(f"/accounts/{account_id}/statement", params={"limit": 2})
    assert first_page.status_code == 200
    items = first_page.json()["items"]
    assert len(items) == 2
    # Newest first
    assert [entry["amount"] for entry in items] == [300, 200]

    cursor = first_page.json()["next_cursor"]
    second_page = client.get(
        f"/accounts/{account_id}/statement", params={"cursor": cursor}
    )
    remain = second_page.json()["items"]
    assert len(remain) == 1
    assert remain[0]["amount"] == 100
    assert second_page.json()["next_cursor"] is None

def test_statement_rejects_bad_cursor(client: TestClient) -> None:
    account_id = _create_account(client, "Grace", balance=100)

    response = client.get(
        f"/accounts/{account_id}/statement", params={"cursor": "not-a-cursor"}
    )
    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid cursor"

def test_statement_filters_by_entry_type(client: TestClient) -> None:
    account_id = _create_account(client, "Heidi", balance=5_000)
    client.post(
        f"/accounts/{account_id}/debits",
        json={"amount": 700},
        headers={"Idempotency-Key": "msg-filter"},
    )

    response = client.get(
        f"/accounts/{account_id}/statement", params={"entry_type": "message_debit"}
    )
    items = response.json()["items"]
    assert [entry["entry_type"] for entry in items] == ["message_debit"]

def test_refund_and_adjustment(client: TestClient) -> None:
    account_id = _create_account(client, "Ivan", balance=10_000)
    client.post(
        f"/accounts/{account_id}/debits",
        json={"amount": 500},
        headers={"Idempotency-Key": "msg-refund"},
    )

    refund = client.post(
        f"/accounts/{account_id}/refunds",
        json={"original_idempotency_key": "msg-refund", "reason": "Delivery failed"},
    )
    assert refund.status_code == 201
    assert refund.json()["balance_after"] == 10_000
    assert refund.json()["idempotency_key"] == "refund:msg-refund"

    adjustment = client.post(
        f"/accounts/{account_id}/adjustments",
        json={"amount": 2_500, "is_credit": False, "reason": "Chargeback", "actor": "ops@example.com"},
    )
    assert adjustment.status_code == 201
    assert adjustment.json()["direction"] == "debit"
    assert adjustment.json()["actor"] == "ops@example.com"
    assert adjustment.json()["balance_after"] == 7_500

    missing = client.post(
        f"/accounts/{account_id}/refunds",
        json={"original_idempotency_key": "never-sent"},
    )
    assert missing.status_code == 404

def test_invoice_payment_and_summary(client: TestClient) -> None:
    account_id = _create_account(client, "Judy")

    payment = client.post(
        f"/accounts/{account_id}/invoice-payments",
        json={"invoice_number": "INV-2026-0001", "amount": 75_000},
    )
    assert payment.status_code == 201
    assert payment.json()["idempotency_key"] == "invoice:INV-2026-0001"
    assert payment.json()["reference"] == {"type": "invoice", "id": "INV-2026-0001"}

    summary = client.get(f"/accounts/{account_id}/summary").json()
    assert summary["current_balance"] == 75_000
    assert summary["by_type"]["topup"]["credits"] == 75_000

def test_integrity_report(client: TestClient) -> None:
    account_id = _create_account(client, "Ken", balance=3_000)
    client.post(
        f"/accounts/{account_id}/debits",
        json={"amount": 1_000},
        headers={"Idempotency-Key": "msg-integrity"},
    )

    report = client.get(f"/accounts/{account_id}/integrity").json()
    assert report["is_valid"] is True
    assert report["entry_count"] == 2
    assert report["replayed_balance"] == 2_000
    assert report["discrepancies"] == []

def test_unknown_account_returns_404(client: TestClient) -> None:
    missing = str(uuid.uuid4())

    response = client.get(f"/accounts/{missing}")
    assert response.status_code == 404
    assert response.json()["code"] == "wallet_not_found"

    charge = client.post(
        f"/spend/{missing}/charge", json={"message": {"destination": "6281200000001"}}
    )
    assert charge.status_code == 404

def test_spend_check_charge_and_usage(client: TestClient) -> None:
    account_id = _create_account(client, "Liam", balance=1_000)

    check = client.post(f"/spend/{account_id}/check", json={"message_count": 2})
    assert check.status_code == 200
    assert check.json()["allowed"] is True
    assert check.json()["details"]["total_cost"] == 1_000

    charge = client.post(
        f"/spend/{account_id}/charge",
        json={"message": {"destination": "6281200000001", "idempotency_key": "wamid-1"}},
    )
    assert charge.status_code == 200
    assert charge.json()["success"] is True
    assert charge.json()["balance_after"] == 500

    denied = client.post(f"/spend/{account_id}/check", json={"message_count": 2})
    assert denied.json()["allowed"] is False
    assert denied.json()["code"] == "insufficient_balance"
    assert denied.json()["details"]["shortfall"] == 500

    usage = client.get(f"/spend/{account_id}/usage").json()
    assert usage["plan_name"] == "free"
    assert usage["daily"]["used"] == 1
    assert usage["monthly"]["used"] == 1

def test_spend_check_for_missing_wallet(client: TestClient) -> None:
    response = client.post(f"/spend/{uuid.uuid4()}/check", json={"message_count": 1})
    assert response.status_code == 200
    assert response.json()["code"] == "wallet_not_found"

def test_batch_charge_and_estimate(client: TestClient) -> None:
    account_id = _create_account(client, "Mia", balance=2_000)

    estimate = client.post("/spend/estimate", json={"message_count": 4, "category": "utility"})
    assert estimate.json()["total_cost"] == 1_200

    batch = client.post(
        f"/spend/{account_id}/charge-batch",
        json={
            "category": "utility",
            "batch_key": "cmp-42",
            "messages": [{"destination": f"62812000000{n}"} for n in range(4)],
        },
    )
    assert batch.status_code == 200
    assert batch.json()["total_charged"] == 1_200
    assert len(batch.json()["usage_log_ids"]) == 4
    assert client.get(f"/accounts/{account_id}/balance").json()["balance"] == 800

    empty = client.post(f"/spend/{account_id}/charge-batch", json={"messages": []})
    assert empty.status_code == 422

def test_rejection_and_failure_logs(client: TestClient) -> None:
    account_id = _create_account(client, "Noah", balance=1_000)

    rejection = client.post(
        f"/spend/{account_id}/rejections",
        json={"code": "limit_daily", "message": {"destination": "6281200000001"}},
    )
    failure = client.post(
        f"/spend/{account_id}/failures",
        json={"message": {"destination": "6281200000002", "provider_status": "undeliverable"}},
    )
    assert rejection.status_code == 201
    assert failure.status_code == 201
    assert failure.json()["usage_log_id"] > rejection.json()["usage_log_id"]
    assert client.get(f"/accounts/{account_id}/balance").json()["balance"] == 1_000

def test_health(client: TestClient) -> None:
    assert client.get("/health").json() == {"status": "ok"}
