"""
Integration tests for the Balance Ledger API
Tests end-to-end request handling using FastAPI TestClient
"""

import pytest
from decimal import Decimal
from fastapi.testclient import TestClient

import balance_ledger.api
from balance_ledger.api import app, LedgerSystem
from balance_ledger.errors import StorageFailure
from balance_ledger.storage import InMemoryLedgerStore


@pytest.fixture
def system():
    """Ledger system over an in-memory store with two registered users"""
    test_system = LedgerSystem(InMemoryLedgerStore())
    test_system.users.register("Alice", "alice@example.com")
    test_system.users.register("Bob", "bob@example.com")
    return test_system


@pytest.fixture
def client(system):
    """Create a test client bound to the in-memory ledger system"""
    original_system = balance_ledger.api.ledger_system
    balance_ledger.api.ledger_system = system

    yield TestClient(app)

    balance_ledger.api.ledger_system = original_system


class TestHealthEndpoint:
    """Test health endpoint"""

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        data = r.json()
        assert data["status"] == "healthy"
        assert "timestamp" in data


class TestBalanceEndpoint:
    """Test GET /api/balance/{user_id}"""

    def test_balance_of_new_user(self, client):
        r = client.get("/api/balance/1")
        assert r.status_code == 200
        assert r.json() == {"success": True, "data": {"user_id": 1, "balance": "0.00"}}

    def test_unknown_user(self, client):
        r = client.get("/api/balance/999")
        assert r.status_code == 404
        assert r.json() == {"success": False, "message": {"error": "User not found."}}

    @pytest.mark.parametrize("user_id", [0, -3])
    def test_non_positive_id(self, client, user_id):
        r = client.get(f"/api/balance/{user_id}")
        assert r.status_code == 400
        assert r.json()["success"] is False
        assert "error" in r.json()["message"]

    def test_non_numeric_id(self, client):
        r = client.get("/api/balance/abc")
        assert r.status_code == 422
        assert "user_id" in r.json()["error"]


class TestDepositEndpoint:
    """Test POST /api/deposit"""

    def test_deposit(self, client):
        r = client.post("/api/deposit", json={"user_id": 1, "amount": 50.25, "comment": "salary"})
        assert r.status_code == 200
        body = r.json()
        assert body["success"] is True
        assert body["data"]["user_id"] == 1
        assert body["data"]["new_balance"] == "50.25"
        assert isinstance(body["data"]["transaction_id"], int)
        assert body["data"]["message"] == "Balance topped up successfully."

        assert client.get("/api/balance/1").json()["data"]["balance"] == "50.25"

    def test_deposit_amount_as_string(self, client):
        r = client.post("/api/deposit", json={"user_id": 1, "amount": "100"})
        assert r.status_code == 200
        assert r.json()["data"]["new_balance"] == "100.00"

    def test_deposit_unknown_user(self, client):
        r = client.post("/api/deposit", json={"user_id": 999, "amount": 10})
        assert r.status_code == 404
        assert r.json()["message"]["error"] == "User not found."

    @pytest.mark.parametrize("payload,field", [
        ({"amount": 10}, "user_id"),
        ({"user_id": "abc", "amount": 10}, "user_id"),
        ({"user_id": 0, "amount": 10}, "user_id"),
        ({"user_id": 1}, "amount"),
        ({"user_id": 1, "amount": 0}, "amount"),
        ({"user_id": 1, "amount": -5}, "amount"),
        ({"user_id": 1, "amount": 0.001}, "amount"),
        ({"user_id": 1, "amount": "1000000000000.00"}, "amount"),
        ({"user_id": 1, "amount": "ten"}, "amount"),
        ({"user_id": 1, "amount": 10, "comment": "x" * 256}, "comment"),
    ])
    def test_validation(self, client, system, payload, field):
        r = client.post("/api/deposit", json=payload)
        assert r.status_code == 422
        body = r.json()
        assert body["success"] is False
        assert body["message"] == "Validation failed."
        assert field in body["error"]
        assert system.store.get_balance(1) == Decimal("0.00")

    def test_max_amount_accepted(self, client):
        r = client.post("/api/deposit", json={"user_id": 1, "amount": "999999999999.99"})
        assert r.status_code == 200
        assert r.json()["data"]["new_balance"] == "999999999999.99"


class TestWithdrawEndpoint:
    """Test POST /api/withdraw"""

    def test_withdraw(self, client):
        client.post("/api/deposit", json={"user_id": 1, "amount": 100})

        r = client.post("/api/withdraw", json={"user_id": 1, "amount": 30.5})
        assert r.status_code == 200
        assert r.json()["data"]["new_balance"] == "69.50"
        assert r.json()["data"]["message"] == "Funds withdrawn successfully."

    def test_insufficient_funds(self, client, system):
        client.post("/api/deposit", json={"user_id": 1, "amount": 50})

        r = client.post("/api/withdraw", json={"user_id": 1, "amount": 100})
        assert r.status_code == 409
        assert r.json() == {"success": False, "message": {"error": "Insufficient funds on balance."}}
        assert system.store.get_balance(1) == Decimal("50.00")
        assert len(system.store.list_transactions(1)) == 1


class TestTransferEndpoint:
    """Test POST /api/transfer"""

    def test_transfer(self, client):
        client.post("/api/deposit", json={"user_id": 1, "amount": 300})
        client.post("/api/deposit", json={"user_id": 2, "amount": 100})

        r = client.post("/api/transfer", json={
            "from_user_id": 1, "to_user_id": 2, "amount": 150.75, "comment": "rent"
        })
        assert r.status_code == 200
        data = r.json()["data"]
        assert data["from_user_id"] == 1
        assert data["to_user_id"] == 2
        assert data["amount"] == "150.75"
        assert data["balance_from_user_id"] == "149.25"
        assert data["balance_to_user_id"] == "250.75"
        assert data["out_transaction_id"] != data["in_transaction_id"]
        assert data["message"] == "Transfer completed successfully."

    def test_self_transfer(self, client):
        client.post("/api/deposit", json={"user_id": 1, "amount": 100})

        r = client.post("/api/transfer", json={"from_user_id": 1, "to_user_id": 1, "amount": 10})
        assert r.status_code == 400
        assert r.json()["message"]["error"] == "Cannot transfer funds to yourself."

    def test_unknown_sender(self, client):
        r = client.post("/api/transfer", json={"from_user_id": 999, "to_user_id": 2, "amount": 10})
        assert r.status_code == 404
        assert r.json()["message"]["error"] == "Sender not found."

    def test_unknown_recipient(self, client):
        r = client.post("/api/transfer", json={"from_user_id": 1, "to_user_id": 999, "amount": 10})
        assert r.status_code == 404
        assert r.json()["message"]["error"] == "Recipient not found."

    def test_insufficient_funds(self, client):
        r = client.post("/api/transfer", json={"from_user_id": 1, "to_user_id": 2, "amount": 10})
        assert r.status_code == 409
        assert r.json()["message"]["error"] == "Insufficient funds for transfer."

    def test_missing_fields(self, client):
        r = client.post("/api/transfer", json={"amount": 10})
        assert r.status_code == 422
        errors = r.json()["error"]
        assert "from_user_id" in errors
        assert "to_user_id" in errors


class TestErrorHandling:
    """Test mapping of storage and unexpected failures"""

    def test_storage_failure_is_opaque(self, client, system, monkeypatch):
        def failing_run_atomic(fn, user_ids=()):
            raise StorageFailure(original_error=RuntimeError("disk full"))

        monkeypatch.setattr(system.store, "run_atomic", failing_run_atomic)

        r = client.post("/api/deposit", json={"user_id": 1, "amount": 10})
        assert r.status_code == 500
        assert r.json()["success"] is False
        assert "disk full" not in r.text

    def test_unexpected_error_returns_500(self, system, monkeypatch):
        original_system = balance_ledger.api.ledger_system
        balance_ledger.api.ledger_system = system

        def broken_get_balance(user_id):
            raise RuntimeError("unexpected")

        monkeypatch.setattr(system.store, "get_balance", broken_get_balance)

        try:
            client = TestClient(app, raise_server_exceptions=False)
            r = client.get("/api/balance/1")
        finally:
            balance_ledger.api.ledger_system = original_system

        assert r.status_code == 500
        assert r.json() == {
            "success": False,
            "message": {"error": "An error occurred while processing the operation."}
        }
