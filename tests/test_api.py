"""
Integration tests for the Custody Ledger API
Tests end-to-end flows using FastAPI TestClient
"""

import pytest
from fastapi.testclient import TestClient

from custody_ledger.api import create_app
from custody_ledger.asset import Asset
from custody_ledger.audit import AuditTrail
from custody_ledger.clock import ManualClock
from custody_ledger.custody import InMemoryCustodyService
from custody_ledger.ledger import Ledger, ANNUAL_PERIOD
from custody_ledger.storage import InMemoryStorage


E18 = 10**18


@pytest.fixture
def setup():
    """Create a test client around an in-memory ledger"""
    storage = InMemoryStorage()
    custody = InMemoryCustodyService()
    clock = ManualClock()
    ledger = Ledger(custody, storage, clock, AuditTrail(storage))
    client = TestClient(create_app(ledger=ledger, asset=Asset("TKN", 18)))

    custody.fund("alice", 1_000 * E18)
    custody.approve("alice", 1_000 * E18)
    return client, ledger, custody, clock


class TestHealthEndpoints:
    """Test basic health and summary endpoints"""

    def test_health(self, setup):
        client, _, _, _ = setup
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"

    def test_ledger_summary(self, setup):
        client, _, _, _ = setup
        r = client.get("/ledger")
        assert r.status_code == 200
        data = r.json()
        assert data["total_deposited"] == "0"
        assert data["min_deposit_amount"] == str(E18)
        assert data["annual_period"] == ANNUAL_PERIOD
        assert data["asset"] == "TKN"


class TestDepositFlow:
    """End-to-end deposit and withdrawal"""

    def test_deposit_and_query(self, setup):
        client, ledger, _, clock = setup
        r = client.post("/deposits", json={"user": "alice", "amount": str(250 * E18)})
        assert r.status_code == 201
        data = r.json()
        assert data["balance"] == str(250 * E18)
        assert data["balance_display"] == "TKN 250." + "0" * 18
        assert data["last_accrual_time"] == clock.now()
        assert data["next_accrual_time"] == clock.now() + ANNUAL_PERIOD

        r = client.get("/accounts/alice")
        assert r.json()["balance"] == str(250 * E18)
        assert ledger.total_deposited() == 250 * E18

    def test_unknown_account_is_zero(self, setup):
        client, _, _, _ = setup
        r = client.get("/accounts/ghost")
        assert r.status_code == 200
        assert r.json()["balance"] == "0"
        assert r.json()["next_accrual_time"] is None

    def test_deposit_below_minimum(self, setup):
        client, ledger, _, _ = setup
        r = client.post("/deposits", json={"user": "alice", "amount": str(E18 - 1)})
        assert r.status_code == 400
        assert r.json()["detail"]["error"] == "invalid_amount"
        assert ledger.total_deposited() == 0

    def test_malformed_amount(self, setup):
        client, _, _, _ = setup
        r = client.post("/deposits", json={"user": "alice", "amount": "1.5"})
        assert r.status_code == 400

    def test_unauthorized_pull(self, setup):
        client, _, _, _ = setup
        r = client.post("/deposits", json={"user": "mallory", "amount": str(E18)})
        assert r.status_code == 502
        assert r.json()["detail"]["error"] == "transfer_failed"

    def test_withdraw_to_recipient(self, setup):
        client, ledger, custody, _ = setup
        client.post("/deposits", json={"user": "alice", "amount": str(100 * E18)})

        r = client.post("/withdrawals", json={
            "user": "alice", "amount": str(40 * E18), "recipient": "merchant"
        })
        assert r.status_code == 201
        assert r.json()["balance"] == str(60 * E18)
        assert r.json()["recipient"] == "merchant"
        assert custody.holding_of("merchant") == 40 * E18

    def test_withdraw_to_empty_recipient(self, setup):
        client, ledger, _, _ = setup
        client.post("/deposits", json={"user": "alice", "amount": str(10 * E18)})

        r = client.post("/withdrawals", json={
            "user": "alice", "amount": str(E18), "recipient": ""
        })
        assert r.status_code == 400
        assert r.json()["detail"]["error"] == "invalid_recipient"
        assert ledger.balance_of("alice") == 10 * E18

    def test_crashing_custody_maps_to_bad_gateway(self, setup):
        client, _, custody, _ = setup
        client.post("/deposits", json={"user": "alice", "amount": str(10 * E18)})

        def crash(destination, amount):
            raise RuntimeError("custody backend crashed")
        custody.push = crash

        r = client.post("/withdrawals", json={"user": "alice", "amount": str(E18)})
        assert r.status_code == 502
        assert r.json()["detail"]["error"] == "transfer_failed"

    def test_withdraw_without_deposit(self, setup):
        client, _, _, _ = setup
        r = client.post("/withdrawals", json={"user": "bob", "amount": "1"})
        assert r.status_code == 409
        assert r.json()["detail"]["error"] == "insufficient_balance"


class TestInterestFlow:
    """Interest through the API"""

    def test_accrue_when_due(self, setup):
        client, _, _, clock = setup
        client.post("/deposits", json={"user": "alice", "amount": str(500 * E18)})

        r = client.post("/accounts/alice/accrue")
        assert r.status_code == 409
        assert r.json()["detail"]["error"] == "accrual_not_due"

        clock.advance(366 * 86400)
        r = client.post("/accounts/alice/accrue")
        assert r.status_code == 200
        assert r.json()["interest"] == str(50 * E18)
        assert r.json()["balance"] == str(500 * E18)

        r = client.post("/accounts/alice/accrue")
        assert r.status_code == 409

    def test_audit_verify(self, setup):
        client, _, _, _ = setup
        client.post("/deposits", json={"user": "alice", "amount": str(5 * E18)})
        client.post("/withdrawals", json={"user": "alice", "amount": str(2 * E18)})

        r = client.get("/audit/verify")
        assert r.status_code == 200
        data = r.json()
        assert data["invariants"]["valid"] is True
        assert data["invariants"]["total_deposited"] == str(3 * E18)
        assert data["audit"]["valid"] is True
