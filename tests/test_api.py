"""
Tests for FastAPI Endpoints

Integration tests for the settlement API.
"""

import pytest
from fastapi.testclient import TestClient

from api import server
from api.server import app, AppState
from gateways import TerminalGatewayError
from rails import Rail


@pytest.fixture
def orchestrator(config, make_orchestrator):
    return make_orchestrator(config)


@pytest.fixture
def client(config, orchestrator):
    """Test client over an orchestrator with fake gateways."""
    server.app_state = AppState(config=config, orchestrator=orchestrator)
    with TestClient(app) as test_client:
        yield test_client
    server.app_state = None


@pytest.fixture
def auth_headers():
    """Headers with valid API key."""
    return {"X-API-Key": "test-key-12345"}


class TestHealthEndpoint:
    """Test health check endpoint."""

    def test_health_no_auth_required(self, client):
        """Health check should not require authentication."""
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["rails"] == ["BANK_WIRE", "CARD_PAYOUT", "EWALLET", "CRYPTO_TRANSFER"]
        assert data["audit_secret_configured"] is True
        assert "uptime_seconds" in data


class TestSettlementEndpoint:
    """Test the settlement endpoint."""

    def test_requires_auth(self, client):
        """Missing API key header fails validation."""
        response = client.post("/settlements", json={"amount": 70_000, "currency": "USD"})

        assert response.status_code == 422

    def test_invalid_api_key(self, client):
        """Invalid API key should be rejected."""
        response = client.post(
            "/settlements",
            json={"amount": 70_000, "currency": "USD"},
            headers={"X-API-Key": "wrong-key"},
        )

        assert response.status_code == 401

    def test_non_positive_amount_rejected(self, client, auth_headers):
        """Amounts must be positive."""
        response = client.post("/settlements", json={"amount": 0, "currency": "USD"}, headers=auth_headers)

        assert response.status_code == 422

    def test_settlement_routes_amount(self, client, auth_headers):
        """Steps cover the full amount and the summary agrees."""
        response = client.post("/settlements", json={"amount": 70_000, "currency": "USD"}, headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["results"][0]["status"] == "IN_TRANSIT"
        assert data["results"][0]["rail"] == "CARD_PAYOUT"
        assert data["summary"]["total"] == 70_000
        assert data["summary"]["routed"] == 70_000

    def test_idempotent_replay(self, client, auth_headers, orchestrator):
        """Same Idempotency-Key, same response, one dispatch."""
        headers = {**auth_headers, "Idempotency-Key": "inv-2041"}
        body = {"amount": 70_000, "currency": "USD"}

        first = client.post("/settlements", json=body, headers=headers)
        second = client.post("/settlements", json=body, headers=headers)

        assert first.json() == second.json()
        assert len(orchestrator.gateways[Rail.CARD_PAYOUT].calls) == 1

    def test_idempotency_conflict(self, client, auth_headers):
        """Reusing a key for another amount is a conflict."""
        headers = {**auth_headers, "Idempotency-Key": "inv-2042"}
        client.post("/settlements", json={"amount": 70_000, "currency": "USD"}, headers=headers)

        response = client.post("/settlements", json={"amount": 1_000, "currency": "USD"}, headers=headers)

        assert response.status_code == 409


class TestLedgerEndpoints:
    """Test ledger inspection and queue draining."""

    def test_usage_after_settlement(self, client, auth_headers):
        """Usage reflects dispatched amounts."""
        client.post("/settlements", json={"amount": 70_000, "currency": "USD"}, headers=auth_headers)

        response = client.get("/ledger/usage", headers=auth_headers)

        data = response.json()
        assert data["day"] == "2026-03-14"
        assert data["rails"]["CARD_PAYOUT"]["used"] == 70_000
        assert data["rails"]["CARD_PAYOUT"]["remaining"] == 130_000

    def test_usage_remaining_excludes_reservations(self, client, auth_headers, orchestrator):
        """Capacity held by an in-flight run is not reported as remaining."""
        orchestrator.ledger.reserve_capacity(Rail.CARD_PAYOUT, 50_000, 200_000)

        data = client.get("/ledger/usage", headers=auth_headers).json()

        assert data["rails"]["CARD_PAYOUT"]["used"] == 0
        assert data["rails"]["CARD_PAYOUT"]["remaining"] == 150_000

    def test_queue_lists_failed_steps(self, client, auth_headers, orchestrator):
        """Failed allocations appear in the queue."""
        orchestrator.gateways[Rail.CARD_PAYOUT].outcomes = [TerminalGatewayError("closed")]
        client.post("/settlements", json={"amount": 70_000, "currency": "USD"}, headers=auth_headers)

        response = client.get("/ledger/queue", params={"currency": "USD"}, headers=auth_headers)

        data = response.json()
        assert data["count"] == 1
        assert data["total"] == 70_000
        assert data["items"][0]["reason"] == "EXECUTION_ERROR"

    def test_drain_reroutes_queue(self, client, auth_headers, orchestrator):
        """Draining sends queued amounts through the rails again."""
        orchestrator.gateways[Rail.CARD_PAYOUT].outcomes = [TerminalGatewayError("closed")]
        client.post("/settlements", json={"amount": 70_000, "currency": "USD"}, headers=auth_headers)

        response = client.post("/ledger/queue/drain", json={"currency": "USD"}, headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["summary"]["routed"] == 70_000
        assert client.get("/ledger/queue", headers=auth_headers).json()["count"] == 0


class TestRankAndAudit:
    """Test ranking and audit verification endpoints."""

    def test_rank(self, client, auth_headers):
        """Ranking comes with score breakdowns."""
        response = client.get("/rails/rank", params={"amount": 70_000, "currency": "usd"}, headers=auth_headers)

        data = response.json()
        assert data["ranking"] == ["CARD_PAYOUT", "BANK_WIRE", "EWALLET"]
        assert {row["rail"] for row in data["scores"]} == set(data["ranking"])

    def test_audit_verify(self, client, auth_headers):
        """A fresh journal verifies."""
        client.post("/settlements", json={"amount": 70_000, "currency": "USD"}, headers=auth_headers)

        response = client.post("/audit/verify", json={"day": "2026-03-14"}, headers=auth_headers)

        data = response.json()
        assert data["ok"] is True
        assert data["files"]["2026-03-14.jsonl"]["entries"] == 3

    def test_audit_verify_reports_tampering(self, client, auth_headers, orchestrator):
        """A modified line is reported, not repaired."""
        client.post("/settlements", json={"amount": 70_000, "currency": "USD"}, headers=auth_headers)
        path = orchestrator.audit.current_file()
        path.write_text(path.read_text().replace('"amount": 70000', '"amount": 1'))

        response = client.post("/audit/verify", json={}, headers=auth_headers)

        data = response.json()
        assert data["ok"] is False
        assert data["files"]["2026-03-14.jsonl"]["error"] == "hmac_mismatch"
