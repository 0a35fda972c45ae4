"""
Tests for FastAPI Endpoints

Integration tests for the credit ledger API.
"""

import asyncio
import json
import pytest
from decimal import Decimal
from fastapi.testclient import TestClient

from credit_ledger.api.server import create_app
from credit_ledger.config import LedgerConfig
from credit_ledger.integrations import InMemoryEntityDirectory, compute_signature

WEBHOOK_SECRET = "test-webhook-secret"


@pytest.fixture
def directory():
    directory = InMemoryEntityDirectory()
    directory.register("interview-org", user_id="user-1", organization_id="org-1")
    directory.register("interview-user", user_id="user-2")
    return directory


@pytest.fixture
def config(db_url):
    return LedgerConfig(
        database_url=db_url,
        webhook_secret=WEBHOOK_SECRET,
        api_key="test-key-12345",
    )


@pytest.fixture
def client(config, directory):
    """Test client with lifespan run."""
    with TestClient(create_app(config, directory)) as test_client:
        yield test_client


@pytest.fixture
def auth_headers():
    """Headers with valid API key."""
    return {"X-API-Key": "test-key-12345"}


def _signed(payload, secret=WEBHOOK_SECRET):
    body = json.dumps(payload).encode("utf-8")
    return body, {"X-Signature": compute_signature(body, secret), "Content-Type": "application/json"}


class TestHealthEndpoint:

    def test_health_no_auth_required(self, client):
        """Health check should not require authentication."""
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert "version" in data
        assert "uptime_seconds" in data


class TestAuth:

    def test_missing_api_key(self, client):
        response = client.get("/balances/user/user-1")

        assert response.status_code == 422  # Missing header

    def test_invalid_api_key(self, client):
        response = client.get("/balances/user/user-1", headers={"X-API-Key": "wrong-key"})

        assert response.status_code == 401


class TestBalances:

    def test_first_read_grants(self, client, auth_headers):
        response = client.get("/balances/organization/org-1", headers=auth_headers)

        assert response.status_code == 200
        assert Decimal(response.json()["balance"]) == Decimal("2.00")

    def test_unknown_entity_type(self, client, auth_headers):
        response = client.get("/balances/team/t-1", headers=auth_headers)

        assert response.status_code == 422

    def test_manual_adjustment(self, client, auth_headers):
        client.get("/balances/user/user-1", headers=auth_headers)

        response = client.post(
            "/balances/user/user-1/adjustments",
            json={"amount": "5.00", "description": "Goodwill credit"},
            headers=auth_headers,
        )

        assert response.status_code == 200
        assert Decimal(response.json()["balance"]) == Decimal("7.00")

    def test_zero_adjustment_rejected(self, client, auth_headers):
        response = client.post(
            "/balances/user/user-1/adjustments",
            json={"amount": "0", "description": "Nothing"},
            headers=auth_headers,
        )

        assert response.status_code == 400


class TestUsage:

    def test_call_charged_to_organization(self, client, auth_headers):
        response = client.post(
            "/usage/call-ended",
            json={"interview_id": "interview-org", "duration_seconds": 300, "call_id": "call-1"},
            headers=auth_headers,
        )

        assert response.status_code == 200
        event = response.json()
        assert event["entity_type"] == "organization"
        assert event["entity_id"] == "org-1"
        assert event["status"] == "paid_by_credits"
        assert Decimal(event["cost"]) == Decimal("1.00")

    def test_insufficient_credits_still_recorded(self, client, auth_headers):
        response = client.post(
            "/usage/call-ended",
            json={"interview_id": "interview-user", "duration_seconds": 1200},
            headers=auth_headers,
        )

        assert response.status_code == 200
        assert response.json()["status"] == "payment_failed_insufficient_credits"

        events = client.get("/events/user/user-2", headers=auth_headers).json()
        assert len(events) == 1

    def test_unknown_interview(self, client, auth_headers):
        response = client.post(
            "/usage/call-ended",
            json={"interview_id": "nope", "duration_seconds": 60},
            headers=auth_headers,
        )

        assert response.status_code == 404

    def test_negative_duration_rejected(self, client, auth_headers):
        response = client.post(
            "/usage/call-ended",
            json={"interview_id": "interview-org", "duration_seconds": -1},
            headers=auth_headers,
        )

        assert response.status_code == 422


class TestPaymentWebhook:

    def test_paid_order_credits(self, client, auth_headers, paid_order_payload):
        body, headers = _signed(paid_order_payload)

        response = client.post("/webhooks/payment", content=body, headers=headers)

        assert response.status_code == 200
        assert response.json()["status"] == "processed"
        balance = client.get("/balances/organization/org-1", headers=auth_headers).json()["balance"]
        assert Decimal(balance) == Decimal("12.00")

    def test_duplicate_delivery_credits_once(self, client, auth_headers, paid_order_payload):
        body, headers = _signed(paid_order_payload)

        first = client.post("/webhooks/payment", content=body, headers=headers)
        second = client.post("/webhooks/payment", content=body, headers=headers)

        assert first.status_code == 200
        assert second.status_code == 200
        assert second.json()["status"] == "already_handled"
        balance = client.get("/balances/organization/org-1", headers=auth_headers).json()["balance"]
        assert Decimal(balance) == Decimal("12.00")

    def test_bad_signature(self, client, paid_order_payload):
        body, headers = _signed(paid_order_payload, secret="wrong-secret")

        response = client.post("/webhooks/payment", content=body, headers=headers)

        assert response.status_code == 400

    def test_missing_signature(self, client, paid_order_payload):
        response = client.post("/webhooks/payment", json=paid_order_payload)

        assert response.status_code == 400

    def test_invalid_json(self, client):
        body = b"not json"
        headers = {"X-Signature": compute_signature(body, WEBHOOK_SECRET)}

        response = client.post("/webhooks/payment", content=body, headers=headers)

        assert response.status_code == 400

    def test_malformed_paid_order(self, client, paid_order_payload):
        del paid_order_payload["meta"]["custom_data"]["entity_id"]
        body, headers = _signed(paid_order_payload)

        response = client.post("/webhooks/payment", content=body, headers=headers)

        assert response.status_code == 400

    def test_paid_order_without_status_rejected(self, client, auth_headers, paid_order_payload):
        """The sender hears about the malformed order instead of a silent 200."""
        del paid_order_payload["data"]["attributes"]["status"]
        body, headers = _signed(paid_order_payload)

        response = client.post("/webhooks/payment", content=body, headers=headers)

        assert response.status_code == 400
        assert client.get("/payments/unresolved", headers=auth_headers).json() == []

    def test_other_events_acknowledged(self, client, paid_order_payload):
        paid_order_payload["meta"]["event_name"] = "subscription_created"
        body, headers = _signed(paid_order_payload)

        response = client.post("/webhooks/payment", content=body, headers=headers)

        assert response.status_code == 200
        assert response.json()["processed"] is False

    def test_secret_not_configured(self, db_url, directory, paid_order_payload):
        config = LedgerConfig(database_url=db_url, webhook_secret=None, api_key="test-key-12345")
        body, headers = _signed(paid_order_payload)

        with TestClient(create_app(config, directory)) as client:
            response = client.post("/webhooks/payment", content=body, headers=headers)

        assert response.status_code == 500

    def test_crediting_failure_returns_500(self, client, paid_order_payload, monkeypatch):
        """The sender retries; the retry is answered as already handled."""
        from credit_ledger.errors import StorageError

        async def unavailable(*args, **kwargs):
            raise StorageError("balance store unavailable")

        state = client.app.state.ledger
        monkeypatch.setattr(state.balance_store, "add_amount", unavailable)
        body, headers = _signed(paid_order_payload)

        failed = client.post("/webhooks/payment", content=body, headers=headers)
        monkeypatch.undo()
        retry = client.post("/webhooks/payment", content=body, headers=headers)

        assert failed.status_code == 500
        assert retry.status_code == 200
        assert retry.json()["status"] == "already_handled"

    def test_unrecorded_notification_returns_500(self, client, paid_order_payload, monkeypatch):
        """Nothing is credited when the confirmation cannot be stored."""
        from credit_ledger.errors import StorageError

        def unavailable(*args, **kwargs):
            raise StorageError("disk I/O error")

        state = client.app.state.ledger
        monkeypatch.setattr(state.payments.confirmations, "create", unavailable)
        body, headers = _signed(paid_order_payload)

        response = client.post("/webhooks/payment", content=body, headers=headers)

        assert response.status_code == 500
        assert asyncio.run(state.balance_store.get_raw_balance("org-1")) == Decimal("0")


class TestLedgerEndpoints:

    def test_transactions_and_reconcile(self, client, auth_headers, paid_order_payload):
        body, headers = _signed(paid_order_payload)
        client.post("/webhooks/payment", content=body, headers=headers)
        client.post(
            "/usage/call-ended",
            json={"interview_id": "interview-org", "duration_seconds": 300},
            headers=auth_headers,
        )

        transactions = client.get("/transactions/organization/org-1", headers=auth_headers).json()
        report = client.get("/reconcile/organization/org-1", headers=auth_headers).json()

        assert {t["type"] for t in transactions} == {"recharge", "initial", "usage"}
        assert report["balanced"] is True
        assert Decimal(report["balance"]) == Decimal("11.00")

    def test_sweep_with_nothing_pending(self, client, auth_headers):
        response = client.post("/reconcile/events", json={"older_than_seconds": 0}, headers=auth_headers)

        assert response.status_code == 200
        assert response.json() == {"settled": [], "skipped": [], "failed": {}}

    def test_unresolved_payments_empty(self, client, auth_headers):
        response = client.get("/payments/unresolved", headers=auth_headers)

        assert response.status_code == 200
        assert response.json() == []

    def test_routes_filter_by_entity_type(self, client, auth_headers, paid_order_payload):
        """An organization's rows are not served under the user path."""
        body, headers = _signed(paid_order_payload)
        client.post("/webhooks/payment", content=body, headers=headers)
        client.post(
            "/usage/call-ended",
            json={"interview_id": "interview-org", "duration_seconds": 300},
            headers=auth_headers,
        )

        transactions = client.get("/transactions/user/org-1", headers=auth_headers)
        events = client.get("/events/user/org-1", headers=auth_headers)
        report = client.get("/reconcile/user/org-1", headers=auth_headers)

        assert transactions.status_code == 200
        assert transactions.json() == []
        assert events.status_code == 200
        assert events.json() == []
        assert report.status_code == 404
        assert len(client.get("/events/organization/org-1", headers=auth_headers).json()) == 1
