"""Tests for the HTTP API."""

import hashlib
import hmac
import json
import time
from datetime import UTC, datetime

import pytest
from fastapi.testclient import TestClient

from resell_publisher.api.app import create_app
from resell_publisher.billing.service import get_billing_event_ingestor
from resell_publisher.ebay.auth import get_auth_service
from resell_publisher.ebay.errors import ErrorCode, ValidationFault
from resell_publisher.ebay.models import PublishResult
from resell_publisher.ebay.policy import get_policy_service
from resell_publisher.ebay.service import get_publish_service

WEBHOOK_SECRET = "whsec_test_secret"
USER = {"X-User-Id": "user-1"}

DRAFT = {
    "listing_id": "listing-1",
    "title": "Pendleton Wool Board Shirt",
    "description": "Size M, excellent condition.",
    "price": 65.0,
    "category_id": "57990",
    "image_urls": ["https://img.example.com/shirt.jpg"],
}


def sign(payload: bytes, secret: str = WEBHOOK_SECRET) -> str:
    timestamp = int(time.time())
    signed = f"{timestamp}.{payload.decode()}".encode()
    signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


class StubPublishService:
    def __init__(self, error=None):
        self.error = error
        self.published = []

    async def publish(self, user_id, draft):
        if self.error:
            raise self.error
        self.published.append((user_id, draft.listing_id))
        return PublishResult(
            success=True,
            listing_id="110554433221",
            trace_id="trace-1",
            attempted_at=datetime.now(UTC),
        )

    async def history(self, user_id, listing_id):
        return []


@pytest.fixture
def app():
    return create_app()


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


class TestHealthEndpoints:
    """Tests for health and readiness."""

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_ready(self, client):
        response = client.get("/ready")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ready"
        assert body["ebay_configured"] is True
        assert body["billing_configured"] is True


class TestStripeWebhook:
    """Tests for the Stripe webhook endpoint."""

    def test_missing_signature(self, client):
        response = client.post("/billing/stripe/webhook", content=b"{}")

        assert response.status_code == 400

    def test_invalid_signature(self, client):
        payload = json.dumps({"id": "evt_1", "type": "customer.created"}).encode()

        response = client.post(
            "/billing/stripe/webhook",
            content=payload,
            headers={"Stripe-Signature": sign(payload, "whsec_wrong")},
        )

        assert response.status_code == 400

    def test_valid_event_then_replay(self, client):
        """Test a verified event is processed once and replays are acknowledged."""
        payload = json.dumps(
            {
                "id": "evt_api_1",
                "object": "event",
                "type": "customer.created",
                "data": {"object": {"id": "cus_1", "object": "customer"}},
            }
        ).encode()
        headers = {"Stripe-Signature": sign(payload)}

        first = client.post("/billing/stripe/webhook", content=payload, headers=headers)
        second = client.post("/billing/stripe/webhook", content=payload, headers=headers)

        assert first.status_code == 200
        assert first.json() == {"received": True}
        assert second.status_code == 200
        assert second.json() == {"received": True, "idempotent": True}

    def test_processing_failure_returns_500(self, app, client):
        class FailingIngestor:
            async def mark_webhook_processed(self, event_id, event_type=None):
                return False

            async def process_event(self, event):
                raise RuntimeError("database down")

        app.dependency_overrides[get_billing_event_ingestor] = lambda: FailingIngestor()
        payload = json.dumps(
            {"id": "evt_api_2", "object": "event", "type": "invoice.payment_failed", "data": {"object": {}}}
        ).encode()

        response = client.post(
            "/billing/stripe/webhook",
            content=payload,
            headers={"Stripe-Signature": sign(payload)},
        )

        assert response.status_code == 500


class TestBillingRoutes:
    """Tests for the user-facing billing routes."""

    def test_status_requires_user(self, client):
        assert client.get("/billing/status").status_code == 401

    def test_status_for_new_user(self, client):
        response = client.get("/billing/status", headers=USER)

        assert response.status_code == 200
        body = response.json()
        assert body["premium"] is False
        assert body["tier"] == "free"
        assert body["trial"]["granted"] is False
        assert body["can_direct_publish"] == {"allowed": False, "reason": "upgrade_required"}


class TestEbayRoutes:
    """Tests for the eBay routes."""

    def test_account_not_connected(self, client):
        response = client.get("/ebay/account", headers=USER)

        assert response.status_code == 200
        assert response.json()["connected"] is False

    def test_oauth_start(self, client):
        response = client.get("/ebay/oauth/start", headers=USER)

        assert response.status_code == 200
        body = response.json()
        assert len(body["state"]) == 64
        assert body["auth_url"].startswith("https://auth.sandbox.ebay.com/oauth2/authorize?")

    def test_oauth_callback_unknown_state(self, client):
        response = client.get("/ebay/oauth/callback", params={"code": "c", "state": "0" * 64})

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == ErrorCode.OAUTH_STATE_INVALID.value

    def test_oauth_callback_declined(self, client):
        response = client.get("/ebay/oauth/callback", params={"error": "access_denied"})

        assert response.status_code == 400

    def test_location_round_trip(self, client):
        assert client.get("/ebay/location", headers=USER).status_code == 404

        put = client.put(
            "/ebay/location",
            headers=USER,
            json={"country": "US", "postal_code": "97201", "city": "Portland", "state_or_province": "OR"},
        )
        get = client.get("/ebay/location", headers=USER)

        assert put.status_code == 200
        assert get.status_code == 200
        assert get.json()["postal_code"] == "97201"

    def test_publish(self, app, client):
        service = StubPublishService()
        app.dependency_overrides[get_publish_service] = lambda: service

        response = client.post("/ebay/listings/listing-1/publish", headers=USER, json=DRAFT)

        assert response.status_code == 200
        assert response.json()["listing_id"] == "110554433221"
        assert service.published == [("user-1", "listing-1")]

    def test_publish_listing_id_mismatch(self, app, client):
        app.dependency_overrides[get_publish_service] = lambda: StubPublishService()

        response = client.post("/ebay/listings/other/publish", headers=USER, json=DRAFT)

        assert response.status_code == 400

    def test_publish_requires_upgrade(self, app, client):
        app.dependency_overrides[get_publish_service] = lambda: StubPublishService(
            ValidationFault(ErrorCode.UPGRADE_REQUIRED)
        )

        response = client.post("/ebay/listings/listing-1/publish", headers=USER, json=DRAFT)

        assert response.status_code == 402
        assert response.json()["detail"] == {
            "code": "UPGRADE_REQUIRED",
            "message": "Upgrade to premium to publish directly to eBay",
            "action": "none",
        }

    def test_publish_requires_user(self, client):
        response = client.post("/ebay/listings/listing-1/publish", json=DRAFT)

        assert response.status_code == 401

    def test_publish_rejects_invalid_draft(self, app, client):
        app.dependency_overrides[get_publish_service] = lambda: StubPublishService()

        response = client.post(
            "/ebay/listings/listing-1/publish",
            headers=USER,
            json={**DRAFT, "title": "x" * 81},
        )

        assert response.status_code == 422

    def test_publish_rejects_draft_without_images(self, app, client):
        service = StubPublishService()
        app.dependency_overrides[get_publish_service] = lambda: service

        response = client.post(
            "/ebay/listings/listing-1/publish",
            headers=USER,
            json={**DRAFT, "image_urls": []},
        )

        assert response.status_code == 422
        assert service.published == []

    def test_disconnect_drops_cached_policies(self, app, client):
        class StubAuth:
            async def disconnect(self, user_id):
                return True

        class StubPolicies:
            def __init__(self):
                self.invalidated = []

            def invalidate(self, user_id):
                self.invalidated.append(user_id)

        policies = StubPolicies()
        app.dependency_overrides[get_auth_service] = lambda: StubAuth()
        app.dependency_overrides[get_policy_service] = lambda: policies

        response = client.delete("/ebay/account", headers=USER)

        assert response.status_code == 200
        assert response.json() == {"disconnected": True}
        assert policies.invalidated == ["user-1"]
