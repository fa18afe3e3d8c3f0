"""Tests for Stripe webhook ingestion and billing sessions."""

import asyncio
from datetime import UTC, datetime

import pytest
import stripe

from resell_publisher.billing import (
    BillingEventIngestor,
    BillingService,
    WebhookEventRepository,
    build_subscription_record,
)
from resell_publisher.billing.service import invoice_subscription_id
from resell_publisher.billing.stripe_gateway import StripeGateway, search_literal
from resell_publisher.ebay.errors import ErrorCode, ValidationFault
from resell_publisher.entitlements import (
    SubscriptionRecord,
    SubscriptionRepository,
    SubscriptionTier,
)

PERIOD_END = 1767225600  # 2026-01-01T00:00:00Z


def make_subscription(status="active", user_id="user-1", **overrides):
    subscription = {
        "id": "sub_123",
        "object": "subscription",
        "status": status,
        "customer": "cus_123",
        "metadata": {"user_id": user_id} if user_id else {},
        "current_period_end": PERIOD_END,
        "cancel_at_period_end": False,
        "canceled_at": None,
        "items": {"data": [{"price": {"id": "price_premium"}}]},
    }
    subscription.update(overrides)
    return subscription


def make_event(event_type, obj, event_id="evt_1"):
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


class FakeGateway:
    """In-memory stand-in for the Stripe gateway."""

    def __init__(self, subscriptions=None, customers=None):
        self.subscriptions = subscriptions or {}
        self.customers = customers or {}
        self.created_customers = []
        self.checkout_sessions = []
        self.portal_sessions = []

    async def retrieve_subscription(self, subscription_id):
        return self.subscriptions[subscription_id]

    async def retrieve_customer(self, customer_id):
        return self.customers[customer_id]

    async def find_customer(self, user_id):
        for customer in self.customers.values():
            if customer.get("metadata", {}).get("user_id") == user_id:
                return customer
        return None

    async def find_or_create_customer(self, user_id, email=None):
        customer = await self.find_customer(user_id)
        if customer is None:
            customer = {"id": f"cus_new_{user_id}", "metadata": {"user_id": user_id}}
            self.customers[customer["id"]] = customer
            self.created_customers.append(customer)
        return customer

    async def create_checkout_session(self, user_id, customer_id):
        self.checkout_sessions.append((user_id, customer_id))
        return {"id": "cs_1", "url": "https://checkout.stripe.com/c/pay/cs_1"}

    async def create_portal_session(self, customer_id):
        self.portal_sessions.append(customer_id)
        return {"id": "bps_1", "url": "https://billing.stripe.com/p/session/bps_1"}


class TestBuildSubscriptionRecord:
    """Tests for mapping Stripe subscriptions to records."""

    def test_active_subscription(self):
        record = build_subscription_record("user-1", make_subscription())

        assert record.tier == SubscriptionTier.PREMIUM
        assert record.status == "active"
        assert record.stripe_customer_id == "cus_123"
        assert record.stripe_subscription_id == "sub_123"
        assert record.price_id == "price_premium"
        assert record.current_period_end == datetime(2026, 1, 1, tzinfo=UTC)
        assert record.latest_invoice_status is None

    @pytest.mark.parametrize("status", ["trialing", "past_due"])
    def test_premium_statuses(self, status):
        assert build_subscription_record("user-1", make_subscription(status)).tier == SubscriptionTier.PREMIUM

    @pytest.mark.parametrize("status", ["canceled", "incomplete_expired", "unpaid"])
    def test_free_statuses(self, status):
        assert build_subscription_record("user-1", make_subscription(status)).tier == SubscriptionTier.FREE

    def test_period_end_from_item(self):
        """Test newer API versions that report the period on the item."""
        subscription = make_subscription(
            current_period_end=None,
            items={"data": [{"price": {"id": "price_premium"}, "current_period_end": PERIOD_END}]},
        )

        record = build_subscription_record("user-1", subscription)

        assert record.current_period_end == datetime(2026, 1, 1, tzinfo=UTC)

    def test_cancellation_fields(self):
        subscription = make_subscription(
            "canceled",
            cancel_at_period_end=True,
            canceled_at=PERIOD_END,
            customer={"id": "cus_obj", "object": "customer"},
        )

        record = build_subscription_record("user-1", subscription, invoice_status="paid")

        assert record.cancel_at_period_end
        assert record.canceled_at == datetime(2026, 1, 1, tzinfo=UTC)
        assert record.stripe_customer_id == "cus_obj"
        assert record.latest_invoice_status == "paid"

    def test_invoice_subscription_id_layouts(self):
        assert invoice_subscription_id({"subscription": "sub_1"}) == "sub_1"
        assert invoice_subscription_id(
            {"parent": {"subscription_details": {"subscription": "sub_2"}}}
        ) == "sub_2"
        assert invoice_subscription_id({"subscription": None}) is None


@pytest.mark.usefixtures("db_session")
class TestMarkWebhookProcessed:
    """Tests for webhook idempotency."""

    @pytest.fixture
    def ingestor(self):
        return BillingEventIngestor(
            gateway=FakeGateway(),
            subscription_repo=SubscriptionRepository(),
            event_repo=WebhookEventRepository(),
        )

    @pytest.mark.asyncio
    async def test_first_sighting_then_replay(self, ingestor):
        assert await ingestor.mark_webhook_processed("evt_1", "invoice.paid") is False
        assert await ingestor.mark_webhook_processed("evt_1", "invoice.paid") is True
        assert await ingestor.mark_webhook_processed("evt_2") is False

    @pytest.mark.asyncio
    async def test_concurrent_deliveries_process_once(self, ingestor):
        results = await asyncio.gather(
            *(ingestor.mark_webhook_processed("evt_dup") for _ in range(10))
        )

        assert results.count(False) == 1

    @pytest.mark.asyncio
    async def test_repository_insert_if_absent(self):
        repo = WebhookEventRepository()

        assert await repo.insert_if_absent("evt_1", "checkout.session.completed") is True
        assert await repo.insert_if_absent("evt_1") is False
        assert await repo.exists("evt_1")
        assert not await repo.exists("evt_2")


@pytest.mark.usefixtures("db_session")
class TestProcessEvent:
    """Tests for dispatching Stripe events to subscription upserts."""

    @pytest.fixture
    def gateway(self):
        return FakeGateway(
            subscriptions={"sub_123": make_subscription("past_due")},
            customers={"cus_123": {"id": "cus_123", "metadata": {"user_id": "user-1"}}},
        )

    @pytest.fixture
    def ingestor(self, gateway):
        return BillingEventIngestor(
            gateway=gateway,
            subscription_repo=SubscriptionRepository(),
            event_repo=WebhookEventRepository(),
        )

    @pytest.mark.asyncio
    async def test_subscription_updated(self, ingestor):
        await ingestor.process_event(
            make_event("customer.subscription.updated", make_subscription("active"))
        )

        record = await SubscriptionRepository().get("user-1")
        assert record.tier == SubscriptionTier.PREMIUM
        assert record.status == "active"
        assert record.price_id == "price_premium"

    @pytest.mark.asyncio
    async def test_subscription_created(self, ingestor):
        await ingestor.process_event(
            make_event("customer.subscription.created", make_subscription("trialing"))
        )

        assert (await SubscriptionRepository().get("user-1")).status == "trialing"

    @pytest.mark.asyncio
    async def test_user_resolved_from_customer(self, ingestor):
        """Test subscriptions without metadata fall back to the customer."""
        await ingestor.process_event(
            make_event("customer.subscription.updated", make_subscription("active", user_id=None))
        )

        assert (await SubscriptionRepository().get("user-1")) is not None

    @pytest.mark.asyncio
    async def test_unresolvable_user_skipped(self, ingestor, gateway):
        gateway.customers["cus_123"] = {"id": "cus_123", "metadata": {}}

        await ingestor.process_event(
            make_event("customer.subscription.updated", make_subscription("active", user_id=None))
        )

        assert await SubscriptionRepository().get("user-1") is None

    @pytest.mark.asyncio
    async def test_subscription_deleted_downgrades(self, ingestor):
        await ingestor.process_event(
            make_event("customer.subscription.updated", make_subscription("active"))
        )
        await ingestor.process_event(
            make_event(
                "customer.subscription.deleted",
                make_subscription("canceled", canceled_at=PERIOD_END),
                event_id="evt_2",
            )
        )

        record = await SubscriptionRepository().get("user-1")
        assert record.tier == SubscriptionTier.FREE
        assert record.status == "canceled"

    @pytest.mark.asyncio
    async def test_invoice_payment_failed(self, ingestor):
        invoice = {"id": "in_1", "object": "invoice", "status": "open", "subscription": "sub_123"}

        await ingestor.process_event(make_event("invoice.payment_failed", invoice))

        record = await SubscriptionRepository().get("user-1")
        assert record.status == "past_due"
        assert record.latest_invoice_status == "open"

    @pytest.mark.asyncio
    async def test_invoice_payment_succeeded(self, ingestor, gateway):
        gateway.subscriptions["sub_123"] = make_subscription("active")
        invoice = {"id": "in_2", "status": "paid", "subscription": "sub_123"}

        await ingestor.process_event(make_event("invoice.payment_succeeded", invoice))

        record = await SubscriptionRepository().get("user-1")
        assert record.status == "active"
        assert record.latest_invoice_status == "paid"

    @pytest.mark.asyncio
    async def test_invoice_without_subscription_ignored(self, ingestor):
        await ingestor.process_event(
            make_event("invoice.payment_succeeded", {"id": "in_3", "status": "paid"})
        )

        assert await SubscriptionRepository().get("user-1") is None

    @pytest.mark.asyncio
    async def test_checkout_completed(self, ingestor):
        session = {
            "id": "cs_1",
            "mode": "subscription",
            "subscription": "sub_123",
            "customer": "cus_123",
            "metadata": {"user_id": "user-1", "tier": "premium"},
        }

        await ingestor.process_event(make_event("checkout.session.completed", session))

        record = await SubscriptionRepository().get("user-1")
        assert record.stripe_subscription_id == "sub_123"
        assert record.status == "past_due"

    @pytest.mark.asyncio
    async def test_one_time_checkout_ignored(self, ingestor):
        session = {"id": "cs_2", "mode": "payment", "metadata": {"user_id": "user-1"}}

        await ingestor.process_event(make_event("checkout.session.completed", session))

        assert await SubscriptionRepository().get("user-1") is None

    @pytest.mark.asyncio
    async def test_unknown_event_ignored(self, ingestor):
        await ingestor.process_event(make_event("customer.created", {"id": "cus_9"}))

        assert await SubscriptionRepository().get("user-1") is None


@pytest.mark.usefixtures("db_session")
class TestBillingService:
    """Tests for checkout and portal sessions."""

    @pytest.mark.asyncio
    async def test_checkout_creates_customer_once(self):
        gateway = FakeGateway()
        service = BillingService(gateway=gateway, subscription_repo=SubscriptionRepository())

        url = await service.create_checkout_url("user-1")
        await service.create_checkout_url("user-1")

        assert url == "https://checkout.stripe.com/c/pay/cs_1"
        assert len(gateway.created_customers) == 1
        assert gateway.checkout_sessions == [
            ("user-1", "cus_new_user-1"),
            ("user-1", "cus_new_user-1"),
        ]

    @pytest.mark.asyncio
    async def test_portal_uses_stored_customer(self):
        gateway = FakeGateway()
        await SubscriptionRepository().upsert(
            SubscriptionRecord(user_id="user-1", status="active", stripe_customer_id="cus_stored")
        )
        service = BillingService(gateway=gateway, subscription_repo=SubscriptionRepository())

        url = await service.create_portal_url("user-1")

        assert url == "https://billing.stripe.com/p/session/bps_1"
        assert gateway.portal_sessions == ["cus_stored"]

    @pytest.mark.asyncio
    async def test_portal_searches_customer(self):
        gateway = FakeGateway(customers={"cus_9": {"id": "cus_9", "metadata": {"user_id": "user-1"}}})
        service = BillingService(gateway=gateway, subscription_repo=SubscriptionRepository())

        await service.create_portal_url("user-1")

        assert gateway.portal_sessions == ["cus_9"]

    @pytest.mark.asyncio
    async def test_portal_without_customer(self):
        service = BillingService(gateway=FakeGateway(), subscription_repo=SubscriptionRepository())

        with pytest.raises(ValidationFault) as exc_info:
            await service.create_portal_url("user-1")
        assert exc_info.value.code == ErrorCode.BILLING_CUSTOMER_NOT_FOUND.value


class TestStripeGateway:
    """Tests for the Stripe SDK facade."""

    def test_search_literal_escapes_quotes(self):
        assert search_literal("user-1") == "'user-1'"
        assert search_literal("o'brien") == "'o\\'brien'"
        assert search_literal("a\\' OR 'x") == "'a\\\\\\' OR \\'x'"

    @pytest.mark.asyncio
    async def test_find_customer_quotes_user_id(self, test_settings, monkeypatch):
        calls = []

        def fake_search(**kwargs):
            calls.append(kwargs)
            return {"data": [{"id": "cus_1"}]}

        monkeypatch.setattr(stripe.Customer, "search", fake_search)
        gateway = StripeGateway(settings=test_settings)

        customer = await gateway.find_customer("x' OR metadata['user_id']:'victim")

        assert customer == {"id": "cus_1"}
        assert calls == [
            {
                "api_key": "sk_test_dummy",
                "query": "metadata['user_id']:'x\\' OR metadata[\\'user_id\\']:\\'victim'",
                "limit": 1,
            }
        ]
