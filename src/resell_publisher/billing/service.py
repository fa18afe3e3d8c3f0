"""Stripe webhook ingestion and checkout/portal session helpers."""

import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

from resell_publisher.billing.repository import (
    WebhookEventRepository,
    get_webhook_event_repository,
)
from resell_publisher.billing.stripe_gateway import (
    StripeGateway,
    get_stripe_gateway,
    stripe_field,
    stripe_id,
)
from resell_publisher.ebay.errors import ErrorCode, ValidationFault
from resell_publisher.entitlements import (
    SubscriptionRecord,
    SubscriptionRepository,
    SubscriptionTier,
    get_subscription_repository,
)
from resell_publisher.entitlements.models import ACTIVE_STATUSES, GRACE_STATUS

logger = logging.getLogger(__name__)

# Statuses that keep the premium tier on the record
PREMIUM_STATUSES = ACTIVE_STATUSES | {GRACE_STATUS}


def _timestamp(value: Any) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), UTC)


def _first_item(subscription: Any) -> Any:
    items = stripe_field(stripe_field(subscription, "items"), "data") or []
    return items[0] if items else None


def build_subscription_record(
    user_id: str,
    subscription: Any,
    invoice_status: str | None = None,
) -> SubscriptionRecord:
    """Map a Stripe subscription onto the stored record.

    Newer Stripe API versions report the billing period on subscription
    items instead of the subscription, so both places are read.

    Args:
        user_id: The application user ID.
        subscription: Stripe subscription object.
        invoice_status: Status of the invoice that triggered the update.

    Returns:
        The record to upsert.
    """
    status = stripe_field(subscription, "status")
    item = _first_item(subscription)
    period_end = stripe_field(subscription, "current_period_end") or stripe_field(
        item, "current_period_end"
    )

    return SubscriptionRecord(
        user_id=user_id,
        tier=SubscriptionTier.PREMIUM if status in PREMIUM_STATUSES else SubscriptionTier.FREE,
        status=status,
        provider="stripe",
        stripe_customer_id=stripe_id(stripe_field(subscription, "customer")),
        stripe_subscription_id=stripe_field(subscription, "id"),
        price_id=stripe_field(stripe_field(item, "price"), "id"),
        current_period_end=_timestamp(period_end),
        cancel_at_period_end=bool(stripe_field(subscription, "cancel_at_period_end")),
        canceled_at=_timestamp(stripe_field(subscription, "canceled_at")),
        latest_invoice_status=invoice_status,
    )


def invoice_subscription_id(invoice: Any) -> str | None:
    """Subscription id of an invoice, from either API version's layout."""
    direct = stripe_id(stripe_field(invoice, "subscription"))
    if direct:
        return direct
    details = stripe_field(stripe_field(invoice, "parent"), "subscription_details")
    return stripe_id(stripe_field(details, "subscription"))


class BillingEventIngestor:
    """Applies Stripe webhook events to subscription records.

    Event ids are recorded on first sighting, before processing, so a
    redelivered event is acknowledged without being applied again.
    """

    def __init__(
        self,
        gateway: StripeGateway | None = None,
        subscription_repo: SubscriptionRepository | None = None,
        event_repo: WebhookEventRepository | None = None,
    ) -> None:
        """Initialize the ingestor.

        Args:
            gateway: Stripe gateway (uses default if not provided).
            subscription_repo: Subscription repository (uses default if not provided).
            event_repo: Processed event repository (uses default if not provided).
        """
        self._gateway = gateway or get_stripe_gateway()
        self._subscription_repo = subscription_repo or get_subscription_repository()
        self._event_repo = event_repo or get_webhook_event_repository()
        self._handlers: dict[str, Callable[[Any], Awaitable[None]]] = {
            "checkout.session.completed": self._handle_checkout_completed,
            "customer.subscription.created": self._handle_subscription_changed,
            "customer.subscription.updated": self._handle_subscription_changed,
            "customer.subscription.deleted": self._handle_subscription_changed,
            "invoice.payment_succeeded": self._handle_invoice,
            "invoice.payment_failed": self._handle_invoice,
        }

    async def mark_webhook_processed(self, event_id: str, event_type: str | None = None) -> bool:
        """Record an event id and report whether it had been seen before.

        Args:
            event_id: Stripe event id.
            event_type: Stripe event type.

        Returns:
            True if the event was already processed (skip it), False if this
            call recorded it first (process it).
        """
        if await self._event_repo.exists(event_id):
            logger.info("Stripe event %s already processed", event_id)
            return True
        inserted = await self._event_repo.insert_if_absent(event_id, event_type)
        if not inserted:
            logger.info("Stripe event %s recorded concurrently", event_id)
        return not inserted

    async def process_event(self, event: Any) -> None:
        """Dispatch a verified Stripe event to its handler.

        Args:
            event: Verified Stripe event.
        """
        event_type = stripe_field(event, "type")
        logger.info("Processing Stripe event %s (type=%s)", stripe_field(event, "id"), event_type)

        handler = self._handlers.get(event_type)
        if handler is None:
            logger.debug("Ignoring Stripe event type: %s", event_type)
            return
        await handler(stripe_field(stripe_field(event, "data"), "object"))

    async def resolve_user_id(self, subscription: Any) -> str | None:
        """Find the application user a subscription belongs to.

        Checks the subscription's metadata first, then the customer's.
        """
        user_id = stripe_field(stripe_field(subscription, "metadata"), "user_id")
        if user_id:
            return user_id

        customer_id = stripe_id(stripe_field(subscription, "customer"))
        if not customer_id:
            return None
        customer = await self._gateway.retrieve_customer(customer_id)
        if stripe_field(customer, "deleted"):
            return None
        return stripe_field(stripe_field(customer, "metadata"), "user_id")

    # Event handlers

    async def _handle_checkout_completed(self, session: Any) -> None:
        if stripe_field(session, "mode") != "subscription":
            return
        subscription_id = stripe_id(stripe_field(session, "subscription"))
        if not subscription_id:
            logger.warning("Checkout session completed without a subscription")
            return

        subscription = await self._gateway.retrieve_subscription(subscription_id)
        user_id = stripe_field(stripe_field(session, "metadata"), "user_id")
        user_id = user_id or await self.resolve_user_id(subscription)
        await self._apply(user_id, subscription)

    async def _handle_subscription_changed(self, subscription: Any) -> None:
        await self._apply(await self.resolve_user_id(subscription), subscription)

    async def _handle_invoice(self, invoice: Any) -> None:
        subscription_id = invoice_subscription_id(invoice)
        if not subscription_id:
            logger.debug("Invoice is not tied to a subscription, skipping")
            return
        subscription = await self._gateway.retrieve_subscription(subscription_id)
        await self._apply(
            await self.resolve_user_id(subscription),
            subscription,
            invoice_status=stripe_field(invoice, "status"),
        )

    async def _apply(
        self,
        user_id: str | None,
        subscription: Any,
        invoice_status: str | None = None,
    ) -> None:
        if not user_id:
            logger.warning(
                "No user id for Stripe subscription %s, skipping",
                stripe_field(subscription, "id"),
            )
            return
        record = build_subscription_record(user_id, subscription, invoice_status)
        await self._subscription_repo.upsert(record)


class BillingService:
    """Creates Stripe checkout and customer portal sessions for users."""

    def __init__(
        self,
        gateway: StripeGateway | None = None,
        subscription_repo: SubscriptionRepository | None = None,
    ) -> None:
        self._gateway = gateway or get_stripe_gateway()
        self._subscription_repo = subscription_repo or get_subscription_repository()

    async def create_checkout_url(self, user_id: str, email: str | None = None) -> str:
        """Start a premium subscription checkout.

        Args:
            user_id: The application user ID.
            email: Optional email to prefill on a new customer.

        Returns:
            The hosted checkout URL.
        """
        customer = await self._gateway.find_or_create_customer(user_id, email)
        session = await self._gateway.create_checkout_session(
            user_id, stripe_field(customer, "id")
        )
        logger.info("Created checkout session for user %s", user_id)
        return stripe_field(session, "url")

    async def create_portal_url(self, user_id: str) -> str:
        """Open the customer portal for a user's existing Stripe customer.

        Raises:
            ValidationFault: If the user has never started a checkout.
        """
        record = await self._subscription_repo.get(user_id)
        customer_id = record.stripe_customer_id if record else None
        if not customer_id:
            customer = await self._gateway.find_customer(user_id)
            if customer is None:
                raise ValidationFault(ErrorCode.BILLING_CUSTOMER_NOT_FOUND)
            customer_id = stripe_field(customer, "id")

        portal = await self._gateway.create_portal_session(customer_id)
        return stripe_field(portal, "url")


# Global service instances
_ingestor: BillingEventIngestor | None = None
_billing_service: BillingService | None = None


def get_billing_event_ingestor() -> BillingEventIngestor:
    """Get the global webhook ingestor instance."""
    global _ingestor
    if _ingestor is None:
        _ingestor = BillingEventIngestor()
    return _ingestor


def get_billing_service() -> BillingService:
    """Get the global billing service instance."""
    global _billing_service
    if _billing_service is None:
        _billing_service = BillingService()
    return _billing_service
