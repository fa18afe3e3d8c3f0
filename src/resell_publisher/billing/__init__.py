"""Billing: Stripe webhook ingestion, checkout and customer portal."""

from resell_publisher.billing.repository import (
    WebhookEventRepository,
    get_webhook_event_repository,
)
from resell_publisher.billing.service import (
    BillingEventIngestor,
    BillingService,
    build_subscription_record,
    get_billing_event_ingestor,
    get_billing_service,
)
from resell_publisher.billing.stripe_gateway import StripeGateway, get_stripe_gateway

__all__ = [
    # Repository
    "WebhookEventRepository",
    "get_webhook_event_repository",
    # Service
    "BillingEventIngestor",
    "BillingService",
    "build_subscription_record",
    "get_billing_event_ingestor",
    "get_billing_service",
    # Gateway
    "StripeGateway",
    "get_stripe_gateway",
]
