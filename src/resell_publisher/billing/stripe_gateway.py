"""Async facade over the synchronous Stripe SDK.

Network calls run in worker threads via ``asyncio.to_thread`` so they never
block the event loop. The API key is passed per call; the SDK's global
``stripe.api_key`` is left untouched.
"""

import asyncio
import logging
from typing import Any

import stripe

from resell_publisher.config import Settings, get_settings
from resell_publisher.ebay.errors import ConfigFault, ErrorCode, PublisherError

logger = logging.getLogger(__name__)


def stripe_field(obj: Any, name: str) -> Any:
    """Read a field from a Stripe object or a plain dict, None if absent.

    Item access is used rather than attributes since names like ``items``
    collide with mapping methods on Stripe objects.
    """
    if obj is None:
        return None
    try:
        return obj[name]
    except (KeyError, TypeError):
        return None


def stripe_id(value: Any) -> str | None:
    """Id of an expandable field, which may be an id string or an object."""
    if value is None or isinstance(value, str):
        return value
    return stripe_field(value, "id")


def search_literal(value: str) -> str:
    """Quote a value for the Stripe search query language."""
    escaped = value.replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


class StripeGateway:
    """Thin async wrapper around the Stripe operations billing needs."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()

    def _require_configured(self) -> str:
        if not self._settings.stripe_configured:
            raise ConfigFault(ErrorCode.BILLING_NOT_CONFIGURED)
        return self._settings.stripe_secret_key

    async def _call(self, func: Any, /, **kwargs: Any) -> Any:
        api_key = self._require_configured()
        try:
            return await asyncio.to_thread(func, api_key=api_key, **kwargs)
        except stripe.StripeError as e:
            logger.error("Stripe request failed: %s (code=%s)", type(e).__name__, e.code)
            raise PublisherError(ErrorCode.BILLING_PROVIDER_ERROR, action="retry") from e

    def construct_event(self, payload: bytes, signature: str) -> Any:
        """Verify a webhook signature and parse the event.

        Args:
            payload: Raw request body, exactly as received.
            signature: Value of the ``Stripe-Signature`` header.

        Returns:
            The verified Stripe event.

        Raises:
            ConfigFault: If no webhook secret is configured.
            stripe.SignatureVerificationError: If the signature does not match.
            ValueError: If the payload is not valid JSON.
        """
        if not self._settings.stripe_webhook_secret:
            raise ConfigFault(ErrorCode.BILLING_NOT_CONFIGURED)
        return stripe.Webhook.construct_event(
            payload,
            signature,
            self._settings.stripe_webhook_secret,
        )

    async def retrieve_subscription(self, subscription_id: str) -> Any:
        return await self._call(stripe.Subscription.retrieve, id=subscription_id)

    async def retrieve_customer(self, customer_id: str) -> Any:
        return await self._call(stripe.Customer.retrieve, id=customer_id)

    async def find_customer(self, user_id: str) -> Any | None:
        """Find the customer created for a user, by ``metadata['user_id']``."""
        result = await self._call(
            stripe.Customer.search,
            query=f"metadata['user_id']:{search_literal(user_id)}",
            limit=1,
        )
        data = stripe_field(result, "data") or []
        return data[0] if data else None

    async def find_or_create_customer(self, user_id: str, email: str | None = None) -> Any:
        """Reuse the user's Stripe customer, creating one on first checkout."""
        customer = await self.find_customer(user_id)
        if customer is not None:
            return customer
        params: dict[str, Any] = {"metadata": {"user_id": user_id}}
        if email:
            params["email"] = email
        customer = await self._call(stripe.Customer.create, **params)
        logger.info("Created Stripe customer for user %s", user_id)
        return customer

    async def create_checkout_session(self, user_id: str, customer_id: str) -> Any:
        """Create a subscription checkout session for the premium price."""
        return await self._call(
            stripe.checkout.Session.create,
            mode="subscription",
            customer=customer_id,
            line_items=[{"price": self._settings.stripe_premium_price_id, "quantity": 1}],
            subscription_data={"metadata": {"user_id": user_id}},
            metadata={"user_id": user_id, "tier": "premium"},
            success_url=self._settings.stripe_success_url,
            cancel_url=self._settings.stripe_cancel_url,
        )

    async def create_portal_session(self, customer_id: str) -> Any:
        return await self._call(
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=self._settings.stripe_portal_return_url,
        )


# Global gateway instance
_stripe_gateway: StripeGateway | None = None


def get_stripe_gateway() -> StripeGateway:
    """Get the global Stripe gateway instance."""
    global _stripe_gateway
    if _stripe_gateway is None:
        _stripe_gateway = StripeGateway()
    return _stripe_gateway
