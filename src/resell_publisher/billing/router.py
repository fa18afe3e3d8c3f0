"""FastAPI router for billing: Stripe webhook, checkout and portal."""

import logging
from typing import Annotated, Any

import stripe
from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from pydantic import BaseModel

from resell_publisher.api.dependencies import get_current_user_id, to_http_exception
from resell_publisher.billing.service import (
    BillingEventIngestor,
    BillingService,
    get_billing_event_ingestor,
    get_billing_service,
)
from resell_publisher.billing.stripe_gateway import StripeGateway, get_stripe_gateway, stripe_field
from resell_publisher.ebay.errors import PublisherError
from resell_publisher.entitlements import (
    BillingStatus,
    EntitlementLedger,
    get_entitlement_ledger,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["Billing"])

UserId = Annotated[str, Depends(get_current_user_id)]


class CheckoutRequest(BaseModel):
    email: str | None = None


class SessionUrl(BaseModel):
    url: str


@router.post("/stripe/webhook")
async def stripe_webhook(
    request: Request,
    gateway: Annotated[StripeGateway, Depends(get_stripe_gateway)],
    ingestor: Annotated[BillingEventIngestor, Depends(get_billing_event_ingestor)],
    stripe_signature: Annotated[str | None, Header(alias="Stripe-Signature")] = None,
) -> dict[str, Any]:
    """Receive Stripe webhook events.

    The signature is verified against the raw body before anything is
    parsed. Redelivered events are acknowledged without reprocessing.

    Args:
        request: FastAPI request object.
        gateway: Stripe gateway instance.
        ingestor: Webhook ingestor instance.
        stripe_signature: Value of the Stripe-Signature header.

    Returns:
        Receipt acknowledgment.

    Raises:
        HTTPException: 400 on a missing or invalid signature, 500 if
            processing fails.
    """
    if not stripe_signature:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing Stripe signature",
        )

    payload = await request.body()
    try:
        event = gateway.construct_event(payload, stripe_signature)
    except PublisherError as e:
        raise to_http_exception(e) from None
    except (stripe.SignatureVerificationError, ValueError) as e:
        logger.warning("Stripe webhook signature verification failed: %s", type(e).__name__)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid signature",
        ) from None

    event_id = stripe_field(event, "id")
    event_type = stripe_field(event, "type")
    if await ingestor.mark_webhook_processed(event_id, event_type):
        return {"received": True, "idempotent": True}

    try:
        await ingestor.process_event(event)
    except Exception:
        logger.exception("Stripe webhook processing failed for event %s", event_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        ) from None

    return {"received": True}


@router.post("/checkout")
async def create_checkout(
    user_id: UserId,
    service: Annotated[BillingService, Depends(get_billing_service)],
    body: CheckoutRequest | None = None,
) -> SessionUrl:
    """Create a Stripe checkout session for the premium subscription."""
    try:
        url = await service.create_checkout_url(user_id, body.email if body else None)
    except PublisherError as e:
        raise to_http_exception(e) from None
    return SessionUrl(url=url)


@router.post("/portal")
async def create_portal(
    user_id: UserId,
    service: Annotated[BillingService, Depends(get_billing_service)],
) -> SessionUrl:
    """Create a Stripe customer portal session."""
    try:
        url = await service.create_portal_url(user_id)
    except PublisherError as e:
        raise to_http_exception(e) from None
    return SessionUrl(url=url)


@router.get("/status")
async def billing_status(
    user_id: UserId,
    ledger: Annotated[EntitlementLedger, Depends(get_entitlement_ledger)],
) -> BillingStatus:
    """Premium status, free trial and direct publish eligibility."""
    return await ledger.get_billing_status(user_id)
