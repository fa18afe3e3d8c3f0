"""Publish pipeline: turns a listing draft into a live eBay listing.

The pipeline is a finite state machine that walks
``location -> inventory -> policies -> offer -> fees -> publish`` strictly in
order and ends in ``completed`` or ``failed``. A failing step aborts the run;
objects created by earlier steps are left in place and reused on retry. Only
``fees`` may fail without failing the run.
"""

import logging
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any

from pydantic import ValidationError

from resell_publisher.config import Settings, get_settings
from resell_publisher.ebay.auth import EbayAuthService, get_auth_service
from resell_publisher.ebay.client import EbayApiClient, get_ebay_client
from resell_publisher.ebay.errors import (
    ErrorCode,
    PublisherError,
    ValidationFault,
    from_api_error,
)
from resell_publisher.ebay.models import (
    CONDITION_MAP,
    ApiResponse,
    FeeAmount,
    ListingDraft,
    ListingFee,
    ListingFees,
    ListingPolicies,
    PublishResult,
    PublishStepName,
    RecoveryAction,
    SellerProfile,
)
from resell_publisher.ebay.policy import EbayPolicyService, get_policy_service
from resell_publisher.ebay.repository import SellerProfileRepository, get_profile_repository
from resell_publisher.ebay.trace import PublishTrace, generate_trace_id

logger = logging.getLogger(__name__)

INVENTORY_BASE = "/sell/inventory/v1"
CONTENT_LANGUAGE = "en-US"
SKU_PREFIX = "RSAI"
MAX_SKU_HEAD = 24
ADDRESS_INCOMPLETE_ERROR_ID = "2004"


class PublishState(str, Enum):
    """States of the publish state machine."""

    LOCATION = "location"
    INVENTORY = "inventory"
    POLICIES = "policies"
    OFFER = "offer"
    FEES = "fees"
    PUBLISH = "publish"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES = frozenset({PublishState.COMPLETED, PublishState.FAILED})


@dataclass
class PublishContext:
    """Data threaded through the steps of one publish attempt."""

    user_id: str
    draft: ListingDraft
    trace: PublishTrace
    access_token: str = field(default="", repr=False)
    sku: str | None = None
    merchant_location_key: str | None = None
    policies: ListingPolicies | None = None
    offer_id: str | None = None
    listing_id: str | None = None
    listing_url: str | None = None
    fees: ListingFees | None = None
    warnings: list[str] = field(default_factory=list)
    result: PublishResult | None = None


StepHandler = Callable[[PublishContext], Awaitable[None]]


def generate_sku(listing_id: str, now_ms: int | None = None) -> str:
    """Build a SKU from the local listing id and a base36 timestamp.

    Args:
        listing_id: Local listing id (a UUID in practice).
        now_ms: Millisecond timestamp (defaults to now).

    Returns:
        SKU like ``RSAI-1A2B3C4D-LX9K2M1``.
    """
    stamp = _to_base36(now_ms if now_ms is not None else int(time.time() * 1000))
    head = re.sub(r"[^A-Z0-9]", "", listing_id.split("-")[0].upper())[:MAX_SKU_HEAD]
    return f"{SKU_PREFIX}-{head}-{stamp}".upper()


def _to_base36(value: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    if value == 0:
        return "0"
    out = []
    while value:
        value, rem = divmod(value, 36)
        out.append(digits[rem])
    return "".join(reversed(out))


class PublishOrchestrator:
    """Runs the publish state machine for one draft at a time."""

    def __init__(
        self,
        client: EbayApiClient | None = None,
        auth_service: EbayAuthService | None = None,
        profile_repo: SellerProfileRepository | None = None,
        policy_service: EbayPolicyService | None = None,
        settings: Settings | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            client: eBay API client (uses default if not provided).
            auth_service: Auth service used to obtain access tokens.
            profile_repo: Seller profile repository for the location address.
            policy_service: Business policy lookup.
            settings: Application settings.
        """
        self._settings = settings or get_settings()
        self._client = client or get_ebay_client()
        self._auth = auth_service or get_auth_service()
        self._profile_repo = profile_repo or get_profile_repository()
        self._policy_service = policy_service or get_policy_service()

        # state -> (handler, next state on success)
        self._transitions: dict[PublishState, tuple[StepHandler, PublishState]] = {
            PublishState.LOCATION: (self.ensure_location, PublishState.INVENTORY),
            PublishState.INVENTORY: (self.upsert_inventory_item, PublishState.POLICIES),
            PublishState.POLICIES: (self.resolve_policies, PublishState.OFFER),
            PublishState.OFFER: (self.create_offer, PublishState.FEES),
            PublishState.FEES: (self.estimate_fees, PublishState.PUBLISH),
            PublishState.PUBLISH: (self.publish_offer, PublishState.COMPLETED),
        }

    async def run(
        self,
        user_id: str,
        draft: ListingDraft,
        trace_id: str | None = None,
    ) -> PublishResult:
        """Publish a draft.

        Args:
            user_id: The application user ID.
            draft: Platform-formatted listing draft.
            trace_id: Correlation id (a fresh one is generated if omitted).

        Returns:
            PublishResult; failures are returned with the failing step.
        """
        trace = PublishTrace(trace_id=trace_id or generate_trace_id())
        ctx = PublishContext(user_id=user_id, draft=draft, trace=trace)
        trace.log.info("Publishing listing %s", draft.listing_id)

        try:
            ctx.access_token = await self._auth.get_access_token(user_id)
        except PublisherError as e:
            trace.start(PublishStepName.LOCATION)
            return self._fail(ctx, PublishStepName.LOCATION, e)

        state = PublishState.LOCATION
        while state not in TERMINAL_STATES:
            state = await self.advance(ctx, state)
            if state == PublishState.FAILED:
                return ctx.result

        published_at = datetime.now(UTC)
        trace.log.info(
            "Publish complete listingId=%s offerId=%s sku=%s",
            ctx.listing_id,
            ctx.offer_id,
            ctx.sku,
        )
        return PublishResult(
            success=True,
            listing_id=ctx.listing_id,
            offer_id=ctx.offer_id,
            sku=ctx.sku,
            listing_url=ctx.listing_url,
            steps=trace.steps(),
            fees=ctx.fees,
            warnings=ctx.warnings,
            trace_id=trace.trace_id,
            attempted_at=trace.started_at,
            published_at=published_at,
        )

    async def advance(self, ctx: PublishContext, state: PublishState) -> PublishState:
        """Execute the step for ``state`` and return the next state.

        Args:
            ctx: The attempt's context.
            state: A non-terminal state.

        Returns:
            The next state, or FAILED (with ``ctx.result`` set).
        """
        handler, next_state = self._transitions[state]
        step = PublishStepName(state.value)
        ctx.trace.start(step)
        try:
            await handler(ctx)
        except PublisherError as e:
            self._fail(ctx, step, e)
            return PublishState.FAILED
        except Exception as e:
            # Fees are advisory and must never block the publish.
            if state != PublishState.FEES:
                raise
            ctx.warnings.append(ErrorCode.FEES_UNAVAILABLE.value)
            ctx.trace.skip(step, f"fees unavailable ({type(e).__name__})")
        return next_state

    # Steps

    async def ensure_location(self, ctx: PublishContext) -> None:
        """Make sure the seller's merchant location exists and is enabled."""
        key = self._settings.ebay_default_location_key
        path = f"{INVENTORY_BASE}/location/{key}"

        existing = await self._call(ctx, PublishStepName.LOCATION, "GET", path)
        if existing.success:
            self._require_enabled(existing)
            ctx.merchant_location_key = key
            ctx.trace.skip(
                PublishStepName.LOCATION,
                "location already exists",
                merchant_location_key=key,
            )
            return
        if existing.status_code != 404:
            raise from_api_error(
                ErrorCode.LOCATION_CREATE_FAILED,
                existing.status_code,
                existing.error,
            )

        profile = await self._profile_repo.get(ctx.user_id)
        address = self._location_address(profile)
        created = await self._call(
            ctx,
            PublishStepName.LOCATION,
            "POST",
            path,
            body={
                "name": "Resell Publisher default location",
                "location": {"address": address},
                "locationTypes": ["WAREHOUSE"],
                "merchantLocationStatus": "ENABLED",
            },
        )
        if not created.success:
            if created.error and created.error.ebay_error_id == ADDRESS_INCOMPLETE_ERROR_ID:
                raise ValidationFault(
                    ErrorCode.EBAY_ADDRESS_INCOMPLETE,
                    ebay_error_id=ADDRESS_INCOMPLETE_ERROR_ID,
                )
            raise from_api_error(
                ErrorCode.LOCATION_CREATE_FAILED,
                created.status_code,
                created.error,
            )

        verified = await self._call(ctx, PublishStepName.LOCATION, "GET", path)
        if not verified.success:
            raise from_api_error(
                ErrorCode.LOCATION_CREATE_FAILED,
                verified.status_code,
                verified.error,
            )
        self._require_enabled(verified)
        ctx.merchant_location_key = key
        ctx.trace.complete(PublishStepName.LOCATION, merchant_location_key=key)

    async def upsert_inventory_item(self, ctx: PublishContext) -> None:
        """Create or replace the inventory item for the draft's SKU."""
        draft = ctx.draft
        ctx.sku = draft.sku or generate_sku(draft.listing_id)

        product: dict[str, Any] = {
            "title": draft.title,
            "description": draft.description,
            "imageUrls": draft.image_urls,
        }
        if draft.aspects:
            product["aspects"] = draft.aspects

        body: dict[str, Any] = {
            "sku": ctx.sku,
            "locale": CONTENT_LANGUAGE.replace("-", "_"),
            "product": product,
            "condition": CONDITION_MAP[draft.condition],
            "availability": {
                "shipToLocationAvailability": {"quantity": draft.quantity},
            },
        }
        if draft.condition_description:
            body["conditionDescription"] = draft.condition_description

        response = await self._call(
            ctx,
            PublishStepName.INVENTORY,
            "PUT",
            f"{INVENTORY_BASE}/inventory_item/{ctx.sku}",
            body=body,
            headers={"Content-Language": CONTENT_LANGUAGE},
        )
        if not response.success:
            raise from_api_error(
                ErrorCode.INVENTORY_ITEM_FAILED,
                response.status_code,
                response.error,
            )
        ctx.trace.complete(PublishStepName.INVENTORY, item_sku=ctx.sku)

    async def resolve_policies(self, ctx: PublishContext) -> None:
        """Resolve fulfillment, payment and return policy ids.

        Ids on the draft win; gaps are filled from the seller's account
        policies. Any id still missing is a fatal ValidationFault.
        """
        policies = ctx.draft.policies or ListingPolicies()
        if policies.missing():
            account_policies = await self._policy_service.get_user_policies(
                ctx.user_id,
                ctx.access_token,
            )
            defaults = account_policies.defaults()
            policies = ListingPolicies(
                fulfillment_policy_id=policies.fulfillment_policy_id
                or defaults.fulfillment_policy_id,
                payment_policy_id=policies.payment_policy_id or defaults.payment_policy_id,
                return_policy_id=policies.return_policy_id or defaults.return_policy_id,
            )

        missing = policies.missing()
        if missing:
            raise ValidationFault(
                ErrorCode.POLICIES_MISSING,
                f"{ErrorCode.POLICIES_MISSING.value}: missing {', '.join(missing)}. "
                "Please configure them in eBay Seller Hub.",
            )
        ctx.policies = policies
        ctx.trace.complete(PublishStepName.POLICIES)

    async def create_offer(self, ctx: PublishContext) -> None:
        """Create the fixed-price offer for the inventory item."""
        draft = ctx.draft
        policies = ctx.policies
        body = {
            "sku": ctx.sku,
            "marketplaceId": self._settings.ebay_marketplace_id,
            "format": "FIXED_PRICE",
            "categoryId": draft.category_id,
            "merchantLocationKey": ctx.merchant_location_key,
            "pricingSummary": {
                "price": {"value": f"{draft.price:.2f}", "currency": draft.currency},
            },
            "availableQuantity": draft.quantity,
            "listingDescription": draft.description,
            "listingPolicies": {
                "fulfillmentPolicyId": policies.fulfillment_policy_id,
                "paymentPolicyId": policies.payment_policy_id,
                "returnPolicyId": policies.return_policy_id,
            },
        }
        response = await self._call(
            ctx,
            PublishStepName.OFFER,
            "POST",
            f"{INVENTORY_BASE}/offer",
            body=body,
            headers={"Content-Language": CONTENT_LANGUAGE},
        )
        if not response.success:
            raise from_api_error(
                ErrorCode.OFFER_CREATE_FAILED,
                response.status_code,
                response.error,
            )
        offer_id = response.data.get("offerId") if isinstance(response.data, dict) else None
        if not offer_id:
            raise PublisherError(ErrorCode.OFFER_CREATE_FAILED, "eBay did not return an offerId")
        ctx.offer_id = str(offer_id)
        ctx.trace.complete(PublishStepName.OFFER, item_sku=ctx.sku, offer_id=ctx.offer_id)

    async def estimate_fees(self, ctx: PublishContext) -> None:
        """Fetch estimated listing fees. Never fails the run."""
        response = await self._call(
            ctx,
            PublishStepName.FEES,
            "POST",
            f"{INVENTORY_BASE}/offer/get_listing_fees",
            body={"offers": [{"offerId": ctx.offer_id}]},
        )
        if not response.success:
            reason = response.error.message if response.error else f"HTTP {response.status_code}"
            ctx.warnings.append(ErrorCode.FEES_UNAVAILABLE.value)
            ctx.trace.skip(PublishStepName.FEES, f"fees unavailable ({reason})")
            return

        try:
            ctx.fees = self._parse_fees(response.data)
        except (KeyError, TypeError, ValueError, ValidationError, InvalidOperation):
            ctx.warnings.append(ErrorCode.FEES_UNAVAILABLE.value)
            ctx.trace.skip(PublishStepName.FEES, "fees unavailable (unreadable response)")
            return
        ctx.trace.complete(PublishStepName.FEES, offer_id=ctx.offer_id)

    async def publish_offer(self, ctx: PublishContext) -> None:
        """Publish the offer, producing the live listing."""
        response = await self._call(
            ctx,
            PublishStepName.PUBLISH,
            "POST",
            f"{INVENTORY_BASE}/offer/{ctx.offer_id}/publish",
        )
        if not response.success:
            raise from_api_error(
                ErrorCode.OFFER_PUBLISH_FAILED,
                response.status_code,
                response.error,
            )
        listing_id = response.data.get("listingId") if isinstance(response.data, dict) else None
        if not listing_id:
            raise PublisherError(ErrorCode.OFFER_PUBLISH_FAILED, "eBay did not return a listingId")
        ctx.listing_id = str(listing_id)
        ctx.listing_url = f"{self._settings.ebay_item_base_url}/itm/{ctx.listing_id}"
        ctx.trace.complete(
            PublishStepName.PUBLISH,
            item_sku=ctx.sku,
            offer_id=ctx.offer_id,
            listing_id=ctx.listing_id,
        )

    # Helpers

    async def _call(
        self,
        ctx: PublishContext,
        step: PublishStepName,
        method: str,
        path: str,
        body: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> ApiResponse:
        request_headers = {"X-Request-Id": ctx.trace.trace_id}
        request_headers.update(headers or {})
        response = await self._client.request(
            method,
            path,
            body=body,
            headers=request_headers,
            access_token=ctx.access_token,
        )
        ctx.trace.log.api_call(
            step,
            method,
            path,
            response.status_code,
            payload_keys=sorted(body) if body else None,
        )
        return response

    def _fail(
        self,
        ctx: PublishContext,
        step: PublishStepName,
        error: PublisherError,
    ) -> PublishResult:
        ctx.trace.fail(step, error.message)
        result = PublishResult(
            success=False,
            sku=ctx.sku,
            offer_id=ctx.offer_id,
            failed_step=step,
            error_code=error.code,
            error_message=error.message,
            error_action=RecoveryAction(error.action),
            ebay_error_id=error.ebay_error_id,
            steps=ctx.trace.steps(),
            fees=ctx.fees,
            warnings=ctx.warnings,
            trace_id=ctx.trace.trace_id,
            attempted_at=ctx.trace.started_at,
        )
        ctx.result = result
        return result

    @staticmethod
    def _require_enabled(response: ApiResponse) -> None:
        data = response.data if isinstance(response.data, dict) else {}
        status = data.get("merchantLocationStatus")
        if status and status != "ENABLED":
            raise ValidationFault(ErrorCode.LOCATION_NOT_ENABLED)

    @staticmethod
    def _location_address(profile: SellerProfile | None) -> dict[str, str]:
        if profile is None:
            raise ValidationFault(ErrorCode.LOCATION_REQUIRED)
        if not profile.postal_code and not (profile.city and profile.state_or_province):
            raise ValidationFault(
                ErrorCode.LOCATION_REQUIRED,
                "A postal code, or a city and state, is required for the shipping location",
            )
        address = {"country": profile.country.upper()}
        if profile.address_line1:
            address["addressLine1"] = profile.address_line1
        if profile.city:
            address["city"] = profile.city
        if profile.state_or_province:
            address["stateOrProvince"] = profile.state_or_province
        if profile.postal_code:
            address["postalCode"] = profile.postal_code
        return address

    def _parse_fees(self, data: Any) -> ListingFees:
        summaries = data.get("feeSummaries") if isinstance(data, dict) else None
        if not isinstance(summaries, list) or not summaries:
            raise ValueError("no fee summaries")
        summary = summaries[0]
        if not isinstance(summary, dict):
            raise ValueError("fee summary is not an object")
        fees = [
            ListingFee(
                fee_type=fee["feeType"],
                amount=FeeAmount(
                    value=str(fee["amount"]["value"]),
                    currency=fee["amount"]["currency"],
                ),
            )
            for fee in summary.get("fees") or []
        ]
        total = None
        if fees and len({f.amount.currency for f in fees}) == 1:
            currency = fees[0].amount.currency
            value = sum((Decimal(f.amount.value) for f in fees), Decimal("0"))
            total = FeeAmount(value=f"{value:.2f}", currency=currency)
        return ListingFees(
            marketplace_id=summary.get("marketplaceId") or self._settings.ebay_marketplace_id,
            listing_fees=fees,
            total_fee=total,
        )


# Global orchestrator instance
_orchestrator: PublishOrchestrator | None = None


def get_publish_orchestrator() -> PublishOrchestrator:
    """Get the global publish orchestrator instance."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = PublishOrchestrator()
    return _orchestrator
