"""Pydantic models for subscriptions and the free publish trial."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class SubscriptionTier(str, Enum):
    FREE = "free"
    PREMIUM = "premium"


class PublishReason(str, Enum):
    """Why a direct publish is (or is not) allowed."""

    PREMIUM = "premium"
    TRIAL_AVAILABLE = "trial_available"
    UPGRADE_REQUIRED = "upgrade_required"


# Provider statuses that count as paid without further checks
ACTIVE_STATUSES = frozenset({"active", "trialing"})
GRACE_STATUS = "past_due"


class SubscriptionRecord(BaseModel):
    """A user's billing subscription (one per user)."""

    user_id: str = Field(..., description="Application user ID")
    tier: SubscriptionTier = Field(default=SubscriptionTier.FREE)
    status: str | None = Field(default=None, description="Provider subscription status")
    provider: str = Field(default="stripe")
    stripe_customer_id: str | None = None
    stripe_subscription_id: str | None = None
    price_id: str | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    canceled_at: datetime | None = None
    latest_invoice_status: str | None = None
    updated_at: datetime | None = None


class FreePublishTrial(BaseModel):
    """One-time free direct publish credit."""

    user_id: str
    granted_at: datetime | None = None
    grant_source: str = "ebay_connect"
    used_at: datetime | None = None
    used_listing_id: str | None = None
    used_publish_result: dict[str, Any] | None = None


class TrialStatus(BaseModel):
    """Public view of a user's trial."""

    granted: bool = False
    used: bool = False
    available: bool = False
    granted_at: datetime | None = None
    used_at: datetime | None = None
    used_listing_id: str | None = None


class PublishEligibility(BaseModel):
    """Result of the direct publish entitlement check."""

    allowed: bool
    reason: PublishReason


class BillingStatus(BaseModel):
    """Entitlement summary returned to the client."""

    premium: bool
    tier: SubscriptionTier
    status: str | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    trial: TrialStatus
    can_direct_publish: PublishEligibility
