"""Entitlements: premium subscriptions and the one-time free publish trial."""

from resell_publisher.entitlements.models import (
    BillingStatus,
    FreePublishTrial,
    PublishEligibility,
    PublishReason,
    SubscriptionRecord,
    SubscriptionTier,
    TrialStatus,
)
from resell_publisher.entitlements.repository import (
    SubscriptionRepository,
    TrialRepository,
    get_subscription_repository,
    get_trial_repository,
)
from resell_publisher.entitlements.service import (
    EntitlementLedger,
    get_entitlement_ledger,
    is_premium,
)

__all__ = [
    # Models
    "BillingStatus",
    "FreePublishTrial",
    "PublishEligibility",
    "PublishReason",
    "SubscriptionRecord",
    "SubscriptionTier",
    "TrialStatus",
    # Repository
    "SubscriptionRepository",
    "TrialRepository",
    "get_subscription_repository",
    "get_trial_repository",
    # Service
    "EntitlementLedger",
    "get_entitlement_ledger",
    "is_premium",
]
