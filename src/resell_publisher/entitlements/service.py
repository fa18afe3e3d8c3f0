"""Entitlement ledger: who may publish directly to eBay."""

import logging
from datetime import UTC, datetime
from typing import Any

from resell_publisher.entitlements.models import (
    ACTIVE_STATUSES,
    GRACE_STATUS,
    BillingStatus,
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

logger = logging.getLogger(__name__)


def is_premium(record: SubscriptionRecord | None, now: datetime | None = None) -> bool:
    """Resolve whether a subscription currently grants premium access.

    ``active`` and ``trialing`` count as paid. ``past_due`` counts only while
    the current period has not ended, so a payment retry in progress does not
    lock the user out.

    Args:
        record: The user's subscription record, if any.
        now: Reference time (defaults to utcnow).

    Returns:
        True if the user is premium.
    """
    if record is None or record.status is None:
        return False
    if record.status in ACTIVE_STATUSES:
        return True
    if record.status == GRACE_STATUS and record.current_period_end is not None:
        return record.current_period_end > (now or datetime.now(UTC))
    return False


class EntitlementLedger:
    """Tracks premium status and the one-time free publish trial."""

    def __init__(
        self,
        subscription_repo: SubscriptionRepository | None = None,
        trial_repo: TrialRepository | None = None,
    ) -> None:
        """Initialize the ledger.

        Args:
            subscription_repo: Subscription repository (uses default if not provided).
            trial_repo: Trial repository (uses default if not provided).
        """
        self._subscription_repo = subscription_repo or get_subscription_repository()
        self._trial_repo = trial_repo or get_trial_repository()

    async def resolve_premium_active(self, user_id: str) -> bool:
        record = await self._subscription_repo.get(user_id)
        return is_premium(record)

    async def get_trial_status(self, user_id: str) -> TrialStatus:
        """Get the public trial status for a user."""
        trial = await self._trial_repo.get(user_id)
        if trial is None:
            return TrialStatus()
        used = trial.used_at is not None
        return TrialStatus(
            granted=True,
            used=used,
            available=not used,
            granted_at=trial.granted_at,
            used_at=trial.used_at,
            used_listing_id=trial.used_listing_id,
        )

    async def can_direct_publish(self, user_id: str) -> PublishEligibility:
        """Decide whether a user may publish directly.

        Args:
            user_id: The application user ID.

        Returns:
            Eligibility with reason premium, trial_available or upgrade_required.
        """
        if await self.resolve_premium_active(user_id):
            return PublishEligibility(allowed=True, reason=PublishReason.PREMIUM)

        trial = await self.get_trial_status(user_id)
        if trial.available:
            return PublishEligibility(allowed=True, reason=PublishReason.TRIAL_AVAILABLE)

        return PublishEligibility(allowed=False, reason=PublishReason.UPGRADE_REQUIRED)

    async def grant_on_ebay_connect(self, user_id: str) -> bool:
        """Grant the free trial when a user first connects eBay.

        A second call for the same user is a no-op.

        Returns:
            True if a trial was granted by this call.
        """
        granted = await self._trial_repo.insert_if_absent(user_id, grant_source="ebay_connect")
        if granted:
            logger.info("Granted free publish trial to user %s", user_id)
        else:
            logger.debug("User %s already has a publish trial", user_id)
        return granted

    async def consume_on_successful_publish(
        self,
        user_id: str,
        listing_id: str,
        result: dict[str, Any],
    ) -> bool:
        """Spend the trial after a successful publish.

        Exactly one of any number of concurrent calls returns True.

        Args:
            user_id: The application user ID.
            listing_id: eBay listing id that was published.
            result: Serialized publish result recorded with the trial.

        Returns:
            True if this call consumed the trial, False if it was already spent.
        """
        consumed = await self._trial_repo.mark_used(user_id, listing_id, result)
        if consumed:
            logger.info("Consumed free publish trial for user %s (listing=%s)", user_id, listing_id)
        else:
            logger.warning("Free publish trial for user %s was already consumed", user_id)
        return consumed

    async def get_billing_status(self, user_id: str) -> BillingStatus:
        """Summarize a user's subscription, trial and publish eligibility."""
        record = await self._subscription_repo.get(user_id)
        premium = is_premium(record)
        trial = await self.get_trial_status(user_id)
        if premium:
            eligibility = PublishEligibility(allowed=True, reason=PublishReason.PREMIUM)
        elif trial.available:
            eligibility = PublishEligibility(allowed=True, reason=PublishReason.TRIAL_AVAILABLE)
        else:
            eligibility = PublishEligibility(allowed=False, reason=PublishReason.UPGRADE_REQUIRED)

        return BillingStatus(
            premium=premium,
            tier=SubscriptionTier.PREMIUM if premium else SubscriptionTier.FREE,
            status=record.status if record else None,
            current_period_end=record.current_period_end if record else None,
            cancel_at_period_end=record.cancel_at_period_end if record else False,
            trial=trial,
            can_direct_publish=eligibility,
        )


# Global ledger instance
_ledger: EntitlementLedger | None = None


def get_entitlement_ledger() -> EntitlementLedger:
    """Get the global entitlement ledger instance.

    Returns:
        EntitlementLedger instance.
    """
    global _ledger
    if _ledger is None:
        _ledger = EntitlementLedger()
    return _ledger
