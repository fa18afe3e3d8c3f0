"""Publish service: entitlement check, pipeline run, trial consumption and audit."""

import logging

from resell_publisher.ebay.errors import ErrorCode, ValidationFault
from resell_publisher.ebay.models import ListingDraft, PublishResult
from resell_publisher.ebay.orchestrator import PublishOrchestrator, get_publish_orchestrator
from resell_publisher.ebay.repository import PublishAttemptRepository, get_attempt_repository
from resell_publisher.entitlements import (
    EntitlementLedger,
    PublishReason,
    get_entitlement_ledger,
)

logger = logging.getLogger(__name__)

TRIAL_ALREADY_USED_WARNING = "FREE_TRIAL_ALREADY_USED"


class PublishService:
    """Gates direct publish behind the entitlement ledger."""

    def __init__(
        self,
        orchestrator: PublishOrchestrator | None = None,
        ledger: EntitlementLedger | None = None,
        attempt_repo: PublishAttemptRepository | None = None,
    ) -> None:
        """Initialize the publish service.

        Args:
            orchestrator: Publish state machine (uses default if not provided).
            ledger: Entitlement ledger (uses default if not provided).
            attempt_repo: Audit repository (uses default if not provided).
        """
        self._orchestrator = orchestrator or get_publish_orchestrator()
        self._ledger = ledger or get_entitlement_ledger()
        self._attempt_repo = attempt_repo or get_attempt_repository()

    async def publish(self, user_id: str, draft: ListingDraft) -> PublishResult:
        """Publish a draft if the user is entitled to.

        Args:
            user_id: The application user ID.
            draft: Platform-formatted listing draft.

        Returns:
            The publish result (success or structured failure).

        Raises:
            ValidationFault: If the user has neither premium nor a trial.
        """
        eligibility = await self._ledger.can_direct_publish(user_id)
        if not eligibility.allowed:
            logger.info("Direct publish denied for user %s: %s", user_id, eligibility.reason.value)
            raise ValidationFault(ErrorCode.UPGRADE_REQUIRED)

        result = await self._orchestrator.run(user_id, draft)

        if result.success and eligibility.reason == PublishReason.TRIAL_AVAILABLE:
            consumed = await self._ledger.consume_on_successful_publish(
                user_id,
                result.listing_id or "",
                result.model_dump(mode="json"),
            )
            if not consumed:
                # A concurrent attempt spent the trial first; the listing stays live.
                result.warnings.append(TRIAL_ALREADY_USED_WARNING)

        await self._attempt_repo.record(
            user_id,
            draft.listing_id,
            result,
            entitlement_reason=eligibility.reason.value,
        )
        return result

    async def history(self, user_id: str, listing_id: str) -> list[PublishResult]:
        """Get past publish attempts for a listing, most recent first."""
        return await self._attempt_repo.list_for_listing(user_id, listing_id)


# Global publish service instance
_publish_service: PublishService | None = None


def get_publish_service() -> PublishService:
    """Get the global publish service instance."""
    global _publish_service
    if _publish_service is None:
        _publish_service = PublishService()
    return _publish_service
