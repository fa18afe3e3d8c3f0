"""Tests for the entitlement-gated publish service."""

from datetime import UTC, datetime

import pytest

from resell_publisher.ebay.errors import ErrorCode, ValidationFault
from resell_publisher.ebay.models import ListingDraft, PublishResult, PublishStepName
from resell_publisher.ebay.repository import PublishAttemptRepository
from resell_publisher.ebay.service import TRIAL_ALREADY_USED_WARNING, PublishService
from resell_publisher.entitlements import (
    EntitlementLedger,
    PublishReason,
    SubscriptionRecord,
    SubscriptionRepository,
    SubscriptionTier,
)

DRAFT = ListingDraft(
    listing_id="listing-1",
    title="Nike Air Max 90",
    description="Size 10, worn twice.",
    price=85.0,
    category_id="15709",
    image_urls=["https://img.example.com/airmax.jpg"],
)


def success_result(listing_id="110554433221"):
    return PublishResult(
        success=True,
        listing_id=listing_id,
        offer_id="OFFER-1",
        sku="RSAI-LISTING-1",
        trace_id="trace-ok",
        attempted_at=datetime.now(UTC),
        published_at=datetime.now(UTC),
    )


def failure_result():
    return PublishResult(
        success=False,
        failed_step=PublishStepName.POLICIES,
        error_code=ErrorCode.POLICIES_MISSING.value,
        trace_id="trace-fail",
        attempted_at=datetime.now(UTC),
    )


class StubOrchestrator:
    def __init__(self, result, before_return=None):
        self.result = result
        self.before_return = before_return
        self.runs = 0

    async def run(self, user_id, draft, trace_id=None):
        self.runs += 1
        if self.before_return:
            await self.before_return()
        return self.result.model_copy(deep=True)


@pytest.mark.usefixtures("db_session")
class TestPublishService:
    """Tests for gating, trial consumption and the audit trail."""

    @pytest.fixture
    def ledger(self):
        return EntitlementLedger()

    def make_service(self, orchestrator, ledger):
        return PublishService(
            orchestrator=orchestrator,
            ledger=ledger,
            attempt_repo=PublishAttemptRepository(),
        )

    @pytest.mark.asyncio
    async def test_denied_without_entitlement(self, ledger):
        orchestrator = StubOrchestrator(success_result())
        service = self.make_service(orchestrator, ledger)

        with pytest.raises(ValidationFault) as exc_info:
            await service.publish("user-1", DRAFT)

        assert exc_info.value.code == ErrorCode.UPGRADE_REQUIRED.value
        assert orchestrator.runs == 0
        assert await service.history("user-1", "listing-1") == []

    @pytest.mark.asyncio
    async def test_trial_consumed_on_success(self, ledger):
        await ledger.grant_on_ebay_connect("user-1")
        service = self.make_service(StubOrchestrator(success_result()), ledger)

        result = await service.publish("user-1", DRAFT)

        assert result.success
        assert result.warnings == []
        trial = await ledger.get_trial_status("user-1")
        assert trial.used
        assert trial.used_listing_id == "110554433221"

        with pytest.raises(ValidationFault):
            await service.publish("user-1", DRAFT)

    @pytest.mark.asyncio
    async def test_failed_publish_keeps_trial(self, ledger):
        await ledger.grant_on_ebay_connect("user-1")
        service = self.make_service(StubOrchestrator(failure_result()), ledger)

        result = await service.publish("user-1", DRAFT)

        assert not result.success
        eligibility = await ledger.can_direct_publish("user-1")
        assert eligibility.reason == PublishReason.TRIAL_AVAILABLE

    @pytest.mark.asyncio
    async def test_premium_does_not_spend_trial(self, ledger):
        await ledger.grant_on_ebay_connect("user-1")
        await SubscriptionRepository().upsert(
            SubscriptionRecord(user_id="user-1", tier=SubscriptionTier.PREMIUM, status="active")
        )
        service = self.make_service(StubOrchestrator(success_result()), ledger)

        await service.publish("user-1", DRAFT)

        assert (await ledger.get_trial_status("user-1")).available

    @pytest.mark.asyncio
    async def test_lost_trial_race_adds_warning(self, ledger):
        """Test a trial spent mid-publish leaves the listing live with a warning."""
        await ledger.grant_on_ebay_connect("user-1")

        async def spend_trial_elsewhere():
            await ledger.consume_on_successful_publish("user-1", "other-listing", {})

        service = self.make_service(
            StubOrchestrator(success_result(), before_return=spend_trial_elsewhere),
            ledger,
        )

        result = await service.publish("user-1", DRAFT)

        assert result.success
        assert result.warnings == [TRIAL_ALREADY_USED_WARNING]
        trial = await ledger.get_trial_status("user-1")
        assert trial.used_listing_id == "other-listing"

    @pytest.mark.asyncio
    async def test_attempts_recorded(self, ledger):
        await ledger.grant_on_ebay_connect("user-1")
        service = self.make_service(StubOrchestrator(failure_result()), ledger)
        await service.publish("user-1", DRAFT)
        service = self.make_service(StubOrchestrator(success_result()), ledger)
        await service.publish("user-1", DRAFT)

        history = await service.history("user-1", "listing-1")

        assert [r.trace_id for r in history] == ["trace-ok", "trace-fail"]
        assert history[1].failed_step == PublishStepName.POLICIES
        assert await service.history("user-2", "listing-1") == []
