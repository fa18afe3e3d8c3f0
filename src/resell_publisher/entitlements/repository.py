"""Repositories for subscription records and free publish trials.

Rows are only ever mutated through single-key upserts or conditional
updates, so no operation needs a multi-row transaction.
"""

import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import func, select, update

from resell_publisher.db import (
    FreePublishTrialModel,
    SubscriptionModel,
    as_utc,
    dialect_insert,
    get_session,
)
from resell_publisher.entitlements.models import (
    FreePublishTrial,
    SubscriptionRecord,
    SubscriptionTier,
)

logger = logging.getLogger(__name__)


class SubscriptionRepository:
    """Repository for per-user subscription records."""

    async def get(self, user_id: str) -> SubscriptionRecord | None:
        """Get a user's subscription record.

        Args:
            user_id: The application user ID.

        Returns:
            SubscriptionRecord if found, None otherwise.
        """
        async with get_session() as session:
            result = await session.execute(
                select(SubscriptionModel).where(SubscriptionModel.user_id == user_id)
            )
            model = result.scalar_one_or_none()
            if model:
                return self._model_to_entity(model)
            return None

    async def get_by_customer_id(self, customer_id: str) -> SubscriptionRecord | None:
        async with get_session() as session:
            result = await session.execute(
                select(SubscriptionModel).where(
                    SubscriptionModel.stripe_customer_id == customer_id
                )
            )
            model = result.scalar_one_or_none()
            if model:
                return self._model_to_entity(model)
            return None

    async def upsert(self, record: SubscriptionRecord) -> None:
        """Insert or update the subscription keyed by user_id.

        Applying the same record twice leaves the row unchanged, which makes
        webhook redelivery safe.

        Args:
            record: The subscription state to store.
        """
        values = record.model_dump(exclude={"updated_at"})
        values["tier"] = record.tier.value
        update_values = {k: v for k, v in values.items() if k != "user_id"}
        update_values["updated_at"] = func.now()

        stmt = dialect_insert(SubscriptionModel).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[SubscriptionModel.user_id],
            set_=update_values,
        )
        async with get_session() as session:
            await session.execute(stmt)
        logger.info(
            "Upserted subscription for user %s (tier=%s, status=%s)",
            record.user_id,
            record.tier.value,
            record.status,
        )

    def _model_to_entity(self, model: SubscriptionModel) -> SubscriptionRecord:
        """Convert ORM model to Pydantic entity."""
        return SubscriptionRecord(
            user_id=model.user_id,
            tier=SubscriptionTier(model.tier),
            status=model.status,
            provider=model.provider,
            stripe_customer_id=model.stripe_customer_id,
            stripe_subscription_id=model.stripe_subscription_id,
            price_id=model.price_id,
            current_period_end=as_utc(model.current_period_end),
            cancel_at_period_end=bool(model.cancel_at_period_end),
            canceled_at=as_utc(model.canceled_at),
            latest_invoice_status=model.latest_invoice_status,
            updated_at=as_utc(model.updated_at),
        )


class TrialRepository:
    """Repository for free publish trials."""

    async def get(self, user_id: str) -> FreePublishTrial | None:
        async with get_session() as session:
            result = await session.execute(
                select(FreePublishTrialModel).where(FreePublishTrialModel.user_id == user_id)
            )
            model = result.scalar_one_or_none()
            if model:
                return self._model_to_entity(model)
            return None

    async def insert_if_absent(self, user_id: str, grant_source: str = "ebay_connect") -> bool:
        """Grant a trial unless the user already has one.

        Args:
            user_id: The application user ID.
            grant_source: What triggered the grant.

        Returns:
            True if a new trial row was created, False if one existed.
        """
        stmt = (
            dialect_insert(FreePublishTrialModel)
            .values(
                user_id=user_id,
                granted_at=datetime.now(UTC),
                grant_source=grant_source,
            )
            .on_conflict_do_nothing(index_elements=[FreePublishTrialModel.user_id])
        )
        async with get_session() as session:
            result = await session.execute(stmt)
            return result.rowcount == 1

    async def mark_used(
        self,
        user_id: str,
        listing_id: str,
        publish_result: dict[str, Any],
        now: datetime | None = None,
    ) -> bool:
        """Consume the trial with a compare-and-swap on ``used_at IS NULL``.

        Args:
            user_id: The application user ID.
            listing_id: eBay listing id the trial was spent on.
            publish_result: Serialized publish result stored with the trial.
            now: Consumption time (defaults to utcnow).

        Returns:
            True if this call consumed the trial, False if it was already used
            or never granted.
        """
        async with get_session() as session:
            result = await session.execute(
                update(FreePublishTrialModel)
                .where(
                    FreePublishTrialModel.user_id == user_id,
                    FreePublishTrialModel.used_at.is_(None),
                )
                .values(
                    used_at=now or datetime.now(UTC),
                    used_listing_id=listing_id,
                    used_publish_result=publish_result,
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def _model_to_entity(self, model: FreePublishTrialModel) -> FreePublishTrial:
        """Convert ORM model to Pydantic entity."""
        return FreePublishTrial(
            user_id=model.user_id,
            granted_at=as_utc(model.granted_at),
            grant_source=model.grant_source,
            used_at=as_utc(model.used_at),
            used_listing_id=model.used_listing_id,
            used_publish_result=model.used_publish_result,
        )


# Global repository instances
_subscription_repo: SubscriptionRepository | None = None
_trial_repo: TrialRepository | None = None


def get_subscription_repository() -> SubscriptionRepository:
    """Get the global subscription repository instance.

    Returns:
        SubscriptionRepository instance.
    """
    global _subscription_repo
    if _subscription_repo is None:
        _subscription_repo = SubscriptionRepository()
    return _subscription_repo


def get_trial_repository() -> TrialRepository:
    """Get the global trial repository instance.

    Returns:
        TrialRepository instance.
    """
    global _trial_repo
    if _trial_repo is None:
        _trial_repo = TrialRepository()
    return _trial_repo
