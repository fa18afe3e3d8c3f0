"""Repositories for eBay accounts, OAuth states, seller profiles and publish audits.

Uses PostgreSQL (or SQLite in development) via SQLAlchemy for persistence.
"""

import logging
from datetime import UTC, datetime

from sqlalchemy import delete, func, select, update

from resell_publisher.db import (
    EbayAccountModel,
    OAuthStateModel,
    PublishAttemptModel,
    SellerProfileModel,
    as_utc,
    dialect_insert,
    get_session,
)
from resell_publisher.ebay.models import (
    AccountStatus,
    EbayAccount,
    OAuthState,
    PublishResult,
    SellerProfile,
)

logger = logging.getLogger(__name__)


class EbayAccountRepository:
    """Repository for connected eBay accounts (encrypted OAuth tokens)."""

    async def get(self, user_id: str) -> EbayAccount | None:
        """Get the stored account for a user.

        Args:
            user_id: The application user ID.

        Returns:
            EbayAccount if connected, None otherwise.
        """
        async with get_session() as session:
            result = await session.execute(
                select(EbayAccountModel).where(EbayAccountModel.user_id == user_id)
            )
            model = result.scalar_one_or_none()
            if model:
                return self._model_to_entity(model)
            return None

    async def upsert(self, account: EbayAccount) -> None:
        """Create or replace the account row for a user.

        Args:
            account: Account with already-encrypted tokens.
        """
        values = {
            "user_id": account.user_id,
            "ebay_user_id": account.ebay_user_id,
            "access_token_encrypted": account.access_token_encrypted,
            "refresh_token_encrypted": account.refresh_token_encrypted,
            "access_token_expires_at": account.access_token_expires_at,
            "refresh_token_expires_at": account.refresh_token_expires_at,
            "scopes": account.scopes,
            "status": account.status.value,
        }
        update_values = {k: v for k, v in values.items() if k != "user_id"}
        update_values["updated_at"] = func.now()
        stmt = dialect_insert(EbayAccountModel).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[EbayAccountModel.user_id],
            set_=update_values,
        )
        async with get_session() as session:
            await session.execute(stmt)
        logger.info("Stored eBay account for user %s", account.user_id)

    async def update_tokens(
        self,
        user_id: str,
        access_token_encrypted: str,
        access_token_expires_at: datetime,
        refresh_token_encrypted: str | None = None,
        refresh_token_expires_at: datetime | None = None,
    ) -> None:
        """Rotate the stored tokens after a refresh.

        Args:
            user_id: The application user ID.
            access_token_encrypted: New encrypted access token.
            access_token_expires_at: New access token expiry.
            refresh_token_encrypted: New encrypted refresh token, if rotated.
            refresh_token_expires_at: New refresh token expiry, if rotated.
        """
        values: dict = {
            "access_token_encrypted": access_token_encrypted,
            "access_token_expires_at": access_token_expires_at,
            "status": AccountStatus.ACTIVE.value,
        }
        if refresh_token_encrypted:
            values["refresh_token_encrypted"] = refresh_token_encrypted
        if refresh_token_expires_at:
            values["refresh_token_expires_at"] = refresh_token_expires_at

        async with get_session() as session:
            await session.execute(
                update(EbayAccountModel)
                .where(EbayAccountModel.user_id == user_id)
                .values(**values)
            )

    async def set_status(self, user_id: str, status: AccountStatus) -> None:
        """Set the connection status of an account."""
        async with get_session() as session:
            await session.execute(
                update(EbayAccountModel)
                .where(EbayAccountModel.user_id == user_id)
                .values(status=status.value)
            )
        logger.info("eBay account for user %s marked %s", user_id, status.value)

    async def delete(self, user_id: str) -> bool:
        """Delete the account row and its tokens.

        Returns:
            True if a row was deleted.
        """
        async with get_session() as session:
            result = await session.execute(
                delete(EbayAccountModel).where(EbayAccountModel.user_id == user_id)
            )
            return result.rowcount > 0

    def _model_to_entity(self, model: EbayAccountModel) -> EbayAccount:
        """Convert ORM model to Pydantic entity."""
        return EbayAccount(
            user_id=model.user_id,
            ebay_user_id=model.ebay_user_id,
            access_token_encrypted=model.access_token_encrypted,
            refresh_token_encrypted=model.refresh_token_encrypted,
            access_token_expires_at=as_utc(model.access_token_expires_at),
            refresh_token_expires_at=as_utc(model.refresh_token_expires_at),
            scopes=model.scopes or [],
            status=AccountStatus(model.status),
            connected_at=as_utc(model.connected_at),
            updated_at=as_utc(model.updated_at),
        )


class OAuthStateRepository:
    """Repository for one-time OAuth state values."""

    async def create(self, state: OAuthState) -> None:
        """Persist a newly issued state value."""
        async with get_session() as session:
            session.add(
                OAuthStateModel(
                    state=state.state,
                    user_id=state.user_id,
                    redirect_uri=state.redirect_uri,
                    expires_at=state.expires_at,
                )
            )

    async def get(self, state: str) -> OAuthState | None:
        async with get_session() as session:
            result = await session.execute(
                select(OAuthStateModel).where(OAuthStateModel.state == state)
            )
            model = result.scalar_one_or_none()
            if model:
                return self._model_to_entity(model)
            return None

    async def consume(self, state: str, now: datetime | None = None) -> OAuthState | None:
        """Mark a state as used if it is unused and unexpired.

        The update is conditioned on ``used_at IS NULL`` so a replayed
        callback can never consume the same state twice.

        Args:
            state: The state value from the callback.
            now: Current time (defaults to utcnow).

        Returns:
            The consumed state, or None if it was unknown, used or expired.
        """
        now = now or datetime.now(UTC)
        async with get_session() as session:
            result = await session.execute(
                update(OAuthStateModel)
                .where(
                    OAuthStateModel.state == state,
                    OAuthStateModel.used_at.is_(None),
                    OAuthStateModel.expires_at > now,
                )
                .values(used_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return None
            selected = await session.execute(
                select(OAuthStateModel).where(OAuthStateModel.state == state)
            )
            return self._model_to_entity(selected.scalar_one())

    async def purge_expired(self, now: datetime | None = None) -> int:
        """Delete expired states. Returns the number removed."""
        now = now or datetime.now(UTC)
        async with get_session() as session:
            result = await session.execute(
                delete(OAuthStateModel).where(OAuthStateModel.expires_at <= now)
            )
            return result.rowcount

    def _model_to_entity(self, model: OAuthStateModel) -> OAuthState:
        """Convert ORM model to Pydantic entity."""
        return OAuthState(
            state=model.state,
            user_id=model.user_id,
            redirect_uri=model.redirect_uri,
            expires_at=as_utc(model.expires_at),
            used_at=as_utc(model.used_at),
        )


class SellerProfileRepository:
    """Repository for seller ship-from addresses."""

    async def get(self, user_id: str) -> SellerProfile | None:
        async with get_session() as session:
            result = await session.execute(
                select(SellerProfileModel).where(SellerProfileModel.user_id == user_id)
            )
            model = result.scalar_one_or_none()
            if model:
                return SellerProfile(
                    country=model.country,
                    postal_code=model.postal_code,
                    city=model.city,
                    state_or_province=model.state_or_province,
                    address_line1=model.address_line1,
                )
            return None

    async def upsert(self, user_id: str, profile: SellerProfile) -> SellerProfile:
        """Create or replace a seller's address."""
        values = profile.model_dump()
        stmt = dialect_insert(SellerProfileModel).values(user_id=user_id, **values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[SellerProfileModel.user_id],
            set_={**values, "updated_at": func.now()},
        )
        async with get_session() as session:
            await session.execute(stmt)
        logger.info("Updated seller profile for user %s", user_id)
        return profile


class PublishAttemptRepository:
    """Repository for the publish audit trail."""

    async def record(
        self,
        user_id: str,
        listing_id: str,
        result: PublishResult,
        entitlement_reason: str | None = None,
    ) -> None:
        """Persist the outcome of one publish attempt.

        Args:
            user_id: The application user ID.
            listing_id: Local listing id of the draft.
            result: The attempt's result.
            entitlement_reason: Why the attempt was allowed.
        """
        async with get_session() as session:
            session.add(
                PublishAttemptModel(
                    trace_id=result.trace_id,
                    user_id=user_id,
                    listing_id=listing_id,
                    success=result.success,
                    entitlement_reason=entitlement_reason,
                    ebay_listing_id=result.listing_id,
                    failed_step=result.failed_step.value if result.failed_step else None,
                    error_code=result.error_code,
                    attempted_at=result.attempted_at,
                    result=result.model_dump(mode="json"),
                )
            )

    async def list_for_listing(self, user_id: str, listing_id: str) -> list[PublishResult]:
        """Get all attempts for a listing, most recent first."""
        async with get_session() as session:
            result = await session.execute(
                select(PublishAttemptModel)
                .where(
                    PublishAttemptModel.user_id == user_id,
                    PublishAttemptModel.listing_id == listing_id,
                )
                .order_by(PublishAttemptModel.id.desc())
            )
            return [PublishResult.model_validate(m.result) for m in result.scalars().all()]


# Global repository instances
_account_repo: EbayAccountRepository | None = None
_state_repo: OAuthStateRepository | None = None
_profile_repo: SellerProfileRepository | None = None
_attempt_repo: PublishAttemptRepository | None = None


def get_account_repository() -> EbayAccountRepository:
    """Get the global eBay account repository instance."""
    global _account_repo
    if _account_repo is None:
        _account_repo = EbayAccountRepository()
    return _account_repo


def get_state_repository() -> OAuthStateRepository:
    """Get the global OAuth state repository instance."""
    global _state_repo
    if _state_repo is None:
        _state_repo = OAuthStateRepository()
    return _state_repo


def get_profile_repository() -> SellerProfileRepository:
    """Get the global seller profile repository instance."""
    global _profile_repo
    if _profile_repo is None:
        _profile_repo = SellerProfileRepository()
    return _profile_repo


def get_attempt_repository() -> PublishAttemptRepository:
    """Get the global publish attempt repository instance."""
    global _attempt_repo
    if _attempt_repo is None:
        _attempt_repo = PublishAttemptRepository()
    return _attempt_repo
