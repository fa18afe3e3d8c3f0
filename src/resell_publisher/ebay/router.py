"""FastAPI router for eBay connection and direct publish endpoints."""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, status

from resell_publisher.api.dependencies import get_current_user_id, to_http_exception
from resell_publisher.ebay.auth import EbayAuthService, get_auth_service
from resell_publisher.ebay.errors import PublisherError
from resell_publisher.ebay.models import (
    AuthStartResponse,
    ConnectedAccount,
    ListingDraft,
    PublishResult,
    SellerProfile,
)
from resell_publisher.ebay.policy import EbayPolicyService, UserPolicies, get_policy_service
from resell_publisher.ebay.repository import SellerProfileRepository, get_profile_repository
from resell_publisher.ebay.service import PublishService, get_publish_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ebay", tags=["eBay"])

UserId = Annotated[str, Depends(get_current_user_id)]
AuthService = Annotated[EbayAuthService, Depends(get_auth_service)]


@router.get("/oauth/start")
async def oauth_start(user_id: UserId, auth_service: AuthService) -> AuthStartResponse:
    """Begin connecting the caller's eBay account.

    Returns:
        The eBay consent URL and the state value bound to the caller.
    """
    try:
        return await auth_service.start_oauth(user_id)
    except PublisherError as e:
        raise to_http_exception(e) from None


@router.get("/oauth/callback")
async def oauth_callback(
    auth_service: AuthService,
    code: Annotated[str | None, Query()] = None,
    state: Annotated[str | None, Query()] = None,
    error: Annotated[str | None, Query()] = None,
) -> ConnectedAccount:
    """OAuth redirect target registered with eBay.

    The user is identified by the state value, not by a request header,
    since the browser arrives here straight from eBay.

    Args:
        auth_service: eBay auth service.
        code: Authorization code.
        state: State value issued by ``/oauth/start``.
        error: Error returned by eBay when the user declined consent.

    Returns:
        The connected account.
    """
    if error:
        logger.info("eBay authorization was declined: %s", error)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"eBay authorization failed: {error}",
        )
    if not code or not state:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing code or state parameter",
        )

    try:
        return await auth_service.handle_callback(code, state)
    except PublisherError as e:
        raise to_http_exception(e) from None


@router.get("/account")
async def get_account(user_id: UserId, auth_service: AuthService) -> ConnectedAccount:
    """Connection status of the caller's eBay account."""
    account = await auth_service.get_connected_account(user_id)
    return account or ConnectedAccount(connected=False)


@router.delete("/account")
async def delete_account(
    user_id: UserId,
    auth_service: AuthService,
    policy_service: Annotated[EbayPolicyService, Depends(get_policy_service)],
) -> dict[str, bool]:
    """Disconnect the caller's eBay account."""
    deleted = await auth_service.disconnect(user_id)
    # Cached policies belong to the eBay account that was just removed
    policy_service.invalidate(user_id)
    return {"disconnected": deleted}


@router.get("/location")
async def get_location(
    user_id: UserId,
    profile_repo: Annotated[SellerProfileRepository, Depends(get_profile_repository)],
) -> SellerProfile:
    """Get the caller's ship-from address."""
    profile = await profile_repo.get(user_id)
    if profile is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No shipping location configured",
        )
    return profile


@router.put("/location")
async def put_location(
    user_id: UserId,
    profile: SellerProfile,
    profile_repo: Annotated[SellerProfileRepository, Depends(get_profile_repository)],
) -> SellerProfile:
    """Set the caller's ship-from address."""
    return await profile_repo.upsert(user_id, profile)


@router.get("/policies")
async def get_policies(
    user_id: UserId,
    auth_service: AuthService,
    policy_service: Annotated[EbayPolicyService, Depends(get_policy_service)],
    refresh: bool = False,
) -> UserPolicies:
    """List the caller's eBay business policies."""
    try:
        access_token = await auth_service.get_access_token(user_id)
        return await policy_service.get_user_policies(
            user_id, access_token, use_cache=not refresh
        )
    except PublisherError as e:
        raise to_http_exception(e) from None


@router.post("/listings/{listing_id}/publish")
async def publish_listing(
    listing_id: str,
    draft: ListingDraft,
    user_id: UserId,
    publish_service: Annotated[PublishService, Depends(get_publish_service)],
) -> PublishResult:
    """Publish a listing draft directly to eBay.

    Pipeline failures are returned as an unsuccessful ``PublishResult``
    naming the failed step. Only entitlement denial is an HTTP error.
    """
    if draft.listing_id != listing_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Listing id in body does not match path",
        )

    try:
        return await publish_service.publish(user_id, draft)
    except PublisherError as e:
        raise to_http_exception(e) from None


@router.get("/listings/{listing_id}/attempts")
async def list_attempts(
    listing_id: str,
    user_id: UserId,
    publish_service: Annotated[PublishService, Depends(get_publish_service)],
) -> list[PublishResult]:
    """Past publish attempts for a listing, most recent first."""
    return await publish_service.history(user_id, listing_id)
