"""Lookup of a seller's eBay business policies.

Sellers manage fulfillment, payment and return policies in eBay Seller Hub;
this module only reads them. Results are cached per user for the configured
TTL.
"""

import logging
import time

from pydantic import BaseModel, Field

from resell_publisher.config import Settings, get_settings
from resell_publisher.ebay.client import EbayApiClient, get_ebay_client
from resell_publisher.ebay.errors import ErrorCode, from_api_error
from resell_publisher.ebay.models import ListingPolicies

logger = logging.getLogger(__name__)

MAX_CACHED_USERS = 1024

# policy type -> (response list key, id field)
POLICY_TYPES = {
    "fulfillment": ("fulfillmentPolicies", "fulfillmentPolicyId"),
    "payment": ("paymentPolicies", "paymentPolicyId"),
    "return": ("returnPolicies", "returnPolicyId"),
}


class PolicySummary(BaseModel):
    id: str
    name: str | None = None


def _summarize(item: dict, id_key: str) -> PolicySummary:
    name = item.get("name")
    return PolicySummary(id=str(item[id_key]), name=name if isinstance(name, str) else None)


class UserPolicies(BaseModel):
    """A seller's business policies for one marketplace."""

    marketplace_id: str
    fulfillment: list[PolicySummary] = Field(default_factory=list)
    payment: list[PolicySummary] = Field(default_factory=list)
    returns: list[PolicySummary] = Field(default_factory=list)

    def defaults(self) -> ListingPolicies:
        """First policy of each type, as used when a draft names none."""
        return ListingPolicies(
            fulfillment_policy_id=self.fulfillment[0].id if self.fulfillment else None,
            payment_policy_id=self.payment[0].id if self.payment else None,
            return_policy_id=self.returns[0].id if self.returns else None,
        )


class EbayPolicyService:
    """Fetches and caches sellers' business policies."""

    def __init__(
        self,
        client: EbayApiClient | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._client = client or get_ebay_client()
        self._settings = settings or get_settings()
        self._cache: dict[str, tuple[float, UserPolicies]] = {}

    async def get_user_policies(
        self,
        user_id: str,
        access_token: str,
        use_cache: bool = True,
    ) -> UserPolicies:
        """Get a seller's policies for the configured marketplace.

        Args:
            user_id: The application user ID (cache key).
            access_token: The seller's access token.
            use_cache: Whether a cached result may be returned.

        Returns:
            The seller's policies.

        Raises:
            PublisherError: If any policy endpoint fails after retries.
        """
        cached = self._cache.get(user_id)
        if use_cache and cached and cached[0] > time.monotonic():
            return cached[1]

        marketplace_id = self._settings.ebay_marketplace_id
        found: dict[str, list[PolicySummary]] = {}
        for policy_type, (list_key, id_key) in POLICY_TYPES.items():
            response = await self._client.request(
                "GET",
                f"/sell/account/v1/{policy_type}_policy?marketplace_id={marketplace_id}",
                access_token=access_token,
            )
            if not response.success:
                logger.warning(
                    "Failed to fetch %s policies for user %s (status=%d)",
                    policy_type,
                    user_id,
                    response.status_code,
                )
                raise from_api_error(
                    ErrorCode.POLICIES_FETCH_FAILED,
                    response.status_code,
                    response.error,
                )
            data = response.data if isinstance(response.data, dict) else {}
            items = data.get(list_key)
            if not isinstance(items, list):
                items = []
            found[policy_type] = [
                _summarize(item, id_key)
                for item in items
                if isinstance(item, dict) and item.get(id_key)
            ]

        policies = UserPolicies(
            marketplace_id=marketplace_id,
            fulfillment=found["fulfillment"],
            payment=found["payment"],
            returns=found["return"],
        )
        self._store(user_id, policies)
        return policies

    def invalidate(self, user_id: str) -> None:
        """Drop a user's cached policies."""
        self._cache.pop(user_id, None)

    def _store(self, user_id: str, policies: UserPolicies) -> None:
        now = time.monotonic()
        for key in [k for k, (expires, _) in self._cache.items() if expires <= now]:
            del self._cache[key]
        self._cache.pop(user_id, None)
        if len(self._cache) >= MAX_CACHED_USERS:
            # Entries are inserted in expiry order, so the first is the oldest
            self._cache.pop(next(iter(self._cache)))
        self._cache[user_id] = (now + self._settings.ebay_policy_cache_ttl_seconds, policies)


# Global policy service instance
_policy_service: EbayPolicyService | None = None


def get_policy_service() -> EbayPolicyService:
    """Get the global policy service instance."""
    global _policy_service
    if _policy_service is None:
        _policy_service = EbayPolicyService()
    return _policy_service
