"""Pydantic models for the eBay integration."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class RecoveryAction(str, Enum):
    """What the user or caller should do about an error."""

    REAUTH = "reauth"
    RETRY = "retry"
    NONE = "none"


class RecoveryHint(BaseModel):
    """Recovery suggestion attached to a normalized API error."""

    action: RecoveryAction = Field(default=RecoveryAction.NONE, description="Suggested action")
    retry_after_seconds: float | None = Field(
        default=None,
        description="Suggested wait before retrying",
    )
    message: str | None = Field(default=None, description="User-facing hint")


class ApiError(BaseModel):
    """Uniform error shape for every failed eBay call."""

    code: str = Field(..., description="Error code")
    message: str = Field(..., description="Error message")
    ebay_error_id: str | None = Field(default=None, description="eBay's numeric errorId")
    recovery: RecoveryHint = Field(default_factory=RecoveryHint)


class ApiResponse(BaseModel):
    """Result of an eBay API call. Never raised, always returned."""

    success: bool
    status_code: int = Field(..., description="HTTP status, 0 when no response was received")
    data: Any = Field(default=None, description="Parsed JSON body on success")
    error: ApiError | None = None
    headers: dict[str, str] = Field(default_factory=dict)


class TokenResponse(BaseModel):
    """eBay OAuth token endpoint response."""

    access_token: str = Field(..., description="The access token")
    token_type: str = Field(default="User Access Token", description="Token type")
    expires_in: int = Field(..., description="Access token lifetime in seconds")
    refresh_token: str | None = Field(default=None, description="Refresh token")
    refresh_token_expires_in: int | None = Field(
        default=None,
        description="Refresh token lifetime in seconds",
    )


class AccountStatus(str, Enum):
    """Connection status of a stored eBay account."""

    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"


class EbayAccount(BaseModel):
    """Stored eBay account with encrypted tokens. Internal only."""

    user_id: str
    ebay_user_id: str | None = None
    access_token_encrypted: str = Field(..., repr=False)
    refresh_token_encrypted: str = Field(..., repr=False)
    access_token_expires_at: datetime
    refresh_token_expires_at: datetime
    scopes: list[str] = Field(default_factory=list)
    status: AccountStatus = AccountStatus.ACTIVE
    connected_at: datetime | None = None
    updated_at: datetime | None = None


class ConnectedAccount(BaseModel):
    """Public view of a connected eBay account (no tokens)."""

    connected: bool = True
    ebay_user_id: str | None = None
    status: AccountStatus = AccountStatus.ACTIVE
    scopes: list[str] = Field(default_factory=list)
    access_token_expires_at: datetime | None = None
    connected_at: datetime | None = None
    needs_reauth: bool = False


class AuthStartResponse(BaseModel):
    """Response for starting the eBay OAuth flow."""

    auth_url: str = Field(..., description="eBay consent page URL")
    state: str = Field(..., description="CSRF state value bound to this user")


class OAuthState(BaseModel):
    """Issued OAuth state value."""

    state: str
    user_id: str
    redirect_uri: str
    expires_at: datetime
    used_at: datetime | None = None


class SellerProfile(BaseModel):
    """Seller ship-from address used to create the merchant location."""

    country: str = Field(default="US", min_length=2, max_length=2)
    postal_code: str | None = None
    city: str | None = None
    state_or_province: str | None = None
    address_line1: str | None = None


class ItemCondition(str, Enum):
    """Listing draft condition values."""

    NEW = "new"
    LIKE_NEW = "like_new"
    VERY_GOOD = "very_good"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"


# eBay SKUs: up to 50 letters, digits, dots, dashes or underscores.
SKU_PATTERN = r"^[A-Za-z0-9._-]{1,50}$"

# Draft condition -> eBay Inventory API ConditionEnum
CONDITION_MAP: dict[ItemCondition, str] = {
    ItemCondition.NEW: "NEW",
    ItemCondition.LIKE_NEW: "LIKE_NEW",
    ItemCondition.VERY_GOOD: "VERY_GOOD",
    ItemCondition.GOOD: "GOOD",
    ItemCondition.FAIR: "GOOD",
    ItemCondition.POOR: "ACCEPTABLE",
}


class ListingPolicies(BaseModel):
    """Business policy ids required on every offer."""

    fulfillment_policy_id: str | None = None
    payment_policy_id: str | None = None
    return_policy_id: str | None = None

    def missing(self) -> list[str]:
        """Names of the policy ids that are not set."""
        return [name for name, value in self.model_dump().items() if not value]


class ListingDraft(BaseModel):
    """Platform-formatted listing ready to publish.

    Field limits mirror eBay's own so a bad draft is rejected before any
    eBay call is made.
    """

    listing_id: str = Field(..., description="Local listing id")
    title: str = Field(..., min_length=1, max_length=80)
    description: str = Field(..., min_length=1, max_length=4000)
    price: float = Field(..., gt=0)
    currency: str = Field(default="USD")
    quantity: int = Field(default=1, ge=1)
    condition: ItemCondition = Field(default=ItemCondition.GOOD)
    condition_description: str | None = None
    category_id: str = Field(..., description="eBay leaf category id")
    image_urls: list[str] = Field(..., min_length=1, max_length=12)
    aspects: dict[str, list[str]] = Field(default_factory=dict)
    sku: str | None = Field(
        default=None,
        pattern=SKU_PATTERN,
        description="Reuse an existing SKU",
    )
    policies: ListingPolicies | None = Field(
        default=None,
        description="Explicit policy ids; the seller's account policies are used otherwise",
    )


class PublishStepName(str, Enum):
    """The publish pipeline steps, in execution order."""

    LOCATION = "location"
    INVENTORY = "inventory"
    POLICIES = "policies"
    OFFER = "offer"
    FEES = "fees"
    PUBLISH = "publish"


class StepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    FAILED = "failed"
    SKIPPED = "skipped"


class StepOutcome(BaseModel):
    """Outcome of one pipeline step."""

    step: int = Field(..., ge=1, le=6)
    name: PublishStepName
    status: StepStatus = StepStatus.PENDING
    item_sku: str | None = None
    offer_id: str | None = None
    listing_id: str | None = None
    merchant_location_key: str | None = None
    error: str | None = None


class FeeAmount(BaseModel):
    value: str
    currency: str


class ListingFee(BaseModel):
    fee_type: str
    amount: FeeAmount


class ListingFees(BaseModel):
    """Estimated listing fees for an offer."""

    marketplace_id: str
    listing_fees: list[ListingFee] = Field(default_factory=list)
    total_fee: FeeAmount | None = None


class PublishResult(BaseModel):
    """Result of one publish attempt."""

    success: bool
    listing_id: str | None = Field(default=None, description="eBay listing id")
    offer_id: str | None = None
    sku: str | None = None
    listing_url: str | None = None
    failed_step: PublishStepName | None = None
    error_code: str | None = None
    error_message: str | None = None
    error_action: RecoveryAction | None = None
    ebay_error_id: str | None = None
    steps: list[StepOutcome] = Field(default_factory=list)
    fees: ListingFees | None = None
    warnings: list[str] = Field(default_factory=list)
    trace_id: str
    attempted_at: datetime
    published_at: datetime | None = None
