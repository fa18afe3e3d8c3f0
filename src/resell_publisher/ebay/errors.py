"""Error codes and exception hierarchy for the eBay integration.

Ordinary HTTP failures travel as ``ApiResponse`` values; the exceptions
below are raised at service seams where the caller cannot continue.
"""

from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from resell_publisher.ebay.models import ApiError


class ErrorCode(str, Enum):
    """Stable error codes surfaced to clients."""

    # Connection / auth
    EBAY_NOT_CONNECTED = "EBAY_NOT_CONNECTED"
    EBAY_REAUTH_REQUIRED = "EBAY_REAUTH_REQUIRED"
    EBAY_TOKEN_EXPIRED = "EBAY_TOKEN_EXPIRED"
    TOKEN_REFRESH_FAILED = "TOKEN_REFRESH_FAILED"
    TOKEN_EXCHANGE_FAILED = "TOKEN_EXCHANGE_FAILED"
    OAUTH_STATE_INVALID = "OAUTH_STATE_INVALID"
    OAUTH_STATE_EXPIRED = "OAUTH_STATE_EXPIRED"

    # Publish pipeline
    POLICIES_MISSING = "POLICIES_MISSING"
    POLICIES_FETCH_FAILED = "POLICIES_FETCH_FAILED"
    LOCATION_REQUIRED = "LOCATION_REQUIRED"
    LOCATION_CREATE_FAILED = "LOCATION_CREATE_FAILED"
    LOCATION_NOT_ENABLED = "LOCATION_NOT_ENABLED"
    EBAY_ADDRESS_INCOMPLETE = "EBAY_ADDRESS_INCOMPLETE"
    INVENTORY_ITEM_FAILED = "INVENTORY_ITEM_FAILED"
    OFFER_CREATE_FAILED = "OFFER_CREATE_FAILED"
    OFFER_PUBLISH_FAILED = "OFFER_PUBLISH_FAILED"
    FEES_UNAVAILABLE = "FEES_UNAVAILABLE"

    # Transport
    RATE_LIMITED = "RATE_LIMITED"
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"

    # Crypto / configuration
    DECRYPTION_FAILED = "DECRYPTION_FAILED"
    ENCRYPTION_NOT_CONFIGURED = "ENCRYPTION_NOT_CONFIGURED"
    EBAY_NOT_CONFIGURED = "EBAY_NOT_CONFIGURED"
    BILLING_NOT_CONFIGURED = "BILLING_NOT_CONFIGURED"

    # Entitlement
    UPGRADE_REQUIRED = "UPGRADE_REQUIRED"

    # Billing
    BILLING_CUSTOMER_NOT_FOUND = "BILLING_CUSTOMER_NOT_FOUND"
    BILLING_PROVIDER_ERROR = "BILLING_PROVIDER_ERROR"

    UNKNOWN_ERROR = "UNKNOWN_ERROR"


ERROR_MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.EBAY_NOT_CONNECTED: "Please connect your eBay account first",
    ErrorCode.EBAY_REAUTH_REQUIRED: "Your eBay session has expired. Please reconnect your eBay account.",
    ErrorCode.EBAY_TOKEN_EXPIRED: (
        "Your eBay authorization has expired. Please reconnect your eBay account."
    ),
    ErrorCode.TOKEN_REFRESH_FAILED: "Failed to refresh eBay session",
    ErrorCode.TOKEN_EXCHANGE_FAILED: "Failed to complete eBay authorization",
    ErrorCode.OAUTH_STATE_INVALID: "Invalid authorization state. Please try again.",
    ErrorCode.OAUTH_STATE_EXPIRED: "Authorization session expired. Please try again.",
    ErrorCode.POLICIES_MISSING: (
        "Missing required business policies. Please configure them in eBay Seller Hub."
    ),
    ErrorCode.POLICIES_FETCH_FAILED: "Failed to fetch your eBay business policies",
    ErrorCode.LOCATION_REQUIRED: "Please set up a shipping location before listing",
    ErrorCode.LOCATION_CREATE_FAILED: "Failed to create shipping location on eBay",
    ErrorCode.LOCATION_NOT_ENABLED: (
        "Inventory location exists but is not ENABLED. Please enable it in eBay Seller Hub."
    ),
    ErrorCode.EBAY_ADDRESS_INCOMPLETE: "US locations require city, state, AND postal code",
    ErrorCode.INVENTORY_ITEM_FAILED: "Failed to create item on eBay",
    ErrorCode.OFFER_CREATE_FAILED: "Failed to create offer on eBay",
    ErrorCode.OFFER_PUBLISH_FAILED: "Failed to publish listing to eBay",
    ErrorCode.FEES_UNAVAILABLE: "Listing fees could not be estimated",
    ErrorCode.RATE_LIMITED: "Too many requests to eBay. Please wait and try again.",
    ErrorCode.NETWORK_ERROR: "Could not reach eBay. Please check your connection.",
    ErrorCode.TIMEOUT_ERROR: "eBay did not respond in time. Please try again.",
    ErrorCode.DECRYPTION_FAILED: "Stored eBay credentials could not be read",
    ErrorCode.ENCRYPTION_NOT_CONFIGURED: "Token encryption is not configured",
    ErrorCode.EBAY_NOT_CONFIGURED: "eBay integration is not configured on this server",
    ErrorCode.BILLING_NOT_CONFIGURED: "Billing is not configured on this server",
    ErrorCode.UPGRADE_REQUIRED: "Upgrade to premium to publish directly to eBay",
    ErrorCode.BILLING_CUSTOMER_NOT_FOUND: "No billing customer found for this account",
    ErrorCode.BILLING_PROVIDER_ERROR: "The billing provider could not complete the request",
    ErrorCode.UNKNOWN_ERROR: "An unexpected error occurred",
}


def message_for(code: ErrorCode | str) -> str:
    """Default human-readable message for an error code."""
    try:
        return ERROR_MESSAGES[ErrorCode(code)]
    except ValueError:
        return ERROR_MESSAGES[ErrorCode.UNKNOWN_ERROR]


class PublisherError(Exception):
    """Base class for errors that abort an eBay operation.

    Attributes:
        code: Stable error code.
        message: Human-readable message, safe to show to the user.
        action: Suggested recovery action ("reauth", "retry" or "none").
        ebay_error_id: eBay errorId when the failure came from an API response.
    """

    default_action = "none"

    def __init__(
        self,
        code: ErrorCode | str,
        message: str | None = None,
        action: str | None = None,
        ebay_error_id: str | None = None,
    ) -> None:
        self.code = code.value if isinstance(code, ErrorCode) else code
        self.message = message or message_for(code)
        self.action = action or self.default_action
        self.ebay_error_id = ebay_error_id
        super().__init__(self.message)

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message, "action": self.action}


class TransportError(PublisherError):
    """Timeout or connection failure after retries were exhausted."""

    default_action = "retry"


class RateLimitError(PublisherError):
    """eBay kept answering 429 after retries were exhausted."""

    default_action = "retry"


class ServerFaultError(PublisherError):
    """eBay kept answering 5xx after retries were exhausted."""

    default_action = "retry"


class AuthFailureError(PublisherError):
    """The user's eBay authorization is missing or no longer valid."""

    default_action = "reauth"


class ValidationFault(PublisherError):
    """Required data is missing; retrying cannot help."""


class CryptoFailure(PublisherError):
    """Token encryption or decryption failed."""


class TokenDecryptionError(CryptoFailure):
    """Ciphertext failed authentication (tampered, truncated or wrong key)."""

    def __init__(self, message: str | None = None) -> None:
        super().__init__(ErrorCode.DECRYPTION_FAILED, message)


class ConfigFault(PublisherError):
    """Required secret or credential configuration is missing or invalid."""


def from_api_error(
    code: ErrorCode,
    status_code: int,
    error: "ApiError | None",
) -> PublisherError:
    """Classify a failed API response into the exception taxonomy.

    Args:
        code: Error code of the operation that failed, used for API rejections
            and server faults.
        status_code: HTTP status (0 when no response was received).
        error: Normalized error from the response.

    Returns:
        The exception to raise.
    """
    detail = error.message if error else None
    ebay_error_id = error.ebay_error_id if error else None
    action = error.recovery.action.value if error else None

    if status_code == 0:
        transport_code = (
            error.code
            if error and error.code in (ErrorCode.TIMEOUT_ERROR.value, ErrorCode.NETWORK_ERROR.value)
            else ErrorCode.NETWORK_ERROR
        )
        return TransportError(transport_code)
    if action == "reauth":
        return AuthFailureError(ErrorCode.EBAY_REAUTH_REQUIRED, ebay_error_id=ebay_error_id)
    if status_code == 429:
        return RateLimitError(ErrorCode.RATE_LIMITED, ebay_error_id=ebay_error_id)
    if status_code >= 500:
        return ServerFaultError(code, ebay_error_id=ebay_error_id)
    message = f"{message_for(code)}: {detail}" if detail else None
    return PublisherError(code, message, ebay_error_id=ebay_error_id)
