"""eBay integration: OAuth sessions, token vault and the publish pipeline."""

from resell_publisher.ebay.auth import EbayAuthService, get_auth_service
from resell_publisher.ebay.client import EbayApiClient, close_ebay_client, get_ebay_client
from resell_publisher.ebay.crypto import TokenVault, get_token_vault
from resell_publisher.ebay.errors import (
    AuthFailureError,
    ConfigFault,
    CryptoFailure,
    ErrorCode,
    PublisherError,
    RateLimitError,
    ServerFaultError,
    TokenDecryptionError,
    TransportError,
    ValidationFault,
)
from resell_publisher.ebay.models import ListingDraft, PublishResult
from resell_publisher.ebay.orchestrator import PublishOrchestrator, get_publish_orchestrator
from resell_publisher.ebay.service import PublishService, get_publish_service

__all__ = [
    # Auth
    "EbayAuthService",
    "get_auth_service",
    # Client
    "EbayApiClient",
    "close_ebay_client",
    "get_ebay_client",
    # Vault
    "TokenVault",
    "get_token_vault",
    # Errors
    "AuthFailureError",
    "ConfigFault",
    "CryptoFailure",
    "ErrorCode",
    "PublisherError",
    "RateLimitError",
    "ServerFaultError",
    "TokenDecryptionError",
    "TransportError",
    "ValidationFault",
    # Publish
    "ListingDraft",
    "PublishOrchestrator",
    "PublishResult",
    "PublishService",
    "get_publish_orchestrator",
    "get_publish_service",
]
