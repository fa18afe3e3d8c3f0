"""eBay OAuth session management.

Handles the authorization-code handshake, encrypted token storage and
transparent refresh of expiring access tokens.
"""

import logging
import time
from datetime import UTC, datetime, timedelta
from urllib.parse import urlencode

from pydantic import ValidationError

from resell_publisher.config import Settings, get_settings
from resell_publisher.ebay.client import EbayApiClient, get_ebay_client
from resell_publisher.ebay.crypto import TokenVault, get_token_vault
from resell_publisher.ebay.errors import (
    AuthFailureError,
    ConfigFault,
    ErrorCode,
    ValidationFault,
)
from resell_publisher.ebay.models import (
    AccountStatus,
    ApiResponse,
    AuthStartResponse,
    ConnectedAccount,
    EbayAccount,
    OAuthState,
    RecoveryAction,
    TokenResponse,
)
from resell_publisher.ebay.repository import (
    EbayAccountRepository,
    OAuthStateRepository,
    get_account_repository,
    get_state_repository,
)
from resell_publisher.entitlements import EntitlementLedger, get_entitlement_ledger

logger = logging.getLogger(__name__)

EBAY_SCOPES = [
    "https://api.ebay.com/oauth/api_scope",
    "https://api.ebay.com/oauth/api_scope/sell.inventory",
    "https://api.ebay.com/oauth/api_scope/sell.account",
    "https://api.ebay.com/oauth/api_scope/sell.fulfillment",
    "https://api.ebay.com/oauth/api_scope/commerce.identity.readonly",
]

# eBay refresh tokens live about 18 months when the response omits it
DEFAULT_REFRESH_TOKEN_TTL_SECONDS = 47304000

IDENTITY_PATH = "/commerce/identity/v1/user/"


class EbayAuthService:
    """OAuth session manager for users' eBay accounts."""

    def __init__(
        self,
        client: EbayApiClient | None = None,
        vault: TokenVault | None = None,
        account_repo: EbayAccountRepository | None = None,
        state_repo: OAuthStateRepository | None = None,
        ledger: EntitlementLedger | None = None,
        settings: Settings | None = None,
    ) -> None:
        """Initialize the auth service.

        Args:
            client: eBay API client (uses default if not provided).
            vault: Token vault (uses default if not provided).
            account_repo: Account repository (uses default if not provided).
            state_repo: OAuth state repository (uses default if not provided).
            ledger: Entitlement ledger (uses default if not provided).
            settings: Application settings (uses default if not provided).
        """
        self._settings = settings or get_settings()
        self._client = client or get_ebay_client()
        self._vault = vault or get_token_vault()
        self._account_repo = account_repo or get_account_repository()
        self._state_repo = state_repo or get_state_repository()
        self._ledger = ledger or get_entitlement_ledger()

    @property
    def redirect_uri(self) -> str:
        return self._settings.ebay_runame

    def build_authorization_url(self, state: str, scopes: list[str] | None = None) -> str:
        """Build the eBay consent page URL.

        Args:
            state: CSRF state value.
            scopes: Scopes to request (defaults to EBAY_SCOPES).

        Returns:
            Full authorization URL.
        """
        params = {
            "client_id": self._settings.ebay_client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": " ".join(scopes or EBAY_SCOPES),
            "state": state,
        }
        return f"{self._settings.ebay_auth_base_url}/oauth2/authorize?{urlencode(params)}"

    async def start_oauth(self, user_id: str) -> AuthStartResponse:
        """Issue a state value and return the consent URL for a user.

        Args:
            user_id: The application user ID.

        Returns:
            Consent URL and state.
        """
        if not self._settings.ebay_configured:
            raise ConfigFault(ErrorCode.EBAY_NOT_CONFIGURED)

        state = self._vault.generate_oauth_state()
        expires_at = datetime.now(UTC) + timedelta(
            seconds=self._settings.ebay_oauth_state_ttl_seconds
        )
        await self._state_repo.create(
            OAuthState(
                state=state,
                user_id=user_id,
                redirect_uri=self.redirect_uri,
                expires_at=expires_at,
            )
        )
        logger.info("Started eBay OAuth for user %s (state=%s...)", user_id, state[:8])
        return AuthStartResponse(auth_url=self.build_authorization_url(state), state=state)

    async def handle_callback(self, code: str, state: str) -> ConnectedAccount:
        """Complete the OAuth handshake.

        Args:
            code: Authorization code from eBay.
            state: State value echoed back by eBay.

        Returns:
            The connected account.

        Raises:
            ValidationFault: If the state is unknown, used or expired.
            AuthFailureError: If the code exchange fails.
        """
        consumed = await self._state_repo.consume(state)
        if consumed is None:
            existing = await self._state_repo.get(state)
            if existing is not None and existing.used_at is None:
                logger.warning("Expired OAuth state presented (state=%s...)", state[:8])
                raise ValidationFault(ErrorCode.OAUTH_STATE_EXPIRED)
            logger.warning("Invalid or replayed OAuth state (state=%s...)", state[:8])
            raise ValidationFault(ErrorCode.OAUTH_STATE_INVALID)

        user_id = consumed.user_id
        await self.exchange_code_for_tokens(user_id, code, consumed.redirect_uri)
        await self._ledger.grant_on_ebay_connect(user_id)

        account = await self.get_connected_account(user_id)
        logger.info("eBay account connected for user %s", user_id)
        return account or ConnectedAccount(connected=True)

    async def exchange_code_for_tokens(
        self,
        user_id: str,
        code: str,
        redirect_uri: str,
    ) -> EbayAccount:
        """Exchange an authorization code and store the encrypted tokens.

        Args:
            user_id: The application user ID.
            code: Authorization code.
            redirect_uri: RuName the code was issued for.

        Returns:
            The stored account.

        Raises:
            AuthFailureError: If eBay rejects the exchange.
        """
        response = await self._client.exchange_code_for_tokens(code, redirect_uri)
        tokens = self._parse_token_response(response, ErrorCode.TOKEN_EXCHANGE_FAILED)
        if not tokens.refresh_token:
            raise AuthFailureError(
                ErrorCode.TOKEN_EXCHANGE_FAILED,
                "eBay did not return a refresh token",
            )

        now = datetime.now(UTC)
        ebay_user_id = await self._fetch_ebay_user_id(tokens.access_token)
        account = EbayAccount(
            user_id=user_id,
            ebay_user_id=ebay_user_id,
            access_token_encrypted=self._vault.encrypt(tokens.access_token),
            refresh_token_encrypted=self._vault.encrypt(tokens.refresh_token),
            access_token_expires_at=now + timedelta(seconds=tokens.expires_in),
            refresh_token_expires_at=now
            + timedelta(
                seconds=tokens.refresh_token_expires_in or DEFAULT_REFRESH_TOKEN_TTL_SECONDS
            ),
            scopes=list(EBAY_SCOPES),
            status=AccountStatus.ACTIVE,
        )
        await self._account_repo.upsert(account)
        return account

    async def refresh_access_token(self, user_id: str, refresh_token: str) -> TokenResponse:
        """Rotate a user's access token.

        Args:
            user_id: The application user ID.
            refresh_token: Decrypted refresh token.

        Returns:
            The new tokens.

        Raises:
            AuthFailureError: Always with action ``reauth``; auth rejections
                also mark the account expired.
        """
        response = await self._client.refresh_access_token(refresh_token, EBAY_SCOPES)
        if not response.success:
            error = response.error
            if error is not None and error.recovery.action == RecoveryAction.REAUTH:
                await self._account_repo.set_status(user_id, AccountStatus.EXPIRED)
                logger.warning("eBay refresh token rejected for user %s", user_id)
                raise AuthFailureError(ErrorCode.EBAY_REAUTH_REQUIRED)
            logger.error(
                "eBay token refresh failed for user %s (status=%d, code=%s)",
                user_id,
                response.status_code,
                error.code if error else None,
            )
            raise AuthFailureError(ErrorCode.TOKEN_REFRESH_FAILED)

        tokens = self._parse_token_response(response, ErrorCode.TOKEN_REFRESH_FAILED)
        now = datetime.now(UTC)
        await self._account_repo.update_tokens(
            user_id,
            access_token_encrypted=self._vault.encrypt(tokens.access_token),
            access_token_expires_at=now + timedelta(seconds=tokens.expires_in),
            refresh_token_encrypted=(
                self._vault.encrypt(tokens.refresh_token) if tokens.refresh_token else None
            ),
            refresh_token_expires_at=(
                now + timedelta(seconds=tokens.refresh_token_expires_in)
                if tokens.refresh_token and tokens.refresh_token_expires_in
                else None
            ),
        )
        logger.info("Refreshed eBay access token for user %s", user_id)
        return tokens

    async def get_access_token(self, user_id: str) -> str:
        """Get a usable access token, refreshing it if it is about to expire.

        Args:
            user_id: The application user ID.

        Returns:
            Plaintext access token valid for at least the refresh window.

        Raises:
            AuthFailureError: If the account is missing, expired or cannot be refreshed.
        """
        account = await self._account_repo.get(user_id)
        if account is None:
            raise AuthFailureError(ErrorCode.EBAY_NOT_CONNECTED)
        if account.status != AccountStatus.ACTIVE:
            raise AuthFailureError(ErrorCode.EBAY_REAUTH_REQUIRED)

        now = datetime.now(UTC)
        if account.refresh_token_expires_at <= now:
            await self._account_repo.set_status(user_id, AccountStatus.EXPIRED)
            raise AuthFailureError(ErrorCode.EBAY_TOKEN_EXPIRED)

        window = timedelta(seconds=self._settings.ebay_token_refresh_window_seconds)
        if account.access_token_expires_at - window > now:
            return self._vault.decrypt(account.access_token_encrypted)

        refresh_token = self._vault.decrypt(account.refresh_token_encrypted)
        tokens = await self.refresh_access_token(user_id, refresh_token)
        return tokens.access_token

    async def get_connected_account(self, user_id: str) -> ConnectedAccount | None:
        """Get the public view of a user's eBay connection."""
        account = await self._account_repo.get(user_id)
        if account is None:
            return None
        return ConnectedAccount(
            connected=account.status == AccountStatus.ACTIVE,
            ebay_user_id=account.ebay_user_id,
            status=account.status,
            scopes=account.scopes,
            access_token_expires_at=account.access_token_expires_at,
            connected_at=account.connected_at,
            needs_reauth=account.status != AccountStatus.ACTIVE,
        )

    async def disconnect(self, user_id: str) -> bool:
        """Remove a user's eBay connection and its stored tokens."""
        deleted = await self._account_repo.delete(user_id)
        if deleted:
            logger.info("eBay account disconnected for user %s", user_id)
        return deleted

    async def _fetch_ebay_user_id(self, access_token: str) -> str:
        response = await self._client.request("GET", IDENTITY_PATH, access_token=access_token)
        if response.success and isinstance(response.data, dict) and response.data.get("userId"):
            return str(response.data["userId"])
        logger.warning("eBay identity lookup failed (status=%d), using fallback id", response.status_code)
        return f"ebay_{int(time.time() * 1000)}"

    def _parse_token_response(self, response: ApiResponse, code: ErrorCode) -> TokenResponse:
        if not response.success:
            logger.error(
                "eBay token endpoint failed (status=%d, code=%s)",
                response.status_code,
                response.error.code if response.error else None,
            )
            raise AuthFailureError(code)
        try:
            return TokenResponse.model_validate(response.data)
        except ValidationError as e:
            raise AuthFailureError(code, "eBay returned an unreadable token response") from e


# Global auth service instance
_auth_service: EbayAuthService | None = None


def get_auth_service() -> EbayAuthService:
    """Get the global eBay auth service instance.

    Returns:
        EbayAuthService instance.
    """
    global _auth_service
    if _auth_service is None:
        _auth_service = EbayAuthService()
    return _auth_service
