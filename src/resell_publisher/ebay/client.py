"""Resilient HTTP client for the eBay REST APIs.

Every call goes through ``EbayApiClient.request``, which retries transient
failures with exponential backoff, honors ``Retry-After`` on 429 and
normalizes every failure into an ``ApiError``. Ordinary HTTP failures are
returned, never raised.
"""

import asyncio
import base64
import json
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any

import httpx

from resell_publisher.config import Settings, get_settings
from resell_publisher.ebay.errors import ErrorCode, message_for
from resell_publisher.ebay.models import (
    ApiError,
    ApiResponse,
    RecoveryAction,
    RecoveryHint,
)

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 504})
AUTH_ERROR_CODES = frozenset({"invalid_token", "invalid_grant"})
DEFAULT_RATE_LIMIT_RETRY_SECONDS = 60.0
DEFAULT_SERVER_RETRY_SECONDS = 5.0
MAX_ERROR_TEXT = 500

TOKEN_PATH = "/identity/v1/oauth2/token"

SleepFunc = Callable[[float], Awaitable[Any]]


def recovery_for(
    status_code: int,
    code: str | None = None,
    retry_after: float | None = None,
) -> RecoveryHint:
    """Map an HTTP status and error code to a recovery hint.

    Args:
        status_code: HTTP status of the failed response.
        code: Normalized error code, if any.
        retry_after: Server-supplied Retry-After in seconds, if any.

    Returns:
        The recovery hint for the caller.
    """
    if status_code == 401 or (code and code in AUTH_ERROR_CODES):
        return RecoveryHint(
            action=RecoveryAction.REAUTH,
            message="Please reconnect your eBay account",
        )
    if status_code == 429:
        return RecoveryHint(
            action=RecoveryAction.RETRY,
            retry_after_seconds=retry_after or DEFAULT_RATE_LIMIT_RETRY_SECONDS,
            message="Rate limited by eBay. Please wait and try again.",
        )
    if status_code >= 500:
        return RecoveryHint(
            action=RecoveryAction.RETRY,
            retry_after_seconds=DEFAULT_SERVER_RETRY_SECONDS,
            message="eBay service temporarily unavailable",
        )
    return RecoveryHint(action=RecoveryAction.NONE)


def parse_error(
    status_code: int,
    body_text: str,
    retry_after: float | None = None,
) -> ApiError:
    """Normalize an eBay error body into an ApiError.

    Handles OAuth errors (``{error, error_description}``), REST API errors
    (``{errors: [{errorId, message}]}``) and non-JSON bodies.

    Args:
        status_code: HTTP status of the response.
        body_text: Raw response body.
        retry_after: Parsed Retry-After header, if any.

    Returns:
        Normalized error.
    """
    try:
        payload = json.loads(body_text) if body_text else None
    except ValueError:
        code = f"HTTP_{status_code}"
        return ApiError(
            code=code,
            message=body_text[:MAX_ERROR_TEXT],
            recovery=recovery_for(status_code, code, retry_after),
        )

    if isinstance(payload, dict):
        if isinstance(payload.get("error"), str):
            code = payload["error"]
            return ApiError(
                code=code,
                message=payload.get("error_description") or "Authentication error",
                recovery=recovery_for(status_code, code, retry_after),
            )

        errors = payload.get("errors")
        if isinstance(errors, list) and errors and isinstance(errors[0], dict):
            first = errors[0]
            error_id = first.get("errorId")
            code = str(error_id) if error_id is not None else "EBAY_ERROR"
            return ApiError(
                code=code,
                message=first.get("message") or first.get("longMessage") or "eBay API error",
                ebay_error_id=str(error_id) if error_id is not None else None,
                recovery=recovery_for(status_code, code, retry_after),
            )

    if payload is None and not body_text:
        code = f"HTTP_{status_code}"
        return ApiError(
            code=code,
            message=f"HTTP {status_code}",
            recovery=recovery_for(status_code, code, retry_after),
        )

    return ApiError(
        code=ErrorCode.UNKNOWN_ERROR.value,
        message=message_for(ErrorCode.UNKNOWN_ERROR),
        recovery=recovery_for(status_code, None, retry_after),
    )


def parse_retry_after(value: str | None) -> float | None:
    """Parse a Retry-After header given in seconds or as an HTTP date."""
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    return max((when - datetime.now(UTC)).total_seconds(), 0.0)


class EbayApiClient:
    """HTTP transport for the eBay APIs with retry and error normalization."""

    def __init__(
        self,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        """Initialize the client.

        Args:
            settings: Application settings (uses global settings if not provided).
            http_client: Preconfigured httpx client, e.g. with a mock transport.
            sleep: Coroutine used to wait between retries.
        """
        self._settings = settings or get_settings()
        self._http = http_client or httpx.AsyncClient(
            base_url=self._settings.ebay_api_base_url,
            timeout=self._settings.http_timeout_seconds,
        )
        self._sleep = sleep
        self.max_retries = self._settings.http_max_retries
        self.backoff_base = self._settings.http_backoff_base_seconds
        self.backoff_factor = self._settings.http_backoff_factor
        self.backoff_max = self._settings.http_backoff_max_seconds
        self.default_timeout = self._settings.http_timeout_seconds

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt + 1`` (attempt is zero-based)."""
        return min(self.backoff_base * (self.backoff_factor**attempt), self.backoff_max)

    def basic_auth_header(self) -> str:
        """Basic auth header built from the application's client credentials."""
        credentials = f"{self._settings.ebay_client_id}:{self._settings.ebay_client_secret}"
        return "Basic " + base64.b64encode(credentials.encode("utf-8")).decode("ascii")

    async def request(
        self,
        method: str,
        path: str,
        *,
        body: dict[str, Any] | list[Any] | str | None = None,
        form: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
        access_token: str | None = None,
        timeout: float | None = None,
    ) -> ApiResponse:
        """Send a request, retrying transient failures.

        Args:
            method: HTTP method.
            path: API path relative to the environment's base URL.
            body: JSON body (dict/list) or raw string body.
            form: Form fields, sent as application/x-www-form-urlencoded.
            headers: Extra headers.
            access_token: User access token, sent as a Bearer header.
            timeout: Per-attempt timeout in seconds.

        Returns:
            ApiResponse. Failures after retries are returned, not raised.
        """
        request_headers = {"Accept": "application/json"}
        request_headers.update(headers or {})
        if access_token:
            request_headers["Authorization"] = f"Bearer {access_token}"

        send_kwargs: dict[str, Any] = {}
        if form is not None:
            send_kwargs["data"] = form
        elif isinstance(body, str):
            send_kwargs["content"] = body
        elif body is not None:
            send_kwargs["json"] = body

        attempt_timeout = httpx.Timeout(timeout or self.default_timeout)
        last_response: httpx.Response | None = None
        last_exc: httpx.HTTPError | None = None

        for attempt in range(self.max_retries + 1):
            response: httpx.Response | None = None
            try:
                response = await self._http.request(
                    method,
                    path,
                    headers=request_headers,
                    timeout=attempt_timeout,
                    **send_kwargs,
                )
            except httpx.TimeoutException as e:
                last_exc = e
                logger.warning("eBay API %s %s timed out (attempt %d)", method, path, attempt + 1)
            except httpx.TransportError as e:
                last_exc = e
                logger.warning(
                    "eBay API %s %s transport error (attempt %d): %s",
                    method,
                    path,
                    attempt + 1,
                    type(e).__name__,
                )
            else:
                last_response = response
                if response.status_code not in RETRYABLE_STATUSES:
                    return self._to_api_response(response)

            if attempt >= self.max_retries:
                break

            delay = self._retry_delay(attempt, response)
            logger.warning(
                "eBay API %s %s failed with %s, retrying in %.1fs",
                method,
                path,
                response.status_code if response is not None else "transport error",
                delay,
            )
            await self._sleep(delay)

        if last_response is not None:
            logger.error(
                "eBay API %s %s failed after %d attempts (status=%d)",
                method,
                path,
                self.max_retries + 1,
                last_response.status_code,
            )
            return self._to_api_response(last_response)

        code = (
            ErrorCode.TIMEOUT_ERROR
            if isinstance(last_exc, httpx.TimeoutException)
            else ErrorCode.NETWORK_ERROR
        )
        logger.error("eBay API %s %s unreachable after %d attempts", method, path, self.max_retries + 1)
        return ApiResponse(
            success=False,
            status_code=0,
            error=ApiError(
                code=code.value,
                message=message_for(code),
                recovery=RecoveryHint(
                    action=RecoveryAction.RETRY,
                    retry_after_seconds=DEFAULT_SERVER_RETRY_SECONDS,
                ),
            ),
        )

    def _retry_delay(self, attempt: int, response: httpx.Response | None) -> float:
        if response is not None and response.status_code == 429:
            retry_after = parse_retry_after(response.headers.get("retry-after"))
            if retry_after is not None:
                return retry_after
        return self.backoff_delay(attempt)

    def _to_api_response(self, response: httpx.Response) -> ApiResponse:
        headers = {key.lower(): value for key, value in response.headers.items()}
        if response.is_success:
            data: Any = None
            if response.content:
                try:
                    data = response.json()
                except ValueError:
                    data = response.text
            return ApiResponse(
                success=True,
                status_code=response.status_code,
                data=data,
                headers=headers,
            )

        retry_after = parse_retry_after(headers.get("retry-after"))
        return ApiResponse(
            success=False,
            status_code=response.status_code,
            error=parse_error(response.status_code, response.text, retry_after),
            headers=headers,
        )

    async def exchange_code_for_tokens(self, code: str, redirect_uri: str) -> ApiResponse:
        """Exchange an authorization code for user tokens.

        Args:
            code: Authorization code from the consent redirect.
            redirect_uri: RuName the code was issued for.

        Returns:
            ApiResponse whose data is the token payload.
        """
        return await self.request(
            "POST",
            TOKEN_PATH,
            form={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
            },
            headers={"Authorization": self.basic_auth_header()},
        )

    async def refresh_access_token(
        self,
        refresh_token: str,
        scopes: list[str] | None = None,
    ) -> ApiResponse:
        """Mint a new access token from a refresh token.

        Args:
            refresh_token: The user's refresh token.
            scopes: Scopes to request (must be a subset of the original grant).

        Returns:
            ApiResponse whose data is the token payload.
        """
        form = {"grant_type": "refresh_token", "refresh_token": refresh_token}
        if scopes:
            form["scope"] = " ".join(scopes)
        return await self.request(
            "POST",
            TOKEN_PATH,
            form=form,
            headers={"Authorization": self.basic_auth_header()},
        )

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._http.aclose()


# Global client instance
_ebay_client: EbayApiClient | None = None


def get_ebay_client() -> EbayApiClient:
    """Get the global eBay API client instance.

    Returns:
        EbayApiClient instance.
    """
    global _ebay_client
    if _ebay_client is None:
        _ebay_client = EbayApiClient()
    return _ebay_client


async def close_ebay_client() -> None:
    """Close the global eBay API client, if one was created."""
    global _ebay_client
    if _ebay_client is not None:
        await _ebay_client.aclose()
        _ebay_client = None
