"""FastAPI dependencies and error translation shared by the routers."""

import logging
from typing import Annotated

from fastapi import Header, HTTPException, status

from resell_publisher.ebay.errors import (
    AuthFailureError,
    ConfigFault,
    ErrorCode,
    PublisherError,
    ValidationFault,
)

logger = logging.getLogger(__name__)


async def get_current_user_id(
    x_user_id: Annotated[str | None, Header(alias="X-User-Id")] = None,
) -> str:
    """Extract the caller's user ID.

    Authentication happens upstream; the gateway forwards the verified
    user ID in the ``X-User-Id`` header.

    Raises:
        HTTPException: If the header is missing or blank.
    """
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing user identity",
        )
    return x_user_id.strip()


def status_for_error(error: PublisherError) -> int:
    """HTTP status for a publisher exception."""
    if error.code == ErrorCode.UPGRADE_REQUIRED.value:
        return status.HTTP_402_PAYMENT_REQUIRED
    if isinstance(error, AuthFailureError):
        return status.HTTP_401_UNAUTHORIZED
    if isinstance(error, ValidationFault):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(error, ConfigFault):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_502_BAD_GATEWAY


def to_http_exception(error: PublisherError) -> HTTPException:
    """Translate a publisher exception into an HTTPException.

    The detail carries only the code, message and recovery action.
    """
    status_code = status_for_error(error)
    logger.warning("Request failed with %s (status=%d)", error.code, status_code)
    return HTTPException(status_code=status_code, detail=error.to_dict())
