"""FastAPI application for the Resell Publisher service."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from resell_publisher import __version__
from resell_publisher.billing.router import router as billing_router
from resell_publisher.config import get_settings
from resell_publisher.db import close_database, get_session, init_database
from resell_publisher.ebay import close_ebay_client, get_token_vault
from resell_publisher.ebay.repository import get_state_repository
from resell_publisher.ebay.router import router as ebay_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    settings = get_settings()

    # Startup: create tables and validate the token key before taking traffic
    await init_database()
    if settings.ebay_configured:
        get_token_vault()
    else:
        logger.warning("eBay credentials not configured, eBay endpoints will return 503")
    if not settings.stripe_configured:
        logger.warning("Stripe not configured, billing endpoints will return 503")

    purged = await get_state_repository().purge_expired()
    if purged:
        logger.info("Purged %d expired OAuth states", purged)

    yield

    # Shutdown
    await close_ebay_client()
    await close_database()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application instance.
    """
    settings = get_settings()

    app = FastAPI(
        title=settings.service_name,
        description="Direct publish of listing drafts to eBay, gated by billing entitlements",
        version=__version__,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    # Health check endpoint
    @app.get("/health")
    async def health_check() -> dict:
        """Health check endpoint."""
        return {"status": "healthy", "service": settings.service_name}

    # Ready check endpoint
    @app.get("/ready")
    async def ready_check() -> dict:
        """Readiness check endpoint; verifies the database answers."""
        try:
            async with get_session() as session:
                await session.execute(text("SELECT 1"))
        except Exception as e:
            logger.error("Readiness check failed: %s", type(e).__name__)
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Database unavailable",
            ) from None
        return {
            "status": "ready",
            "service": settings.service_name,
            "ebay_configured": settings.ebay_configured,
            "billing_configured": settings.stripe_configured,
        }

    # Provides:
    # - GET /ebay/oauth/start, GET /ebay/oauth/callback
    # - GET/DELETE /ebay/account, GET/PUT /ebay/location, GET /ebay/policies
    # - POST /ebay/listings/{listing_id}/publish
    # - GET /ebay/listings/{listing_id}/attempts
    app.include_router(ebay_router)

    # Provides:
    # - POST /billing/stripe/webhook
    # - POST /billing/checkout, POST /billing/portal, GET /billing/status
    app.include_router(billing_router)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    return app
