"""Database module for persistence.

Provides SQLAlchemy async engine, session management, and ORM models
for PostgreSQL (production) or SQLite (development and tests).
"""

from resell_publisher.db.base import (
    Base,
    as_utc,
    close_database,
    dialect_insert,
    get_dialect_name,
    get_engine,
    get_session,
    get_session_factory,
    init_database,
)
from resell_publisher.db.models import (
    EbayAccountModel,
    FreePublishTrialModel,
    OAuthStateModel,
    ProcessedWebhookEventModel,
    PublishAttemptModel,
    SellerProfileModel,
    SubscriptionModel,
)

__all__ = [
    # Base and session management
    "Base",
    "as_utc",
    "dialect_insert",
    "get_dialect_name",
    "get_engine",
    "get_session",
    "get_session_factory",
    "init_database",
    "close_database",
    # Models
    "EbayAccountModel",
    "OAuthStateModel",
    "SellerProfileModel",
    "SubscriptionModel",
    "FreePublishTrialModel",
    "ProcessedWebhookEventModel",
    "PublishAttemptModel",
]
