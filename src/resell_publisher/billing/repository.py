"""Repository for processed Stripe webhook event ids."""

import logging

from sqlalchemy import select

from resell_publisher.db import ProcessedWebhookEventModel, dialect_insert, get_session

logger = logging.getLogger(__name__)


class WebhookEventRepository:
    """Repository for the webhook idempotency table."""

    async def exists(self, event_id: str) -> bool:
        async with get_session() as session:
            result = await session.execute(
                select(ProcessedWebhookEventModel.event_id).where(
                    ProcessedWebhookEventModel.event_id == event_id
                )
            )
            return result.scalar_one_or_none() is not None

    async def insert_if_absent(self, event_id: str, event_type: str | None = None) -> bool:
        """Record an event id.

        Args:
            event_id: Stripe event id.
            event_type: Stripe event type, kept for diagnostics.

        Returns:
            True if the row was inserted, False if the id was already present.
        """
        stmt = (
            dialect_insert(ProcessedWebhookEventModel)
            .values(event_id=event_id, event_type=event_type)
            .on_conflict_do_nothing(index_elements=[ProcessedWebhookEventModel.event_id])
        )
        async with get_session() as session:
            result = await session.execute(stmt)
            return result.rowcount == 1


# Global repository instance
_webhook_event_repo: WebhookEventRepository | None = None


def get_webhook_event_repository() -> WebhookEventRepository:
    """Get the global webhook event repository instance."""
    global _webhook_event_repo
    if _webhook_event_repo is None:
        _webhook_event_repo = WebhookEventRepository()
    return _webhook_event_repo
