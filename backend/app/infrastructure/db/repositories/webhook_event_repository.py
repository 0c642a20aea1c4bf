"""
Webhook Event Repository

DB-backed record of processed provider events (survives restarts).
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession


class WebhookEventRepository:
    """Idempotency store for Stripe and PayPal webhook deliveries."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def is_processed(self, event_id: str) -> bool:
        result = await self.session.execute(
            text("SELECT 1 FROM processed_webhook_events WHERE event_id = :eid"),
            {"eid": event_id},
        )
        return result.scalar_one_or_none() is not None

    async def mark_processed(self, event_id: str, event_type: str, provider: str) -> bool:
        """
        Record an event. Returns False when another delivery got there first.
        """
        result = await self.session.execute(
            text(
                "INSERT INTO processed_webhook_events (event_id, event_type, provider) "
                "VALUES (:eid, :etype, :provider) ON CONFLICT (event_id) DO NOTHING"
            ),
            {"eid": event_id, "etype": event_type, "provider": provider},
        )
        return result.rowcount == 1
