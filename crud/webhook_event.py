"""
Repository for gateway webhook events that were already handled
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database_models import ProcessedWebhookEvent


class WebhookEventRepository:

    def __init__(self, db: AsyncSession):
        self.db = db

    async def has_processed_event(self, event_id: str) -> bool:
        result = await self.db.execute(
            select(ProcessedWebhookEvent.id).where(ProcessedWebhookEvent.event_id == event_id)
        )
        return result.scalar_one_or_none() is not None

    async def record_processed_event(self, event_id: str, event_type: str, outcome: str) -> ProcessedWebhookEvent:
        record = ProcessedWebhookEvent(event_id=event_id, event_type=event_type, outcome=outcome)
        self.db.add(record)
        await self.db.flush()
        return record
