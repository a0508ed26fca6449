"""
Domain event publishing through a transactional outbox.

EventPublisher writes events into event_outbox inside the caller's session,
so an event exists exactly when the change it describes is committed.
OutboxRelay later delivers pending rows to a sink (webhook or log) with a
bounded number of retries. Delivery problems never reach request callers.
"""

import logging
from datetime import datetime, timedelta
from typing import Protocol
from uuid import uuid4

import httpx
from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.db.models import EventOutbox, OutboxStatus, utcnow
from app.schemas.events import DomainEvent, EventEnvelope

logger = logging.getLogger(__name__)
settings = get_settings()


class EventSink(Protocol):
    """Destination for published events."""

    async def send(self, routing_key: str, envelope: dict) -> None: ...


class LoggingEventSink:
    """Sink used when no webhook is configured: events are only logged."""

    async def send(self, routing_key: str, envelope: dict) -> None:
        logger.info("Event %s (%s) -> %s", envelope.get("event_type"), envelope.get("event_id"), routing_key)


class WebhookEventSink:
    """POSTs each event envelope as JSON to a webhook URL."""

    def __init__(
        self,
        url: str,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = url
        self.timeout = timeout if timeout is not None else settings.http_timeout_seconds
        self.transport = transport

    async def send(self, routing_key: str, envelope: dict) -> None:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.post(
                self.url,
                json=envelope,
                headers={"X-Routing-Key": routing_key},
            )
            response.raise_for_status()


def build_event_sink() -> EventSink:
    """Webhook sink when event_webhook_url is set, logging sink otherwise."""
    if settings.event_webhook_url:
        return WebhookEventSink(settings.event_webhook_url)
    return LoggingEventSink()


class EventPublisher:
    """Records domain events in the outbox within the caller's transaction."""

    def __init__(self, producer: str | None = None):
        self.producer = producer or settings.service_name

    async def publish(
        self,
        db: AsyncSession,
        event: DomainEvent,
        routing_key: str | None = None,
        scheduled_for: datetime | None = None,
    ) -> EventOutbox:
        """
        Add an event to the outbox. The row is committed with the caller's session.

        Args:
            db: Session the triggering change is being written with
            event: Tagged event payload
            routing_key: Delivery routing key (defaults to the event type)
            scheduled_for: Earliest delivery time (defaults to immediately)
        """
        envelope = EventEnvelope(
            event_id=uuid4().hex,
            event_type=event.event_type,
            occurred_at=utcnow(),
            producer=self.producer,
            payload=event,
        )
        row = EventOutbox(
            event_id=envelope.event_id,
            event_type=envelope.event_type,
            routing_key=routing_key or envelope.event_type,
            payload=envelope.model_dump(mode="json"),
            status=OutboxStatus.PENDING.value,
            scheduled_for=scheduled_for,
        )
        db.add(row)
        logger.debug("Event saved to outbox: %s (%s)", envelope.event_type, envelope.event_id)
        return row


class OutboxRelay:
    """Delivers pending outbox events to a sink."""

    def __init__(
        self,
        sink: EventSink | None = None,
        batch_size: int | None = None,
        max_retries: int | None = None,
        retention_days: int | None = None,
    ):
        self.sink = sink or build_event_sink()
        self.batch_size = batch_size or settings.outbox_batch_size
        self.max_retries = max_retries or settings.outbox_max_retries
        self.retention_days = retention_days or settings.outbox_retention_days

    async def process_pending(self, db: AsyncSession) -> int:
        """
        Deliver due pending events, oldest first.

        A failed delivery increments retry_count; the row becomes 'failed'
        once max_retries is reached.

        Returns:
            Number of events published
        """
        now = utcnow()
        stmt = (
            select(EventOutbox)
            .where(
                EventOutbox.status == OutboxStatus.PENDING.value,
                EventOutbox.retry_count < self.max_retries,
                or_(EventOutbox.scheduled_for.is_(None), EventOutbox.scheduled_for <= now),
            )
            .order_by(EventOutbox.created_at.asc())
            .limit(self.batch_size)
        )
        result = await db.execute(stmt)
        pending = result.scalars().all()
        if not pending:
            return 0

        published = 0
        for row in pending:
            try:
                await self.sink.send(row.routing_key, row.payload)
            except Exception as e:
                row.retry_count += 1
                row.last_error = str(e)
                if row.retry_count >= self.max_retries:
                    row.status = OutboxStatus.FAILED.value
                logger.warning(
                    "Failed to publish event %s (%s), retry %d/%d: %s",
                    row.event_type, row.event_id, row.retry_count, self.max_retries, e,
                )
                continue

            row.status = OutboxStatus.PUBLISHED.value
            row.published_at = utcnow()
            published += 1

        await db.commit()
        logger.info("Published %d/%d outbox events", published, len(pending))
        return published

    async def cleanup(self, db: AsyncSession) -> int:
        """Delete published events older than the retention window."""
        cutoff = utcnow() - timedelta(days=self.retention_days)
        result = await db.execute(
            delete(EventOutbox).where(
                EventOutbox.status == OutboxStatus.PUBLISHED.value,
                EventOutbox.published_at <= cutoff,
            )
        )
        await db.commit()
        logger.info("Cleaned up %d old outbox events", result.rowcount)
        return result.rowcount

    async def retry_failed(self, db: AsyncSession, event_ids: list[str] | None = None) -> int:
        """Reset failed events (all, or the given event ids) back to pending."""
        stmt = update(EventOutbox).where(EventOutbox.status == OutboxStatus.FAILED.value)
        if event_ids:
            stmt = stmt.where(EventOutbox.event_id.in_(event_ids))
        result = await db.execute(
            stmt.values(status=OutboxStatus.PENDING.value, retry_count=0, last_error=None),
            execution_options={"synchronize_session": "fetch"},
        )
        await db.commit()
        logger.info("Reset %d failed events for retry", result.rowcount)
        return result.rowcount


# Singleton instance
event_publisher = EventPublisher()
