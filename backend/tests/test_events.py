"""Tests for the event outbox, its relay and the background scheduler."""

import asyncio
from datetime import timedelta
from uuid import uuid4

import httpx
import pytest
from sqlalchemy import func, select

from app.db.models import EventOutbox, OutboxStatus, utcnow
from app.schemas.events import EmailSyncCompletedEvent, EventEnvelope
from app.services import scheduler as scheduler_module
from app.services.events import EventPublisher, LoggingEventSink, OutboxRelay, WebhookEventSink
from app.services.scheduler import SyncScheduler


class RecordingSink:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: list[tuple[str, dict]] = []

    async def send(self, routing_key: str, envelope: dict) -> None:
        if self.fail:
            raise RuntimeError("broker unavailable")
        self.sent.append((routing_key, envelope))


def sync_event() -> EmailSyncCompletedEvent:
    return EmailSyncCompletedEvent(
        coach_id=uuid4(), total_processed=3, client_emails_found=1, synced_at=utcnow()
    )


async def statuses(db) -> list[str]:
    result = await db.execute(select(EventOutbox.status).order_by(EventOutbox.created_at))
    return list(result.scalars())


async def test_publish_writes_envelope_to_outbox(db):
    row = await EventPublisher(producer="coaching-api").publish(db, sync_event())
    await db.commit()

    assert row.status == OutboxStatus.PENDING.value
    assert row.retry_count == 0
    assert row.event_type == "email.sync.completed"
    assert row.routing_key == "email.sync.completed"

    envelope = EventEnvelope.model_validate(row.payload)
    assert envelope.event_id == row.event_id
    assert envelope.producer == "coaching-api"
    assert isinstance(envelope.payload, EmailSyncCompletedEvent)
    assert envelope.payload.client_emails_found == 1


async def test_publish_is_rolled_back_with_the_caller(db):
    await EventPublisher().publish(db, sync_event())
    await db.rollback()

    assert await db.scalar(select(func.count()).select_from(EventOutbox)) == 0


async def test_relay_delivers_due_events(db):
    publisher = EventPublisher()
    await publisher.publish(db, sync_event(), routing_key="coach.sync")
    await publisher.publish(db, sync_event(), scheduled_for=utcnow() + timedelta(hours=1))
    await db.commit()

    sink = RecordingSink()
    published = await OutboxRelay(sink=sink).process_pending(db)

    assert published == 1
    assert sink.sent[0][0] == "coach.sync"
    assert sink.sent[0][1]["event_type"] == "email.sync.completed"
    assert sorted(await statuses(db)) == ["pending", "published"]


async def test_relay_marks_event_failed_after_max_retries(db):
    await EventPublisher().publish(db, sync_event())
    await db.commit()
    relay = OutboxRelay(sink=RecordingSink(fail=True), max_retries=2)

    assert await relay.process_pending(db) == 0
    row = (await db.execute(select(EventOutbox))).scalar_one()
    assert row.status == "pending"
    assert row.retry_count == 1
    assert row.last_error == "broker unavailable"

    await relay.process_pending(db)
    assert row.status == "failed"
    assert row.retry_count == 2

    # Failed rows are no longer picked up
    assert await relay.process_pending(db) == 0
    assert row.retry_count == 2


async def test_retry_failed_resets_rows(db):
    publisher = EventPublisher()
    first = await publisher.publish(db, sync_event())
    second = await publisher.publish(db, sync_event())
    first.status = second.status = OutboxStatus.FAILED.value
    first.retry_count = second.retry_count = 3
    await db.commit()
    relay = OutboxRelay(sink=RecordingSink())

    assert await relay.retry_failed(db, [first.event_id]) == 1
    assert first.status == "pending"
    assert first.retry_count == 0
    assert second.status == "failed"

    assert await relay.retry_failed(db) == 1
    assert await relay.process_pending(db) == 2


async def test_cleanup_removes_only_old_published_events(db):
    now = utcnow()
    for status, published_at in [
        ("published", now - timedelta(days=8)),
        ("published", now - timedelta(days=1)),
        ("failed", None),
    ]:
        db.add(EventOutbox(
            event_id=uuid4().hex,
            event_type="email.sync.completed",
            routing_key="email.sync.completed",
            payload={},
            status=status,
            published_at=published_at,
        ))
    await db.commit()

    removed = await OutboxRelay(sink=RecordingSink()).cleanup(db)

    assert removed == 1
    assert sorted(await statuses(db)) == ["failed", "published"]


async def test_webhook_sink_posts_envelope():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["routing_key"] = request.headers["X-Routing-Key"]
        seen["body"] = request.content
        return httpx.Response(202)

    sink = WebhookEventSink("https://hooks.test/events", transport=httpx.MockTransport(handler))
    await sink.send("email.sync.completed", {"event_id": "e1"})

    assert seen["url"] == "https://hooks.test/events"
    assert seen["routing_key"] == "email.sync.completed"
    assert b'"event_id"' in seen["body"]


async def test_webhook_sink_raises_on_error_status():
    sink = WebhookEventSink(
        "https://hooks.test/events", transport=httpx.MockTransport(lambda request: httpx.Response(500))
    )
    with pytest.raises(httpx.HTTPStatusError):
        await sink.send("k", {})


async def test_logging_sink_accepts_events():
    await LoggingEventSink().send("k", {"event_type": "t", "event_id": "e"})


# =============================================================================
# SCHEDULER
# =============================================================================


class FakeRelay:
    def __init__(self):
        self.pending_calls = 0
        self.cleanup_calls = 0

    async def process_pending(self, db) -> int:
        self.pending_calls += 1
        if self.pending_calls == 1:
            raise RuntimeError("transient")
        return 0

    async def cleanup(self, db) -> int:
        self.cleanup_calls += 1
        return 0


class FakeSyncService:
    def __init__(self):
        self.calls = 0

    async def auto_sync_all_coaches(self, session_factory=None):
        self.calls += 1
        return {}


async def wait_for(condition, attempts: int = 200) -> None:
    for _ in range(attempts):
        if condition():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not reached")


async def test_scheduler_runs_jobs_and_survives_failures(session_factory, monkeypatch):
    monkeypatch.setattr(scheduler_module.settings, "outbox_relay_interval_seconds", 0)
    monkeypatch.setattr(scheduler_module.settings, "email_sync_enabled", True)
    relay, sync = FakeRelay(), FakeSyncService()
    scheduler = SyncScheduler(sync_service=sync, relay=relay, session_factory=session_factory)

    scheduler.start()
    assert scheduler.running
    await wait_for(lambda: relay.pending_calls >= 3 and sync.calls >= 1 and relay.cleanup_calls >= 1)
    await scheduler.stop()

    assert not scheduler.running


async def test_scheduler_skips_email_sync_when_disabled(session_factory, monkeypatch):
    monkeypatch.setattr(scheduler_module.settings, "email_sync_enabled", False)
    relay, sync = FakeRelay(), FakeSyncService()
    scheduler = SyncScheduler(sync_service=sync, relay=relay, session_factory=session_factory)

    scheduler.start()
    await wait_for(lambda: relay.cleanup_calls >= 1)
    await scheduler.stop()

    assert sync.calls == 0
