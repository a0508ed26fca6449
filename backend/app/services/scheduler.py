"""
In-process periodic jobs, started and stopped by the app lifespan.

- email sync for all coaches every email_sync_interval_seconds
- outbox relay every outbox_relay_interval_seconds
- outbox cleanup once a day
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import get_settings
from app.db.session import AsyncSessionLocal
from app.services.email_sync import EmailSyncService, email_sync_service
from app.services.events import OutboxRelay

logger = logging.getLogger(__name__)
settings = get_settings()

CLEANUP_INTERVAL_SECONDS = 24 * 60 * 60


class SyncScheduler:
    """Runs the background jobs as asyncio tasks."""

    def __init__(
        self,
        sync_service: EmailSyncService | None = None,
        relay: OutboxRelay | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ):
        self.sync_service = sync_service or email_sync_service
        self.relay = relay or OutboxRelay()
        self.session_factory = session_factory or AsyncSessionLocal
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    async def run_email_sync(self) -> None:
        await self.sync_service.auto_sync_all_coaches(self.session_factory)

    async def run_outbox_relay(self) -> None:
        async with self.session_factory() as db:
            await self.relay.process_pending(db)

    async def run_outbox_cleanup(self) -> None:
        async with self.session_factory() as db:
            await self.relay.cleanup(db)

    async def _every(self, name: str, interval: float, job: Callable[[], Awaitable[None]]) -> None:
        """Run job, then sleep interval seconds, until cancelled. Job failures are logged."""
        while True:
            try:
                await job()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Scheduled job %s failed", name)
            await asyncio.sleep(interval)

    def start(self) -> None:
        if self.running:
            return
        jobs = [
            ("outbox_relay", settings.outbox_relay_interval_seconds, self.run_outbox_relay),
            ("outbox_cleanup", CLEANUP_INTERVAL_SECONDS, self.run_outbox_cleanup),
        ]
        if settings.email_sync_enabled:
            jobs.append(("email_sync", settings.email_sync_interval_seconds, self.run_email_sync))
        for name, interval, job in jobs:
            self._tasks.append(asyncio.create_task(self._every(name, interval, job), name=name))
        logger.info("Scheduler started: %s", ", ".join(name for name, _, _ in jobs))

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("Scheduler stopped")
