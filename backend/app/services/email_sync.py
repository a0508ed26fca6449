"""
Email sync engine: polls coaches' Gmail inboxes and files client emails.

Per sync run:
    accounts -> per account: list + fetch remote messages
             -> per message: parse, skip coach-authored or unknown senders,
                find-or-create thread, find-or-create message, emit event
             -> advance the account's sync cursor

Failures are isolated: a bad message is logged and skipped, a failing
account is reported in SyncResult.errors, and a failing coach does not
stop the scheduled sweep.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from uuid import UUID

import httpx
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from app.config import get_settings, sanitize_error
from app.db.session import AsyncSessionLocal
from app.db.models import (
    Client,
    ClientCoach,
    ClientCoachStatus,
    Coach,
    EmailAccount,
    EmailMessage,
    EmailThread,
    EmailThreadPriority,
    EmailThreadStatus,
    utcnow,
)
from app.exceptions import BadRequestError, GmailAPIError, GmailAuthError, NotFoundError
from app.schemas.email_sync import (
    EmailMessageRead,
    EmailThreadDetail,
    EmailThreadRead,
    SyncResult,
    SyncStats,
    ThreadUpdate,
)
from app.schemas.events import ClientEmailReceivedEvent, EmailSyncCompletedEvent
from app.services.email_parser import ParsedEmail, parse_gmail_message, parse_internal_date
from app.services.events import EventPublisher, event_publisher
from app.services.gmail import GmailClient

logger = logging.getLogger(__name__)
settings = get_settings()


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite returns timestamps without tzinfo)."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ProcessOutcome(str, Enum):
    """What happened to one remote message."""

    FROM_COACH = "from_coach"
    UNKNOWN_SENDER = "unknown_sender"
    DUPLICATE = "duplicate"
    CREATED = "created"


@dataclass
class FetchBatch:
    """
    Messages fetched for one account.

    cursor is the new last_sync_at for the account, or None when the fetch
    failed and the cursor must not move.
    """

    messages: list[dict]
    cursor: datetime | None


class EmailSyncService:
    """Service for syncing client emails from coaches' Gmail accounts."""

    def __init__(
        self,
        gmail_client_factory: Callable[[], GmailClient] = GmailClient,
        publisher: EventPublisher | None = None,
    ):
        self.gmail_client_factory = gmail_client_factory
        self.publisher = publisher or event_publisher

    # =========================================================================
    # SYNC
    # =========================================================================

    async def auto_sync_all_coaches(
        self, session_factory: async_sessionmaker[AsyncSession] | None = None
    ) -> dict[UUID, SyncResult | None]:
        """
        Sync every active coach, each in its own session.

        A coach whose sync raises is logged and recorded as None; the sweep
        continues with the next coach.
        """
        session_factory = session_factory or AsyncSessionLocal

        logger.info("Starting automatic email sync")
        async with session_factory() as db:
            result = await db.execute(select(Coach.id).where(Coach.is_active.is_(True)))
            coach_ids = list(result.scalars().all())

        results: dict[UUID, SyncResult | None] = {}
        for coach_id in coach_ids:
            try:
                async with session_factory() as db:
                    results[coach_id] = await self.sync_client_emails(db, coach_id)
            except BadRequestError as e:
                logger.info("Skipping email sync for coach %s: %s", coach_id, e)
                results[coach_id] = None
            except Exception:
                logger.exception("Failed to sync emails for coach %s", coach_id)
                results[coach_id] = None

        logger.info("Automatic email sync finished for %d coaches", len(coach_ids))
        return results

    async def sync_client_emails(self, db: AsyncSession, coach_id: UUID) -> SyncResult:
        """
        Sync all active, sync-enabled Google accounts of a coach.

        Each account is synced inside its own savepoint; an account that
        raises is rolled back and reported in errors as "<address>: <reason>".
        Only accounts that synced successfully get their cursor advanced.

        Raises:
            BadRequestError: The coach has no active Google account to sync
        """
        result = await db.execute(
            select(EmailAccount)
            .where(
                EmailAccount.user_id == coach_id,
                EmailAccount.provider == "google",
                EmailAccount.is_active.is_(True),
                EmailAccount.sync_enabled.is_(True),
            )
            .order_by(EmailAccount.created_at.asc())
        )
        accounts = result.scalars().all()
        if not accounts:
            raise BadRequestError("No active email accounts found")

        logger.info("Syncing %d email accounts for coach %s", len(accounts), coach_id)
        sync_result = SyncResult(synced_at=utcnow())

        async with self.gmail_client_factory() as gmail:
            for account in accounts:
                address = account.email_address
                try:
                    async with db.begin_nested():
                        processed, found = await self._sync_account(db, gmail, coach_id, account)
                except Exception as e:
                    logger.exception("Email sync failed for account %s", address)
                    sync_result.errors.append(f"{address}: {sanitize_error(e)}")
                    continue
                sync_result.total_processed += processed
                sync_result.client_emails_found += found

        await self.publisher.publish(
            db,
            EmailSyncCompletedEvent(
                coach_id=coach_id,
                total_processed=sync_result.total_processed,
                client_emails_found=sync_result.client_emails_found,
                synced_at=sync_result.synced_at,
            ),
        )
        await db.commit()

        logger.info(
            "Email sync for coach %s: %d processed, %d client emails, %d errors",
            coach_id, sync_result.total_processed, sync_result.client_emails_found, len(sync_result.errors),
        )
        return sync_result

    async def _sync_account(
        self,
        db: AsyncSession,
        gmail: GmailClient,
        coach_id: UUID,
        account: EmailAccount,
    ) -> tuple[int, int]:
        """Fetch and process one account. Returns (messages fetched, new client emails)."""
        since = as_utc(account.last_sync_at) or (
            utcnow() - timedelta(days=settings.gmail_initial_lookback_days)
        )
        batch = await self.fetch_gmail_messages(db, gmail, account, since)

        found = 0
        for raw in batch.messages:
            try:
                async with db.begin_nested():
                    outcome = await self.process_incoming_email(db, coach_id, account, raw)
            except Exception:
                logger.exception("Error processing email %s", raw.get("id"))
                continue
            if outcome is ProcessOutcome.CREATED:
                found += 1

        if batch.cursor is not None:
            account.last_sync_at = batch.cursor
        return len(batch.messages), found

    async def fetch_gmail_messages(
        self,
        db: AsyncSession,
        gmail: GmailClient,
        account: EmailAccount,
        since: datetime,
    ) -> FetchBatch:
        """
        Fetch inbox messages received after `since`.

        The listing is retried once after a token refresh when Gmail answers
        401. Any other failure yields an empty batch and leaves the cursor
        where it was.

        At most gmail_fetch_limit messages are fetched. Gmail lists newest
        first, so when the listing is larger the oldest ids are taken and the
        cursor stops at the newest fetched message; the rest is picked up by
        the next run. A message that fails to fetch holds the cursor at the
        newest message fetched before it, so it is listed again next run.
        """
        query = f"after:{int(since.timestamp())} in:inbox"
        listed_at = utcnow()
        access_token = account.access_token

        try:
            try:
                message_ids = await gmail.list_message_ids(
                    access_token, query, settings.gmail_list_max_results
                )
            except GmailAuthError:
                new_token = await self.refresh_access_token(db, gmail, account)
                if new_token is None:
                    logger.warning("Cannot refresh Gmail token for %s, skipping", account.email_address)
                    return FetchBatch(messages=[], cursor=None)
                access_token = new_token
                message_ids = await gmail.list_message_ids(
                    access_token, query, settings.gmail_list_max_results
                )
        except (GmailAPIError, httpx.HTTPError) as e:
            logger.error("Error fetching Gmail messages for %s: %s", account.email_address, e)
            return FetchBatch(messages=[], cursor=None)

        limit = settings.gmail_fetch_limit
        truncated = len(message_ids) > limit
        selected = list(reversed(message_ids))[:limit]

        messages: list[dict] = []
        # Messages fetched before the first failure; only these may move the cursor
        contiguous: list[dict] = []
        failed = False
        for message_id in selected:
            try:
                message = await gmail.get_message(access_token, message_id)
            except (GmailAPIError, httpx.HTTPError) as e:
                logger.warning("Skipping Gmail message %s: %s", message_id, e)
                failed = True
                continue
            messages.append(message)
            if not failed:
                contiguous.append(message)

        if not truncated and not failed:
            return FetchBatch(messages=messages, cursor=listed_at)

        if truncated:
            logger.info(
                "Listing for %s returned %d messages, fetched the oldest %d",
                account.email_address, len(message_ids), len(selected),
            )
        fetched_dates = [d for d in (parse_internal_date(m) for m in contiguous) if d is not None]
        return FetchBatch(messages=messages, cursor=max(fetched_dates) if fetched_dates else None)

    async def refresh_access_token(
        self, db: AsyncSession, gmail: GmailClient, account: EmailAccount
    ) -> str | None:
        """Refresh the account's access token and store it on the account."""
        new_token = await gmail.refresh_access_token(account.refresh_token)
        if new_token is None:
            return None
        account.access_token = new_token
        # Written with the account, not with the first message's savepoint
        await db.flush()
        logger.info("Refreshed Gmail access token for %s", account.email_address)
        return new_token

    # =========================================================================
    # MESSAGE PROCESSING
    # =========================================================================

    async def process_incoming_email(
        self,
        db: AsyncSession,
        coach_id: UUID,
        account: EmailAccount,
        raw_message: dict,
    ) -> ProcessOutcome:
        """Classify one remote message and store it when it comes from a client."""
        email = parse_gmail_message(raw_message)
        if not email.to_address:
            email.to_address = account.email_address

        if await self.is_email_from_coach(db, email.sender_email, coach_id):
            return ProcessOutcome.FROM_COACH

        client = await self.find_client_for_sender(db, coach_id, email.sender_email)
        if client is None:
            return ProcessOutcome.UNKNOWN_SENDER

        thread = await self._find_or_create_thread(db, coach_id, client.id, account.id, email)
        message, created = await self._find_or_create_message(db, thread, email)
        if not created:
            return ProcessOutcome.DUPLICATE

        thread.message_count += 1
        thread.last_message_at = max(as_utc(thread.last_message_at), email.sent_at)
        thread.is_read = False

        await self.publisher.publish(
            db,
            ClientEmailReceivedEvent(
                coach_id=coach_id,
                client_id=client.id,
                thread_id=thread.id,
                email_id=email.message_id,
                subject=email.subject,
                received_at=email.received_at,
            ),
        )
        return ProcessOutcome.CREATED

    async def is_email_from_coach(self, db: AsyncSession, sender_email: str, coach_id: UUID) -> bool:
        """True when the sender is the coach's own address or one of their connected mailboxes."""
        coach_email = await db.scalar(select(Coach.email).where(Coach.id == coach_id))
        result = await db.execute(
            select(EmailAccount.email_address).where(EmailAccount.user_id == coach_id)
        )
        coach_addresses = {address.lower() for address in result.scalars().all()}
        if coach_email:
            coach_addresses.add(coach_email.lower())
        return sender_email.lower() in coach_addresses

    async def find_client_for_sender(
        self, db: AsyncSession, coach_id: UUID, sender_email: str
    ) -> Client | None:
        """Client with this email and an active relationship with the coach."""
        result = await db.execute(
            select(Client)
            .join(ClientCoach, ClientCoach.client_id == Client.id)
            .where(
                func.lower(Client.email) == sender_email.lower(),
                ClientCoach.coach_id == coach_id,
                ClientCoach.status == ClientCoachStatus.ACTIVE.value,
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _find_or_create_thread(
        self,
        db: AsyncSession,
        coach_id: UUID,
        client_id: UUID,
        email_account_id: UUID,
        email: ParsedEmail,
    ) -> EmailThread:
        stmt = select(EmailThread).where(
            EmailThread.coach_id == coach_id,
            EmailThread.client_id == client_id,
            EmailThread.thread_id == email.thread_id,
        )
        thread = (await db.execute(stmt)).scalar_one_or_none()
        if thread is not None:
            return thread

        thread = EmailThread(
            coach_id=coach_id,
            client_id=client_id,
            email_account_id=email_account_id,
            thread_id=email.thread_id,
            subject=email.subject,
            status=EmailThreadStatus.ACTIVE.value,
            is_read=False,
            priority=EmailThreadPriority.NORMAL.value,
            message_count=0,
            last_message_at=email.sent_at,
        )
        try:
            async with db.begin_nested():
                db.add(thread)
        except IntegrityError:
            # Another sync created it first
            thread = (await db.execute(stmt)).scalar_one()
        return thread

    async def _find_or_create_message(
        self, db: AsyncSession, thread: EmailThread, email: ParsedEmail
    ) -> tuple[EmailMessage, bool]:
        """Returns (message, created). An existing provider message id is a no-op."""
        stmt = select(EmailMessage).where(
            EmailMessage.thread_id == thread.id,
            EmailMessage.provider_message_id == email.message_id,
        )
        existing = (await db.execute(stmt)).scalar_one_or_none()
        if existing is not None:
            return existing, False

        message = EmailMessage(
            thread_id=thread.id,
            provider_message_id=email.message_id,
            from_address=email.sender_email,
            to_address=email.to_address,
            subject=email.subject,
            text=email.body_text,
            sent_at=email.sent_at,
            received_at=email.received_at,
        )
        try:
            async with db.begin_nested():
                db.add(message)
        except IntegrityError:
            return (await db.execute(stmt)).scalar_one(), False
        return message, True

    # =========================================================================
    # ACCESSORS
    # =========================================================================

    async def get_email_threads(
        self,
        db: AsyncSession,
        coach_id: UUID,
        limit: int = 20,
        status: str | None = None,
    ) -> list[EmailThreadRead]:
        """Coach's threads, most recent activity first."""
        stmt = (
            select(EmailThread)
            .options(selectinload(EmailThread.client))
            .where(EmailThread.coach_id == coach_id)
        )
        if status:
            stmt = stmt.where(EmailThread.status == status)
        stmt = stmt.order_by(EmailThread.last_message_at.desc()).limit(limit)

        result = await db.execute(stmt)
        return [EmailThreadRead.model_validate(t) for t in result.scalars()]

    async def _get_thread(self, db: AsyncSession, coach_id: UUID, thread_id: UUID) -> EmailThread:
        result = await db.execute(
            select(EmailThread)
            .options(selectinload(EmailThread.client))
            .where(EmailThread.id == thread_id, EmailThread.coach_id == coach_id)
        )
        thread = result.scalar_one_or_none()
        if thread is None:
            raise NotFoundError("Email thread not found")
        return thread

    async def get_email_thread(
        self, db: AsyncSession, coach_id: UUID, thread_id: UUID, message_limit: int = 20
    ) -> EmailThreadDetail:
        """Thread with its client and most recent messages (newest first)."""
        thread = await self._get_thread(db, coach_id, thread_id)
        result = await db.execute(
            select(EmailMessage)
            .where(EmailMessage.thread_id == thread.id)
            .order_by(EmailMessage.sent_at.desc())
            .limit(message_limit)
        )
        return EmailThreadDetail(
            **EmailThreadRead.model_validate(thread).model_dump(),
            messages=[EmailMessageRead.model_validate(m) for m in result.scalars()],
        )

    async def update_thread_status(
        self, db: AsyncSession, coach_id: UUID, thread_id: UUID, updates: ThreadUpdate
    ) -> EmailThreadRead:
        """Apply is_read / status / priority changes to one of the coach's threads."""
        thread = await self._get_thread(db, coach_id, thread_id)
        for key, value in updates.model_dump(exclude_unset=True, exclude_none=True).items():
            setattr(thread, key, value)
        await db.commit()
        return EmailThreadRead.model_validate(thread)

    async def get_sync_stats(self, db: AsyncSession, coach_id: UUID) -> SyncStats:
        """Unread threads, threads created today (UTC), and the latest sync time."""
        today = utcnow().replace(hour=0, minute=0, second=0, microsecond=0)

        unread_threads = await db.scalar(
            select(func.count()).select_from(EmailThread).where(
                EmailThread.coach_id == coach_id, EmailThread.is_read.is_(False)
            )
        )
        total_threads_today = await db.scalar(
            select(func.count()).select_from(EmailThread).where(
                EmailThread.coach_id == coach_id, EmailThread.created_at >= today
            )
        )
        last_sync_at = await db.scalar(
            select(func.max(EmailAccount.last_sync_at)).where(
                EmailAccount.user_id == coach_id, EmailAccount.is_active.is_(True)
            )
        )
        return SyncStats(
            unread_threads=unread_threads or 0,
            total_threads_today=total_threads_today or 0,
            last_sync_at=as_utc(last_sync_at),
        )


# Singleton instance
email_sync_service = EmailSyncService()
