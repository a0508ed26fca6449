"""Email sync routes. Coach only."""

from uuid import UUID

from fastapi import APIRouter, Query

from app.api.deps import CoachUser, DbSession
from app.db.models import EmailThreadStatus
from app.schemas.email_sync import (
    EmailThreadDetail,
    EmailThreadRead,
    MarkThreadReadRequest,
    SyncResult,
    SyncStats,
    ThreadUpdate,
)
from app.services import email_sync_service

router = APIRouter(prefix="/email-sync", tags=["email-sync"])


@router.post("/sync", response_model=SyncResult)
async def sync_emails(
    current_user: CoachUser,
    db: DbSession,
) -> SyncResult:
    """
    Sync the coach's connected mailboxes now.

    Per-account failures are reported in `errors`; the other accounts still sync.
    """
    return await email_sync_service.sync_client_emails(db, UUID(current_user.id))


@router.get("/threads", response_model=list[EmailThreadRead])
async def list_threads(
    current_user: CoachUser,
    db: DbSession,
    limit: int = Query(20, ge=1, le=100),
    status: EmailThreadStatus | None = None,
) -> list[EmailThreadRead]:
    """List the coach's client email threads, most recent first."""
    return await email_sync_service.get_email_threads(
        db, UUID(current_user.id), limit=limit, status=status.value if status else None
    )


@router.get("/threads/{thread_id}", response_model=EmailThreadDetail)
async def get_thread(
    thread_id: UUID,
    current_user: CoachUser,
    db: DbSession,
) -> EmailThreadDetail:
    """Get a thread with its client and most recent messages."""
    return await email_sync_service.get_email_thread(db, UUID(current_user.id), thread_id)


@router.post("/threads/{thread_id}/mark-read", response_model=EmailThreadRead)
async def mark_thread_read(
    thread_id: UUID,
    data: MarkThreadReadRequest,
    current_user: CoachUser,
    db: DbSession,
) -> EmailThreadRead:
    """Mark a thread read (or unread)."""
    return await email_sync_service.update_thread_status(
        db, UUID(current_user.id), thread_id, ThreadUpdate(is_read=data.is_read)
    )


@router.patch("/threads/{thread_id}", response_model=EmailThreadRead)
async def update_thread(
    thread_id: UUID,
    data: ThreadUpdate,
    current_user: CoachUser,
    db: DbSession,
) -> EmailThreadRead:
    """Update a thread's read state, status or priority."""
    return await email_sync_service.update_thread_status(db, UUID(current_user.id), thread_id, data)


@router.get("/stats", response_model=SyncStats)
async def get_stats(
    current_user: CoachUser,
    db: DbSession,
) -> SyncStats:
    """Inbox statistics for the coach."""
    return await email_sync_service.get_sync_stats(db, UUID(current_user.id))
