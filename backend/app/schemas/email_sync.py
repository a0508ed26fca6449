"""Pydantic schemas for email sync."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field

from app.db.models import EmailThreadPriority, EmailThreadStatus
from app.schemas.base import BaseSchema, IDMixin, TimestampMixin


class ClientSummary(BaseSchema, IDMixin):
    """Client fields shown alongside a thread."""

    first_name: str
    last_name: str
    email: str


class EmailMessageRead(BaseSchema, IDMixin):
    """Synced email message."""

    thread_id: UUID
    provider_message_id: str
    from_address: str
    to_address: str
    subject: str
    text: str
    sent_at: datetime
    received_at: datetime


class EmailThreadRead(BaseSchema, IDMixin, TimestampMixin):
    """Email thread response."""

    coach_id: UUID
    client_id: UUID
    email_account_id: UUID
    thread_id: str
    subject: str
    status: str
    is_read: bool
    priority: str
    message_count: int
    last_message_at: datetime
    client: ClientSummary | None = None


class EmailThreadDetail(EmailThreadRead):
    """Thread with its most recent messages (newest first)."""

    messages: list[EmailMessageRead]


class ThreadUpdate(BaseSchema):
    """Thread fields a coach may change. All optional."""

    is_read: bool | None = None
    status: EmailThreadStatus | None = None
    priority: EmailThreadPriority | None = None


class MarkThreadReadRequest(BaseSchema):
    """Request body for mark-read."""

    is_read: bool = True


class SyncResult(BaseModel):
    """Outcome of syncing a coach's mailboxes."""

    total_processed: int = 0
    client_emails_found: int = 0
    errors: list[str] = Field(default_factory=list)
    synced_at: datetime


class SyncStats(BaseModel):
    """Inbox statistics for a coach."""

    unread_threads: int
    total_threads_today: int
    last_sync_at: datetime | None = None
