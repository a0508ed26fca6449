"""Pydantic schemas for API request/response validation."""

from app.schemas.base import Page, PageParams, PaginationMeta
from app.schemas.user import CurrentUserRead
from app.schemas.messaging import (
    ActionResponse,
    ConversationCreate,
    ConversationFilters,
    ConversationRead,
    DirectMessageRead,
    MarkReadRequest,
    MessageCreate,
    MessageFilters,
    MessageUpdate,
    ReplyPreview,
    UnreadCountResponse,
)
from app.schemas.email_sync import (
    ClientSummary,
    EmailMessageRead,
    EmailThreadDetail,
    EmailThreadRead,
    MarkThreadReadRequest,
    SyncResult,
    SyncStats,
    ThreadUpdate,
)
from app.schemas.events import (
    ClientEmailReceivedEvent,
    EmailSyncCompletedEvent,
    EventEnvelope,
    MessageCreatedEvent,
)

__all__ = [
    # Pagination
    "Page",
    "PageParams",
    "PaginationMeta",
    # User
    "CurrentUserRead",
    # Messaging
    "ActionResponse",
    "ConversationCreate",
    "ConversationFilters",
    "ConversationRead",
    "DirectMessageRead",
    "MarkReadRequest",
    "MessageCreate",
    "MessageFilters",
    "MessageUpdate",
    "ReplyPreview",
    "UnreadCountResponse",
    # Email sync
    "ClientSummary",
    "EmailMessageRead",
    "EmailThreadDetail",
    "EmailThreadRead",
    "MarkThreadReadRequest",
    "SyncResult",
    "SyncStats",
    "ThreadUpdate",
    # Events
    "ClientEmailReceivedEvent",
    "EmailSyncCompletedEvent",
    "EventEnvelope",
    "MessageCreatedEvent",
]
