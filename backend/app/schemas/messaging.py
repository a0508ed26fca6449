"""Pydantic schemas for direct messaging."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from app.db.models import ConversationType, MessageType, UserType
from app.schemas.base import BaseSchema, IDMixin, PageParams, TimestampMixin


# Request schemas
class ConversationCreate(BaseSchema):
    """Request to create a conversation. participant_ids/types are parallel lists."""

    type: ConversationType = ConversationType.DIRECT
    name: str | None = Field(None, max_length=255)
    participant_ids: list[str] = Field(default_factory=list)
    participant_types: list[UserType] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_parallel_lists(self) -> "ConversationCreate":
        if len(self.participant_ids) != len(self.participant_types):
            raise ValueError("participant_ids and participant_types must have the same length")
        return self


class ConversationFilters(PageParams):
    """Filters for listing conversations."""

    search: str | None = None
    unread_only: bool = False


class MessageCreate(BaseSchema):
    """Request to send a message."""

    type: MessageType = MessageType.TEXT
    content: str | None = Field(None, max_length=10000)
    media_urls: list[str] = Field(default_factory=list)
    file_url: str | None = None
    file_name: str | None = Field(None, max_length=255)
    file_size: int | None = Field(None, ge=0)
    reply_to_message_id: UUID | None = None

    @model_validator(mode="after")
    def check_payload(self) -> "MessageCreate":
        if self.type == MessageType.TEXT and not self.content:
            raise ValueError("Text messages require content")
        if self.type == MessageType.FILE and not self.file_url:
            raise ValueError("File messages require file_url")
        return self


class MessageUpdate(BaseSchema):
    """Request to edit a message."""

    content: str = Field(..., min_length=1, max_length=10000)


class MessageFilters(PageParams):
    """Filters for listing messages. before/after are exclusive bounds on created_at."""

    type: MessageType | None = None
    search: str | None = None
    before: datetime | None = None
    after: datetime | None = None


class MarkReadRequest(BaseModel):
    """Request to mark messages as read."""

    message_ids: list[UUID] = Field(..., min_length=1)


# Response schemas
class ReplyPreview(BaseSchema):
    """Projection of the message being replied to."""

    id: UUID
    content: str | None
    sender_id: str
    sender_type: str
    created_at: datetime


class DirectMessageRead(BaseSchema, IDMixin):
    """Direct message response."""

    conversation_id: UUID
    sender_id: str
    sender_type: str
    sender_name: str
    type: str
    content: str | None
    media_urls: list[str]
    file_url: str | None = None
    file_name: str | None = None
    file_size: int | None = None
    reply_to_message_id: UUID | None = None
    reply_to: ReplyPreview | None = None
    is_read: bool
    read_at: datetime | None = None
    is_edited: bool
    edited_at: datetime | None = None
    created_at: datetime


class ConversationRead(BaseSchema, IDMixin, TimestampMixin):
    """
    Conversation response.

    messages holds the latest message in list views and the recent window
    (oldest first) in the detail view.
    """

    type: str
    name: str | None
    participant_ids: list[str]
    participant_types: list[str]
    unread_count: dict[str, int]
    last_message_id: UUID | None = None
    last_message_at: datetime | None = None
    messages: list[DirectMessageRead] = Field(default_factory=list)


class UnreadCountResponse(BaseModel):
    """Unread message count for the caller."""

    unread_count: int


class ActionResponse(BaseModel):
    """Confirmation for operations without a resource body."""

    message: str
