"""Direct messaging routes: conversations, messages, read state."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Query, status

from app.api.deps import CoachUser, CurrentUser, DbSession
from app.schemas.base import Page
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
    UnreadCountResponse,
)
from app.services import messaging_service

router = APIRouter(prefix="/messages", tags=["messages"])


# =============================================================================
# CONVERSATIONS
# =============================================================================


@router.post("/conversations", response_model=ConversationRead, status_code=status.HTTP_201_CREATED)
async def create_conversation(
    data: ConversationCreate,
    current_user: CurrentUser,
    db: DbSession,
) -> ConversationRead:
    """
    Create a conversation.

    For direct conversations the existing conversation between the same two
    participants is returned instead of creating a duplicate.
    """
    return await messaging_service.create_conversation(
        db, data, current_user.id, current_user.user_type
    )


@router.get("/conversations", response_model=Page[ConversationRead])
async def list_conversations(
    filters: Annotated[ConversationFilters, Query()],
    current_user: CurrentUser,
    db: DbSession,
) -> Page[ConversationRead]:
    """
    List the caller's conversations, most recently active first.

    Filters:
    - search: case-insensitive match on the conversation name
    - unread_only: only conversations with unread messages for the caller
    """
    return await messaging_service.get_conversations(
        db, filters, current_user.id, current_user.user_type
    )


@router.get("/conversations/{conversation_id}", response_model=ConversationRead)
async def get_conversation(
    conversation_id: UUID,
    current_user: CurrentUser,
    db: DbSession,
) -> ConversationRead:
    """Get a conversation with its recent messages (oldest first)."""
    return await messaging_service.get_conversation(
        db, conversation_id, current_user.id, current_user.user_type
    )


@router.post(
    "/conversations/{conversation_id}/messages",
    response_model=DirectMessageRead,
    status_code=status.HTTP_201_CREATED,
)
async def send_message(
    conversation_id: UUID,
    data: MessageCreate,
    current_user: CurrentUser,
    db: DbSession,
) -> DirectMessageRead:
    """Send a message to a conversation."""
    return await messaging_service.send_message(
        db,
        conversation_id,
        data,
        current_user.id,
        current_user.user_type,
        current_user.name,
    )


@router.get("/conversations/{conversation_id}/messages", response_model=Page[DirectMessageRead])
async def list_messages(
    conversation_id: UUID,
    filters: Annotated[MessageFilters, Query()],
    current_user: CurrentUser,
    db: DbSession,
) -> Page[DirectMessageRead]:
    """
    List messages in a conversation, newest first.

    Filters:
    - type: message type
    - search: case-insensitive match on content
    - before / after: created_at bounds (exclusive)
    """
    return await messaging_service.get_messages(
        db, conversation_id, filters, current_user.id, current_user.user_type
    )


@router.get("/conversations/{conversation_id}/unread-count", response_model=UnreadCountResponse)
async def get_unread_count(
    conversation_id: UUID,
    current_user: CurrentUser,
    db: DbSession,
) -> UnreadCountResponse:
    """Get the caller's unread count for a conversation."""
    count = await messaging_service.get_unread_count(
        db, conversation_id, current_user.id, current_user.user_type
    )
    return UnreadCountResponse(unread_count=count)


@router.post("/conversations/{conversation_id}/read", response_model=ActionResponse)
async def mark_conversation_read(
    conversation_id: UUID,
    current_user: CurrentUser,
    db: DbSession,
) -> ActionResponse:
    """Mark every message the caller received in a conversation as read."""
    await messaging_service.mark_conversation_as_read(
        db, conversation_id, current_user.id, current_user.user_type
    )
    return ActionResponse(message="Conversation marked as read")


@router.get("/unread-count", response_model=UnreadCountResponse)
async def get_total_unread_count(
    current_user: CurrentUser,
    db: DbSession,
) -> UnreadCountResponse:
    """Get the caller's unread count across all conversations."""
    count = await messaging_service.get_total_unread_count(db, current_user.id, current_user.user_type)
    return UnreadCountResponse(unread_count=count)


@router.post("/support", response_model=ConversationRead, status_code=status.HTTP_201_CREATED)
async def create_support_conversation(
    current_user: CoachUser,
    db: DbSession,
) -> ConversationRead:
    """Open the coach's support conversation with an admin."""
    return await messaging_service.create_support_conversation(db, UUID(current_user.id))


# =============================================================================
# MESSAGES
# =============================================================================


@router.post("/mark-read", response_model=ActionResponse)
async def mark_messages_read(
    data: MarkReadRequest,
    current_user: CurrentUser,
    db: DbSession,
) -> ActionResponse:
    """Mark messages as read. The caller's own messages are skipped."""
    await messaging_service.mark_as_read(db, data.message_ids, current_user.id, current_user.user_type)
    return ActionResponse(message="Messages marked as read")


@router.patch("/{message_id}", response_model=DirectMessageRead)
async def edit_message(
    message_id: UUID,
    data: MessageUpdate,
    current_user: CurrentUser,
    db: DbSession,
) -> DirectMessageRead:
    """Edit one of the caller's messages."""
    return await messaging_service.edit_message(
        db, message_id, data, current_user.id, current_user.user_type
    )


@router.delete("/{message_id}", response_model=ActionResponse)
async def delete_message(
    message_id: UUID,
    current_user: CurrentUser,
    db: DbSession,
) -> ActionResponse:
    """Delete one of the caller's messages."""
    await messaging_service.delete_message(db, message_id, current_user.id, current_user.user_type)
    return ActionResponse(message="Message deleted successfully")
