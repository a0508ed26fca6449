"""
SQLAlchemy 2.0 Models for Coaching Inbox.

Uses modern declarative syntax with Mapped[] type annotations.
Column types are portable (Uuid, JSON) with PostgreSQL variants so the same
models run against asyncpg in production and aiosqlite in tests.
"""

from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import Any, Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    ARRAY,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")
StringList = JSON().with_variant(ARRAY(Text()), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# ENUMS
# =============================================================================


class UserType(str, PyEnum):
    """Category of an authenticated user / conversation participant."""

    COACH = "coach"
    CLIENT = "client"
    ADMIN = "admin"


class ConversationType(str, PyEnum):
    """Kind of messaging conversation."""

    DIRECT = "direct"
    GROUP = "group"


class MessageType(str, PyEnum):
    """Kind of direct message."""

    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    FILE = "file"


class ClientCoachStatus(str, PyEnum):
    """Status of a client-coach relationship."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    PENDING = "pending"


class EmailThreadStatus(str, PyEnum):
    """Workflow status of an email thread."""

    ACTIVE = "active"
    ARCHIVED = "archived"
    CLOSED = "closed"


class EmailThreadPriority(str, PyEnum):
    """Priority of an email thread."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class OutboxStatus(str, PyEnum):
    """Delivery status of an outbox event."""

    PENDING = "pending"
    PUBLISHED = "published"
    FAILED = "failed"


def participant_key(participant_type: str, participant_id: str) -> str:
    """Unread-counter key for a participant: "<type>:<id>"."""
    return f"{UserType(participant_type).value}:{participant_id}"


def direct_pair_key(keys: list[str]) -> str:
    """Order-independent identity of a direct conversation's two participants."""
    return "|".join(sorted(keys))


# =============================================================================
# USERS
# =============================================================================


class Admin(Base):
    """Platform administrator; the counterpart of coach support chats."""

    __tablename__ = "admins"

    id: Mapped[UUID] = mapped_column(Uuid(), primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    is_active: Mapped[bool] = mapped_column(nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )


class Coach(Base):
    """Coach account. Owns email accounts, clients and email threads."""

    __tablename__ = "coaches"

    id: Mapped[UUID] = mapped_column(Uuid(), primary_key=True, default=uuid4)
    first_name: Mapped[str] = mapped_column(String(255), nullable=False)
    last_name: Mapped[str] = mapped_column(String(255), nullable=False)
    business_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    is_active: Mapped[bool] = mapped_column(nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    # Relationships
    client_links: Mapped[list["ClientCoach"]] = relationship(
        "ClientCoach", back_populates="coach", cascade="all, delete-orphan"
    )

    @property
    def display_name(self) -> str:
        return self.business_name or f"{self.first_name} {self.last_name}"


class Client(Base):
    """Client of one or more coaches."""

    __tablename__ = "clients"

    id: Mapped[UUID] = mapped_column(Uuid(), primary_key=True, default=uuid4)
    first_name: Mapped[str] = mapped_column(String(255), nullable=False)
    last_name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    # Relationships
    coach_links: Mapped[list["ClientCoach"]] = relationship(
        "ClientCoach", back_populates="client", cascade="all, delete-orphan"
    )

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


class ClientCoach(Base):
    """
    Relationship between a client and a coach.

    Only 'active' relationships let a client's emails match the coach's inbox
    and let the client open conversations with the coach.
    """

    __tablename__ = "client_coaches"
    __table_args__ = (
        UniqueConstraint("client_id", "coach_id", name="unique_client_coach"),
        Index("idx_client_coaches_coach_status", "coach_id", "status"),
    )

    id: Mapped[UUID] = mapped_column(Uuid(), primary_key=True, default=uuid4)
    client_id: Mapped[UUID] = mapped_column(
        Uuid(), ForeignKey("clients.id", ondelete="CASCADE"), nullable=False
    )
    coach_id: Mapped[UUID] = mapped_column(
        Uuid(), ForeignKey("coaches.id", ondelete="CASCADE"), nullable=False
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=ClientCoachStatus.ACTIVE.value)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    # Relationships
    client: Mapped["Client"] = relationship("Client", back_populates="coach_links")
    coach: Mapped["Coach"] = relationship("Coach", back_populates="client_links")


# =============================================================================
# MESSAGING
# =============================================================================


class Conversation(Base):
    """
    Direct or group conversation between typed participants.

    Participants live in ordered ConversationParticipant rows; participant_ids,
    participant_types and unread_count are derived views over them so the
    parallel-list / keyed-counter shape is preserved for API consumers.
    """

    __tablename__ = "conversations"
    __table_args__ = (Index("idx_conversations_last_message_at", "last_message_at"),)

    id: Mapped[UUID] = mapped_column(Uuid(), primary_key=True, default=uuid4)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    # Set for direct conversations only; one row per participant pair
    direct_pair_key: Mapped[Optional[str]] = mapped_column(String(255), unique=True, nullable=True)
    last_message_id: Mapped[Optional[UUID]] = mapped_column(Uuid(), nullable=True)
    last_message_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now(), nullable=False
    )

    # Relationships
    participants: Mapped[list["ConversationParticipant"]] = relationship(
        "ConversationParticipant",
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="ConversationParticipant.position",
        lazy="selectin",
    )

    @property
    def participant_ids(self) -> list[str]:
        return [p.participant_id for p in self.participants]

    @property
    def participant_types(self) -> list[str]:
        return [p.participant_type for p in self.participants]

    @property
    def unread_count(self) -> dict[str, int]:
        return {p.participant_key: p.unread_count for p in self.participants}

    def get_participant(self, user_id: str, user_type: str) -> Optional["ConversationParticipant"]:
        """
        Return the participant row for a user, or None if not a participant.

        The user's id is located first; the type at that same position must
        match, so an id listed under another type does not grant access.
        """
        ids = self.participant_ids
        if user_id not in ids:
            return None
        participant = self.participants[ids.index(user_id)]
        if participant.participant_type != user_type:
            return None
        return participant

    def is_participant(self, user_id: str, user_type: str) -> bool:
        return self.get_participant(user_id, user_type) is not None


class ConversationParticipant(Base):
    """
    A participant slot in a conversation, with that participant's unread counter.

    participant_key is "<type>:<id>" and is unique per conversation.
    """

    __tablename__ = "conversation_participants"
    __table_args__ = (
        UniqueConstraint("conversation_id", "participant_key", name="unique_conversation_participant"),
        Index("idx_conversation_participants_identity", "participant_id", "participant_type"),
    )

    id: Mapped[UUID] = mapped_column(Uuid(), primary_key=True, default=uuid4)
    conversation_id: Mapped[UUID] = mapped_column(
        Uuid(), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    participant_id: Mapped[str] = mapped_column(String(255), nullable=False)
    participant_type: Mapped[str] = mapped_column(String(20), nullable=False)
    participant_key: Mapped[str] = mapped_column(String(300), nullable=False)
    unread_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")

    # Relationships
    conversation: Mapped["Conversation"] = relationship("Conversation", back_populates="participants")


class DirectMessage(Base):
    """
    A message in a conversation.

    Only the original sender (sender_id AND sender_type) may edit or delete it.
    """

    __tablename__ = "direct_messages"
    __table_args__ = (
        Index("idx_direct_messages_conversation_created", "conversation_id", "created_at"),
    )

    id: Mapped[UUID] = mapped_column(Uuid(), primary_key=True, default=uuid4)
    conversation_id: Mapped[UUID] = mapped_column(
        Uuid(), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    sender_id: Mapped[str] = mapped_column(String(255), nullable=False)
    sender_type: Mapped[str] = mapped_column(String(20), nullable=False)
    sender_name: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False, default=MessageType.TEXT.value)
    content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    media_urls: Mapped[list[str]] = mapped_column(StringList, nullable=False, default=list)
    file_url: Mapped[Optional[str]] = mapped_column(String(2048), nullable=True)
    file_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    file_size: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    reply_to_message_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid(), ForeignKey("direct_messages.id", ondelete="SET NULL"), nullable=True
    )
    is_read: Mapped[bool] = mapped_column(nullable=False, default=False)
    read_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    is_edited: Mapped[bool] = mapped_column(nullable=False, default=False)
    edited_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    # Relationships
    # Single level: the replied-to message is loaded, its own reply is not
    reply_to: Mapped[Optional["DirectMessage"]] = relationship(
        "DirectMessage", remote_side=[id], lazy="selectin"
    )


# =============================================================================
# EMAIL SYNC
# =============================================================================


class EmailAccount(Base):
    """
    A coach's connected mailbox.

    Stores OAuth tokens; access_token is overwritten when refreshed during sync.
    """

    __tablename__ = "email_accounts"
    __table_args__ = (Index("idx_email_accounts_user_id", "user_id"),)

    id: Mapped[UUID] = mapped_column(Uuid(), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        Uuid(), ForeignKey("coaches.id", ondelete="CASCADE"), nullable=False
    )
    provider: Mapped[str] = mapped_column(String(50), nullable=False)  # 'google', 'outlook'
    email_address: Mapped[str] = mapped_column(String(255), nullable=False)
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(nullable=False, default=True)
    sync_enabled: Mapped[bool] = mapped_column(nullable=False, default=True)
    last_sync_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )


class EmailThread(Base):
    """
    Coach/client-scoped grouping of a provider email thread.

    One row per (coach, client, provider thread id).
    """

    __tablename__ = "email_threads"
    __table_args__ = (
        UniqueConstraint("coach_id", "client_id", "thread_id", name="unique_coach_client_thread"),
        Index("idx_email_threads_coach_last_message", "coach_id", "last_message_at"),
    )

    id: Mapped[UUID] = mapped_column(Uuid(), primary_key=True, default=uuid4)
    coach_id: Mapped[UUID] = mapped_column(
        Uuid(), ForeignKey("coaches.id", ondelete="CASCADE"), nullable=False
    )
    client_id: Mapped[UUID] = mapped_column(
        Uuid(), ForeignKey("clients.id", ondelete="CASCADE"), nullable=False
    )
    email_account_id: Mapped[UUID] = mapped_column(
        Uuid(), ForeignKey("email_accounts.id", ondelete="CASCADE"), nullable=False
    )
    thread_id: Mapped[str] = mapped_column(String(255), nullable=False)
    subject: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=EmailThreadStatus.ACTIVE.value)
    is_read: Mapped[bool] = mapped_column(nullable=False, default=False)
    priority: Mapped[str] = mapped_column(String(20), nullable=False, default=EmailThreadPriority.NORMAL.value)
    message_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_message_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now(), nullable=False
    )

    # Relationships
    client: Mapped["Client"] = relationship("Client")
    messages: Mapped[list["EmailMessage"]] = relationship(
        "EmailMessage", back_populates="thread", cascade="all, delete-orphan"
    )


class EmailMessage(Base):
    """
    A single synced email. provider_message_id is the dedup key within a thread.
    """

    __tablename__ = "email_messages"
    __table_args__ = (
        UniqueConstraint("thread_id", "provider_message_id", name="unique_thread_provider_message"),
    )

    id: Mapped[UUID] = mapped_column(Uuid(), primary_key=True, default=uuid4)
    thread_id: Mapped[UUID] = mapped_column(
        Uuid(), ForeignKey("email_threads.id", ondelete="CASCADE"), nullable=False
    )
    provider_message_id: Mapped[str] = mapped_column(String(255), nullable=False)
    from_address: Mapped[str] = mapped_column(String(255), nullable=False)
    to_address: Mapped[str] = mapped_column(String(255), nullable=False)
    subject: Mapped[str] = mapped_column(Text, nullable=False, default="")
    text: Mapped[str] = mapped_column(Text, nullable=False, default="")
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    # Relationships
    thread: Mapped["EmailThread"] = relationship("EmailThread", back_populates="messages")


# =============================================================================
# EVENTS
# =============================================================================


class EventOutbox(Base):
    """
    Transactional outbox for domain events.

    Rows are written in the same transaction as the change they describe and
    delivered later by the outbox relay.
    """

    __tablename__ = "event_outbox"
    __table_args__ = (Index("idx_event_outbox_status_created", "status", "created_at"),)

    id: Mapped[UUID] = mapped_column(Uuid(), primary_key=True, default=uuid4)
    event_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    routing_key: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=OutboxStatus.PENDING.value)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    scheduled_for: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    published_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now(), nullable=False
    )
