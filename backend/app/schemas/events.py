"""
Domain event payloads.

Each event is a tagged model: event_type is the discriminator, so consumers
decoding an envelope get the exact payload model back.
"""

from datetime import datetime
from typing import Annotated, Literal, Union
from uuid import UUID

from pydantic import BaseModel, Field


class EmailSyncCompletedEvent(BaseModel):
    """A coach's mailbox sync finished."""

    event_type: Literal["email.sync.completed"] = "email.sync.completed"
    coach_id: UUID
    total_processed: int
    client_emails_found: int
    synced_at: datetime


class ClientEmailReceivedEvent(BaseModel):
    """A new email from a known client was stored."""

    event_type: Literal["email.client.received"] = "email.client.received"
    coach_id: UUID
    client_id: UUID
    thread_id: UUID
    email_id: str  # provider message id
    subject: str
    received_at: datetime


class MessageCreatedEvent(BaseModel):
    """A direct message was sent; one event per recipient."""

    event_type: Literal["messages.message.created"] = "messages.message.created"
    message_id: UUID
    conversation_id: UUID
    sender_id: str
    sender_type: str
    sender_name: str
    recipient_id: str
    recipient_type: str
    type: str
    content: str | None = None
    created_at: datetime


DomainEvent = Annotated[
    Union[EmailSyncCompletedEvent, ClientEmailReceivedEvent, MessageCreatedEvent],
    Field(discriminator="event_type"),
]


class EventEnvelope(BaseModel):
    """Metadata wrapper stored in the outbox and delivered to sinks."""

    event_id: str
    event_type: str
    schema_version: int = 1
    occurred_at: datetime
    producer: str
    payload: DomainEvent
