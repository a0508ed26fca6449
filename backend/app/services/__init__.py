"""Services for messaging, email sync and event delivery."""

from app.services.events import event_publisher
from app.services.messaging import messaging_service
from app.services.email_sync import email_sync_service

__all__ = ["event_publisher", "messaging_service", "email_sync_service"]
