"""API routes package."""

from app.api.routes import auth, email_sync, messages

__all__ = ["auth", "email_sync", "messages"]
