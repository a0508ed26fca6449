"""
Authentication Routes

Endpoints:
- GET /auth/me - Get the authenticated caller

Tokens are issued by the platform's auth service; this service only
validates them (see app.api.deps).
"""

from fastapi import APIRouter

from app.api.deps import CurrentUser
from app.schemas.user import CurrentUserRead

router = APIRouter(prefix="/auth", tags=["auth"])


@router.get("/me", response_model=CurrentUserRead)
async def get_me(current_user: CurrentUser) -> CurrentUserRead:
    """
    Get the current authenticated user.

    Useful for verifying a token and reading the caller's id and user type.
    """
    return current_user
