"""Authenticated user schemas."""

from pydantic import Field

from app.db.models import UserType
from app.schemas.base import BaseSchema


class CurrentUserRead(BaseSchema):
    """
    The authenticated caller, resolved from the JWT.

    id is the string form of the user's id so it can be compared directly
    with conversation participant and sender ids.
    """

    id: str
    user_type: UserType
    name: str = Field(..., min_length=1)
    email: str | None = None
