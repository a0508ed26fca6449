"""
FastAPI Dependencies for Authentication and Authorization.

Key patterns:
1. get_current_user: Extracts and validates JWT, returns the caller as CurrentUserRead
2. The JWT carries the user's id (sub) and category (user_type); the user is
   loaded from the table of that category
3. No global "current user" state - always pass user explicitly

Security model:
- JWT stored in HttpOnly cookie or Authorization header
- Participant checks happen in the services, not middleware
- Coach-only routes use CoachUser (403 for other user types)
"""

from datetime import datetime, timedelta, timezone
from typing import Annotated
from uuid import UUID

from fastapi import Cookie, Depends, Header, HTTPException, status
from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.db.models import Admin, Client, Coach, UserType
from app.db.session import get_db
from app.schemas.user import CurrentUserRead

settings = get_settings()


# =============================================================================
# JWT UTILITIES
# =============================================================================


def create_access_token(user_id: UUID, user_type: UserType | str) -> str:
    """
    Create a JWT access token for a user.

    Token payload contains:
    - sub: user_id as string (standard JWT subject claim)
    - user_type: coach / client / admin
    - exp: expiration timestamp

    Token issuance (login) lives outside this service; this helper exists
    for trusted callers and tests.
    """
    expire = datetime.now(timezone.utc) + timedelta(minutes=settings.jwt_expire_minutes)
    payload = {
        "sub": str(user_id),
        "user_type": UserType(user_type).value,
        "exp": expire,
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> tuple[UUID, UserType] | None:
    """
    Decode and validate a JWT access token.

    Returns (user_id, user_type) if valid, None if invalid/expired.
    """
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
        )
        user_id_str = payload.get("sub")
        user_type_str = payload.get("user_type")
        if user_id_str is None or user_type_str is None:
            return None
        return UUID(user_id_str), UserType(user_type_str)
    except (JWTError, ValueError):
        return None


# =============================================================================
# AUTHENTICATION DEPENDENCIES
# =============================================================================


async def get_token_from_request(
    authorization: Annotated[str | None, Header()] = None,
    access_token: Annotated[str | None, Cookie()] = None,
) -> str:
    """
    Extract JWT token from request.

    Supports two methods (in order of preference):
    1. HttpOnly cookie named 'access_token'
    2. Authorization header: 'Bearer <token>'
    """
    # Try cookie first
    if access_token:
        return access_token

    # Fall back to Authorization header
    if authorization:
        parts = authorization.split()
        if len(parts) == 2 and parts[0].lower() == "bearer":
            return parts[1]

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Not authenticated",
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(
    token: Annotated[str, Depends(get_token_from_request)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> CurrentUserRead:
    """
    Validate JWT and return the current authenticated user.

    Raises 401 if:
    - Token is missing, invalid, or expired
    - User no longer exists (or is deactivated) in the table of its type
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    decoded = decode_access_token(token)
    if decoded is None:
        raise credentials_exception
    user_id, user_type = decoded

    if user_type == UserType.COACH:
        coach = await db.get(Coach, user_id)
        if coach is None or not coach.is_active:
            raise credentials_exception
        name, email = coach.display_name, coach.email
    elif user_type == UserType.CLIENT:
        client = await db.get(Client, user_id)
        if client is None:
            raise credentials_exception
        name, email = client.display_name, client.email
    else:
        admin = await db.get(Admin, user_id)
        if admin is None or not admin.is_active:
            raise credentials_exception
        name, email = admin.name, admin.email

    return CurrentUserRead(id=str(user_id), user_type=user_type, name=name, email=email)


# Type alias for dependency injection
CurrentUser = Annotated[CurrentUserRead, Depends(get_current_user)]
DbSession = Annotated[AsyncSession, Depends(get_db)]


# =============================================================================
# AUTHORIZATION HELPERS
# =============================================================================


def require_user_type(*allowed: UserType):
    """
    Dependency factory restricting a route to some user types.

        @router.post("/sync")
        async def sync(coach: CoachUser): ...

    Returns 403 for authenticated users of any other type.
    """
    allowed_values = {t.value for t in allowed}

    async def dependency(current_user: CurrentUser) -> CurrentUserRead:
        if current_user.user_type not in allowed_values:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="You do not have permission to access this resource",
            )
        return current_user

    return dependency


CoachUser = Annotated[CurrentUserRead, Depends(require_user_type(UserType.COACH))]
