"""
Service-layer exceptions.

Services raise these instead of HTTPException so they stay usable outside a
request (scheduler, scripts). app.main renders them as JSON with the
matching status code and a machine-readable error_code.
"""


class ServiceError(Exception):
    """Base exception for service errors."""

    status_code: int = 500
    error_code: str = "INTERNAL_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class BadRequestError(ServiceError):
    """The request is invalid and will never succeed as sent."""

    status_code = 400
    error_code = "BAD_REQUEST"


class ForbiddenError(ServiceError):
    """The caller may not access or modify the resource."""

    status_code = 403
    error_code = "FORBIDDEN"


class NotFoundError(ServiceError):
    """The requested resource does not exist."""

    status_code = 404
    error_code = "NOT_FOUND"


class GmailAPIError(Exception):
    """Non-success response from the Gmail API."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class GmailAuthError(GmailAPIError):
    """Access token rejected (401)."""
    pass
