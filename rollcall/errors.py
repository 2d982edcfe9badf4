"""Error taxonomy for the attendance engine.

Every engine failure is one of these named errors. The HTTP layer renders them
verbatim through ``rollcall_error_handler``; nothing is collapsed into a generic
500.
"""

from fastapi import Request
from fastapi.responses import JSONResponse


class RollcallError(Exception):
    """Base exception for engine failures."""

    status_code = 400
    code = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class AuthenticationError(RollcallError):
    """Raised when no caller identity can be resolved."""

    status_code = 401
    code = "authentication"


class AuthorizationError(RollcallError):
    """Raised when the caller lacks ownership or enrollment."""

    status_code = 403
    code = "authorization"


class NotFoundError(RollcallError):
    """Raised when a session, course or user does not exist."""

    status_code = 404
    code = "not_found"


class StateError(RollcallError):
    """Raised on lifecycle violations: ended session, expired code, closed window."""

    status_code = 409
    code = "state"


class ConflictError(RollcallError):
    """Raised when attendance was already recorded for the session."""

    status_code = 409
    code = "conflict"


class ValidationError(RollcallError):
    """Raised for malformed input, malformed codes and geofence failures."""

    status_code = 422
    code = "validation"


async def rollcall_error_handler(request: Request, exc: RollcallError) -> JSONResponse:
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, AuthenticationError) else None
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error": exc.code},
        headers=headers,
    )
