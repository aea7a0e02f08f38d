"""
Error taxonomy for the signing gateway.

Every failure surfaced by the core is a SigningError carrying a code from
the closed SigningErrorCode enumeration, a human-readable message and a
structured details payload. The HTTP layer maps codes to status codes
exhaustively; nothing inspects error shapes ad hoc.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class SigningErrorCode(str, Enum):
    """
    Machine-readable failure kinds.

    NOTE:
    This enum is closed. Adding a member requires a matching entry in
    the HTTP status mapping (see signgate.app.api.routes).
    """

    INVALID_DOCUMENT = "INVALID_DOCUMENT"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    INVALID_IDENTIFIER = "INVALID_IDENTIFIER"
    INVALID_REQUEST = "INVALID_REQUEST"
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    SESSION_STATE_CONFLICT = "SESSION_STATE_CONFLICT"
    BACKEND_ERROR = "BACKEND_ERROR"
    BACKEND_UNAVAILABLE = "BACKEND_UNAVAILABLE"
    BACKEND_NOT_CONFIGURED = "BACKEND_NOT_CONFIGURED"


class SigningError(RuntimeError):
    """Base class for every failure raised by the signing core."""

    code: SigningErrorCode

    def __init__(
        self,
        message: str,
        *,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = dict(details or {})

    def to_payload(self) -> dict[str, str]:
        """Client-safe representation (no details, no backend bodies)."""
        return {"code": self.code.value, "message": self.message}


# ----------------------------------------------------------------------
# Validation (raised before any network call)
# ----------------------------------------------------------------------

class InvalidDocument(SigningError):
    code = SigningErrorCode.INVALID_DOCUMENT


class InvalidSignature(SigningError):
    code = SigningErrorCode.INVALID_SIGNATURE


class InvalidIdentifier(SigningError):
    code = SigningErrorCode.INVALID_IDENTIFIER


class InvalidRequest(SigningError):
    code = SigningErrorCode.INVALID_REQUEST


# ----------------------------------------------------------------------
# Session lifecycle
# ----------------------------------------------------------------------

class SessionNotFound(SigningError):
    code = SigningErrorCode.SESSION_NOT_FOUND

    def __init__(self, session_id: str) -> None:
        super().__init__(
            "Session not found",
            details={"session_id": session_id},
        )
        self.session_id = session_id


class SessionExpired(SigningError):
    code = SigningErrorCode.SESSION_EXPIRED


class SessionStateConflict(SigningError):
    code = SigningErrorCode.SESSION_STATE_CONFLICT


# ----------------------------------------------------------------------
# Signing backend
# ----------------------------------------------------------------------

class BackendError(SigningError):
    """Non-2xx response (or unusable payload) from the signing backend."""

    code = SigningErrorCode.BACKEND_ERROR

    def __init__(
        self,
        message: str,
        *,
        operation: str,
        status_code: Optional[int] = None,
        body: str = "",
        session_id: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            details={
                "operation": operation,
                "status_code": status_code,
                "session_id": session_id,
            },
        )
        self.operation = operation
        self.status_code = status_code
        self.body = body
        self.session_id = session_id


class BackendUnavailable(SigningError):
    """Network-level failure: DNS, refused connection, timeout."""

    code = SigningErrorCode.BACKEND_UNAVAILABLE

    def __init__(
        self,
        message: str,
        *,
        operation: str,
        session_id: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            details={"operation": operation, "session_id": session_id},
        )
        self.operation = operation
        self.session_id = session_id


class BackendNotConfigured(SigningError):
    code = SigningErrorCode.BACKEND_NOT_CONFIGURED
