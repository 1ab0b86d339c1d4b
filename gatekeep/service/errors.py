from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional

from gatekeep.storage.errors import StoreError


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    Each class carries a transport-neutral ``status_code`` and a stable
    ``error_code``. Login results reuse the ``error_code`` as their ``reason``
    so callers can branch on it without parsing messages:
    - validation_error (400)
    - invalid_credentials, otp_invalid, otp_expired (401)
    - session_expired, session_inactive (401)
    - user_not_found, session_not_found (404)
    - identity_exists (409)
    - infrastructure_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Input validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Unknown user, disabled user or wrong password; callers cannot tell which."""
    error_code = "invalid_credentials"


class OtpInvalidError(AuthenticationError):
    """No unused code matches (wrong, already used, or unknown email)."""
    error_code = "otp_invalid"


class OtpExpiredError(AuthenticationError):
    """The matching code exists but its expiry has passed."""
    error_code = "otp_expired"


class SessionRejectedError(AuthenticationError):
    """Session exists but cannot be used."""
    error_code = "session_rejected"


class SessionExpiredError(SessionRejectedError):
    """Session has expired (401)."""
    error_code = "session_expired"


class SessionInactiveError(SessionRejectedError):
    """Session was logged out or revoked (401)."""
    error_code = "session_inactive"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class UserNotFoundError(NotFoundError):
    error_code = "user_not_found"


class SessionNotFoundError(NotFoundError):
    error_code = "session_not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class IdentityExistsError(ConflictError):
    error_code = "identity_exists"


class InfrastructureError(ServiceError):
    """Store or directory failure (500); ``detail`` names the failing operation."""
    status_code = 500
    error_code = "infrastructure_error"


@contextmanager
def store_guard(
    operation: str, collection: Optional[str] = None, doc_id: Optional[str] = None
) -> Iterator[None]:
    """Re-raise store failures as ``InfrastructureError`` with operation context.

    ``DeadlineExceeded`` and service errors raised inside the block propagate
    unchanged.
    """
    try:
        yield
    except StoreError as exc:
        raise InfrastructureError(
            f"{operation} failed: {exc.message}",
            detail={
                "operation": operation,
                "collection": collection or exc.detail.get("collection"),
                "doc_id": doc_id or exc.detail.get("doc_id"),
            },
        ) from exc


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "OtpInvalidError",
    "OtpExpiredError",
    "SessionRejectedError",
    "SessionExpiredError",
    "SessionInactiveError",
    "NotFoundError",
    "UserNotFoundError",
    "SessionNotFoundError",
    "ConflictError",
    "IdentityExistsError",
    "InfrastructureError",
    "store_guard",
]
