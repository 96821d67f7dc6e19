from __future__ import annotations

from typing import Optional


class SessionError(Exception):
    """Base class for client session-layer failures.

    ``error_code`` is stable for logs and tests; ``user_message`` is the text a
    login form may show. Most subclasses are never shown to the user: decode
    failures, expiries and cross-tenant attempts degrade silently.
    """

    error_code: str = "session_error"
    user_message: str = "Something went wrong. Please try again."

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
        user_message: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        if user_message is not None:
            self.user_message = user_message
        self.detail = detail or {}


class DecodeError(SessionError):
    """Malformed bearer token; callers treat it as unauthenticated."""
    error_code = "decode_error"


class FormValidationError(SessionError):
    """Client-side fail-fast check rejected the input before any request."""
    error_code = "validation_error"


class LockoutError(SessionError):
    """Server reports an active lockout for this client."""
    error_code = "locked_out"

    def __init__(self, remaining_ms: int, **kwargs) -> None:
        super().__init__(f"locked out for {remaining_ms} ms", **kwargs)
        self.remaining_ms = remaining_ms


class InvalidCredentials(SessionError):
    """Authentication rejected by the server."""
    error_code = "invalid_credentials"
    user_message = "Invalid credentials"


class NetworkError(SessionError):
    """A request could not be completed or its body could not be read."""
    error_code = "network_error"
    user_message = "Network error. Check your connection and try again."


class ExpiredSession(SessionError):
    """Token exp elapsed or the idle window was exceeded."""
    error_code = "session_expired"

    def __init__(self, reason: str, **kwargs) -> None:
        super().__init__(f"session expired ({reason})", **kwargs)
        self.reason = reason


class CrossTenantViolation(SessionError):
    """An entity from another family was selected under the active family."""
    error_code = "cross_tenant"

    def __init__(self, entity_family_id: str, active_family_id: str, **kwargs) -> None:
        super().__init__(
            f"entity belongs to family {entity_family_id}, active family is {active_family_id}",
            **kwargs,
        )
        self.entity_family_id = entity_family_id
        self.active_family_id = active_family_id


__all__ = [
    "SessionError",
    "DecodeError",
    "FormValidationError",
    "LockoutError",
    "InvalidCredentials",
    "NetworkError",
    "ExpiredSession",
    "CrossTenantViolation",
]
