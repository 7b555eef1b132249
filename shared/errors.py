"""
Error taxonomy for the IAM service.

Every failure a caller can observe is an ``IdentityServiceException``. The
HTTP layer maps ``status_code`` straight onto the response, so subclasses
only pick a code and a default message. Authentication and authorization
messages are deliberately generic: they never say which factor failed.
"""

from typing import Any, Dict, List, Optional

from opentelemetry import trace
from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Standard error response format."""

    trace_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class IdentityServiceException(Exception):
    """Base exception for the IAM service."""

    status_code = 400

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        trace_id = None
        current_span = trace.get_current_span()
        if current_span and current_span.is_recording():
            span_context = current_span.get_span_context()
            if span_context.trace_id != 0:
                trace_id = f"{span_context.trace_id:032x}"

        return ErrorResponse(
            trace_id=trace_id,
            code=self.code,
            message=self.message,
            details=self.details,
        )


class AuthenticationFailure(IdentityServiceException):
    """Bad or unusable credential. Correctable by the user."""

    status_code = 401

    def __init__(self, message: str = "Authentication failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHENTICATION_FAILURE", message, details)


class TokenExpired(IdentityServiceException):
    """The token, code or challenge is past its TTL or was never issued."""

    status_code = 401

    def __init__(self, message: str = "Token expired", details: Optional[Dict[str, Any]] = None):
        super().__init__("TOKEN_EXPIRED", message, details)


class TokenInvalid(IdentityServiceException):
    """Malformed or revoked token."""

    status_code = 401

    def __init__(self, message: str = "Token invalid", details: Optional[Dict[str, Any]] = None):
        super().__init__("TOKEN_INVALID", message, details)


class AlreadyRedeemed(IdentityServiceException):
    """A single-use artifact was redeemed before."""

    status_code = 409

    def __init__(self, message: str = "Already redeemed", details: Optional[Dict[str, Any]] = None):
        super().__init__("ALREADY_REDEEMED", message, details)


class AlreadyConsumed(AlreadyRedeemed):
    """A verification challenge was consumed before."""

    def __init__(self, message: str = "Challenge already consumed", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.code = "ALREADY_CONSUMED"


class AuthorizationDenied(IdentityServiceException):
    """Negative permission check."""

    status_code = 403

    def __init__(self, message: str = "Permission denied", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHORIZATION_DENIED", message, details)


class ExternalServiceUnavailable(IdentityServiceException):
    """An external identity source could not be reached.

    ``reason`` is one of ``retry_exhausted``, ``circuit_open`` or
    ``remote_error``. It exists for logs and metrics; callers treat all of
    them the same way and back off.
    """

    status_code = 503

    def __init__(self, service: str, reason: str, message: str = "External service unavailable",
                 details: Optional[Dict[str, Any]] = None):
        self.service = service
        self.reason = reason
        super().__init__(
            "EXTERNAL_SERVICE_UNAVAILABLE",
            f"{service}: {message}",
            {"service": service, "reason": reason, **(details or {})},
        )


class ValidationError(IdentityServiceException):
    """Input or policy violation."""

    status_code = 400

    def __init__(self, message: str = "Validation failed", violations: Optional[List[str]] = None,
                 details: Optional[Dict[str, Any]] = None):
        self.violations = list(violations or [])
        merged = dict(details or {})
        if self.violations:
            merged["violations"] = self.violations
        super().__init__("VALIDATION_ERROR", message, merged)


class Conflict(IdentityServiceException):
    """Uniqueness violation."""

    status_code = 409

    def __init__(self, message: str = "Conflict", details: Optional[Dict[str, Any]] = None):
        super().__init__("CONFLICT", message, details)


class NotFound(IdentityServiceException):
    """Lookup of an entity that does not exist."""

    status_code = 404

    def __init__(self, message: str = "Not found", details: Optional[Dict[str, Any]] = None):
        super().__init__("NOT_FOUND", message, details)
