"""Custom exception classes for the application"""

from typing import Optional, Dict, Any, TypeVar

from sessionguard.core.results import Denial, ErrorKind, Outcome

T = TypeVar("T")

SESSION_INVALID_MESSAGE = "Session is invalid or has expired"


class BaseAPIException(Exception):
    """Base exception for all API errors"""

    kind: Optional[ErrorKind] = None

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        self.headers = headers or {}
        super().__init__(self.message)


# Authentication Errors
class AuthenticationError(BaseAPIException):
    """Base authentication error"""
    def __init__(self, message: str = "Authentication failed", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status_code=401, details=details)


class InvalidCredentialsError(AuthenticationError):
    """Invalid email or password"""
    kind = ErrorKind.INVALID_CREDENTIALS

    def __init__(self, message: str = "Invalid email or password"):
        super().__init__(message)


class AccountLockedError(AuthenticationError):
    """Account is locked due to failed login attempts"""
    kind = ErrorKind.ACCOUNT_LOCKED

    def __init__(self, message: str, remaining_seconds: Optional[int] = None):
        details = {"remaining_seconds": remaining_seconds} if remaining_seconds is not None else None
        super().__init__(message, details=details)


class SessionInvalidError(AuthenticationError):
    """Session missing, revoked, expired or replayed"""
    kind = ErrorKind.SESSION_INVALID

    def __init__(self, message: str = SESSION_INVALID_MESSAGE):
        super().__init__(message)


# Authorization Errors
class AuthorizationError(BaseAPIException):
    """Insufficient permissions"""
    def __init__(self, message: str = "Insufficient permissions"):
        super().__init__(message, status_code=403)


class CSRFValidationError(AuthorizationError):
    """Double-submit token mismatch"""
    kind = ErrorKind.CSRF_FAILED

    def __init__(self, message: str = "CSRF token validation failed"):
        super().__init__(message)


# Resource Errors
class ResourceNotFoundError(BaseAPIException):
    """Resource not found"""
    def __init__(self, resource: str):
        super().__init__(f"{resource} not found", status_code=404)


class EmailInUseError(BaseAPIException):
    """Email already registered"""
    kind = ErrorKind.EMAIL_IN_USE

    def __init__(self, message: str = "An account with this email already exists"):
        super().__init__(message, status_code=409)


# Validation Errors
class ValidationError(BaseAPIException):
    """Validation error"""
    kind = ErrorKind.VALIDATION_FAILED

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status_code=422, details=details)


class TokenExpiredOrUsedError(BaseAPIException):
    """Single-use token is unknown, expired or already consumed"""
    kind = ErrorKind.TOKEN_EXPIRED_OR_USED

    def __init__(self, message: str = "Token is invalid, expired or already used"):
        super().__init__(message, status_code=400)


class RateLimitExceededError(BaseAPIException):
    """Rate limit exceeded"""
    kind = ErrorKind.RATE_LIMITED

    def __init__(
        self,
        message: str = "Rate limit exceeded. Please try again later.",
        retry_after: Optional[int] = None,
    ):
        headers = {"Retry-After": str(retry_after)} if retry_after else None
        details = {"retry_after": retry_after} if retry_after else None
        super().__init__(message, status_code=429, details=details, headers=headers)
        self.retry_after = retry_after


# Upstream Errors
class UpstreamError(BaseAPIException):
    """Outbound call to an identity provider or email API failed"""
    kind = ErrorKind.UPSTREAM_NETWORK_ERROR

    def __init__(self, message: str, status_code: int = 502, upstream_status: Optional[int] = None):
        details = {"upstream_status": upstream_status} if upstream_status is not None else None
        super().__init__(message, status_code=status_code, details=details)
        self.upstream_status = upstream_status


class UpstreamTimeoutError(UpstreamError):
    kind = ErrorKind.UPSTREAM_TIMEOUT

    def __init__(self, message: str = "Upstream service timed out"):
        super().__init__(message, status_code=504)


class UpstreamNetworkError(UpstreamError):
    kind = ErrorKind.UPSTREAM_NETWORK_ERROR

    def __init__(self, message: str = "Upstream service unreachable"):
        super().__init__(message, status_code=502)


class UpstreamRejectedError(UpstreamError):
    kind = ErrorKind.UPSTREAM_REJECTED

    def __init__(self, message: str = "Upstream service rejected the request", upstream_status: Optional[int] = None):
        super().__init__(message, status_code=502, upstream_status=upstream_status)


# System Errors
class ServiceUnavailableError(BaseAPIException):
    """Dependent service temporarily unavailable"""
    kind = ErrorKind.SERVICE_UNAVAILABLE

    def __init__(self, message: str = "Service temporarily unavailable"):
        super().__init__(message, status_code=503)


class InternalError(BaseAPIException):
    kind = ErrorKind.INTERNAL_ERROR

    def __init__(self, message: str = "Internal server error"):
        super().__init__(message, status_code=500)


def exception_for(denial: Denial) -> BaseAPIException:
    """
    Map a denial to the API exception rendered for it

    Reuse detection is reported to the client exactly like an invalid session.
    """
    kind = denial.kind
    if kind == ErrorKind.INVALID_CREDENTIALS:
        return InvalidCredentialsError(denial.message)
    if kind == ErrorKind.ACCOUNT_LOCKED:
        return AccountLockedError(denial.message, denial.details.get("remaining_seconds"))
    if kind == ErrorKind.RATE_LIMITED:
        return RateLimitExceededError(denial.message, retry_after=denial.retry_after)
    if kind in (ErrorKind.SESSION_INVALID, ErrorKind.SESSION_REUSE_DETECTED):
        return SessionInvalidError()
    if kind == ErrorKind.TOKEN_EXPIRED_OR_USED:
        return TokenExpiredOrUsedError(denial.message)
    if kind == ErrorKind.VALIDATION_FAILED:
        return ValidationError(denial.message, details=denial.details or None)
    if kind == ErrorKind.EMAIL_IN_USE:
        return EmailInUseError(denial.message)
    if kind == ErrorKind.CSRF_FAILED:
        return CSRFValidationError(denial.message)
    if kind == ErrorKind.SERVICE_UNAVAILABLE:
        return ServiceUnavailableError(denial.message)
    if kind == ErrorKind.UPSTREAM_TIMEOUT:
        return UpstreamTimeoutError(denial.message)
    if kind == ErrorKind.UPSTREAM_NETWORK_ERROR:
        return UpstreamNetworkError(denial.message)
    if kind == ErrorKind.UPSTREAM_REJECTED:
        return UpstreamRejectedError(denial.message, denial.details.get("upstream_status"))
    return InternalError(denial.message)


def unwrap(outcome: Outcome[T]) -> T:
    """Return the outcome value or raise the exception for its denial"""
    if outcome.denial is not None:
        raise exception_for(outcome.denial)
    return outcome.value
