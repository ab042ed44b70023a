"""Explicit outcome values for security decisions.

Expected denials (wrong password, rate limited, replayed session, ...) are
returned as values; exceptions are reserved for genuine faults. The HTTP layer
turns a denial into the matching API exception via ``core.exceptions.unwrap``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_LOCKED = "account_locked"
    RATE_LIMITED = "rate_limited"
    SESSION_INVALID = "session_invalid"
    SESSION_REUSE_DETECTED = "session_reuse_detected"
    TOKEN_EXPIRED_OR_USED = "token_expired_or_used"
    UPSTREAM_TIMEOUT = "upstream_timeout"
    UPSTREAM_NETWORK_ERROR = "upstream_network_error"
    UPSTREAM_REJECTED = "upstream_rejected"
    VALIDATION_FAILED = "validation_failed"
    EMAIL_IN_USE = "email_in_use"
    SERVICE_UNAVAILABLE = "service_unavailable"
    CSRF_FAILED = "csrf_failed"
    INTERNAL_ERROR = "internal_error"


@dataclass(frozen=True)
class Denial:
    kind: ErrorKind
    message: str
    retry_after: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Outcome(Generic[T]):
    value: Optional[T] = None
    denial: Optional[Denial] = None

    @property
    def ok(self) -> bool:
        return self.denial is None

    @property
    def kind(self) -> Optional[ErrorKind]:
        return self.denial.kind if self.denial else None

    @classmethod
    def success(cls, value: T) -> "Outcome[T]":
        return cls(value=value)

    @classmethod
    def deny(
        cls,
        kind: ErrorKind,
        message: str,
        *,
        retry_after: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> "Outcome[T]":
        return cls(denial=Denial(kind, message, retry_after, details or {}))

    @classmethod
    def from_denial(cls, denial: Denial) -> "Outcome[T]":
        return cls(denial=denial)
