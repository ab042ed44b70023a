"""Pydantic schemas for API validation"""

from sessionguard.schemas.user import UserResponse, PasswordChangeRequest
from sessionguard.schemas.auth import (
    LoginRequest,
    RegisterRequest,
    EmailRequest,
    PasswordResetConfirm,
    SessionResponse,
    ActiveSessionResponse,
)
from sessionguard.schemas.audit import (
    AuditEventResponse,
    AuditEventPage,
    SuspiciousIpResponse,
    UserSecuritySummary,
    SessionStatsResponse,
    CleanupResponse,
)

__all__ = [
    "UserResponse", "PasswordChangeRequest",
    "LoginRequest", "RegisterRequest", "EmailRequest", "PasswordResetConfirm",
    "SessionResponse", "ActiveSessionResponse",
    "AuditEventResponse", "AuditEventPage", "SuspiciousIpResponse", "UserSecuritySummary",
    "SessionStatsResponse", "CleanupResponse"
]
