"""Database models"""

from sessionguard.models.user import User
from sessionguard.models.security import AuthSession, PasswordResetToken, RateLimitBucket
from sessionguard.models.audit import AuditEvent

__all__ = ["User", "AuthSession", "PasswordResetToken", "RateLimitBucket", "AuditEvent"]
