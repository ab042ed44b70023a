"""Security-related persistence models."""

from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, Index
from sqlalchemy.orm import relationship

from sessionguard.core.database import Base
from sessionguard.core.clock import utcnow

SESSION_ACTIVE = "active"
SESSION_ROTATED = "rotated"
SESSION_REVOKED = "revoked"


class AuthSession(Base):
    """One issued refresh credential; rows sharing token_family form a rotation chain."""

    __tablename__ = "auth_sessions"

    id = Column(String(36), primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    token_family = Column(String(36), nullable=False, index=True)
    token_hash = Column(String(64), nullable=False)
    parent_session_id = Column(String(36), ForeignKey("auth_sessions.id", ondelete="SET NULL"), nullable=True)
    rotation_count = Column(Integer, default=0, nullable=False)
    status = Column(String(16), default=SESSION_ACTIVE, nullable=False)
    revoked_reason = Column(String(64), nullable=True)
    remember_me = Column(Boolean, default=False, nullable=False)
    family_started_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    last_used_at = Column(DateTime, nullable=True)
    rotated_at = Column(DateTime, nullable=True)
    revoked_at = Column(DateTime, nullable=True)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(512), nullable=True)

    user = relationship("User", back_populates="sessions")

    __table_args__ = (
        Index("idx_auth_sessions_user_status", "user_id", "status"),
        Index("idx_auth_sessions_expires_at", "expires_at"),
    )

    def is_expired(self, now) -> bool:
        return self.expires_at <= now

    def __repr__(self):
        return (
            f"<AuthSession(id='{self.id}', family='{self.token_family}', "
            f"rotation={self.rotation_count}, status='{self.status}')>"
        )


class PasswordResetToken(Base):
    """Single-use password reset capability; only the token digest is stored."""

    __tablename__ = "password_reset_tokens"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    token_hash = Column(String(64), unique=True, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    used = Column(Boolean, default=False, nullable=False)
    used_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_password_reset_tokens_expires_at", "expires_at"),
    )


class RateLimitBucket(Base):
    """Fixed-window counter for one (action, identity) key."""

    __tablename__ = "rate_limit_buckets"

    key = Column(String(255), primary_key=True)
    action = Column(String(64), nullable=False, index=True)
    window_start = Column(DateTime, nullable=False)
    count = Column(Integer, default=0, nullable=False)
