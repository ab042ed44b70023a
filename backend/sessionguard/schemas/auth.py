"""Authentication request and response schemas"""

from pydantic import BaseModel, Field, field_validator
from typing import Optional
from datetime import datetime

from sessionguard.schemas.user import UserResponse


def _strip_email(value: str) -> str:
    return value.strip().lower()


class LoginRequest(BaseModel):
    """Email/password login"""
    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=1, max_length=128)
    remember_me: bool = False

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v):
        """Lowercase and trim the address"""
        return _strip_email(v)


class RegisterRequest(BaseModel):
    """Account registration"""
    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=1, max_length=128)
    confirm_password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v):
        """Lowercase and trim the address"""
        return _strip_email(v)


class EmailRequest(BaseModel):
    """Password reset request / verification resend"""
    email: str = Field(..., min_length=3, max_length=255)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v):
        """Lowercase and trim the address"""
        return _strip_email(v)


class PasswordResetConfirm(BaseModel):
    """Complete a password reset"""
    token: str = Field(..., min_length=1, max_length=512)
    new_password: str = Field(..., min_length=1, max_length=128)
    confirm_password: str = Field(..., min_length=1, max_length=128)


class SessionResponse(BaseModel):
    """Authenticated session summary returned after login, refresh or registration"""
    success: bool = True
    user: UserResponse
    csrf_token: str
    remember_me: bool
    expires_at: datetime
    verification_email_sent: Optional[bool] = None


class ActiveSessionResponse(BaseModel):
    """One active session of the signed-in user"""
    id: str
    current: bool
    remember_me: bool
    ip_address: Optional[str]
    user_agent: Optional[str]
    created_at: Optional[datetime]
    last_used_at: Optional[datetime]
    expires_at: datetime
