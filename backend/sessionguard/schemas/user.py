"""User schemas"""

from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime


class UserResponse(BaseModel):
    """User response schema"""
    id: int
    email: Optional[str]
    email_verified: bool
    provider: str
    display_name: Optional[str]
    avatar_url: Optional[str] = None
    created_at: Optional[datetime]
    last_login: Optional[datetime]
    
    class Config:
        from_attributes = True


class PasswordChangeRequest(BaseModel):
    """Change password for the signed-in user"""
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str = Field(..., min_length=1, max_length=128)
    confirm_password: str = Field(..., min_length=1, max_length=128)
