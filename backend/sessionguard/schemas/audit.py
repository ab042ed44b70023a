"""Audit and security report schemas."""

from datetime import datetime
from typing import Optional, Dict, Any, List

from pydantic import BaseModel


class AuditEventResponse(BaseModel):
    id: int
    event_type: str
    user_id: Optional[int]
    event_data: Dict[str, Any] = {}
    ip_address: Optional[str]
    user_agent: Optional[str]
    success: bool
    created_at: Optional[datetime]


class AuditEventPage(BaseModel):
    items: List[AuditEventResponse]
    total: int
    limit: int
    offset: int


class SuspiciousIpResponse(BaseModel):
    ip_address: str
    failed_logins: int
    last_seen: Optional[datetime]


class UserSecuritySummary(BaseModel):
    user_id: int
    period_days: int
    successful_logins: int
    failed_logins: int
    token_reuse_detections: int
    password_changes: int
    distinct_login_ips: int
    last_login_at: Optional[datetime]
    last_login_ip: Optional[str]
    failed_login_attempts: int
    locked_until: Optional[datetime]
    active_sessions: int


class SessionStatsResponse(BaseModel):
    total: int
    active: int
    expired: int
    revoked: int
    rotated: int
    average_rotation_count: float


class CleanupResponse(BaseModel):
    expired_sessions: int
    revoked_sessions: int
    reset_tokens: int
    rate_limit_buckets: int
