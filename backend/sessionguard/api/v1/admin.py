"""Admin routes - audit trail, security reports and session maintenance"""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from sessionguard.core.clock import naive_utc
from sessionguard.core.exceptions import ResourceNotFoundError
from sessionguard.schemas.audit import (
    AuditEventPage,
    AuditEventResponse,
    CleanupResponse,
    SessionStatsResponse,
    SuspiciousIpResponse,
    UserSecuritySummary,
)
from sessionguard.services.audit_service import serialize_event
from sessionguard.services.auth_service import AuthService
from sessionguard.services.user_service import user_service
from sessionguard.api.deps import get_auth_service, get_current_admin_user, require_csrf
from sessionguard.models.user import User

router = APIRouter()


@router.get("/audit-events", response_model=AuditEventPage)
def list_audit_events(
    user_id: Optional[int] = None,
    event_type: Optional[str] = None,
    success: Optional[bool] = None,
    ip_address: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    current_user: User = Depends(get_current_admin_user),
    auth: AuthService = Depends(get_auth_service),
):
    """
    List audit events, newest first

    Args:
        user_id: Filter by subject user
        event_type: Filter by event type (e.g. auth.login.failed)
        success: Filter by outcome
        ip_address: Filter by client address
        start: Inclusive lower bound on created_at
        end: Inclusive upper bound on created_at

    Returns:
        One page of events and the total match count
    """
    events, total = auth.audit.query(
        user_id=user_id,
        event_type=event_type,
        success=success,
        ip_address=ip_address,
        start=naive_utc(start),
        end=naive_utc(end),
        limit=limit,
        offset=offset,
    )
    return AuditEventPage(
        items=[AuditEventResponse(**serialize_event(event)) for event in events],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/security/suspicious-ips", response_model=List[SuspiciousIpResponse])
def suspicious_ips(
    hours: int = Query(24, ge=1, le=24 * 30),
    threshold: int = Query(10, ge=1),
    current_user: User = Depends(get_current_admin_user),
    auth: AuthService = Depends(get_auth_service),
):
    """Addresses with at least ``threshold`` failed logins in the last ``hours``"""
    return auth.audit.suspicious_ips(hours=hours, threshold=threshold)


@router.get("/security/users/{user_id}/summary", response_model=UserSecuritySummary)
def user_security_summary(
    user_id: int,
    days: int = Query(30, ge=1, le=365),
    current_user: User = Depends(get_current_admin_user),
    auth: AuthService = Depends(get_auth_service),
):
    user = user_service.get_user_by_id(auth.db, user_id)
    if not user:
        raise ResourceNotFoundError("User")

    summary = auth.audit.user_security_summary(user_id, days=days)
    summary.update(
        failed_login_attempts=user.failed_login_attempts,
        locked_until=user.locked_until,
        active_sessions=len(auth.list_sessions(user)),
    )
    return summary


@router.get("/sessions/stats", response_model=SessionStatsResponse)
def session_stats(
    current_user: User = Depends(get_current_admin_user),
    auth: AuthService = Depends(get_auth_service),
):
    return auth.sessions.store.stats(auth.clock())


@router.post(
    "/sessions/cleanup",
    response_model=CleanupResponse,
    status_code=status.HTTP_200_OK,
    dependencies=[Depends(require_csrf)],
)
def run_cleanup(
    current_user: User = Depends(get_current_admin_user),
    auth: AuthService = Depends(get_auth_service),
):
    """Run a sweep now, ignoring the opportunistic interval"""
    stats = auth.sweeper.cleanup_expired()
    return CleanupResponse(
        expired_sessions=stats.expired_sessions,
        revoked_sessions=stats.revoked_sessions,
        reset_tokens=stats.reset_tokens,
        rate_limit_buckets=stats.rate_limit_buckets,
    )
