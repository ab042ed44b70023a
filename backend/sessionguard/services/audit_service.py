"""Append-only audit log for security-relevant events."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from sessionguard.core.clock import Clock, utcnow
from sessionguard.core.context import NetworkContext
from sessionguard.core.metrics import AUDIT_WRITE_FAILURES
from sessionguard.models.audit import AuditEvent

logger = logging.getLogger(__name__)


class AuditEventType:
    LOGIN_SUCCESS = "auth.login.success"
    LOGIN_FAILED = "auth.login.failed"
    ACCOUNT_LOCKED = "auth.account.locked"
    LOGOUT = "auth.logout"
    REGISTER_SUCCESS = "auth.register.success"
    REGISTER_FAILED = "auth.register.failed"
    PASSWORD_CHANGE = "auth.password.change"
    PASSWORD_RESET_REQUEST = "auth.password.reset.request"
    PASSWORD_RESET_COMPLETE = "auth.password.reset.complete"
    EMAIL_VERIFY_REQUEST = "auth.email.verify.request"
    EMAIL_VERIFY_COMPLETE = "auth.email.verify.complete"
    ACCOUNT_DELETED = "auth.account.deleted"
    SESSION_CREATED = "auth.session_created"
    TOKEN_ROTATED = "auth.token_rotated"
    TOKEN_FAMILY_REVOKED = "auth.token_family_revoked"
    TOKEN_REUSE_DETECTED = "auth.token_reuse_detected"
    SESSION_REVOKED = "auth.session.revoked"
    OTHER_SESSIONS_REVOKED = "auth.session.revoke_others"
    OAUTH_ACCOUNT_LINKED = "auth.oauth.account_linked"
    RATE_LIMIT_EXCEEDED = "security.rate_limit.exceeded"
    CSRF_FAILED = "security.csrf.failed"
    SESSION_CLEANUP = "system.session_cleanup"

    @staticmethod
    def oauth(provider: str, success: bool) -> str:
        return f"auth.oauth.{provider}.{'success' if success else 'failed'}"


def _decode_event_data(raw: Optional[str]) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        return {"raw": raw}
    return value if isinstance(value, dict) else {"value": value}


def serialize_event(event: AuditEvent) -> Dict[str, Any]:
    return {
        "id": event.id,
        "event_type": event.event_type,
        "user_id": event.user_id,
        "event_data": _decode_event_data(event.event_data),
        "ip_address": event.ip_address,
        "user_agent": event.user_agent,
        "success": event.success,
        "created_at": event.created_at,
    }


class AuditLog:
    """
    Persist immutable audit trail entries

    ``record`` never raises: a failed write is rolled back, logged and counted.
    Callers commit their primary work before recording so a rollback here
    cannot undo a security decision.
    """

    def __init__(self, db: Session, clock: Clock = utcnow) -> None:
        self.db = db
        self.clock = clock

    def record(
        self,
        event_type: str,
        *,
        user_id: Optional[int] = None,
        event_data: Optional[Dict[str, Any]] = None,
        ctx: Optional[NetworkContext] = None,
        success: bool = True,
    ) -> Optional[AuditEvent]:
        try:
            event = AuditEvent(
                event_type=event_type,
                user_id=user_id,
                event_data=json.dumps(event_data or {}, ensure_ascii=False, default=str),
                ip_address=ctx.ip_address if ctx else None,
                user_agent=ctx.user_agent if ctx else None,
                success=success,
                created_at=self.clock(),
            )
            self.db.add(event)
            self.db.commit()
            return event
        except Exception:
            AUDIT_WRITE_FAILURES.inc()
            logger.exception("Failed to write audit event %s (user_id=%s)", event_type, user_id)
            try:
                self.db.rollback()
            except Exception:
                logger.exception("Rollback after audit failure also failed")
            return None

    def query(
        self,
        *,
        user_id: Optional[int] = None,
        event_type: Optional[str] = None,
        success: Optional[bool] = None,
        ip_address: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[AuditEvent], int]:
        """
        Filtered, newest-first listing of audit events

        Returns:
            Tuple of (page of events, total matching count)
        """
        query = self.db.query(AuditEvent)
        if user_id is not None:
            query = query.filter(AuditEvent.user_id == user_id)
        if event_type:
            query = query.filter(AuditEvent.event_type == event_type)
        if success is not None:
            query = query.filter(AuditEvent.success == success)
        if ip_address:
            query = query.filter(AuditEvent.ip_address == ip_address)
        if start:
            query = query.filter(AuditEvent.created_at >= start)
        if end:
            query = query.filter(AuditEvent.created_at <= end)

        total = query.count()
        events = (
            query.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        return events, total

    def failed_login_count(
        self,
        *,
        user_id: Optional[int] = None,
        ip_address: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> int:
        query = self.db.query(func.count(AuditEvent.id)).filter(
            AuditEvent.event_type == AuditEventType.LOGIN_FAILED
        )
        if user_id is not None:
            query = query.filter(AuditEvent.user_id == user_id)
        if ip_address:
            query = query.filter(AuditEvent.ip_address == ip_address)
        if since:
            query = query.filter(AuditEvent.created_at >= since)
        return int(query.scalar() or 0)

    def suspicious_ips(self, *, hours: int = 24, threshold: int = 10) -> List[Dict[str, Any]]:
        """Addresses with at least ``threshold`` failed logins in the lookback window."""
        since = self.clock() - timedelta(hours=hours)
        rows = (
            self.db.query(
                AuditEvent.ip_address,
                func.count(AuditEvent.id).label("failures"),
                func.max(AuditEvent.created_at).label("last_seen"),
            )
            .filter(
                AuditEvent.event_type == AuditEventType.LOGIN_FAILED,
                AuditEvent.created_at >= since,
                AuditEvent.ip_address.isnot(None),
            )
            .group_by(AuditEvent.ip_address)
            .having(func.count(AuditEvent.id) >= threshold)
            .order_by(func.count(AuditEvent.id).desc())
            .all()
        )
        return [
            {"ip_address": ip, "failed_logins": int(failures), "last_seen": last_seen}
            for ip, failures, last_seen in rows
        ]

    def user_security_summary(self, user_id: int, *, days: int = 30) -> Dict[str, Any]:
        since = self.clock() - timedelta(days=days)
        base = self.db.query(AuditEvent).filter(
            AuditEvent.user_id == user_id,
            AuditEvent.created_at >= since,
        )
        successful = base.filter(AuditEvent.event_type == AuditEventType.LOGIN_SUCCESS).count()
        failed = base.filter(AuditEvent.event_type == AuditEventType.LOGIN_FAILED).count()
        reuse = base.filter(AuditEvent.event_type == AuditEventType.TOKEN_REUSE_DETECTED).count()
        password_changes = base.filter(
            AuditEvent.event_type.in_(
                [AuditEventType.PASSWORD_CHANGE, AuditEventType.PASSWORD_RESET_COMPLETE]
            )
        ).count()
        distinct_ips = (
            self.db.query(func.count(func.distinct(AuditEvent.ip_address)))
            .filter(
                AuditEvent.user_id == user_id,
                AuditEvent.created_at >= since,
                AuditEvent.event_type == AuditEventType.LOGIN_SUCCESS,
            )
            .scalar()
        )
        last_login = (
            base.filter(AuditEvent.event_type == AuditEventType.LOGIN_SUCCESS)
            .order_by(AuditEvent.created_at.desc())
            .first()
        )
        return {
            "user_id": user_id,
            "period_days": days,
            "successful_logins": successful,
            "failed_logins": failed,
            "token_reuse_detections": reuse,
            "password_changes": password_changes,
            "distinct_login_ips": int(distinct_ips or 0),
            "last_login_at": last_login.created_at if last_login else None,
            "last_login_ip": last_login.ip_address if last_login else None,
        }
