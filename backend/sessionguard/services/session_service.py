"""Session rotation engine: token families, rotation and reuse detection."""

from __future__ import annotations

import hmac
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sessionguard.config import Settings, settings as default_settings
from sessionguard.core.clock import Clock, utcnow
from sessionguard.core.context import NetworkContext
from sessionguard.core.exceptions import SESSION_INVALID_MESSAGE
from sessionguard.core.metrics import BREACH_DETECTIONS
from sessionguard.core.results import ErrorKind, Outcome
from sessionguard.core.security import generate_token, hash_token
from sessionguard.models.security import (
    AuthSession,
    SESSION_ACTIVE,
    SESSION_REVOKED,
    SESSION_ROTATED,
)
from sessionguard.services.audit_service import AuditEventType
from sessionguard.services.session_store import SessionStore

logger = logging.getLogger(__name__)

REASON_SIGNOUT = "signout"
REASON_REUSE = "token_reuse"
REASON_ROTATION_LIMIT = "rotation_limit"
REASON_FAMILY_AGE = "family_age"
REASON_PASSWORD_RESET = "password_reset"
REASON_PASSWORD_CHANGE = "password_change"
REASON_ACCOUNT_DELETED = "account_deleted"
REASON_USER_REVOKED = "user_revoked"
REASON_OAUTH_LINK = "oauth_link"


@dataclass
class IssuedSession:
    """A persisted session plus the plain refresh secret handed to the client."""

    session: AuthSession
    refresh_secret: str


def _invalid() -> Outcome:
    return Outcome.deny(ErrorKind.SESSION_INVALID, SESSION_INVALID_MESSAGE)


class SessionRotationEngine:
    """
    Validate and rotate refresh credentials

    Every refresh consumes the presented session (Active -> Rotated) and issues
    a child in the same family. Presenting a Rotated session again is treated
    as credential theft and revokes the whole family.
    """

    def __init__(
        self,
        store: SessionStore,
        *,
        audit=None,
        cfg: Settings = default_settings,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.audit = audit
        self.cfg = cfg
        self.clock = clock

    def _record(self, event_type: str, **kwargs) -> None:
        if self.audit is not None:
            self.audit.record(event_type, **kwargs)

    def session_lifetime(self, remember_me: bool) -> timedelta:
        if remember_me:
            return timedelta(days=self.cfg.REMEMBER_ME_EXPIRE_DAYS)
        return timedelta(days=self.cfg.SESSION_EXPIRE_DAYS)

    def _expiry(self, now: datetime, remember_me: bool, family_started_at: datetime) -> datetime:
        family_deadline = family_started_at + timedelta(days=self.cfg.MAX_FAMILY_AGE_DAYS)
        return min(now + self.session_lifetime(remember_me), family_deadline)

    def create_session(
        self, user_id: int, remember_me: bool, ctx: Optional[NetworkContext] = None
    ) -> IssuedSession:
        """Start a new token family with an Active session at rotation 0."""
        now = self.clock()
        secret = generate_token()
        session = AuthSession(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_family=str(uuid.uuid4()),
            token_hash=hash_token(secret),
            parent_session_id=None,
            rotation_count=0,
            status=SESSION_ACTIVE,
            remember_me=bool(remember_me),
            family_started_at=now,
            created_at=now,
            expires_at=self._expiry(now, remember_me, now),
            last_used_at=now,
            ip_address=ctx.ip_address if ctx else None,
            user_agent=ctx.user_agent if ctx else None,
        )
        self.store.add(session)
        family_id = session.token_family
        self._record(
            AuditEventType.SESSION_CREATED,
            user_id=user_id,
            event_data={"session_id": session.id, "family_id": family_id, "remember_me": bool(remember_me)},
            ctx=ctx,
        )
        return IssuedSession(session=session, refresh_secret=secret)

    def authenticate(self, session_id: str, refresh_secret: str) -> Outcome[AuthSession]:
        """Check a presented session without rotating it."""
        session = self.store.get(session_id)
        if session is None or not self._secret_matches(session, refresh_secret):
            return _invalid()
        if session.status != SESSION_ACTIVE or session.is_expired(self.clock()):
            return _invalid()
        return Outcome.success(session)

    @staticmethod
    def _secret_matches(session: AuthSession, refresh_secret: str) -> bool:
        if not refresh_secret:
            return False
        return hmac.compare_digest(session.token_hash, hash_token(refresh_secret))

    def validate_and_rotate(
        self, session_id: str, refresh_secret: str, ctx: Optional[NetworkContext] = None
    ) -> Outcome[IssuedSession]:
        """
        Exchange a presented session for its successor

        Returns:
            Outcome with the child session, or SESSION_INVALID /
            SESSION_REUSE_DETECTED
        """
        now = self.clock()
        session = self.store.get(session_id)
        if session is None or not self._secret_matches(session, refresh_secret):
            return _invalid()

        if session.status == SESSION_REVOKED:
            return _invalid()
        if session.status == SESSION_ROTATED:
            return self._reuse_detected(session, ctx)
        if session.is_expired(now):
            return _invalid()

        if session.rotation_count >= self.cfg.MAX_ROTATION_COUNT:
            self.revoke_family(session.token_family, REASON_ROTATION_LIMIT, user_id=session.user_id, ctx=ctx)
            return _invalid()
        if now - session.family_started_at >= timedelta(days=self.cfg.MAX_FAMILY_AGE_DAYS):
            self.revoke_family(session.token_family, REASON_FAMILY_AGE, user_id=session.user_id, ctx=ctx)
            return _invalid()

        parent_id = session.id
        user_id = session.user_id
        family_id = session.token_family
        rotation_count = session.rotation_count + 1
        secret = generate_token()
        child = AuthSession(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_family=family_id,
            token_hash=hash_token(secret),
            parent_session_id=parent_id,
            rotation_count=rotation_count,
            status=SESSION_ACTIVE,
            remember_me=session.remember_me,
            family_started_at=session.family_started_at,
            created_at=now,
            expires_at=self._expiry(now, session.remember_me, session.family_started_at),
            last_used_at=now,
            ip_address=ctx.ip_address if ctx else session.ip_address,
            user_agent=ctx.user_agent if ctx else session.user_agent,
        )

        if not self.store.rotate(parent_id, child, now):
            # Lost the race: whoever won already consumed this credential.
            current = self.store.get(parent_id)
            if current is not None and current.status == SESSION_ROTATED:
                return self._reuse_detected(current, ctx)
            return _invalid()

        logger.info(f"Rotated session in family {family_id} (rotation {rotation_count})")
        self._record(
            AuditEventType.TOKEN_ROTATED,
            user_id=user_id,
            event_data={"family_id": family_id, "parent_session_id": parent_id, "rotation_count": rotation_count},
            ctx=ctx,
        )
        return Outcome.success(IssuedSession(session=child, refresh_secret=secret))

    def _reuse_detected(self, session: AuthSession, ctx: Optional[NetworkContext]) -> Outcome:
        family_id = session.token_family
        user_id = session.user_id
        session_id = session.id
        rotation_count = session.rotation_count
        revoked = self.store.revoke_family(family_id, REASON_REUSE, self.clock())

        BREACH_DETECTIONS.inc()
        logger.error(
            "Session reuse detected: session=%s family=%s user_id=%s ip=%s; revoked %s sessions",
            session_id,
            family_id,
            user_id,
            ctx.ip_address if ctx else "unknown",
            revoked,
        )
        self._record(
            AuditEventType.TOKEN_REUSE_DETECTED,
            user_id=user_id,
            event_data={
                "severity": "critical",
                "session_id": session_id,
                "family_id": family_id,
                "rotation_count": rotation_count,
                "revoked_sessions": revoked,
            },
            ctx=ctx,
            success=False,
        )
        return Outcome.deny(ErrorKind.SESSION_REUSE_DETECTED, SESSION_INVALID_MESSAGE)

    def revoke_family(
        self,
        family_id: str,
        reason: str,
        *,
        user_id: Optional[int] = None,
        ctx: Optional[NetworkContext] = None,
    ) -> int:
        """Revoke every session in the family; revoking twice is a no-op."""
        revoked = self.store.revoke_family(family_id, reason, self.clock())
        if revoked:
            logger.info(f"Revoked {revoked} sessions in family {family_id} ({reason})")
            self._record(
                AuditEventType.TOKEN_FAMILY_REVOKED,
                user_id=user_id,
                event_data={"family_id": family_id, "reason": reason, "revoked_sessions": revoked},
                ctx=ctx,
            )
        return revoked

    def invalidate(self, session_id: str, ctx: Optional[NetworkContext] = None) -> int:
        """Sign-out: revoke the whole family containing ``session_id``."""
        session = self.store.get(session_id)
        if session is None:
            return 0
        return self.revoke_family(session.token_family, REASON_SIGNOUT, user_id=session.user_id, ctx=ctx)

    def revoke_user_sessions(
        self, user_id: int, reason: str, keep_family: Optional[str] = None
    ) -> int:
        revoked = self.store.revoke_user_sessions(user_id, reason, self.clock(), keep_family=keep_family)
        if revoked:
            logger.info(f"Revoked {revoked} sessions for user {user_id} ({reason})")
        return revoked
