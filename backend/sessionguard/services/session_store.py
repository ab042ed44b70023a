"""Durable storage of sessions grouped into rotation families."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from sqlalchemy import func
from sqlalchemy.orm import Session

from sessionguard.models.security import (
    AuthSession,
    SESSION_ACTIVE,
    SESSION_REVOKED,
    SESSION_ROTATED,
)


class SessionStore(Protocol):
    def get(self, session_id: str) -> Optional[AuthSession]:
        ...

    def add(self, session: AuthSession) -> AuthSession:
        ...

    def rotate(self, parent_id: str, child: AuthSession, now: datetime) -> bool:
        ...

    def revoke_family(self, family_id: str, reason: str, now: datetime) -> int:
        ...

    def revoke_user_sessions(
        self, user_id: int, reason: str, now: datetime, keep_family: Optional[str] = None
    ) -> int:
        ...


class SqlSessionStore:
    """Session store backed by the ``auth_sessions`` table."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def get(self, session_id: str) -> Optional[AuthSession]:
        # Always re-read: a concurrent request may have rotated the row.
        return (
            self.db.query(AuthSession)
            .filter(AuthSession.id == session_id)
            .populate_existing()
            .first()
        )

    def add(self, session: AuthSession) -> AuthSession:
        self.db.add(session)
        self.db.commit()
        return session

    def rotate(self, parent_id: str, child: AuthSession, now: datetime) -> bool:
        """
        Mark the parent Rotated and insert its child in one transaction

        The status transition is conditioned on the parent still being Active,
        so exactly one of several concurrent refreshes wins.

        Returns:
            bool: False when another request rotated or revoked the parent first
        """
        updated = (
            self.db.query(AuthSession)
            .filter(AuthSession.id == parent_id, AuthSession.status == SESSION_ACTIVE)
            .update(
                {
                    AuthSession.status: SESSION_ROTATED,
                    AuthSession.rotated_at: now,
                    AuthSession.last_used_at: now,
                },
                synchronize_session=False,
            )
        )
        if updated != 1:
            self.db.rollback()
            return False

        self.db.add(child)
        self.db.commit()
        return True

    def revoke_family(self, family_id: str, reason: str, now: datetime) -> int:
        revoked = (
            self.db.query(AuthSession)
            .filter(AuthSession.token_family == family_id, AuthSession.status != SESSION_REVOKED)
            .update(
                {
                    AuthSession.status: SESSION_REVOKED,
                    AuthSession.revoked_reason: reason,
                    AuthSession.revoked_at: now,
                },
                synchronize_session=False,
            )
        )
        self.db.commit()
        return revoked

    def revoke_user_sessions(
        self, user_id: int, reason: str, now: datetime, keep_family: Optional[str] = None
    ) -> int:
        query = self.db.query(AuthSession).filter(
            AuthSession.user_id == user_id, AuthSession.status != SESSION_REVOKED
        )
        if keep_family:
            query = query.filter(AuthSession.token_family != keep_family)
        revoked = query.update(
            {
                AuthSession.status: SESSION_REVOKED,
                AuthSession.revoked_reason: reason,
                AuthSession.revoked_at: now,
            },
            synchronize_session=False,
        )
        self.db.commit()
        return revoked

    def list_active_for_user(self, user_id: int, now: datetime) -> List[AuthSession]:
        return (
            self.db.query(AuthSession)
            .filter(
                AuthSession.user_id == user_id,
                AuthSession.status == SESSION_ACTIVE,
                AuthSession.expires_at > now,
            )
            .order_by(AuthSession.created_at.desc())
            .all()
        )

    def delete_expired(self, before: datetime) -> int:
        deleted = (
            self.db.query(AuthSession)
            .filter(AuthSession.expires_at < before)
            .delete(synchronize_session=False)
        )
        self.db.commit()
        return deleted

    def delete_revoked(self, before: datetime) -> int:
        deleted = (
            self.db.query(AuthSession)
            .filter(AuthSession.status == SESSION_REVOKED, AuthSession.revoked_at < before)
            .delete(synchronize_session=False)
        )
        self.db.commit()
        return deleted

    def stats(self, now: datetime) -> Dict[str, Any]:
        total = self.db.query(func.count(AuthSession.id)).scalar() or 0
        active = (
            self.db.query(func.count(AuthSession.id))
            .filter(AuthSession.status == SESSION_ACTIVE, AuthSession.expires_at > now)
            .scalar()
            or 0
        )
        expired = (
            self.db.query(func.count(AuthSession.id))
            .filter(AuthSession.status != SESSION_REVOKED, AuthSession.expires_at <= now)
            .scalar()
            or 0
        )
        revoked = (
            self.db.query(func.count(AuthSession.id))
            .filter(AuthSession.status == SESSION_REVOKED)
            .scalar()
            or 0
        )
        rotated = (
            self.db.query(func.count(AuthSession.id))
            .filter(AuthSession.status == SESSION_ROTATED)
            .scalar()
            or 0
        )
        avg_rotation = self.db.query(func.avg(AuthSession.rotation_count)).scalar()
        return {
            "total": int(total),
            "active": int(active),
            "expired": int(expired),
            "revoked": int(revoked),
            "rotated": int(rotated),
            "average_rotation_count": round(float(avg_rotation or 0), 2),
        }
