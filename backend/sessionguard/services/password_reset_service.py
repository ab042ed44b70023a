"""Single-use, short-lived password reset tokens."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from sessionguard.config import Settings, settings as default_settings
from sessionguard.core.clock import Clock, utcnow
from sessionguard.core.results import ErrorKind, Outcome
from sessionguard.core.security import generate_token, hash_token
from sessionguard.models.security import PasswordResetToken

logger = logging.getLogger(__name__)

INVALID_TOKEN_MESSAGE = "This password reset link is invalid or has expired"


@dataclass(frozen=True)
class IssuedResetToken:
    token: str
    token_id: int
    user_id: int
    expires_at: datetime


@dataclass(frozen=True)
class ResetTokenClaims:
    user_id: int
    token_id: int


class PasswordResetTokenService:
    """
    Issue, validate and consume reset tokens

    Validation and consumption are separate steps: a caller validates, stages
    the password change and only then marks the token used. The staged change
    commits together with the consumption, or is rolled back with it when
    another request consumed the token first.
    """

    def __init__(self, db: Session, *, cfg: Settings = default_settings, clock: Clock = utcnow) -> None:
        self.db = db
        self.cfg = cfg
        self.clock = clock

    def create(self, user_id: int) -> IssuedResetToken:
        now = self.clock()
        # Only the newest link for a user stays usable.
        self.db.query(PasswordResetToken).filter(
            PasswordResetToken.user_id == user_id,
            PasswordResetToken.used == False,  # noqa: E712
        ).update(
            {PasswordResetToken.used: True, PasswordResetToken.used_at: now},
            synchronize_session=False,
        )

        token = generate_token()
        record = PasswordResetToken(
            user_id=user_id,
            token_hash=hash_token(token),
            expires_at=now + timedelta(minutes=self.cfg.PASSWORD_RESET_TOKEN_EXPIRE_MINUTES),
            used=False,
            created_at=now,
        )
        self.db.add(record)
        self.db.commit()
        return IssuedResetToken(token=token, token_id=record.id, user_id=user_id, expires_at=record.expires_at)

    def validate(self, token: str) -> Outcome[ResetTokenClaims]:
        if not token:
            return Outcome.deny(ErrorKind.TOKEN_EXPIRED_OR_USED, INVALID_TOKEN_MESSAGE)
        record = (
            self.db.query(PasswordResetToken)
            .filter(PasswordResetToken.token_hash == hash_token(token))
            .populate_existing()
            .first()
        )
        if record is None or record.used or record.expires_at <= self.clock():
            return Outcome.deny(ErrorKind.TOKEN_EXPIRED_OR_USED, INVALID_TOKEN_MESSAGE)
        return Outcome.success(ResetTokenClaims(user_id=record.user_id, token_id=record.id))

    def mark_used(self, token_id: int) -> bool:
        """Consume a token; a second call is a no-op returning False."""
        updated = (
            self.db.query(PasswordResetToken)
            .filter(PasswordResetToken.id == token_id, PasswordResetToken.used == False)  # noqa: E712
            .update(
                {PasswordResetToken.used: True, PasswordResetToken.used_at: self.clock()},
                synchronize_session=False,
            )
        )
        if updated != 1:
            self.db.rollback()
            return False
        self.db.commit()
        return True

    def cleanup_expired(self) -> int:
        deleted = (
            self.db.query(PasswordResetToken)
            .filter(
                (PasswordResetToken.expires_at < self.clock())
                | (PasswordResetToken.used == True)  # noqa: E712
            )
            .delete(synchronize_session=False)
        )
        self.db.commit()
        return deleted
