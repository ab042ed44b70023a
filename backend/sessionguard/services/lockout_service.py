"""Per-account consecutive-failure lockout."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy import case
from sqlalchemy.orm import Session

from sessionguard.config import Settings, settings as default_settings
from sessionguard.core.clock import Clock, utcnow
from sessionguard.models.user import User

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LockoutStatus:
    failed_attempts: int
    locked: bool
    remaining_seconds: int = 0


class LockoutTracker:
    """
    Track failed logins on the user row

    The counter survives lock expiry and is only reset by a successful
    authentication, so slow-drip guessing re-locks on the next failure.
    """

    def __init__(self, db: Session, *, cfg: Settings = default_settings, clock: Clock = utcnow) -> None:
        self.db = db
        self.cfg = cfg
        self.clock = clock

    def remaining_lock_seconds(self, user: User) -> Optional[int]:
        """Seconds left on an active lock, or None when unlocked."""
        if not user.locked_until:
            return None
        remaining = (user.locked_until - self.clock()).total_seconds()
        if remaining <= 0:
            return None
        return max(1, math.ceil(remaining))

    def record_failure(self, user: User) -> LockoutStatus:
        """
        Atomically increment the failure counter, locking at the threshold

        Args:
            user: User whose password check failed

        Returns:
            LockoutStatus after the increment
        """
        now = self.clock()
        lock_until = now + timedelta(minutes=self.cfg.LOCKOUT_DURATION_MINUTES)
        next_count = User.failed_login_attempts + 1
        self.db.query(User).filter(User.id == user.id).update(
            {
                User.failed_login_attempts: next_count,
                User.locked_until: case(
                    (next_count >= self.cfg.LOCKOUT_THRESHOLD, lock_until),
                    else_=User.locked_until,
                ),
            },
            synchronize_session=False,
        )
        self.db.commit()
        self.db.refresh(user)

        attempts = user.failed_login_attempts
        if attempts >= self.cfg.LOCKOUT_THRESHOLD:
            remaining = self.remaining_lock_seconds(user) or 0
            logger.warning(f"Account locked for user {user.id} after {attempts} failed attempts")
            return LockoutStatus(attempts, True, remaining)
        return LockoutStatus(attempts, False, 0)

    def record_success(self, user: User) -> None:
        user.failed_login_attempts = 0
        user.locked_until = None
        user.last_login = self.clock()
        self.db.commit()

    def clear(self, user: User) -> None:
        user.failed_login_attempts = 0
        user.locked_until = None
        self.db.commit()
