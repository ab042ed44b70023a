"""Best-effort garbage collection of expired security records."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import Optional

from sessionguard.config import Settings, settings as default_settings
from sessionguard.core.clock import Clock, utcnow
from sessionguard.services.audit_service import AuditEventType
from sessionguard.services.password_reset_service import PasswordResetTokenService
from sessionguard.services.rate_limiter import RateLimitRule, SqlRateLimitStore, build_rules
from sessionguard.services.session_store import SqlSessionStore

logger = logging.getLogger(__name__)

CLEANUP_ACTION = "session_cleanup"
CLEANUP_KEY = f"{CLEANUP_ACTION}:global"


@dataclass(frozen=True)
class CleanupStats:
    expired_sessions: int = 0
    revoked_sessions: int = 0
    reset_tokens: int = 0
    rate_limit_buckets: int = 0

    @property
    def total(self) -> int:
        return self.expired_sessions + self.revoked_sessions + self.reset_tokens + self.rate_limit_buckets


class CleanupSweeper:
    """
    Delete sessions past expiry plus grace, revoked sessions past retention,
    spent reset tokens and stale rate-limit buckets

    Safe to run concurrently: every step is an idempotent bulk delete.
    """

    def __init__(
        self,
        sessions: SqlSessionStore,
        rate_limits: SqlRateLimitStore,
        reset_tokens: PasswordResetTokenService,
        *,
        audit=None,
        cfg: Settings = default_settings,
        clock: Clock = utcnow,
    ) -> None:
        self.sessions = sessions
        self.rate_limits = rate_limits
        self.reset_tokens = reset_tokens
        self.audit = audit
        self.cfg = cfg
        self.clock = clock

    def _interval_rule(self) -> RateLimitRule:
        return RateLimitRule(CLEANUP_ACTION, 1, self.cfg.SESSION_CLEANUP_INTERVAL_HOURS * 3600)

    def cleanup_expired(self) -> CleanupStats:
        now = self.clock()
        expired = self.sessions.delete_expired(now - timedelta(hours=self.cfg.SESSION_CLEANUP_GRACE_HOURS))
        revoked = self.sessions.delete_revoked(now - timedelta(days=self.cfg.SESSION_CLEANUP_RETENTION_DAYS))
        tokens = self.reset_tokens.cleanup_expired()

        buckets = 0
        for rule in build_rules(self.cfg).values():
            buckets += self.rate_limits.delete_expired(rule.action, now - timedelta(seconds=rule.window_seconds))

        stats = CleanupStats(expired, revoked, tokens, buckets)
        logger.info(
            f"Cleanup removed {expired} expired sessions, {revoked} revoked sessions, "
            f"{tokens} reset tokens, {buckets} rate-limit buckets"
        )
        if self.audit is not None:
            self.audit.record(AuditEventType.SESSION_CLEANUP, event_data=asdict(stats))
        return stats

    def maybe_cleanup(self) -> Optional[CleanupStats]:
        """
        Run a sweep at most once per interval across all workers

        Never raises; returns None when skipped or failed.
        """
        try:
            decision = self.rate_limits.hit(CLEANUP_KEY, self._interval_rule(), self.clock())
            if not decision.allowed:
                return None
            return self.cleanup_expired()
        except Exception:
            logger.exception("Opportunistic cleanup failed")
            try:
                self.rate_limits.db.rollback()
            except Exception:
                logger.exception("Rollback after failed cleanup also failed")
            return None
