"""Server-side rate limiting keyed by action and identity."""

from __future__ import annotations

import logging
import math
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Deque, Dict, Optional, Protocol

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from sessionguard.config import Settings, settings as default_settings
from sessionguard.core.clock import Clock, utcnow
from sessionguard.core.context import NetworkContext
from sessionguard.core.metrics import RATE_LIMIT_REJECTIONS
from sessionguard.core.results import Denial, ErrorKind
from sessionguard.models.security import RateLimitBucket
from sessionguard.services.audit_service import AuditEventType

logger = logging.getLogger(__name__)

LOGIN = "login"
LOGIN_IP = "login_ip"
REGISTRATION = "registration"
PASSWORD_RESET = "password_reset"
PASSWORD_RESET_EMAIL = "password_reset_email"
EMAIL_VERIFICATION = "email_verification"
REFRESH = "refresh"

_INSERT_RETRIES = 3


@dataclass(frozen=True)
class RateLimitRule:
    action: str
    limit: int
    window_seconds: int


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after: int = 0
    remaining: int = 0


def _retry_after(window_start: datetime, window_seconds: int, now: datetime) -> int:
    remaining = (window_start + timedelta(seconds=window_seconds) - now).total_seconds()
    return max(1, math.ceil(remaining))


class RateLimitStore(Protocol):
    def hit(self, key: str, rule: RateLimitRule, now: datetime) -> RateLimitDecision:
        ...

    def reset(self, key: str) -> None:
        ...


@dataclass
class _Bucket:
    timestamps: Deque[datetime]


class InMemoryRateLimitStore:
    """Sliding-window store suitable for single-node deployments and tests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._buckets: Dict[str, _Bucket] = {}

    def hit(self, key: str, rule: RateLimitRule, now: datetime) -> RateLimitDecision:
        cutoff = now - timedelta(seconds=rule.window_seconds)

        with self._lock:
            bucket = self._buckets.setdefault(key, _Bucket(timestamps=deque()))
            while bucket.timestamps and bucket.timestamps[0] <= cutoff:
                bucket.timestamps.popleft()

            if len(bucket.timestamps) >= rule.limit:
                oldest = bucket.timestamps[0] if bucket.timestamps else now
                return RateLimitDecision(False, _retry_after(oldest, rule.window_seconds, now), 0)

            bucket.timestamps.append(now)
            return RateLimitDecision(True, 0, rule.limit - len(bucket.timestamps))

    def reset(self, key: str) -> None:
        with self._lock:
            self._buckets.pop(key, None)


class SqlRateLimitStore:
    """
    Fixed-window buckets in the shared database

    Check-and-increment is a single conditional UPDATE, so two concurrent
    requests cannot both observe ``count = limit - 1`` and both be admitted.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def _count(self, key: str) -> int:
        return int(
            self.db.query(RateLimitBucket.count).filter(RateLimitBucket.key == key).scalar() or 0
        )

    def hit(self, key: str, rule: RateLimitRule, now: datetime) -> RateLimitDecision:
        cutoff = now - timedelta(seconds=rule.window_seconds)

        for _ in range(_INSERT_RETRIES):
            # Open window with hits left
            updated = (
                self.db.query(RateLimitBucket)
                .filter(
                    RateLimitBucket.key == key,
                    RateLimitBucket.window_start > cutoff,
                    RateLimitBucket.count < rule.limit,
                )
                .update({RateLimitBucket.count: RateLimitBucket.count + 1}, synchronize_session=False)
            )
            if updated:
                self.db.commit()
                return RateLimitDecision(True, 0, max(0, rule.limit - self._count(key)))

            # Window elapsed: start a new one
            updated = (
                self.db.query(RateLimitBucket)
                .filter(RateLimitBucket.key == key, RateLimitBucket.window_start <= cutoff)
                .update(
                    {RateLimitBucket.window_start: now, RateLimitBucket.count: 1},
                    synchronize_session=False,
                )
            )
            if updated:
                self.db.commit()
                return RateLimitDecision(True, 0, max(0, rule.limit - 1))

            window_start = (
                self.db.query(RateLimitBucket.window_start)
                .filter(RateLimitBucket.key == key)
                .scalar()
            )
            if window_start is not None:
                self.db.rollback()
                return RateLimitDecision(False, _retry_after(window_start, rule.window_seconds, now), 0)

            if rule.limit <= 0:
                return RateLimitDecision(False, rule.window_seconds, 0)

            self.db.add(RateLimitBucket(key=key, action=rule.action, window_start=now, count=1))
            try:
                self.db.commit()
                return RateLimitDecision(True, 0, max(0, rule.limit - 1))
            except IntegrityError:
                # Another request created the bucket first; go round again.
                self.db.rollback()

        raise RuntimeError(f"Could not acquire rate-limit bucket {key}")

    def reset(self, key: str) -> None:
        self.db.query(RateLimitBucket).filter(RateLimitBucket.key == key).delete(
            synchronize_session=False
        )
        self.db.commit()

    def delete_expired(self, action: str, cutoff: datetime) -> int:
        deleted = (
            self.db.query(RateLimitBucket)
            .filter(RateLimitBucket.action == action, RateLimitBucket.window_start <= cutoff)
            .delete(synchronize_session=False)
        )
        self.db.commit()
        return deleted


def build_rules(cfg: Settings) -> Dict[str, RateLimitRule]:
    return {
        LOGIN: RateLimitRule(LOGIN, cfg.LOGIN_RATE_LIMIT, cfg.LOGIN_RATE_LIMIT_WINDOW_SECONDS),
        LOGIN_IP: RateLimitRule(LOGIN_IP, cfg.LOGIN_IP_RATE_LIMIT, cfg.LOGIN_IP_RATE_LIMIT_WINDOW_SECONDS),
        REGISTRATION: RateLimitRule(
            REGISTRATION, cfg.REGISTRATION_RATE_LIMIT, cfg.REGISTRATION_RATE_LIMIT_WINDOW_SECONDS
        ),
        PASSWORD_RESET: RateLimitRule(
            PASSWORD_RESET, cfg.PASSWORD_RESET_RATE_LIMIT, cfg.PASSWORD_RESET_RATE_LIMIT_WINDOW_SECONDS
        ),
        PASSWORD_RESET_EMAIL: RateLimitRule(
            PASSWORD_RESET_EMAIL,
            cfg.PASSWORD_RESET_EMAIL_RATE_LIMIT,
            cfg.PASSWORD_RESET_EMAIL_RATE_LIMIT_WINDOW_SECONDS,
        ),
        EMAIL_VERIFICATION: RateLimitRule(
            EMAIL_VERIFICATION,
            cfg.EMAIL_VERIFICATION_RATE_LIMIT,
            cfg.EMAIL_VERIFICATION_RATE_LIMIT_WINDOW_SECONDS,
        ),
        REFRESH: RateLimitRule(REFRESH, cfg.REFRESH_RATE_LIMIT, cfg.REFRESH_RATE_LIMIT_WINDOW_SECONDS),
    }


def make_key(action: str, *identity: Optional[str]) -> str:
    parts = [str(part).strip().lower() for part in identity if part]
    return ":".join([action, *parts]) if parts else f"{action}:anonymous"


class RateLimiter:
    """Apply per-action rules against a bucket store."""

    def __init__(
        self,
        store: RateLimitStore,
        *,
        audit=None,
        cfg: Settings = default_settings,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.audit = audit
        self.clock = clock
        self.rules = build_rules(cfg)

    def check(self, action: str, *identity: Optional[str], ctx: Optional[NetworkContext] = None) -> Optional[Denial]:
        """
        Count one attempt for ``action`` and the given identity parts

        Returns:
            None when allowed, otherwise a RATE_LIMITED denial with retry-after
        """
        rule = self.rules[action]
        decision = self.store.hit(make_key(action, *identity), rule, self.clock())
        if decision.allowed:
            return None

        RATE_LIMIT_REJECTIONS.labels(action).inc()
        logger.warning(
            "Rate limit exceeded for %s (ip=%s, retry_after=%ss)",
            action,
            ctx.ip_address if ctx else "unknown",
            decision.retry_after,
        )
        if self.audit is not None:
            self.audit.record(
                AuditEventType.RATE_LIMIT_EXCEEDED,
                event_data={"action": action, "retry_after": decision.retry_after},
                ctx=ctx,
                success=False,
            )
        return Denial(
            ErrorKind.RATE_LIMITED,
            f"Too many attempts. Try again in {decision.retry_after} seconds.",
            retry_after=decision.retry_after,
        )

    def reset(self, action: str, *identity: Optional[str]) -> None:
        self.store.reset(make_key(action, *identity))
