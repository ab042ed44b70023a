from datetime import timedelta

from sessionguard.config import settings
from sessionguard.models.audit import AuditEvent
from sessionguard.models.security import AuthSession, PasswordResetToken, RateLimitBucket
from sessionguard.services.audit_service import AuditEventType, AuditLog
from sessionguard.services.cleanup_service import CleanupSweeper
from sessionguard.services.password_reset_service import PasswordResetTokenService
from sessionguard.services.rate_limiter import RateLimitRule, SqlRateLimitStore
from sessionguard.services.session_service import REASON_SIGNOUT, SessionRotationEngine
from sessionguard.services.session_store import SqlSessionStore

from conftest import PASSWORD


def _sweeper(db, clock):
    return CleanupSweeper(
        SqlSessionStore(db),
        SqlRateLimitStore(db),
        PasswordResetTokenService(db, cfg=settings, clock=clock),
        audit=AuditLog(db, clock=clock),
        cfg=settings,
        clock=clock,
    )


def test_cleanup_removes_stale_records(db, clock, user, ctx):
    engine = SessionRotationEngine(SqlSessionStore(db), cfg=settings, clock=clock)
    expiring = engine.create_session(user.id, False, ctx)
    revoked = engine.create_session(user.id, True, ctx)
    engine.revoke_family(revoked.session.token_family, REASON_SIGNOUT)
    PasswordResetTokenService(db, cfg=settings, clock=clock).create(user.id)
    SqlRateLimitStore(db).hit("login:alice", RateLimitRule("login", 5, 60), clock())

    clock.advance(days=settings.SESSION_CLEANUP_RETENTION_DAYS, seconds=1)
    fresh = engine.create_session(user.id, False, ctx)

    stats = _sweeper(db, clock).cleanup_expired()
    assert stats.expired_sessions == 1
    assert stats.revoked_sessions == 1
    assert stats.reset_tokens == 1
    assert stats.rate_limit_buckets == 1

    remaining = {s.id for s in db.query(AuthSession).all()}
    assert remaining == {fresh.session.id}
    assert expiring.session.id not in remaining
    assert db.query(PasswordResetToken).count() == 0
    assert db.query(RateLimitBucket).filter(RateLimitBucket.action == "login").count() == 0
    assert db.query(AuditEvent).filter(AuditEvent.event_type == AuditEventType.SESSION_CLEANUP).count() == 1


def test_grace_period_keeps_recently_expired_sessions(db, clock, user, ctx):
    engine = SessionRotationEngine(SqlSessionStore(db), cfg=settings, clock=clock)
    engine.create_session(user.id, False, ctx)
    clock.advance(days=settings.SESSION_EXPIRE_DAYS, hours=1)

    assert _sweeper(db, clock).cleanup_expired().expired_sessions == 0

    clock.advance(hours=settings.SESSION_CLEANUP_GRACE_HOURS)
    assert _sweeper(db, clock).cleanup_expired().expired_sessions == 1


def test_maybe_cleanup_runs_once_per_interval(db, clock):
    sweeper = _sweeper(db, clock)
    assert sweeper.maybe_cleanup() is not None
    assert sweeper.maybe_cleanup() is None

    clock.advance(hours=settings.SESSION_CLEANUP_INTERVAL_HOURS, seconds=1)
    assert sweeper.maybe_cleanup() is not None


def test_maybe_cleanup_swallows_failures(db, clock, monkeypatch):
    sweeper = _sweeper(db, clock)

    def broken(before):
        raise RuntimeError("boom")

    monkeypatch.setattr(sweeper.sessions, "delete_expired", broken)
    assert sweeper.maybe_cleanup() is None


def test_refresh_triggers_opportunistic_cleanup(auth, db, clock, user, ctx):
    from sessionguard.core.security import decode_session_cookie

    authenticated = auth.login(user.email, PASSWORD, False, ctx).value
    claims = decode_session_cookie(authenticated.cookie_value)
    assert auth.refresh(claims["sid"], claims["rt"], ctx).ok
    assert db.query(AuditEvent).filter(AuditEvent.event_type == AuditEventType.SESSION_CLEANUP).count() == 1
