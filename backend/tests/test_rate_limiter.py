from datetime import timedelta

from sessionguard.config import settings
from sessionguard.core.results import ErrorKind
from sessionguard.models.audit import AuditEvent
from sessionguard.models.security import RateLimitBucket
from sessionguard.services import rate_limiter as limits
from sessionguard.services.audit_service import AuditEventType, AuditLog
from sessionguard.services.rate_limiter import (
    InMemoryRateLimitStore,
    RateLimiter,
    RateLimitRule,
    SqlRateLimitStore,
    make_key,
)


def test_make_key_normalizes_identity():
    assert make_key("login", "Alice@Example.com ", "1.2.3.4") == "login:alice@example.com:1.2.3.4"
    assert make_key("login", None) == "login:anonymous"


def test_sql_store_fixed_window(db, clock):
    store = SqlRateLimitStore(db)
    rule = RateLimitRule("login", 3, 60)

    for expected_remaining in (2, 1, 0):
        decision = store.hit("login:a", rule, clock())
        assert decision.allowed
        assert decision.remaining == expected_remaining

    clock.advance(seconds=20)
    blocked = store.hit("login:a", rule, clock())
    assert not blocked.allowed
    assert blocked.retry_after == 40

    clock.advance(seconds=41)
    assert store.hit("login:a", rule, clock()).allowed
    bucket = db.query(RateLimitBucket).filter(RateLimitBucket.key == "login:a").one()
    assert bucket.count == 1


def test_sql_store_keys_are_independent(db, clock):
    store = SqlRateLimitStore(db)
    rule = RateLimitRule("login", 1, 60)
    assert store.hit("login:a", rule, clock()).allowed
    assert not store.hit("login:a", rule, clock()).allowed
    assert store.hit("login:b", rule, clock()).allowed


def test_sql_store_reset_and_delete_expired(db, clock):
    store = SqlRateLimitStore(db)
    rule = RateLimitRule("login", 1, 60)
    store.hit("login:a", rule, clock())
    store.reset("login:a")
    assert store.hit("login:a", rule, clock()).allowed

    clock.advance(minutes=5)
    assert store.delete_expired("login", clock() - timedelta(seconds=60)) == 1
    assert db.query(RateLimitBucket).count() == 0


def test_in_memory_store_sliding_window(clock):
    store = InMemoryRateLimitStore()
    rule = RateLimitRule("refresh", 2, 10)
    assert store.hit("k", rule, clock()).allowed
    clock.advance(seconds=5)
    assert store.hit("k", rule, clock()).allowed
    blocked = store.hit("k", rule, clock())
    assert not blocked.allowed
    assert blocked.retry_after == 5

    clock.advance(seconds=6)
    assert store.hit("k", rule, clock()).allowed


def test_limiter_denial_is_audited(db, clock, ctx):
    audit = AuditLog(db, clock=clock)
    limiter = RateLimiter(SqlRateLimitStore(db), audit=audit, cfg=settings, clock=clock)

    for _ in range(settings.REGISTRATION_RATE_LIMIT):
        assert limiter.check(limits.REGISTRATION, ctx.ip_address, ctx=ctx) is None

    denial = limiter.check(limits.REGISTRATION, ctx.ip_address, ctx=ctx)
    assert denial is not None
    assert denial.kind == ErrorKind.RATE_LIMITED
    assert denial.retry_after == settings.REGISTRATION_RATE_LIMIT_WINDOW_SECONDS
    assert f"{denial.retry_after} seconds" in denial.message

    event = db.query(AuditEvent).filter(AuditEvent.event_type == AuditEventType.RATE_LIMIT_EXCEEDED).one()
    assert event.success is False
    assert event.ip_address == ctx.ip_address
