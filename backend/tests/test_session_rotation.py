from datetime import timedelta

from sessionguard.config import settings
from sessionguard.core.results import ErrorKind
from sessionguard.models.audit import AuditEvent
from sessionguard.models.security import AuthSession, SESSION_ACTIVE, SESSION_REVOKED, SESSION_ROTATED
from sessionguard.services.audit_service import AuditEventType, AuditLog
from sessionguard.services.session_service import REASON_REUSE, SessionRotationEngine
from sessionguard.services.session_store import SqlSessionStore


def _engine(db, clock, store=None):
    return SessionRotationEngine(
        store or SqlSessionStore(db), audit=AuditLog(db, clock=clock), cfg=settings, clock=clock
    )


def _family(db, family_id):
    return db.query(AuthSession).filter(AuthSession.token_family == family_id).populate_existing().all()


def test_create_session(db, clock, user, ctx):
    issued = _engine(db, clock).create_session(user.id, False, ctx)
    session = issued.session
    assert session.status == SESSION_ACTIVE
    assert session.rotation_count == 0
    assert session.expires_at == clock() + timedelta(days=settings.SESSION_EXPIRE_DAYS)
    assert session.token_hash != issued.refresh_secret
    assert session.ip_address == ctx.ip_address


def test_remember_me_lifetime(db, clock, user, ctx):
    issued = _engine(db, clock).create_session(user.id, True, ctx)
    assert issued.session.expires_at == clock() + timedelta(days=settings.REMEMBER_ME_EXPIRE_DAYS)


def test_rotation_chain(db, clock, user, ctx):
    engine = _engine(db, clock)
    first = engine.create_session(user.id, False, ctx)

    clock.advance(minutes=10)
    rotated = engine.validate_and_rotate(first.session.id, first.refresh_secret, ctx)
    assert rotated.ok
    child = rotated.value.session
    assert child.token_family == first.session.token_family
    assert child.parent_session_id == first.session.id
    assert child.rotation_count == 1
    assert child.family_started_at == first.session.family_started_at

    parent = engine.store.get(first.session.id)
    assert parent.status == SESSION_ROTATED
    assert parent.rotated_at == clock()


def test_replay_of_rotated_session_revokes_family(db, clock, user, ctx):
    engine = _engine(db, clock)
    first = engine.create_session(user.id, False, ctx)
    second = engine.validate_and_rotate(first.session.id, first.refresh_secret, ctx).value

    replay = engine.validate_and_rotate(first.session.id, first.refresh_secret, ctx)
    assert not replay.ok
    assert replay.kind == ErrorKind.SESSION_REUSE_DETECTED

    family = _family(db, first.session.token_family)
    assert {s.status for s in family} == {SESSION_REVOKED}
    assert all(s.revoked_reason == REASON_REUSE for s in family)

    # The legitimate holder is signed out too
    assert not engine.validate_and_rotate(second.session.id, second.refresh_secret, ctx).ok

    event = db.query(AuditEvent).filter(AuditEvent.event_type == AuditEventType.TOKEN_REUSE_DETECTED).one()
    assert event.success is False
    assert '"severity": "critical"' in event.event_data


def test_wrong_secret_is_invalid_without_revocation(db, clock, user, ctx):
    engine = _engine(db, clock)
    issued = engine.create_session(user.id, False, ctx)

    outcome = engine.validate_and_rotate(issued.session.id, "guess", ctx)
    assert outcome.kind == ErrorKind.SESSION_INVALID
    assert engine.store.get(issued.session.id).status == SESSION_ACTIVE


def test_unknown_session_is_invalid(db, clock, ctx):
    assert _engine(db, clock).validate_and_rotate("missing", "secret", ctx).kind == ErrorKind.SESSION_INVALID


def test_expired_session_is_invalid(db, clock, user, ctx):
    engine = _engine(db, clock)
    issued = engine.create_session(user.id, False, ctx)
    clock.advance(days=settings.SESSION_EXPIRE_DAYS, seconds=1)
    assert engine.validate_and_rotate(issued.session.id, issued.refresh_secret, ctx).kind == ErrorKind.SESSION_INVALID


def test_rotation_ceiling_revokes_family(db, clock, user, ctx):
    engine = _engine(db, clock)
    issued = engine.create_session(user.id, False, ctx)
    session = engine.store.get(issued.session.id)
    session.rotation_count = settings.MAX_ROTATION_COUNT
    db.commit()

    outcome = engine.validate_and_rotate(issued.session.id, issued.refresh_secret, ctx)
    assert outcome.kind == ErrorKind.SESSION_INVALID
    assert engine.store.get(issued.session.id).status == SESSION_REVOKED


def test_family_age_caps_expiry(db, clock, user, ctx):
    engine = _engine(db, clock)
    issued = engine.create_session(user.id, True, ctx)
    started = issued.session.family_started_at

    secret, session_id = issued.refresh_secret, issued.session.id
    clock.advance(days=settings.MAX_FAMILY_AGE_DAYS - 1)
    # Pretend the chain was kept alive up to a day before the family deadline
    session = engine.store.get(session_id)
    session.expires_at = clock() + timedelta(days=1)
    db.commit()

    rotated = engine.validate_and_rotate(session_id, secret, ctx)
    assert rotated.ok
    assert rotated.value.session.expires_at == started + timedelta(days=settings.MAX_FAMILY_AGE_DAYS)


def test_authenticate_does_not_rotate(db, clock, user, ctx):
    engine = _engine(db, clock)
    issued = engine.create_session(user.id, False, ctx)
    assert engine.authenticate(issued.session.id, issued.refresh_secret).ok
    assert engine.store.get(issued.session.id).status == SESSION_ACTIVE


def test_invalidate_revokes_family_once(db, clock, user, ctx):
    engine = _engine(db, clock)
    first = engine.create_session(user.id, False, ctx)
    second = engine.validate_and_rotate(first.session.id, first.refresh_secret, ctx).value

    assert engine.invalidate(second.session.id, ctx) == 1
    assert engine.invalidate(second.session.id, ctx) == 0
    assert not engine.authenticate(second.session.id, second.refresh_secret).ok


class RacingStore(SqlSessionStore):
    """Lets a competing refresh win the conditional update first."""

    def __init__(self, db, competitor):
        super().__init__(db)
        self.competitor = competitor

    def rotate(self, parent_id, child, now):
        competitor, self.competitor = self.competitor, None
        if competitor is not None:
            assert super().rotate(parent_id, competitor, now)
        return super().rotate(parent_id, child, now)


def test_losing_a_concurrent_rotation_is_reuse(db, clock, user, ctx):
    engine = _engine(db, clock)
    issued = engine.create_session(user.id, False, ctx)
    parent = issued.session
    competitor = AuthSession(
        id="competitor-session",
        user_id=user.id,
        token_family=parent.token_family,
        token_hash="0" * 64,
        parent_session_id=parent.id,
        rotation_count=1,
        status=SESSION_ACTIVE,
        remember_me=False,
        family_started_at=parent.family_started_at,
        created_at=clock(),
        expires_at=parent.expires_at,
    )

    racing = _engine(db, clock, store=RacingStore(db, competitor))
    outcome = racing.validate_and_rotate(parent.id, issued.refresh_secret, ctx)

    assert outcome.kind == ErrorKind.SESSION_REUSE_DETECTED
    assert {s.status for s in _family(db, parent.token_family)} == {SESSION_REVOKED}
