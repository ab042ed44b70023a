from datetime import timedelta
from urllib.parse import parse_qs, urlparse

from sessionguard.config import settings
from sessionguard.core.results import ErrorKind
from sessionguard.core.security import hash_token
from sessionguard.models.security import PasswordResetToken, SESSION_REVOKED
from sessionguard.services.password_reset_service import PasswordResetTokenService

from conftest import PASSWORD


def _token_from_email(message):
    start = message["html"].index('href="') + len('href="')
    link = message["html"][start:message["html"].index('"', start)]
    return parse_qs(urlparse(link).query)["token"][0]


def test_token_stored_as_hash(db, clock, user):
    service = PasswordResetTokenService(db, cfg=settings, clock=clock)
    issued = service.create(user.id)

    record = db.query(PasswordResetToken).one()
    assert record.token_hash == hash_token(issued.token)
    assert record.token_hash != issued.token
    assert record.expires_at == clock() + timedelta(minutes=settings.PASSWORD_RESET_TOKEN_EXPIRE_MINUTES)


def test_token_single_use(db, clock, user):
    service = PasswordResetTokenService(db, cfg=settings, clock=clock)
    issued = service.create(user.id)

    claims = service.validate(issued.token)
    assert claims.ok
    assert claims.value.user_id == user.id

    assert service.mark_used(claims.value.token_id) is True
    assert service.mark_used(claims.value.token_id) is False
    assert service.validate(issued.token).kind == ErrorKind.TOKEN_EXPIRED_OR_USED


def test_token_expires(db, clock, user):
    service = PasswordResetTokenService(db, cfg=settings, clock=clock)
    issued = service.create(user.id)
    clock.advance(minutes=settings.PASSWORD_RESET_TOKEN_EXPIRE_MINUTES)
    assert service.validate(issued.token).kind == ErrorKind.TOKEN_EXPIRED_OR_USED


def test_new_token_invalidates_previous(db, clock, user):
    service = PasswordResetTokenService(db, cfg=settings, clock=clock)
    first = service.create(user.id)
    second = service.create(user.id)
    assert not service.validate(first.token).ok
    assert service.validate(second.token).ok


def test_unknown_token_is_rejected(db, clock):
    service = PasswordResetTokenService(db, cfg=settings, clock=clock)
    assert service.validate("nope").kind == ErrorKind.TOKEN_EXPIRED_OR_USED
    assert service.validate("").kind == ErrorKind.TOKEN_EXPIRED_OR_USED


def test_reset_flow_is_single_use_and_revokes_sessions(auth, email_sender, user, ctx):
    login = auth.login(user.email, PASSWORD, False, ctx)
    assert login.ok

    assert auth.request_password_reset(user.email, ctx).ok
    assert len(email_sender.sent) == 1
    token = _token_from_email(email_sender.sent[0])

    assert auth.reset_password(token, "NewPass1!", "NewPass1!", ctx).ok
    repeat = auth.reset_password(token, "NewPass1!", "NewPass1!", ctx)
    assert repeat.kind == ErrorKind.TOKEN_EXPIRED_OR_USED

    assert auth.sessions.store.get(login.value.session.id).status == SESSION_REVOKED
    assert not auth.login(user.email, PASSWORD, False, ctx).ok
    assert auth.login(user.email, "NewPass1!", False, ctx).ok


def test_reset_rejects_weak_password_without_consuming_token(auth, email_sender, user, ctx):
    auth.request_password_reset(user.email, ctx)
    token = _token_from_email(email_sender.sent[0])

    weak = auth.reset_password(token, "weak", "weak", ctx)
    assert weak.kind == ErrorKind.VALIDATION_FAILED
    assert auth.reset_password(token, "NewPass1!", "NewPass1!", ctx).ok


def test_unknown_email_gets_generic_success(auth, email_sender, ctx):
    assert auth.request_password_reset("nobody@example.com", ctx).ok
    assert email_sender.sent == []


def test_send_failure_is_reported(db, clock, user, ctx):
    from sessionguard.services.auth_service import AuthService
    from conftest import RecordingEmailSender

    failing = AuthService.build(db, cfg=settings, clock=clock, email_sender=RecordingEmailSender(fail=True))
    assert failing.request_password_reset(user.email, ctx).kind == ErrorKind.SERVICE_UNAVAILABLE


def test_reset_confirm_losing_the_race_writes_nothing(auth, db, email_sender, user, ctx, monkeypatch):
    from sessionguard.models.audit import AuditEvent
    from sessionguard.services.audit_service import AuditEventType

    auth.request_password_reset(user.email, ctx)
    token = _token_from_email(email_sender.sent[0])

    # A concurrent confirm validated the same token and consumed it first
    stale_claims = auth.reset_tokens.validate(token)
    assert auth.reset_tokens.mark_used(stale_claims.value.token_id)
    monkeypatch.setattr(auth.reset_tokens, "validate", lambda presented: stale_claims)

    lost = auth.reset_password(token, "Racing1!", "Racing1!", ctx)
    assert lost.kind == ErrorKind.TOKEN_EXPIRED_OR_USED

    assert auth.login(user.email, PASSWORD, False, ctx).ok
    assert not auth.login(user.email, "Racing1!", False, ctx).ok
    event = (
        db.query(AuditEvent)
        .filter(AuditEvent.event_type == AuditEventType.PASSWORD_RESET_COMPLETE, AuditEvent.success == False)  # noqa: E712
        .one()
    )
    assert '"token_already_used"' in event.event_data
