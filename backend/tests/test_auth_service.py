import httpx
from sqlalchemy.exc import OperationalError

from sessionguard.config import settings
from sessionguard.core.results import ErrorKind
from sessionguard.core.security import create_email_verification_token, decode_session_cookie
from sessionguard.models.audit import AuditEvent
from sessionguard.models.security import SESSION_ACTIVE, SESSION_REVOKED
from sessionguard.models.user import User
from sessionguard.services.audit_service import AuditEventType
from sessionguard.services.auth_service import AuthService
from sessionguard.services.oauth_service import OAuthClient
from sessionguard.services.upstream import UpstreamClient

from conftest import PASSWORD, RecordingEmailSender


def test_login_success_starts_family(auth, user, ctx):
    outcome = auth.login("  ALICE@example.com ", PASSWORD, True, ctx)
    assert outcome.ok
    authenticated = outcome.value
    assert authenticated.user.id == user.id
    assert authenticated.remember_me is True
    assert authenticated.session.status == SESSION_ACTIVE
    assert auth.csrf.validate(authenticated.csrf_token, authenticated.csrf_token, authenticated.session.token_family)


def test_unknown_email_and_wrong_password_look_the_same(auth, user, ctx):
    unknown = auth.login("ghost@example.com", PASSWORD, False, ctx)
    wrong = auth.login(user.email, "Wrong1234!", False, ctx)
    assert unknown.kind == wrong.kind == ErrorKind.INVALID_CREDENTIALS
    assert unknown.denial.message == wrong.denial.message


def test_lockout_blocks_even_correct_password(auth, clock, user, ctx):
    for _ in range(settings.LOCKOUT_THRESHOLD - 1):
        assert auth.login(user.email, "Wrong1234!", False, ctx).kind == ErrorKind.INVALID_CREDENTIALS
        clock.advance(minutes=1)

    fifth = auth.login(user.email, "Wrong1234!", False, ctx)
    assert fifth.kind == ErrorKind.ACCOUNT_LOCKED

    locked = auth.login(user.email, PASSWORD, False, ctx)
    assert locked.kind == ErrorKind.ACCOUNT_LOCKED
    assert locked.denial.details["remaining_seconds"] > 0

    clock.advance(minutes=settings.LOCKOUT_DURATION_MINUTES, seconds=1)
    assert auth.login(user.email, PASSWORD, False, ctx).ok


def test_refresh_reuse_scenario(auth, user, ctx):
    first = auth.login(user.email, PASSWORD, False, ctx).value
    s0 = first.session.id
    s0_secret = decode_session_cookie(first.cookie_value)["rt"]
    second = auth.refresh(s0, s0_secret, ctx)
    assert second.ok
    s1 = decode_session_cookie(second.value.cookie_value)
    assert s1["fam"] == first.session.token_family

    replay = auth.refresh(s0, s0_secret, ctx)
    assert replay.kind == ErrorKind.SESSION_REUSE_DETECTED

    after = auth.refresh(s1["sid"], s1["rt"], ctx)
    assert after.kind == ErrorKind.SESSION_INVALID


def test_sign_out_revokes_family(auth, user, ctx):
    authenticated = auth.login(user.email, PASSWORD, False, ctx).value
    assert auth.sign_out(authenticated.session, ctx).value == 1
    assert auth.sessions.store.get(authenticated.session.id).status == SESSION_REVOKED


def test_registration_rate_limited(auth, clock, ctx):
    results = [
        auth.register(f"user{i}@example.com", "NewPass1!", "NewPass1!", ctx) for i in range(10)
    ]
    assert all(outcome.ok for outcome in results[:5])
    for outcome in results[5:]:
        assert outcome.kind == ErrorKind.RATE_LIMITED
        assert 0 < outcome.denial.retry_after <= settings.REGISTRATION_RATE_LIMIT_WINDOW_SECONDS


def test_register_validates_and_sends_verification(auth, email_sender, ctx):
    assert auth.register("bad-address", "NewPass1!", "NewPass1!", ctx).kind == ErrorKind.VALIDATION_FAILED
    assert auth.register("bob@example.com", "NewPass1!", "Other1!!", ctx).kind == ErrorKind.VALIDATION_FAILED
    assert auth.register("bob@example.com", "weak", "weak", ctx).kind == ErrorKind.VALIDATION_FAILED

    created = auth.register("Bob@Example.com", "NewPass1!", "NewPass1!", ctx)
    assert created.ok
    assert created.value.verification_email_sent is True
    assert created.value.auth.user.email == "bob@example.com"
    assert email_sender.sent[0]["to"] == "bob@example.com"

    duplicate = auth.register("bob@example.com", "NewPass1!", "NewPass1!", ctx)
    assert duplicate.kind == ErrorKind.EMAIL_IN_USE


def test_verify_email(auth, clock, db, ctx):
    created = auth.register("carol@example.com", "NewPass1!", "NewPass1!", ctx).value
    user = created.auth.user
    assert user.email_verified is False

    token = create_email_verification_token(user.id, user.email, clock())
    assert auth.verify_email(token, ctx).ok
    db.refresh(user)
    assert user.email_verified is True

    clock.advance(hours=1)
    assert auth.verify_email(token, ctx).kind == ErrorKind.TOKEN_EXPIRED_OR_USED
    assert auth.verify_email("garbage", ctx).kind == ErrorKind.TOKEN_EXPIRED_OR_USED


def test_change_password_keeps_current_family(auth, user, ctx):
    current = auth.login(user.email, PASSWORD, False, ctx).value
    other = auth.login(user.email, PASSWORD, False, ctx).value

    wrong = auth.change_password(user, current.session, "Wrong1234!", "NewPass1!", "NewPass1!", ctx)
    assert wrong.kind == ErrorKind.INVALID_CREDENTIALS

    assert auth.change_password(user, current.session, PASSWORD, "NewPass1!", "NewPass1!", ctx).ok
    assert auth.sessions.store.get(current.session.id).status == SESSION_ACTIVE
    assert auth.sessions.store.get(other.session.id).status == SESSION_REVOKED


def test_delete_account(auth, db, user, ctx):
    authenticated = auth.login(user.email, PASSWORD, False, ctx).value
    assert auth.delete_account(user, ctx).ok
    db.refresh(user)
    assert user.is_deleted
    assert user.email is None
    assert auth.sessions.store.get(authenticated.session.id).status == SESSION_REVOKED
    assert auth.login("alice@example.com", PASSWORD, False, ctx).kind == ErrorKind.INVALID_CREDENTIALS


def test_login_events_are_audited(auth, db, user, ctx):
    auth.login(user.email, "Wrong1234!", False, ctx)
    auth.login(user.email, PASSWORD, False, ctx)

    types = [e.event_type for e in db.query(AuditEvent).order_by(AuditEvent.id).all()]
    assert AuditEventType.LOGIN_FAILED in types
    assert AuditEventType.SESSION_CREATED in types
    assert AuditEventType.LOGIN_SUCCESS in types
    assert auth.audit.failed_login_count(user_id=user.id) == 1


def test_audit_write_failure_never_breaks_login(auth, user, ctx, monkeypatch):
    def broken_event(**kwargs):
        raise OperationalError("INSERT INTO audit_events", {}, Exception("disk full"))

    monkeypatch.setattr("sessionguard.services.audit_service.AuditEvent", broken_event)
    outcome = auth.login(user.email, PASSWORD, False, ctx)
    assert outcome.ok
    assert auth.sessions.store.get(outcome.value.session.id).status == SESSION_ACTIVE


def test_successful_login_resets_login_rate_limit(db, clock, email_sender, user, ctx):
    cfg = settings.model_copy(update={"LOGIN_RATE_LIMIT": 3})
    auth = AuthService.build(db, cfg=cfg, clock=clock, email_sender=email_sender)

    for _ in range(2):
        assert auth.login(user.email, "Wrong1234!", False, ctx).kind == ErrorKind.INVALID_CREDENTIALS
    assert auth.login(user.email, PASSWORD, False, ctx).ok

    # A fresh allowance for the same email and address
    for _ in range(3):
        assert auth.login(user.email, "Wrong1234!", False, ctx).kind == ErrorKind.INVALID_CREDENTIALS
    assert auth.login(user.email, PASSWORD, False, ctx).kind == ErrorKind.RATE_LIMITED


def test_resend_verification_is_generic(auth, email_sender, user, ctx):
    assert auth.resend_email_verification("ghost@example.com", ctx).ok
    assert auth.resend_email_verification(user.email, ctx).ok
    assert email_sender.sent == []


def test_resend_verification_sends_a_new_link(auth, email_sender, ctx):
    auth.register("carol@example.com", "NewPass1!", "NewPass1!", ctx)
    assert auth.resend_email_verification("Carol@Example.com", ctx).ok
    assert len(email_sender.sent) == 2
    assert email_sender.sent[1]["to"] == "carol@example.com"
    assert "verify-email" in email_sender.sent[1]["html"]


def test_resend_verification_send_failure(db, clock, ctx):
    auth = AuthService.build(db, cfg=settings, clock=clock, email_sender=RecordingEmailSender(fail=True))
    registered = auth.register("carol@example.com", "NewPass1!", "NewPass1!", ctx)
    assert registered.ok
    assert registered.value.verification_email_sent is False

    outcome = auth.resend_email_verification("carol@example.com", ctx)
    assert outcome.kind == ErrorKind.SERVICE_UNAVAILABLE


def _github_auth(db, clock, email_sender, handler):
    cfg = settings.model_copy(
        update={"GITHUB_CLIENT_ID": "id", "GITHUB_CLIENT_SECRET": "secret", "UPSTREAM_MAX_RETRIES": 1}
    )
    upstream = UpstreamClient(cfg=cfg, transport=httpx.MockTransport(handler), sleep=lambda seconds: None)
    return AuthService.build(
        db, cfg=cfg, clock=clock, email_sender=email_sender, oauth_client=OAuthClient(upstream, cfg=cfg)
    )


def _github_identity(email, verified=True):
    def handler(request):
        if request.url.path == "/login/oauth/access_token":
            return httpx.Response(200, json={"access_token": "gho_token"})
        if request.url.path == "/user":
            return httpx.Response(200, json={"id": 42, "login": "octo"})
        return httpx.Response(200, json=[{"email": email, "primary": True, "verified": verified}])

    return handler


def test_oauth_creates_account_for_new_email(db, clock, email_sender, ctx):
    auth = _github_auth(db, clock, email_sender, _github_identity("Octo@Example.com"))
    outcome = auth.oauth_callback("GitHub", "code-1", ctx)
    assert outcome.ok

    created = outcome.value.user
    assert created.email == "octo@example.com"
    assert created.email_verified is True
    assert created.password_hash is None
    assert created.provider == "github"
    assert outcome.value.session.remember_me is False

    again = auth.oauth_callback("github", "code-2", ctx)
    assert again.value.user.id == created.id


def test_oauth_links_verified_account_and_keeps_its_sessions(db, clock, email_sender, user, ctx):
    auth = _github_auth(db, clock, email_sender, _github_identity(user.email))
    existing = auth.login(user.email, PASSWORD, False, ctx).value

    linked = auth.oauth_callback("github", "code-1", ctx)
    assert linked.value.user.id == user.id
    assert auth.sessions.store.get(existing.session.id).status == SESSION_ACTIVE
    assert auth.login(user.email, PASSWORD, False, ctx).ok


def test_oauth_claiming_unverified_account_locks_out_prior_registrant(db, clock, email_sender, ctx):
    auth = _github_auth(db, clock, email_sender, _github_identity("victim@example.com"))
    squatter = auth.register("victim@example.com", "Squatter1!", "Squatter1!", ctx).value.auth
    squatter_session_id = squatter.session.id
    squatter_user_id = squatter.user.id

    linked = auth.oauth_callback("github", "code-1", ctx)
    assert linked.ok
    account = linked.value.user
    assert account.id == squatter_user_id
    assert account.email_verified is True
    assert account.password_hash is None
    assert account.provider == "github"

    assert auth.sessions.store.get(squatter_session_id).status == SESSION_REVOKED
    assert auth.sessions.store.get(linked.value.session.id).status == SESSION_ACTIVE
    assert auth.login("victim@example.com", "Squatter1!", False, ctx).kind == ErrorKind.INVALID_CREDENTIALS

    event = db.query(AuditEvent).filter(AuditEvent.event_type == AuditEventType.OAUTH_ACCOUNT_LINKED).one()
    assert event.user_id == squatter_user_id
    assert '"password_cleared": true' in event.event_data


def test_oauth_requires_verified_email(db, clock, email_sender, ctx):
    auth = _github_auth(db, clock, email_sender, _github_identity("octo@example.com", verified=False))
    assert auth.oauth_callback("github", "code-1", ctx).kind == ErrorKind.UPSTREAM_REJECTED
    assert db.query(User).count() == 0


def test_oauth_provider_failures_are_classified(db, clock, email_sender, ctx):
    def timing_out(request):
        raise httpx.ReadTimeout("slow", request=request)

    def unreachable(request):
        raise httpx.ConnectError("refused", request=request)

    def refusing(request):
        return httpx.Response(401, json={"error": "invalid_client"})

    expected = [
        (timing_out, ErrorKind.UPSTREAM_TIMEOUT),
        (unreachable, ErrorKind.UPSTREAM_NETWORK_ERROR),
        (refusing, ErrorKind.UPSTREAM_REJECTED),
    ]
    for handler, kind in expected:
        outcome = _github_auth(db, clock, email_sender, handler).oauth_callback("github", "code-1", ctx)
        assert outcome.kind == kind

    failures = db.query(AuditEvent).filter(AuditEvent.event_type == AuditEventType.oauth("github", False)).count()
    assert failures == 3


def test_oauth_callback_input_checks(auth, ctx):
    assert auth.oauth_callback("myspace", "code-1", ctx).kind == ErrorKind.VALIDATION_FAILED
    assert auth.oauth_callback("github", "", ctx).kind == ErrorKind.VALIDATION_FAILED
    assert auth.oauth_callback("github", "code-1", ctx).kind == ErrorKind.SERVICE_UNAVAILABLE
