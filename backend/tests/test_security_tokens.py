from datetime import datetime, timedelta

from sessionguard.core.security import (
    create_email_verification_token,
    create_session_cookie,
    decode_email_verification_token,
    decode_session_cookie,
    get_password_hash,
    hash_token,
    password_policy_errors,
    verify_password,
    verify_password_safe,
)
from sessionguard.services.csrf_service import CsrfTokenManager

NOW = datetime(2026, 3, 1, 12, 0, 0)


def _cookie(**overrides):
    values = dict(
        user_id=7,
        session_id="sid-1",
        family_id="fam-1",
        refresh_secret="secret-1",
        remember_me=True,
        expires_at=NOW + timedelta(days=7),
    )
    values.update(overrides)
    return create_session_cookie(**values)


def test_session_cookie_round_trip():
    claims = decode_session_cookie(_cookie())
    assert claims is not None
    assert claims["sub"] == "7"
    assert claims["sid"] == "sid-1"
    assert claims["fam"] == "fam-1"
    assert claims["rt"] == "secret-1"
    assert claims["rm"] is True


def test_session_cookie_expiry_left_to_the_store():
    # A cookie whose JWT exp has passed still decodes; the session row decides.
    stale = _cookie(expires_at=datetime(2020, 1, 1))
    assert decode_session_cookie(stale) is not None


def test_session_cookie_rejects_tampering():
    token = _cookie()
    header, payload, signature = token.split(".")
    forged = ".".join([header, payload, signature[::-1]])
    assert decode_session_cookie(forged) is None
    assert decode_session_cookie("not-a-jwt") is None


def test_session_cookie_rejects_verification_token():
    token = create_email_verification_token(7, "a@example.com", NOW)
    assert decode_session_cookie(token) is None


def test_email_verification_token_expires_against_injected_clock():
    token = create_email_verification_token(7, "a@example.com", NOW)
    assert decode_email_verification_token(token, NOW + timedelta(minutes=5))["email"] == "a@example.com"
    assert decode_email_verification_token(token, NOW + timedelta(hours=1)) is None


def test_password_hashing():
    hashed = get_password_hash("Correct1!")
    assert verify_password("Correct1!", hashed)
    assert not verify_password("wrong", hashed)
    assert not verify_password("Correct1!", "not-a-bcrypt-hash")


def test_verify_password_safe_without_hash_is_false():
    assert verify_password_safe("anything", None) is False


def test_password_policy():
    assert password_policy_errors("Correct1!") == []
    errors = password_policy_errors("short")
    assert any("at least" in e for e in errors)
    assert any("uppercase" in e for e in errors)
    assert any("number" in e for e in errors)


def test_hash_token_is_stable_hex():
    digest = hash_token("abc")
    assert digest == hash_token("abc")
    assert len(digest) == 64


def test_csrf_token_bound_to_family():
    manager = CsrfTokenManager()
    token = manager.issue("fam-1")
    assert manager.validate(token, token, "fam-1")
    assert not manager.validate(token, token, "fam-2")
    assert not manager.validate(token, None, "fam-1")
    assert not manager.validate(token, token + "x", "fam-1")
    assert not manager.validate("nonce-only", "nonce-only", "fam-1")
