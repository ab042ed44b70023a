"""Security utilities - password hashing, signed cookies, token digests"""

from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, List
from jose import JWTError, jwt
import bcrypt
import hashlib
import hmac
import re
import secrets
from sessionguard.config import settings

SESSION_TOKEN_TYPE = "session"
EMAIL_VERIFICATION_TOKEN_TYPE = "email_verification"


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """
    Verify a password against its hash

    Args:
        plain_password: Plain text password
        hashed_password: Hashed password

    Returns:
        bool: True if password matches
    """
    try:
        return bcrypt.checkpw(
            plain_password.encode('utf-8'),
            hashed_password.encode('utf-8')
        )
    except ValueError:
        # Malformed stored hash
        return False


def get_password_hash(password: str) -> str:
    """
    Hash a password using bcrypt

    Args:
        password: Plain text password

    Returns:
        str: Hashed password
    """
    return bcrypt.hashpw(
        password.encode('utf-8'),
        bcrypt.gensalt(rounds=settings.BCRYPT_ROUNDS)
    ).decode('utf-8')


_DUMMY_HASH = get_password_hash(secrets.token_urlsafe(16))


def verify_password_safe(plain_password: str, hashed_password: Optional[str]) -> bool:
    """
    Verify a password in constant time whether or not a hash exists

    Unknown users and OAuth-only accounts are compared against a dummy hash so
    the response time does not reveal whether the account exists.

    Args:
        plain_password: Plain text password
        hashed_password: Stored hash, or None when there is nothing to compare

    Returns:
        bool: True only if a real hash exists and matches
    """
    if not hashed_password:
        verify_password(plain_password, _DUMMY_HASH)
        return False
    return verify_password(plain_password, hashed_password)


def password_policy_errors(password: str) -> List[str]:
    """Return the policy rules a candidate password violates."""
    errors = []
    if len(password) < settings.PASSWORD_MIN_LENGTH:
        errors.append(f"Password must be at least {settings.PASSWORD_MIN_LENGTH} characters")
    if settings.PASSWORD_REQUIRE_UPPERCASE:
        if not re.search(r"[A-Z]", password):
            errors.append("Password must contain an uppercase letter")
        if not re.search(r"[a-z]", password):
            errors.append("Password must contain a lowercase letter")
    if settings.PASSWORD_REQUIRE_NUMBER and not re.search(r"[0-9]", password):
        errors.append("Password must contain a number")
    return errors


def hash_token(token: str) -> str:
    """SHA-256 hex digest; only digests of bearer secrets are persisted."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def generate_token(nbytes: int = 32) -> str:
    return secrets.token_urlsafe(nbytes)


def create_session_cookie(
    *,
    user_id: int,
    session_id: str,
    family_id: str,
    refresh_secret: str,
    remember_me: bool,
    expires_at: datetime,
) -> str:
    """
    Sign the session cookie value

    Args:
        user_id: Owner of the session
        session_id: Current session record id
        family_id: Token family the session belongs to
        refresh_secret: Plain refresh secret (only its hash is stored)
        remember_me: Whether the cookie is persistent
        expires_at: Session expiry (naive UTC)

    Returns:
        str: Encoded JWT
    """
    to_encode = {
        "typ": SESSION_TOKEN_TYPE,
        "sub": str(user_id),
        "sid": session_id,
        "fam": family_id,
        "rt": refresh_secret,
        "rm": bool(remember_me),
        "exp": expires_at,
    }
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_session_cookie(token: str) -> Optional[Dict[str, Any]]:
    """
    Decode and verify the session cookie signature

    Expiry is decided by the stored session record, not the JWT clock.

    Returns:
        Optional[Dict]: Claims or None if the cookie is forged or malformed
    """
    try:
        payload = jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.ALGORITHM],
            options={"verify_exp": False},
        )
    except JWTError:
        return None
    if payload.get("typ") != SESSION_TOKEN_TYPE:
        return None
    if not all(payload.get(claim) for claim in ("sub", "sid", "fam", "rt")):
        return None
    return payload


def create_email_verification_token(user_id: int, email: str, now: datetime) -> str:
    expire = now + timedelta(minutes=settings.EMAIL_VERIFICATION_TOKEN_EXPIRE_MINUTES)
    to_encode = {
        "typ": EMAIL_VERIFICATION_TOKEN_TYPE,
        "sub": str(user_id),
        "email": email,
        "iat": now,
        "exp": expire,
        "jti": secrets.token_urlsafe(16),
    }
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_email_verification_token(token: str, now: datetime) -> Optional[Dict[str, Any]]:
    """
    Decode an email verification token and check its expiry against ``now``

    Returns:
        Optional[Dict]: Claims or None if invalid or expired
    """
    try:
        payload = jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.ALGORITHM],
            options={"verify_exp": False},
        )
    except JWTError:
        return None
    if payload.get("typ") != EMAIL_VERIFICATION_TOKEN_TYPE:
        return None
    exp = payload.get("exp")
    if not isinstance(exp, (int, float)):
        return None
    if datetime.fromtimestamp(exp, timezone.utc).replace(tzinfo=None) <= now:
        return None
    return payload


def sign_csrf_nonce(nonce: str, family_id: str) -> str:
    message = f"{nonce}.{family_id}".encode("utf-8")
    return hmac.new(settings.SECRET_KEY.encode("utf-8"), message, hashlib.sha256).hexdigest()
