"""Authentication flows: login, refresh, sign-out, registration, resets, OAuth"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from sessionguard.config import Settings, settings as default_settings
from sessionguard.core.clock import Clock, utcnow
from sessionguard.core.context import NetworkContext
from sessionguard.core.exceptions import SESSION_INVALID_MESSAGE, UpstreamError
from sessionguard.core.metrics import record_decision
from sessionguard.core.results import ErrorKind, Outcome
from sessionguard.core.security import (
    create_email_verification_token,
    create_session_cookie,
    decode_email_verification_token,
    password_policy_errors,
    verify_password_safe,
)
from sessionguard.models.security import AuthSession
from sessionguard.models.user import User
from sessionguard.services import rate_limiter as limits
from sessionguard.services.audit_service import AuditEventType, AuditLog
from sessionguard.services.cleanup_service import CleanupSweeper
from sessionguard.services.csrf_service import CsrfTokenManager
from sessionguard.services.email_service import (
    EmailSender,
    build_email_sender,
    password_reset_email,
    verification_email,
)
from sessionguard.services.lockout_service import LockoutTracker
from sessionguard.services.oauth_service import OAuthClient
from sessionguard.services.password_reset_service import PasswordResetTokenService
from sessionguard.services.rate_limiter import RateLimiter, RateLimitStore, SqlRateLimitStore
from sessionguard.services.session_service import (
    IssuedSession,
    REASON_ACCOUNT_DELETED,
    REASON_OAUTH_LINK,
    REASON_PASSWORD_CHANGE,
    REASON_PASSWORD_RESET,
    REASON_USER_REVOKED,
    SessionRotationEngine,
)
from sessionguard.services.session_store import SqlSessionStore
from sessionguard.services.upstream import UpstreamClient, denial_for
from sessionguard.services.user_service import normalize_email, user_service

logger = logging.getLogger(__name__)

INVALID_CREDENTIALS_MESSAGE = "Invalid email or password"
EMAIL_SEND_FAILED_MESSAGE = "We could not send the email right now. Please try again later."
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass
class AuthenticatedSession:
    """Everything the HTTP layer needs to set the session and CSRF cookies."""

    user: User
    session: AuthSession
    cookie_value: str
    csrf_token: str
    remember_me: bool
    expires_at: datetime


@dataclass
class RegistrationResult:
    auth: AuthenticatedSession
    verification_email_sent: bool


class AuthService:
    """
    Orchestrate the security components for each user-facing operation

    Every operation returns an Outcome. Expected denials never raise;
    unexpected faults propagate and the request fails closed.
    """

    def __init__(
        self,
        db: Session,
        *,
        sessions: SessionRotationEngine,
        limiter: RateLimiter,
        lockout: LockoutTracker,
        reset_tokens: PasswordResetTokenService,
        csrf: CsrfTokenManager,
        audit: AuditLog,
        email: EmailSender,
        oauth: OAuthClient,
        sweeper: Optional[CleanupSweeper] = None,
        cfg: Settings = default_settings,
        clock: Clock = utcnow,
    ) -> None:
        self.db = db
        self.sessions = sessions
        self.limiter = limiter
        self.lockout = lockout
        self.reset_tokens = reset_tokens
        self.csrf = csrf
        self.audit = audit
        self.email = email
        self.oauth = oauth
        self.sweeper = sweeper
        self.cfg = cfg
        self.clock = clock

    @classmethod
    def build(
        cls,
        db: Session,
        *,
        cfg: Settings = default_settings,
        clock: Clock = utcnow,
        email_sender: Optional[EmailSender] = None,
        oauth_client: Optional[OAuthClient] = None,
        rate_limit_store: Optional[RateLimitStore] = None,
    ) -> "AuthService":
        """Wire the database-backed stores for one request."""
        audit = AuditLog(db, clock=clock)
        session_store = SqlSessionStore(db)
        sql_rate_limits = SqlRateLimitStore(db)
        reset_tokens = PasswordResetTokenService(db, cfg=cfg, clock=clock)
        return cls(
            db,
            sessions=SessionRotationEngine(session_store, audit=audit, cfg=cfg, clock=clock),
            limiter=RateLimiter(rate_limit_store or sql_rate_limits, audit=audit, cfg=cfg, clock=clock),
            lockout=LockoutTracker(db, cfg=cfg, clock=clock),
            reset_tokens=reset_tokens,
            csrf=CsrfTokenManager(),
            audit=audit,
            email=email_sender or build_email_sender(cfg),
            oauth=oauth_client or OAuthClient(UpstreamClient(cfg=cfg), cfg=cfg),
            sweeper=CleanupSweeper(session_store, sql_rate_limits, reset_tokens, audit=audit, cfg=cfg, clock=clock),
            cfg=cfg,
            clock=clock,
        )

    # -- helpers ---------------------------------------------------------

    def _issue(self, user: User, issued: IssuedSession) -> AuthenticatedSession:
        session = issued.session
        cookie = create_session_cookie(
            user_id=user.id,
            session_id=session.id,
            family_id=session.token_family,
            refresh_secret=issued.refresh_secret,
            remember_me=session.remember_me,
            expires_at=session.expires_at,
        )
        return AuthenticatedSession(
            user=user,
            session=session,
            cookie_value=cookie,
            csrf_token=self.csrf.issue(session.token_family),
            remember_me=session.remember_me,
            expires_at=session.expires_at,
        )

    @staticmethod
    def _finish(operation: str, outcome: Outcome) -> Outcome:
        record_decision(operation, outcome)
        return outcome

    def _validate_new_password(self, password: str, confirmation: str) -> Optional[Outcome]:
        if password != confirmation:
            return Outcome.deny(ErrorKind.VALIDATION_FAILED, "Passwords do not match")
        errors = password_policy_errors(password)
        if errors:
            return Outcome.deny(ErrorKind.VALIDATION_FAILED, errors[0], details={"errors": errors})
        return None

    def _link(self, path: str, token: str) -> str:
        return f"{self.cfg.PUBLIC_BASE_URL.rstrip('/')}/{path}?token={token}"

    def _send_verification(self, user: User) -> bool:
        token = create_email_verification_token(user.id, user.email, self.clock())
        subject, html = verification_email(
            self._link("verify-email", token), self.cfg.EMAIL_VERIFICATION_TOKEN_EXPIRE_MINUTES
        )
        return self.email.send(user.email, subject, html).success

    # -- login / refresh / sign-out ------------------------------------

    def login(
        self, email: str, password: str, remember_me: bool, ctx: NetworkContext
    ) -> Outcome[AuthenticatedSession]:
        """
        Authenticate with email and password and start a new session family

        Rate limits are checked first, then the password is compared in
        constant time before lockout state is consulted.
        """
        email_key = normalize_email(email)
        denial = self.limiter.check(limits.LOGIN, email_key, ctx.ip_address, ctx=ctx) or self.limiter.check(
            limits.LOGIN_IP, ctx.ip_address, ctx=ctx
        )
        if denial:
            return self._finish("login", Outcome.from_denial(denial))

        user = user_service.get_user_by_email(self.db, email_key)
        password_ok = verify_password_safe(password, user.password_hash if user else None)

        if user is None:
            self.audit.record(
                AuditEventType.LOGIN_FAILED,
                event_data={"email": email_key, "reason": "unknown_email"},
                ctx=ctx,
                success=False,
            )
            return self._finish("login", Outcome.deny(ErrorKind.INVALID_CREDENTIALS, INVALID_CREDENTIALS_MESSAGE))

        remaining = self.lockout.remaining_lock_seconds(user)
        if remaining:
            self.audit.record(
                AuditEventType.LOGIN_FAILED,
                user_id=user.id,
                event_data={"reason": "account_locked", "remaining_seconds": remaining},
                ctx=ctx,
                success=False,
            )
            return self._finish("login", self._locked(remaining))

        if not password_ok:
            status = self.lockout.record_failure(user)
            self.audit.record(
                AuditEventType.LOGIN_FAILED,
                user_id=user.id,
                event_data={"reason": "invalid_password", "failed_attempts": status.failed_attempts},
                ctx=ctx,
                success=False,
            )
            if status.locked:
                self.audit.record(
                    AuditEventType.ACCOUNT_LOCKED,
                    user_id=user.id,
                    event_data={
                        "failed_attempts": status.failed_attempts,
                        "remaining_seconds": status.remaining_seconds,
                    },
                    ctx=ctx,
                    success=False,
                )
                return self._finish("login", self._locked(status.remaining_seconds))
            return self._finish("login", Outcome.deny(ErrorKind.INVALID_CREDENTIALS, INVALID_CREDENTIALS_MESSAGE))

        self.lockout.record_success(user)
        self.limiter.reset(limits.LOGIN, email_key, ctx.ip_address)
        issued = self.sessions.create_session(user.id, remember_me, ctx)
        self.audit.record(
            AuditEventType.LOGIN_SUCCESS,
            user_id=user.id,
            event_data={"remember_me": bool(remember_me)},
            ctx=ctx,
        )
        logger.info(f"User {user.id} logged in from {ctx.ip_address}")
        return self._finish("login", Outcome.success(self._issue(user, issued)))

    @staticmethod
    def _locked(remaining_seconds: int) -> Outcome:
        return Outcome.deny(
            ErrorKind.ACCOUNT_LOCKED,
            f"Account is temporarily locked. Try again in {remaining_seconds} seconds.",
            details={"remaining_seconds": remaining_seconds},
        )

    def refresh(self, session_id: str, refresh_secret: str, ctx: NetworkContext) -> Outcome[AuthenticatedSession]:
        denial = self.limiter.check(limits.REFRESH, ctx.ip_address, ctx=ctx)
        if denial:
            return self._finish("refresh", Outcome.from_denial(denial))

        rotated = self.sessions.validate_and_rotate(session_id, refresh_secret, ctx)
        if not rotated.ok:
            return self._finish("refresh", Outcome.from_denial(rotated.denial))

        issued = rotated.value
        user = user_service.get_user_by_id(self.db, issued.session.user_id)
        if user is None or user.is_deleted:
            self.sessions.revoke_family(issued.session.token_family, REASON_ACCOUNT_DELETED, ctx=ctx)
            return self._finish("refresh", Outcome.deny(ErrorKind.SESSION_INVALID, SESSION_INVALID_MESSAGE))

        authenticated = self._issue(user, issued)
        if self.sweeper is not None:
            self.sweeper.maybe_cleanup()
        return self._finish("refresh", Outcome.success(authenticated))

    def current_session(self, session_id: str, refresh_secret: str) -> Outcome[Tuple[User, AuthSession]]:
        checked = self.sessions.authenticate(session_id, refresh_secret)
        if not checked.ok:
            return Outcome.from_denial(checked.denial)
        user = user_service.get_user_by_id(self.db, checked.value.user_id)
        if user is None or user.is_deleted:
            return Outcome.deny(ErrorKind.SESSION_INVALID, SESSION_INVALID_MESSAGE)
        return Outcome.success((user, checked.value))

    def sign_out(self, session: AuthSession, ctx: NetworkContext) -> Outcome[int]:
        user_id = session.user_id
        revoked = self.sessions.invalidate(session.id, ctx)
        self.audit.record(
            AuditEventType.LOGOUT,
            user_id=user_id,
            event_data={"revoked_sessions": revoked},
            ctx=ctx,
        )
        return self._finish("signout", Outcome.success(revoked))

    def list_sessions(self, user: User) -> List[AuthSession]:
        return self.sessions.store.list_active_for_user(user.id, self.clock())

    def revoke_session(self, user: User, session_id: str, ctx: NetworkContext) -> Optional[int]:
        """
        Revoke one of the user's sessions together with its family

        Returns:
            Number of sessions revoked, or None when the session does not
            belong to the user
        """
        target = self.sessions.store.get(session_id)
        if target is None or target.user_id != user.id:
            return None
        revoked = self.sessions.revoke_family(target.token_family, REASON_USER_REVOKED, user_id=user.id, ctx=ctx)
        self.audit.record(
            AuditEventType.SESSION_REVOKED,
            user_id=user.id,
            event_data={"session_id": session_id, "revoked_sessions": revoked},
            ctx=ctx,
        )
        return revoked

    def revoke_other_sessions(self, user: User, current: AuthSession, ctx: NetworkContext) -> int:
        """Sign out every other device; the current login family survives."""
        revoked = self.sessions.revoke_user_sessions(user.id, REASON_USER_REVOKED, keep_family=current.token_family)
        self.audit.record(
            AuditEventType.OTHER_SESSIONS_REVOKED,
            user_id=user.id,
            event_data={"revoked_sessions": revoked},
            ctx=ctx,
        )
        return revoked

    # -- registration and email verification ----------------------------

    def register(
        self, email: str, password: str, confirmation: str, ctx: NetworkContext
    ) -> Outcome[RegistrationResult]:
        denial = self.limiter.check(limits.REGISTRATION, ctx.ip_address, ctx=ctx)
        if denial:
            return self._finish("register", Outcome.from_denial(denial))

        email_key = normalize_email(email)
        if not _EMAIL_RE.match(email_key):
            return self._finish("register", Outcome.deny(ErrorKind.VALIDATION_FAILED, "Enter a valid email address"))
        invalid = self._validate_new_password(password, confirmation)
        if invalid:
            return self._finish("register", invalid)

        user = None
        if user_service.get_user_by_email(self.db, email_key) is None:
            user = user_service.create_user(self.db, email_key, password, now=self.clock())
        if user is None:
            self.audit.record(
                AuditEventType.REGISTER_FAILED,
                event_data={"reason": "email_in_use"},
                ctx=ctx,
                success=False,
            )
            return self._finish(
                "register", Outcome.deny(ErrorKind.EMAIL_IN_USE, "An account with this email already exists")
            )

        issued = self.sessions.create_session(user.id, False, ctx)
        sent = self._send_verification(user)
        if not sent:
            logger.warning(f"Verification email for user {user.id} could not be sent")
        self.audit.record(
            AuditEventType.REGISTER_SUCCESS,
            user_id=user.id,
            event_data={"verification_email_sent": sent},
            ctx=ctx,
        )
        return self._finish(
            "register",
            Outcome.success(RegistrationResult(auth=self._issue(user, issued), verification_email_sent=sent)),
        )

    def resend_email_verification(self, email: str, ctx: NetworkContext) -> Outcome[None]:
        email_key = normalize_email(email)
        denial = self.limiter.check(limits.EMAIL_VERIFICATION, ctx.ip_address, email_key, ctx=ctx)
        if denial:
            return self._finish("resend_verification", Outcome.from_denial(denial))

        user = user_service.get_user_by_email(self.db, email_key)
        if user is None or user.email_verified:
            # Same answer whether or not the address is registered
            return self._finish("resend_verification", Outcome.success(None))

        sent = self._send_verification(user)
        self.audit.record(
            AuditEventType.EMAIL_VERIFY_REQUEST,
            user_id=user.id,
            event_data={"sent": sent},
            ctx=ctx,
            success=sent,
        )
        if not sent:
            return self._finish(
                "resend_verification", Outcome.deny(ErrorKind.SERVICE_UNAVAILABLE, EMAIL_SEND_FAILED_MESSAGE)
            )
        return self._finish("resend_verification", Outcome.success(None))

    def verify_email(self, token: str, ctx: NetworkContext) -> Outcome[User]:
        claims = decode_email_verification_token(token, self.clock()) if token else None
        user = None
        if claims:
            try:
                user = user_service.get_user_by_id(self.db, int(claims["sub"]))
            except (TypeError, ValueError):
                user = None
        if user is None or not claims or user.email != normalize_email(claims.get("email")):
            return self._finish(
                "verify_email",
                Outcome.deny(ErrorKind.TOKEN_EXPIRED_OR_USED, "This verification link is invalid or has expired"),
            )

        user_service.mark_email_verified(self.db, user)
        self.audit.record(AuditEventType.EMAIL_VERIFY_COMPLETE, user_id=user.id, ctx=ctx)
        return self._finish("verify_email", Outcome.success(user))

    # -- passwords ---------------------------------------------------------

    def request_password_reset(self, email: str, ctx: NetworkContext) -> Outcome[None]:
        """
        Issue a reset token and email it

        Unknown addresses receive the same success answer as known ones.
        """
        email_key = normalize_email(email)
        denial = self.limiter.check(limits.PASSWORD_RESET, ctx.ip_address, ctx=ctx) or self.limiter.check(
            limits.PASSWORD_RESET_EMAIL, email_key, ctx=ctx
        )
        if denial:
            return self._finish("password_reset_request", Outcome.from_denial(denial))

        user = user_service.get_user_by_email(self.db, email_key)
        if user is None:
            self.audit.record(
                AuditEventType.PASSWORD_RESET_REQUEST,
                event_data={"reason": "unknown_email"},
                ctx=ctx,
                success=False,
            )
            return self._finish("password_reset_request", Outcome.success(None))

        issued = self.reset_tokens.create(user.id)
        subject, html = password_reset_email(
            self._link("reset-password", issued.token), self.cfg.PASSWORD_RESET_TOKEN_EXPIRE_MINUTES
        )
        result = self.email.send(user.email, subject, html)
        self.audit.record(
            AuditEventType.PASSWORD_RESET_REQUEST,
            user_id=user.id,
            event_data={"sent": result.success, "retryable": result.retryable},
            ctx=ctx,
            success=result.success,
        )
        if not result.success:
            return self._finish(
                "password_reset_request", Outcome.deny(ErrorKind.SERVICE_UNAVAILABLE, EMAIL_SEND_FAILED_MESSAGE)
            )
        return self._finish("password_reset_request", Outcome.success(None))

    def reset_password(
        self, token: str, new_password: str, confirmation: str, ctx: NetworkContext
    ) -> Outcome[None]:
        claims = self.reset_tokens.validate(token)
        if not claims.ok:
            return self._finish("password_reset", Outcome.from_denial(claims.denial))
        invalid = self._validate_new_password(new_password, confirmation)
        if invalid:
            return self._finish("password_reset", invalid)

        user = user_service.get_user_by_id(self.db, claims.value.user_id)
        if user is None or user.is_deleted:
            return self._finish(
                "password_reset",
                Outcome.deny(ErrorKind.TOKEN_EXPIRED_OR_USED, "This password reset link is invalid or has expired"),
            )

        user_service.set_password(self.db, user, new_password, commit=False)
        if not self.reset_tokens.mark_used(claims.value.token_id):
            logger.warning(f"Reset token {claims.value.token_id} was consumed by a concurrent request")
            self.audit.record(
                AuditEventType.PASSWORD_RESET_COMPLETE,
                user_id=claims.value.user_id,
                event_data={"reason": "token_already_used"},
                ctx=ctx,
                success=False,
            )
            return self._finish(
                "password_reset",
                Outcome.deny(ErrorKind.TOKEN_EXPIRED_OR_USED, "This password reset link is invalid or has expired"),
            )
        self.lockout.clear(user)
        revoked = self.sessions.revoke_user_sessions(user.id, REASON_PASSWORD_RESET)
        self.audit.record(
            AuditEventType.PASSWORD_RESET_COMPLETE,
            user_id=user.id,
            event_data={"revoked_sessions": revoked},
            ctx=ctx,
        )
        return self._finish("password_reset", Outcome.success(None))

    def change_password(
        self,
        user: User,
        session: AuthSession,
        current_password: str,
        new_password: str,
        confirmation: str,
        ctx: NetworkContext,
    ) -> Outcome[None]:
        if not verify_password_safe(current_password, user.password_hash):
            self.audit.record(
                AuditEventType.PASSWORD_CHANGE,
                user_id=user.id,
                event_data={"reason": "invalid_current_password"},
                ctx=ctx,
                success=False,
            )
            return self._finish(
                "password_change", Outcome.deny(ErrorKind.INVALID_CREDENTIALS, "Current password is incorrect")
            )
        if new_password == current_password:
            return self._finish(
                "password_change",
                Outcome.deny(ErrorKind.VALIDATION_FAILED, "New password must be different from the current password"),
            )
        invalid = self._validate_new_password(new_password, confirmation)
        if invalid:
            return self._finish("password_change", invalid)

        family_id = session.token_family
        user_service.set_password(self.db, user, new_password)
        revoked = self.sessions.revoke_user_sessions(user.id, REASON_PASSWORD_CHANGE, keep_family=family_id)
        self.audit.record(
            AuditEventType.PASSWORD_CHANGE,
            user_id=user.id,
            event_data={"revoked_sessions": revoked},
            ctx=ctx,
        )
        return self._finish("password_change", Outcome.success(None))

    # -- OAuth and account deletion ------------------------------------

    def oauth_callback(self, provider: str, code: str, ctx: NetworkContext) -> Outcome[AuthenticatedSession]:
        provider = (provider or "").lower()
        if not self.oauth.is_supported(provider):
            return self._finish("oauth", Outcome.deny(ErrorKind.VALIDATION_FAILED, f"Unsupported provider: {provider}"))
        if not code:
            return self._finish("oauth", Outcome.deny(ErrorKind.VALIDATION_FAILED, "Missing authorization code"))
        if not self.oauth.is_configured(provider):
            return self._finish(
                "oauth", Outcome.deny(ErrorKind.SERVICE_UNAVAILABLE, f"{provider} sign-in is not configured")
            )
        denial = self.limiter.check(limits.LOGIN_IP, ctx.ip_address, ctx=ctx)
        if denial:
            return self._finish("oauth", Outcome.from_denial(denial))

        try:
            identity = self.oauth.exchange_code(provider, code)
        except UpstreamError as exc:
            self.audit.record(
                AuditEventType.oauth(provider, False),
                event_data={"reason": exc.kind.value, "upstream_status": exc.upstream_status},
                ctx=ctx,
                success=False,
            )
            return self._finish("oauth", denial_for(exc))

        if not identity.email or not identity.email_verified:
            self.audit.record(
                AuditEventType.oauth(provider, False),
                event_data={"reason": "no_verified_email"},
                ctx=ctx,
                success=False,
            )
            return self._finish(
                "oauth",
                Outcome.deny(ErrorKind.UPSTREAM_REJECTED, f"{provider} did not provide a verified email address"),
            )

        existing = user_service.get_user_by_email(self.db, identity.email)
        unverified_link = existing is not None and not existing.email_verified

        user = user_service.find_or_create_oauth_user(
            self.db,
            provider=provider,
            email=identity.email,
            display_name=identity.name,
            avatar_url=identity.avatar_url,
            now=self.clock(),
        )
        if user is None:
            return self._finish("oauth", Outcome.deny(ErrorKind.INTERNAL_ERROR, "Could not complete sign-in"))

        if unverified_link:
            # Whoever registered the address without proving it loses every session
            revoked = self.sessions.revoke_user_sessions(user.id, REASON_OAUTH_LINK)
            self.audit.record(
                AuditEventType.OAUTH_ACCOUNT_LINKED,
                user_id=user.id,
                event_data={"provider": provider, "password_cleared": True, "revoked_sessions": revoked},
                ctx=ctx,
            )

        self.lockout.record_success(user)
        issued = self.sessions.create_session(user.id, False, ctx)
        self.audit.record(
            AuditEventType.oauth(provider, True),
            user_id=user.id,
            event_data={"provider_uid": identity.provider_uid},
            ctx=ctx,
        )
        return self._finish("oauth", Outcome.success(self._issue(user, issued)))

    def delete_account(self, user: User, ctx: NetworkContext) -> Outcome[None]:
        user_id = user.id
        revoked = self.sessions.revoke_user_sessions(user_id, REASON_ACCOUNT_DELETED)
        user_service.soft_delete(self.db, user)
        self.audit.record(
            AuditEventType.ACCOUNT_DELETED,
            user_id=user_id,
            event_data={"revoked_sessions": revoked},
            ctx=ctx,
        )
        return self._finish("delete_account", Outcome.success(None))
