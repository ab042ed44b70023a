"""API dependencies - request context, session authentication and CSRF"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from sessionguard.config import settings
from sessionguard.core.clock import Clock, utcnow
from sessionguard.core.context import NetworkContext
from sessionguard.core.database import get_db
from sessionguard.core.exceptions import AuthorizationError, CSRFValidationError, SessionInvalidError, unwrap
from sessionguard.core.security import decode_session_cookie
from sessionguard.models.security import AuthSession
from sessionguard.models.user import User
from sessionguard.services.audit_service import AuditEventType
from sessionguard.services.auth_service import AuthService
from sessionguard.services.email_service import EmailSender, build_email_sender
from sessionguard.services.oauth_service import OAuthClient
from sessionguard.services.upstream import UpstreamClient


@dataclass
class CurrentSession:
    user: User
    session: AuthSession


def get_network_context(request: Request) -> NetworkContext:
    """
    Resolve the client address and user agent

    X-Forwarded-For is honoured only when TRUST_PROXY_HEADERS is set.
    """
    client_ip = request.client.host if request.client else "unknown"
    if settings.TRUST_PROXY_HEADERS:
        forwarded = request.headers.get("x-forwarded-for", "")
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            client_ip = first_hop
    return NetworkContext(ip_address=client_ip, user_agent=request.headers.get("user-agent"))


def get_clock() -> Clock:
    return utcnow


def get_email_sender() -> EmailSender:
    return build_email_sender(settings)


def get_oauth_client() -> OAuthClient:
    return OAuthClient(UpstreamClient(cfg=settings), cfg=settings)


def get_auth_service(
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    email_sender: EmailSender = Depends(get_email_sender),
    oauth_client: OAuthClient = Depends(get_oauth_client),
) -> AuthService:
    return AuthService.build(
        db,
        cfg=settings,
        clock=clock,
        email_sender=email_sender,
        oauth_client=oauth_client,
    )


def get_session_claims(request: Request) -> Optional[Dict[str, Any]]:
    """Verified claims of the session cookie, or None when absent or forged."""
    cookie = request.cookies.get(settings.SESSION_COOKIE_NAME)
    if not cookie:
        return None
    return decode_session_cookie(cookie)


def get_current_session(
    claims: Optional[Dict[str, Any]] = Depends(get_session_claims),
    auth: AuthService = Depends(get_auth_service),
) -> CurrentSession:
    """
    Authenticate the request from its session cookie

    Raises:
        SessionInvalidError: If the cookie is missing, forged, expired or revoked
    """
    if not claims:
        raise SessionInvalidError()
    user, session = unwrap(auth.current_session(claims["sid"], claims["rt"]))
    return CurrentSession(user=user, session=session)


def get_current_user(current: CurrentSession = Depends(get_current_session)) -> User:
    return current.user


def get_current_admin_user(current_user: User = Depends(get_current_user)) -> User:
    """
    Get current admin user (authorization check)

    Raises:
        AuthorizationError: If the user's email is not the configured admin
    """
    if not settings.is_admin_email(current_user.email):
        raise AuthorizationError("Admin access required")
    return current_user


def require_csrf(
    request: Request,
    claims: Optional[Dict[str, Any]] = Depends(get_session_claims),
    ctx: NetworkContext = Depends(get_network_context),
    auth: AuthService = Depends(get_auth_service),
) -> None:
    """Double-submit check: header must equal cookie and be bound to the session's family."""
    family_id = claims.get("fam") if claims else None
    valid = auth.csrf.validate(
        request.cookies.get(settings.CSRF_COOKIE_NAME),
        request.headers.get(settings.CSRF_HEADER_NAME),
        family_id,
    )
    if not valid:
        auth.audit.record(
            AuditEventType.CSRF_FAILED,
            user_id=int(claims["sub"]) if claims and str(claims.get("sub", "")).isdigit() else None,
            event_data={"path": request.url.path, "method": request.method},
            ctx=ctx,
            success=False,
        )
        raise CSRFValidationError()
