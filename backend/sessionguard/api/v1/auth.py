"""Authentication routes"""

from fastapi import APIRouter, Depends, Query, Request, Response, status
from fastapi.responses import RedirectResponse
from typing import List, Optional
from urllib.parse import urlencode

from sessionguard.config import settings
from sessionguard.core.context import NetworkContext
from sessionguard.core.exceptions import ResourceNotFoundError, SessionInvalidError, unwrap
from sessionguard.schemas.auth import (
    ActiveSessionResponse,
    EmailRequest,
    LoginRequest,
    PasswordResetConfirm,
    RegisterRequest,
    SessionResponse,
)
from sessionguard.schemas.user import UserResponse
from sessionguard.services.auth_service import AuthenticatedSession, AuthService
from sessionguard.api.cookies import clear_auth_cookies, set_auth_cookies
from sessionguard.api.deps import (
    CurrentSession,
    get_auth_service,
    get_current_session,
    get_network_context,
    get_session_claims,
    require_csrf,
)

router = APIRouter()

RESET_REQUESTED_MESSAGE = "If an account exists for that email, a password reset link has been sent."
VERIFICATION_REQUESTED_MESSAGE = "If that email needs verification, a new link has been sent."


def _session_response(authenticated: AuthenticatedSession, **extra) -> SessionResponse:
    return SessionResponse(
        user=UserResponse.model_validate(authenticated.user),
        csrf_token=authenticated.csrf_token,
        remember_me=authenticated.remember_me,
        expires_at=authenticated.expires_at,
        **extra,
    )


@router.post("/login", response_model=SessionResponse, status_code=status.HTTP_200_OK)
def login(
    credentials: LoginRequest,
    response: Response,
    ctx: NetworkContext = Depends(get_network_context),
    auth: AuthService = Depends(get_auth_service),
):
    """
    Login endpoint - verify credentials and start a new session family
    
    Args:
        credentials: Email, password and remember-me flag
        
    Returns:
        User info and the CSRF token; the session itself travels in an httpOnly cookie
    """
    authenticated = unwrap(auth.login(credentials.email, credentials.password, credentials.remember_me, ctx))
    set_auth_cookies(response, authenticated)
    return _session_response(authenticated)


@router.post("/refresh", response_model=SessionResponse)
def refresh_session(
    response: Response,
    claims: Optional[dict] = Depends(get_session_claims),
    ctx: NetworkContext = Depends(get_network_context),
    auth: AuthService = Depends(get_auth_service),
):
    """
    Rotate the session cookie
    
    Presenting an already-rotated cookie revokes the whole login family.
    """
    if not claims:
        raise SessionInvalidError()
    authenticated = unwrap(auth.refresh(claims["sid"], claims["rt"], ctx))
    set_auth_cookies(response, authenticated)
    return _session_response(authenticated)


@router.post("/signout", status_code=status.HTTP_200_OK, dependencies=[Depends(require_csrf)])
def sign_out(
    response: Response,
    current: CurrentSession = Depends(get_current_session),
    ctx: NetworkContext = Depends(get_network_context),
    auth: AuthService = Depends(get_auth_service),
):
    """Sign out every device sharing this login lineage"""
    revoked = unwrap(auth.sign_out(current.session, ctx))
    clear_auth_cookies(response)
    return {
        "success": True,
        "message": "Signed out successfully",
        "revoked_sessions": revoked,
    }


@router.post("/register", response_model=SessionResponse, status_code=status.HTTP_201_CREATED)
def register(
    body: RegisterRequest,
    response: Response,
    ctx: NetworkContext = Depends(get_network_context),
    auth: AuthService = Depends(get_auth_service),
):
    """Create an account, sign it in and send a verification email"""
    result = unwrap(auth.register(body.email, body.password, body.confirm_password, ctx))
    set_auth_cookies(response, result.auth)
    return _session_response(result.auth, verification_email_sent=result.verification_email_sent)


@router.post("/password-reset/request", status_code=status.HTTP_200_OK)
def request_password_reset(
    body: EmailRequest,
    ctx: NetworkContext = Depends(get_network_context),
    auth: AuthService = Depends(get_auth_service),
):
    unwrap(auth.request_password_reset(body.email, ctx))
    return {"success": True, "message": RESET_REQUESTED_MESSAGE}


@router.post("/password-reset/confirm", status_code=status.HTTP_200_OK)
def confirm_password_reset(
    body: PasswordResetConfirm,
    response: Response,
    ctx: NetworkContext = Depends(get_network_context),
    auth: AuthService = Depends(get_auth_service),
):
    """Set a new password with a reset token; every session of the account is revoked"""
    unwrap(auth.reset_password(body.token, body.new_password, body.confirm_password, ctx))
    clear_auth_cookies(response)
    return {"success": True, "message": "Password has been reset. Please sign in again."}


@router.post("/email-verification/resend", status_code=status.HTTP_200_OK)
def resend_email_verification(
    body: EmailRequest,
    ctx: NetworkContext = Depends(get_network_context),
    auth: AuthService = Depends(get_auth_service),
):
    unwrap(auth.resend_email_verification(body.email, ctx))
    return {"success": True, "message": VERIFICATION_REQUESTED_MESSAGE}


@router.get("/email-verification/confirm", status_code=status.HTTP_200_OK)
def confirm_email_verification(
    token: str = Query(..., min_length=1),
    ctx: NetworkContext = Depends(get_network_context),
    auth: AuthService = Depends(get_auth_service),
):
    user = unwrap(auth.verify_email(token, ctx))
    return {
        "success": True,
        "message": "Email verified",
        "user": UserResponse.model_validate(user),
    }


@router.get("/oauth/{provider}/callback")
def oauth_callback(
    provider: str,
    code: Optional[str] = None,
    error: Optional[str] = None,
    ctx: NetworkContext = Depends(get_network_context),
    auth: AuthService = Depends(get_auth_service),
):
    """
    Provider redirect target
    
    Browsers land here, so failures redirect back to the sign-in page with
    an error code instead of returning JSON.
    """
    base_url = settings.PUBLIC_BASE_URL.rstrip("/")
    if error:
        return RedirectResponse(f"{base_url}/login?{urlencode({'error': 'oauth_denied'})}", status_code=status.HTTP_302_FOUND)

    outcome = auth.oauth_callback(provider, code or "", ctx)
    if not outcome.ok:
        query = urlencode({"error": outcome.denial.kind.value})
        return RedirectResponse(f"{base_url}/login?{query}", status_code=status.HTTP_302_FOUND)

    redirect = RedirectResponse(f"{base_url}/", status_code=status.HTTP_302_FOUND)
    set_auth_cookies(redirect, outcome.value)
    return redirect


@router.get("/sessions", response_model=List[ActiveSessionResponse])
def list_sessions(
    current: CurrentSession = Depends(get_current_session),
    auth: AuthService = Depends(get_auth_service),
):
    """Active sessions of the signed-in user with their device context"""
    return [
        ActiveSessionResponse(
            id=session.id,
            current=session.id == current.session.id,
            remember_me=session.remember_me,
            ip_address=session.ip_address,
            user_agent=session.user_agent,
            created_at=session.created_at,
            last_used_at=session.last_used_at,
            expires_at=session.expires_at,
        )
        for session in auth.list_sessions(current.user)
    ]


@router.post("/sessions/revoke-others", status_code=status.HTTP_200_OK, dependencies=[Depends(require_csrf)])
def revoke_other_sessions(
    current: CurrentSession = Depends(get_current_session),
    ctx: NetworkContext = Depends(get_network_context),
    auth: AuthService = Depends(get_auth_service),
):
    """Sign out every other device; this browser stays signed in"""
    revoked = auth.revoke_other_sessions(current.user, current.session, ctx)
    return {"success": True, "revoked_sessions": revoked}


@router.delete("/sessions/{session_id}", status_code=status.HTTP_200_OK, dependencies=[Depends(require_csrf)])
def revoke_session(
    session_id: str,
    response: Response,
    current: CurrentSession = Depends(get_current_session),
    ctx: NetworkContext = Depends(get_network_context),
    auth: AuthService = Depends(get_auth_service),
):
    """
    Revoke one listed session and the login family it belongs to

    Revoking the current family signs this browser out as well.
    """
    revoked = auth.revoke_session(current.user, session_id, ctx)
    if revoked is None:
        raise ResourceNotFoundError("Session")
    signed_out = auth.sessions.store.get(session_id).token_family == current.session.token_family
    if signed_out:
        clear_auth_cookies(response)
    return {"success": True, "revoked_sessions": revoked, "signed_out": signed_out}
