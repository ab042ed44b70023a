"""Session and CSRF cookie helpers"""

from fastapi import Response

from sessionguard.config import settings
from sessionguard.services.auth_service import AuthenticatedSession


def set_auth_cookies(response: Response, auth: AuthenticatedSession) -> None:
    """
    Set the httpOnly session cookie and the script-readable CSRF cookie

    Remembered sessions get a persistent max-age; others are browser-session
    cookies. Both cookies share one lifetime so the CSRF token never expires
    before the session it is bound to.
    """
    max_age = settings.REMEMBER_ME_EXPIRE_DAYS * 24 * 60 * 60 if auth.remember_me else None

    response.set_cookie(
        key=settings.SESSION_COOKIE_NAME,
        value=auth.cookie_value,
        max_age=max_age,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
        path="/",
    )
    response.set_cookie(
        key=settings.CSRF_COOKIE_NAME,
        value=auth.csrf_token,
        max_age=max_age,
        httponly=False,
        secure=settings.is_production,
        samesite="lax",
        path="/",
    )


def clear_auth_cookies(response: Response) -> None:
    response.delete_cookie(settings.SESSION_COOKIE_NAME, path="/", secure=settings.is_production, samesite="lax")
    response.delete_cookie(settings.CSRF_COOKIE_NAME, path="/", secure=settings.is_production, samesite="lax")
