"""User account routes"""

from fastapi import APIRouter, Depends, Response, status

from sessionguard.core.context import NetworkContext
from sessionguard.core.exceptions import unwrap
from sessionguard.schemas.user import PasswordChangeRequest, UserResponse
from sessionguard.services.auth_service import AuthService
from sessionguard.api.cookies import clear_auth_cookies
from sessionguard.api.deps import (
    CurrentSession,
    get_auth_service,
    get_current_session,
    get_current_user,
    get_network_context,
    require_csrf,
)
from sessionguard.models.user import User

router = APIRouter()


@router.get("/me", response_model=UserResponse)
def get_my_profile(
    current_user: User = Depends(get_current_user)
):
    """
    Get current user profile
    
    Args:
        current_user: Current authenticated user
        
    Returns:
        User profile
    """
    return UserResponse.model_validate(current_user)


@router.post("/me/password", status_code=status.HTTP_200_OK, dependencies=[Depends(require_csrf)])
def change_password(
    body: PasswordChangeRequest,
    current: CurrentSession = Depends(get_current_session),
    ctx: NetworkContext = Depends(get_network_context),
    auth: AuthService = Depends(get_auth_service),
):
    """
    Change password with the current password
    
    Other login families of the account are signed out; this one stays.
    """
    unwrap(
        auth.change_password(
            current.user,
            current.session,
            body.current_password,
            body.new_password,
            body.confirm_password,
            ctx,
        )
    )
    return {"success": True, "message": "Password changed successfully"}


@router.delete("/me", status_code=status.HTTP_200_OK, dependencies=[Depends(require_csrf)])
def delete_my_account(
    response: Response,
    current_user: User = Depends(get_current_user),
    ctx: NetworkContext = Depends(get_network_context),
    auth: AuthService = Depends(get_auth_service),
):
    """Soft-delete the account and sign out everywhere"""
    unwrap(auth.delete_account(current_user, ctx))
    clear_auth_cookies(response)
    return {"success": True, "message": "Account deleted"}
