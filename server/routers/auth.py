"""Authentication routes for login, logout and token verification."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from core.logging import get_logger
from models.auth import AppUser
from routers.deps import (
    get_activity, get_permission_resolver, get_user_auth_service, get_optional_user, require_user,
)
from services.activity import ActivityLogger
from services.permissions import PermissionResolver
from services.user_auth import UserAuthService

logger = get_logger(__name__)
router = APIRouter(prefix="/api/auth", tags=["auth"])


class LoginRequest(BaseModel):
    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1)


@router.post("/login")
async def login(
    request: LoginRequest,
    user_auth: UserAuthService = Depends(get_user_auth_service),
    resolver: PermissionResolver = Depends(get_permission_resolver),
    activity: ActivityLogger = Depends(get_activity),
):
    """Login with username (or email) and password. Returns a bearer token."""
    user, error = await user_auth.login(request.username, request.password)

    if error:
        await activity.log_auth_activity("login_failed", username=request.username)
        raise HTTPException(status_code=401, detail=error)

    await activity.log_auth_activity("login", user_id=str(user.id), username=user.username)
    return {
        "success": True,
        "token": user_auth.create_access_token(user),
        "user": user.public_dict(),
        "permissions": await resolver.get_permission_values(user.id),
    }


@router.post("/logout")
async def logout(
    user: Optional[AppUser] = Depends(get_optional_user),
    activity: ActivityLogger = Depends(get_activity),
):
    """Tokens are stateless; the client drops its copy."""
    if user is not None:
        await activity.log_auth_activity("logout", user_id=str(user.id), username=user.username)
    return {"success": True}


@router.get("/verify")
async def verify(
    user: AppUser = Depends(require_user),
    resolver: PermissionResolver = Depends(get_permission_resolver),
):
    return {
        "success": True,
        "user": user.public_dict(),
        "permissions": await resolver.get_permission_values(user.id),
    }
