"""User management and per-user permission routes."""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, EmailStr, Field

from constants import (
    ACCESS_USERS_MANAGEMENT, CREATE_USERS, DELETE_USERS, EDIT_USERS, ROLE_DATA_MANAGER,
)
from core.database import Database
from core.logging import get_logger
from models.auth import AppUser
from routers.deps import (
    actor_dict, get_database, get_permission_resolver, get_user_auth_service,
    require_permission, require_user,
)
from services.permissions import PermissionResolver, UserNotFoundError
from services.user_auth import UserAuthService

logger = get_logger(__name__)
router = APIRouter(prefix="/api/users", tags=["users"])


class CreateUserRequest(BaseModel):
    username: str = Field(min_length=2, max_length=100)
    email: EmailStr
    password: str = Field(min_length=8)
    role: str = ROLE_DATA_MANAGER


class UpdateUserRequest(BaseModel):
    username: Optional[str] = Field(default=None, min_length=2, max_length=100)
    email: Optional[EmailStr] = None
    password: Optional[str] = Field(default=None, min_length=8)
    role: Optional[str] = None
    is_active: Optional[bool] = None


class UpdatePermissionsRequest(BaseModel):
    permissions: Dict[str, Any]


async def _can_manage(user: AppUser, resolver: PermissionResolver, *keys: str) -> bool:
    return await resolver.has_any_permission(user.id, user.role, keys)


@router.get("")
async def list_users(
    _: AppUser = Depends(require_permission(ACCESS_USERS_MANAGEMENT)),
    database: Database = Depends(get_database),
):
    users = await database.list_users()
    return {"success": True, "users": [u.public_dict() for u in users], "count": len(users)}


@router.post("", status_code=201)
async def create_user(
    request: CreateUserRequest,
    actor: AppUser = Depends(require_permission(CREATE_USERS)),
    user_auth: UserAuthService = Depends(get_user_auth_service),
):
    user, error = await user_auth.create_user(
        username=request.username, email=request.email,
        password=request.password, role=request.role,
    )
    if error:
        raise HTTPException(status_code=400, detail=error)
    logger.info("User created via API", user_id=user.id, actor_id=actor.id)
    return {"success": True, "user": user.public_dict()}


@router.get("/me")
async def get_me(
    user: AppUser = Depends(require_user),
    resolver: PermissionResolver = Depends(get_permission_resolver),
):
    return {
        "success": True,
        "user": user.public_dict(),
        "permissions": await resolver.get_permission_values(user.id),
    }


@router.get("/{user_id}")
async def get_user(
    user_id: int,
    actor: AppUser = Depends(require_user),
    resolver: PermissionResolver = Depends(get_permission_resolver),
    database: Database = Depends(get_database),
):
    if actor.id != user_id and not await _can_manage(actor, resolver, ACCESS_USERS_MANAGEMENT):
        raise HTTPException(status_code=403, detail="Insufficient permissions")
    user = await database.get_user(user_id)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return {"success": True, "user": user.public_dict()}


@router.put("/{user_id}")
async def update_user(
    user_id: int,
    request: UpdateUserRequest,
    actor: AppUser = Depends(require_user),
    resolver: PermissionResolver = Depends(get_permission_resolver),
    user_auth: UserAuthService = Depends(get_user_auth_service),
):
    updates = request.model_dump(exclude_none=True)
    is_manager = await _can_manage(actor, resolver, EDIT_USERS)
    if not is_manager:
        # Users may edit their own profile but not their role or status
        if actor.id != user_id or "role" in updates or "is_active" in updates:
            raise HTTPException(status_code=403, detail="Insufficient permissions")

    user, error = await user_auth.update_user(user_id, updates)
    if error == "User not found":
        raise HTTPException(status_code=404, detail=error)
    if error:
        raise HTTPException(status_code=400, detail=error)

    resolver.invalidate(user_id)
    return {"success": True, "user": user.public_dict()}


@router.delete("/{user_id}")
async def delete_user(
    user_id: int,
    actor: AppUser = Depends(require_permission(DELETE_USERS)),
    resolver: PermissionResolver = Depends(get_permission_resolver),
    database: Database = Depends(get_database),
):
    if actor.id == user_id:
        raise HTTPException(status_code=400, detail="Cannot delete your own account")
    if not await database.delete_user(user_id):
        raise HTTPException(status_code=404, detail="User not found")
    resolver.invalidate(user_id)
    logger.info("User deleted", user_id=user_id, actor_id=actor.id)
    return {"success": True}


@router.get("/{user_id}/permissions")
async def get_user_permissions(
    user_id: int,
    actor: AppUser = Depends(require_user),
    resolver: PermissionResolver = Depends(get_permission_resolver),
    database: Database = Depends(get_database),
):
    """Readable by the user themself or by user managers."""
    if actor.id != user_id and not await _can_manage(actor, resolver, ACCESS_USERS_MANAGEMENT, EDIT_USERS):
        raise HTTPException(status_code=403, detail="Insufficient permissions")

    try:
        effective = await resolver.get_effective_permissions(user_id)
    except UserNotFoundError:
        raise HTTPException(status_code=404, detail="User not found")

    user = await database.get_user(user_id)
    return {
        "success": True,
        "user": {"id": user.id, "username": user.username, "role": user.role},
        "permissions": {key: perm.to_dict() for key, perm in sorted(effective.items())},
    }


@router.put("/{user_id}/permissions")
async def update_user_permissions(
    user_id: int,
    request: UpdatePermissionsRequest,
    actor: AppUser = Depends(require_permission(EDIT_USERS)),
    resolver: PermissionResolver = Depends(get_permission_resolver),
):
    try:
        changed = await resolver.update_permissions(user_id, request.permissions, actor=actor_dict(actor))
    except UserNotFoundError:
        raise HTTPException(status_code=404, detail="User not found")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    effective = await resolver.get_effective_permissions(user_id)
    return {
        "success": True,
        "changed": changed,
        "permissions": {key: perm.to_dict() for key, perm in sorted(effective.items())},
    }


@router.delete("/{user_id}/permissions/{permission_key}")
async def reset_user_permission(
    user_id: int,
    permission_key: str,
    _: AppUser = Depends(require_permission(EDIT_USERS)),
    resolver: PermissionResolver = Depends(get_permission_resolver),
):
    """Drop one override so the role default applies again."""
    try:
        removed = await resolver.reset_override(user_id, permission_key)
    except UserNotFoundError:
        raise HTTPException(status_code=404, detail="User not found")
    return {"success": True, "removed": removed}
