"""Shared route dependencies: service lookups and auth gates."""

from typing import Any, Callable, Dict, Optional

from fastapi import Depends, HTTPException, Request

from constants import DATA_MANAGER_ROLES, ROLE_ADMIN
from core.cache import CacheManager
from core.config import Settings
from core.container import container
from core.database import Database
from models.auth import AppUser
from services.activity import ActivityLogger
from services.permissions import PermissionResolver
from services.user_auth import UserAuthService


def get_settings() -> Settings:
    return container.settings()


def get_database() -> Database:
    return container.database()


def get_cache() -> CacheManager:
    return container.cache()


def get_activity() -> ActivityLogger:
    return container.activity()


def get_permission_resolver() -> PermissionResolver:
    return container.permission_resolver()


def get_user_auth_service() -> UserAuthService:
    return container.user_auth_service()


async def get_optional_user(request: Request,
                            auth: UserAuthService = Depends(get_user_auth_service)) -> Optional[AppUser]:
    """The active user behind the bearer token, or None for anonymous callers."""
    return await auth.get_active_user(getattr(request.state, "token_payload", None))


async def require_user(user: Optional[AppUser] = Depends(get_optional_user)) -> AppUser:
    if user is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return user


def require_permission(*keys: str) -> Callable:
    """Dependency passing when the user holds any of the given permission keys."""

    async def checker(user: AppUser = Depends(require_user),
                      resolver: PermissionResolver = Depends(get_permission_resolver)) -> AppUser:
        if not await resolver.has_any_permission(user.id, user.role, keys):
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return user

    return checker


def is_data_manager(user: Optional[AppUser]) -> bool:
    return user is not None and user.role in DATA_MANAGER_ROLES


def actor_dict(user: Optional[AppUser]) -> Optional[Dict[str, Any]]:
    if user is None:
        return None
    return {"id": user.id, "username": user.username, "role": user.role}


async def require_admin(user: AppUser = Depends(require_user)) -> AppUser:
    if user.role != ROLE_ADMIN:
        raise HTTPException(status_code=403, detail="Admin access required")
    return user
