"""Daily update (announcement banner) routes."""

from typing import Any, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from constants import ACCESS_DAILY_UPDATES
from core.container import container
from models.auth import AppUser
from routers.deps import get_optional_user, get_permission_resolver, require_permission
from services.daily_updates import DailyUpdateService
from services.permissions import PermissionResolver

router = APIRouter(prefix="/api/daily-updates", tags=["daily-updates"])


class DailyUpdateCreate(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    content: str = Field(min_length=1, max_length=5000)
    type: str = "info"
    priority: int = 5
    duration_type: str = "hours"
    duration_value: Optional[int] = Field(default=24, ge=1)
    is_pinned: bool = False
    is_hidden: bool = False
    target_audience: List[str] = Field(default_factory=list)
    project_id: Optional[int] = None


class DailyUpdatePatch(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    content: Optional[str] = Field(default=None, min_length=1, max_length=5000)
    type: Optional[str] = None
    priority: Optional[int] = None
    duration_type: Optional[str] = None
    duration_value: Optional[int] = Field(default=None, ge=1)
    is_active: Optional[bool] = None
    is_pinned: Optional[bool] = None
    is_hidden: Optional[bool] = None
    target_audience: Optional[List[str]] = None
    project_id: Optional[int] = None


class SettingValue(BaseModel):
    # Checked in DailyUpdateService.set_setting; non-strings get a 400
    value: Any = None


def get_daily_update_service() -> DailyUpdateService:
    return container.daily_update_service()


async def _is_manager(user: Optional[AppUser], resolver: PermissionResolver) -> bool:
    return user is not None and await resolver.has_permission(user.id, user.role, ACCESS_DAILY_UPDATES)


@router.get("")
async def list_daily_updates(
    user: Optional[AppUser] = Depends(get_optional_user),
    resolver: PermissionResolver = Depends(get_permission_resolver),
    service: DailyUpdateService = Depends(get_daily_update_service),
):
    """Live banners for everyone; managers also see hidden and expired ones."""
    updates = await service.list_updates(include_all=await _is_manager(user, resolver))
    return {"success": True, "updates": [u.model_dump(mode="json") for u in updates], "count": len(updates)}


@router.post("", status_code=201)
async def create_daily_update(
    request: DailyUpdateCreate,
    user: AppUser = Depends(require_permission(ACCESS_DAILY_UPDATES)),
    service: DailyUpdateService = Depends(get_daily_update_service),
):
    try:
        update = await service.create_update(request.model_dump(), user_id=user.id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"success": True, "update": update.model_dump(mode="json")}


@router.get("/settings/{key}")
async def get_daily_update_setting(
    key: str,
    service: DailyUpdateService = Depends(get_daily_update_service),
):
    """Public read; the home page shows the fallback message when no banner is live."""
    setting = await service.get_setting(key)
    if setting is None:
        raise HTTPException(status_code=404, detail="Setting not found")
    return {"success": True, "key": setting.key, "value": setting.value}


@router.put("/settings/{key}")
async def put_daily_update_setting(
    key: str,
    request: SettingValue,
    user: AppUser = Depends(require_permission(ACCESS_DAILY_UPDATES)),
    service: DailyUpdateService = Depends(get_daily_update_service),
):
    try:
        setting = await service.set_setting(key, request.value)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"success": True, "key": setting.key, "value": setting.value,
            "updated_at": setting.updated_at.isoformat()}


@router.get("/{update_id}")
async def get_daily_update(
    update_id: int,
    user: Optional[AppUser] = Depends(get_optional_user),
    resolver: PermissionResolver = Depends(get_permission_resolver),
    service: DailyUpdateService = Depends(get_daily_update_service),
):
    update = await service.get_update(update_id, include_hidden=await _is_manager(user, resolver))
    if update is None:
        raise HTTPException(status_code=404, detail="Daily update not found")
    return {"success": True, "update": update.model_dump(mode="json")}


@router.put("/{update_id}")
async def update_daily_update(
    update_id: int,
    request: DailyUpdatePatch,
    user: AppUser = Depends(require_permission(ACCESS_DAILY_UPDATES)),
    service: DailyUpdateService = Depends(get_daily_update_service),
):
    try:
        update = await service.update_update(update_id, request.model_dump(exclude_unset=True), user_id=user.id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if update is None:
        raise HTTPException(status_code=404, detail="Daily update not found")
    return {"success": True, "update": update.model_dump(mode="json")}


@router.delete("/{update_id}")
async def delete_daily_update(
    update_id: int,
    user: AppUser = Depends(require_permission(ACCESS_DAILY_UPDATES)),
    service: DailyUpdateService = Depends(get_daily_update_service),
):
    if not await service.delete_update(update_id, user_id=user.id):
        raise HTTPException(status_code=404, detail="Daily update not found")
    return {"success": True}
