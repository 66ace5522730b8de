"""Visitor identity routes."""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field

from constants import ACCESS_ADMIN_DASHBOARD
from core.container import container
from core.logging import get_logger
from models.auth import AppUser
from routers.deps import actor_dict, get_optional_user, get_permission_resolver, require_admin
from services.permissions import PermissionResolver
from services.visitors import VisitorNotFoundError, VisitorService, profile_to_dict

logger = get_logger(__name__)
router = APIRouter(prefix="/api/visitors", tags=["visitors"])


class RegisterVisitorRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    visitor_id: str = Field(alias="visitorId", min_length=1, max_length=100)
    name: str
    metadata: Optional[Dict[str, Any]] = None


class UpdateVisitorRequest(BaseModel):
    name: Optional[str] = None


class TrackActionRequest(BaseModel):
    action: str = Field(min_length=1, max_length=500)
    category: str = "system"
    metadata: Optional[Dict[str, Any]] = None


def get_visitor_service() -> VisitorService:
    return container.visitor_service()


@router.post("")
async def register_visitor(
    request: RegisterVisitorRequest,
    visitors: VisitorService = Depends(get_visitor_service),
):
    """Create or rename a visitor profile."""
    try:
        profile = await visitors.create_or_update_profile(request.visitor_id, request.name, request.metadata)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"success": True, "profile": profile_to_dict(profile), "isNew": profile.total_visits == 1}


@router.get("")
async def get_visitors(
    visitor_id: Optional[str] = Query(default=None, alias="visitorId"),
    limit: int = Query(default=100, ge=1, le=1000),
    user: Optional[AppUser] = Depends(get_optional_user),
    resolver: PermissionResolver = Depends(get_permission_resolver),
    visitors: VisitorService = Depends(get_visitor_service),
):
    """One profile by visitorId, or the full list for dashboard users."""
    if visitor_id:
        profile = await visitors.get_profile(visitor_id)
        if profile is None:
            raise HTTPException(status_code=404, detail="Visitor profile not found")
        return {"success": True, "profile": profile_to_dict(profile)}

    if user is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    if not await resolver.has_permission(user.id, user.role, ACCESS_ADMIN_DASHBOARD):
        raise HTTPException(status_code=403, detail="Insufficient permissions")

    profiles = await visitors.list_profiles(limit)
    return {"success": True, "profiles": [profile_to_dict(p) for p in profiles], "count": len(profiles)}


@router.put("/{visitor_id}")
async def update_visitor(
    visitor_id: str,
    request: UpdateVisitorRequest,
    admin: AppUser = Depends(require_admin),
    visitors: VisitorService = Depends(get_visitor_service),
):
    """Rename a visitor, or clear the name with null / empty string."""
    try:
        profile = await visitors.update_name(visitor_id, request.name, actor=actor_dict(admin))
    except VisitorNotFoundError:
        raise HTTPException(status_code=404, detail="Visitor not found")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    cleared = profile.name is None
    return {
        "success": True,
        "profile": profile_to_dict(profile),
        "message": "Visitor name removed" if cleared else "Visitor name updated",
    }


@router.delete("/{visitor_id}")
async def delete_visitor(
    visitor_id: str,
    admin: AppUser = Depends(require_admin),
    visitors: VisitorService = Depends(get_visitor_service),
):
    try:
        await visitors.delete_profile(visitor_id, actor=actor_dict(admin))
    except VisitorNotFoundError:
        raise HTTPException(status_code=404, detail="Visitor not found")
    return {"success": True}


@router.get("/{visitor_id}/activity")
async def get_visitor_activity(
    visitor_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    visitors: VisitorService = Depends(get_visitor_service),
):
    try:
        activities = await visitors.get_activity(visitor_id, limit=limit)
    except VisitorNotFoundError:
        raise HTTPException(status_code=404, detail="Visitor not found")
    profile = await visitors.get_profile(visitor_id)
    return {
        "success": True,
        "visitor": profile_to_dict(profile),
        "activities": [a.model_dump(mode="json") for a in activities],
    }


@router.post("/{visitor_id}/activity")
async def track_visitor_action(
    visitor_id: str,
    request: TrackActionRequest,
    visitors: VisitorService = Depends(get_visitor_service),
):
    if await visitors.get_profile(visitor_id) is None:
        raise HTTPException(status_code=404, detail="Visitor not found")
    try:
        await visitors.track_action(visitor_id, request.action, request.category, request.metadata)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"success": True}
