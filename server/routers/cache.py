"""Server cache administration routes."""

import re
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from constants import ACCESS_CACHE_MANAGEMENT
from core.cache import CacheManager
from core.logging import get_logger
from models.auth import AppUser
from routers.deps import get_cache, get_permission_resolver, require_permission
from services.permissions import PermissionResolver

logger = get_logger(__name__)
router = APIRouter(prefix="/api", tags=["cache"])


class ClearCacheRequest(BaseModel):
    pattern: Optional[str] = None


@router.get("/admin/cache")
async def cache_stats(
    _: AppUser = Depends(require_permission(ACCESS_CACHE_MANAGEMENT)),
    cache: CacheManager = Depends(get_cache),
):
    return {"success": True, "stats": cache.stats(), "keys": sorted(cache.keys())}


@router.post("/cache/clear")
async def clear_cache(
    request: Optional[ClearCacheRequest] = None,
    user: AppUser = Depends(require_permission(ACCESS_CACHE_MANAGEMENT)),
    cache: CacheManager = Depends(get_cache),
    resolver: PermissionResolver = Depends(get_permission_resolver),
):
    """Clear everything, or only keys matching a regular expression."""
    if request is not None and request.pattern:
        try:
            removed = cache.invalidate_pattern(request.pattern)
        except re.error as e:
            raise HTTPException(status_code=400, detail=f"Invalid pattern: {e}")
    else:
        removed = cache.clear()
        resolver.invalidate()
    logger.info("Cache cleared via API", user_id=user.id, removed=removed)
    return {"success": True, "removed": removed}
