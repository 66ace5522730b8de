"""Analytics dashboard routes."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field

from constants import ACCESS_ANALYTICS
from core.container import container
from models.auth import AppUser
from routers.deps import require_permission
from services.analytics import AnalyticsService

router = APIRouter(prefix="/api/analytics", tags=["analytics"])


class LogVisitRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    visitor_id: Optional[str] = Field(default=None, alias="visitorId", max_length=100)
    is_unique_visitor: bool = Field(default=False, alias="isUniqueVisitor")


def get_analytics_service() -> AnalyticsService:
    return container.analytics_service()


@router.get("")
async def get_analytics(
    range_value: str = Query(default="30d", alias="range"),
    _: AppUser = Depends(require_permission(ACCESS_ANALYTICS)),
    analytics: AnalyticsService = Depends(get_analytics_service),
):
    try:
        summary = await analytics.compute_summary(range_value)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"success": True, "analytics": summary}


@router.post("")
async def log_visit(
    request: Optional[LogVisitRequest] = None,
    analytics: AnalyticsService = Depends(get_analytics_service),
):
    request = request or LogVisitRequest()
    counts = await analytics.log_visit(request.visitor_id, request.is_unique_visitor)
    return {"success": True, **counts}
