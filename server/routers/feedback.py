"""Support ticket routes. Submitting a ticket is public; handling them is gated."""

from datetime import date, datetime, time, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from constants import ACCESS_FEEDBACK
from core.container import container
from models.auth import AppUser
from routers.deps import require_permission
from services.feedback import FeedbackService, public_view

router = APIRouter(prefix="/api/feedback", tags=["feedback"])


class RelatedItem(BaseModel):
    type: str
    id: int


class FeedbackCreate(BaseModel):
    user_name: str = Field(default="", max_length=100)
    user_email: Optional[str] = Field(default=None, max_length=255)
    user_phone: Optional[str] = Field(default=None, max_length=50)
    title: str = Field(default="", max_length=255)
    description: str = Field(default="", max_length=10000)
    category: Optional[str] = None
    issue_type: Optional[str] = None
    related_to: Optional[RelatedItem] = None
    is_urgent: bool = False


class FeedbackPatch(BaseModel):
    title: Optional[str] = Field(default=None, max_length=255)
    description: Optional[str] = Field(default=None, max_length=10000)
    category: Optional[str] = None
    priority: Optional[str] = None
    status: Optional[str] = None
    assigned_to: Optional[str] = None
    tags: Optional[List[str]] = None
    is_urgent: Optional[bool] = None
    customer_satisfaction: Optional[int] = None


class ResponseCreate(BaseModel):
    content: str = Field(max_length=10000)
    is_public: bool
    attachments: List[str] = Field(default_factory=list)


class NoteCreate(BaseModel):
    content: str = Field(max_length=10000)


def get_feedback_service() -> FeedbackService:
    return container.feedback_service()


def _csv(value: Optional[str]) -> Optional[List[str]]:
    if not value:
        return None
    return [part.strip() for part in value.split(",") if part.strip()] or None


def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",", 1)[0].strip()
    return request.client.host if request.client else None


def _ticket_json(ticket) -> Dict[str, Any]:
    return ticket.model_dump(mode="json")


@router.post("", status_code=201)
async def create_ticket(
    payload: FeedbackCreate,
    request: Request,
    service: FeedbackService = Depends(get_feedback_service),
):
    fields = payload.model_dump()
    try:
        ticket = await service.create_ticket(
            fields,
            user_agent=request.headers.get("user-agent"),
            ip_address=_client_ip(request),
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"success": True, "ticket_number": ticket.ticket_number, "ticket": public_view(ticket)}


@router.get("")
async def list_tickets(
    status: Optional[str] = None,
    category: Optional[str] = None,
    priority: Optional[str] = None,
    assigned_to: Optional[str] = None,
    search: Optional[str] = None,
    urgent: Optional[bool] = None,
    tags: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    user: AppUser = Depends(require_permission(ACCESS_FEEDBACK)),
    service: FeedbackService = Depends(get_feedback_service),
):
    result = await service.list_tickets(
        statuses=_csv(status),
        categories=_csv(category),
        priorities=_csv(priority),
        assigned_to=assigned_to,
        search=search,
        is_urgent=urgent,
        tags=_csv(tags),
        created_from=datetime.combine(start_date, time.min, tzinfo=timezone.utc) if start_date else None,
        created_to=datetime.combine(end_date, time.max, tzinfo=timezone.utc) if end_date else None,
        page=page,
        limit=limit,
    )
    return {
        "success": True,
        "tickets": [_ticket_json(t) for t in result["tickets"]],
        "pagination": result["pagination"],
    }


@router.get("/stats")
async def ticket_stats(
    user: AppUser = Depends(require_permission(ACCESS_FEEDBACK)),
    service: FeedbackService = Depends(get_feedback_service),
):
    return {"success": True, "stats": await service.get_stats()}


@router.get("/subtasks")
async def reportable_subtasks(service: FeedbackService = Depends(get_feedback_service)):
    """Subtasks a ticket can be filed against (public)."""
    subtasks = await service.list_reportable_subtasks()
    return {"success": True, "subtasks": subtasks, "count": len(subtasks)}


@router.get("/{ticket_id}")
async def get_ticket(
    ticket_id: int,
    user: AppUser = Depends(require_permission(ACCESS_FEEDBACK)),
    service: FeedbackService = Depends(get_feedback_service),
):
    ticket = await service.get_ticket(ticket_id)
    if ticket is None:
        raise HTTPException(status_code=404, detail="Ticket not found")
    return {"success": True, "ticket": _ticket_json(ticket)}


@router.put("/{ticket_id}")
async def update_ticket(
    ticket_id: int,
    payload: FeedbackPatch,
    user: AppUser = Depends(require_permission(ACCESS_FEEDBACK)),
    service: FeedbackService = Depends(get_feedback_service),
):
    try:
        ticket = await service.update_ticket(ticket_id, payload.model_dump(exclude_unset=True), user_id=user.id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if ticket is None:
        raise HTTPException(status_code=404, detail="Ticket not found")
    return {"success": True, "ticket": _ticket_json(ticket)}


@router.delete("/{ticket_id}")
async def delete_ticket(
    ticket_id: int,
    user: AppUser = Depends(require_permission(ACCESS_FEEDBACK)),
    service: FeedbackService = Depends(get_feedback_service),
):
    if not await service.delete_ticket(ticket_id, user_id=user.id):
        raise HTTPException(status_code=404, detail="Ticket not found")
    return {"success": True}


@router.post("/{ticket_id}/responses", status_code=201)
async def add_response(
    ticket_id: int,
    payload: ResponseCreate,
    user: AppUser = Depends(require_permission(ACCESS_FEEDBACK)),
    service: FeedbackService = Depends(get_feedback_service),
):
    try:
        response = await service.add_response(ticket_id, payload.content, payload.is_public, user,
                                              attachments=payload.attachments)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if response is None:
        raise HTTPException(status_code=404, detail="Ticket not found")
    return {"success": True, "response": response}


@router.post("/{ticket_id}/notes", status_code=201)
async def add_note(
    ticket_id: int,
    payload: NoteCreate,
    user: AppUser = Depends(require_permission(ACCESS_FEEDBACK)),
    service: FeedbackService = Depends(get_feedback_service),
):
    try:
        note = await service.add_note(ticket_id, payload.content, user)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if note is None:
        raise HTTPException(status_code=404, detail="Ticket not found")
    return {"success": True, "note": note}
