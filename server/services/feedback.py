"""Support tickets submitted through the public feedback form.

Tickets are numbered FB-<year>-NNN in creation order. Responses (visible to
the submitter when public) and internal notes live inline on the ticket.
"""

import math
import secrets
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy.exc import IntegrityError

from constants import (
    FEEDBACK_CATEGORIES, FEEDBACK_ISSUE_TYPES, FEEDBACK_OPEN_STATUSES, FEEDBACK_OVERDUE_HOURS,
    FEEDBACK_PRIORITIES, FEEDBACK_RELATED_TYPES, FEEDBACK_STATUSES,
)
from core.database import Database
from core.logging import get_logger
from models.auth import AppUser
from models.database import FeedbackTicket, as_utc, utcnow
from services.activity import ActivityLogger

logger = get_logger(__name__)

UPDATABLE_FIELDS = frozenset([
    "title", "description", "category", "priority", "status",
    "assigned_to", "tags", "is_urgent", "customer_satisfaction",
])

# Hidden from the submitter
PRIVATE_FIELDS = frozenset(["internal_notes", "ip_address", "user_agent"])

TICKET_NUMBER_ATTEMPTS = 5


def initial_priority(category: str, is_urgent: bool) -> str:
    if is_urgent:
        return "urgent"
    if category in ("bug_report", "technical_issue"):
        return "high"
    if category in ("feature_request", "suggestion"):
        return "low"
    return "normal"


def _check_choice(field: str, value: Any, allowed: Iterable[str]) -> None:
    if value not in allowed:
        raise ValueError(f"Invalid {field}. Must be one of: " + ", ".join(sorted(allowed)))


def _validate_changes(fields: Dict[str, Any]) -> None:
    if "category" in fields:
        _check_choice("category", fields["category"], FEEDBACK_CATEGORIES)
    if "priority" in fields:
        _check_choice("priority", fields["priority"], FEEDBACK_PRIORITIES)
    if "status" in fields:
        _check_choice("status", fields["status"], FEEDBACK_STATUSES)
    satisfaction = fields.get("customer_satisfaction")
    if satisfaction is not None and not 1 <= int(satisfaction) <= 5:
        raise ValueError("Customer satisfaction must be between 1 and 5")
    for key in ("title", "description"):
        if key in fields and not (fields[key] or "").strip():
            raise ValueError("Title and description cannot be empty")


def _matches_search(ticket: FeedbackTicket, term: str) -> bool:
    term = term.lower()
    fields = (ticket.ticket_number, ticket.title, ticket.description, ticket.user_name, ticket.user_email)
    return any(term in (value or "").lower() for value in fields)


def public_view(ticket: FeedbackTicket) -> Dict[str, Any]:
    """The ticket as its submitter may see it."""
    data = ticket.model_dump(mode="json", exclude=set(PRIVATE_FIELDS))
    data["responses"] = [r for r in data.get("responses") or [] if r.get("is_public")]
    return data


class FeedbackService:
    def __init__(self, database: Database, activity: ActivityLogger,
                 now: Callable[[], datetime] = utcnow):
        self.database = database
        self.activity = activity
        self.now = now

    async def create_ticket(self, fields: Dict[str, Any], user_agent: Optional[str] = None,
                            ip_address: Optional[str] = None) -> FeedbackTicket:
        """Validate and store a new ticket; priority is derived, not submitted."""
        if not all((fields.get(key) or "").strip() for key in ("user_name", "title", "description")):
            raise ValueError("Name, title and description are required")
        _check_choice("category", fields.get("category"), FEEDBACK_CATEGORIES)
        _check_choice("issue_type", fields.get("issue_type"), FEEDBACK_ISSUE_TYPES)

        related_to = await self._related(fields.get("related_to"))
        is_urgent = bool(fields.get("is_urgent"))
        now = as_utc(self.now())
        prefix = f"FB-{now.year}-"

        saved = None
        for attempt in range(TICKET_NUMBER_ATTEMPTS):
            number = f"{prefix}{await self.database.count_feedback_tickets(prefix) + 1 + attempt:03d}"
            try:
                saved = await self.database.create_feedback_ticket(FeedbackTicket(
                    ticket_number=number,
                    user_name=fields["user_name"].strip(),
                    user_email=(fields.get("user_email") or "").strip() or None,
                    user_phone=(fields.get("user_phone") or "").strip() or None,
                    title=fields["title"].strip(),
                    description=fields["description"].strip(),
                    category=fields["category"],
                    issue_type=fields["issue_type"],
                    priority=initial_priority(fields["category"], is_urgent),
                    related_to=related_to,
                    is_urgent=is_urgent,
                    user_agent=user_agent,
                    ip_address=ip_address,
                    created_at=now,
                    updated_at=now,
                ))
                break
            except IntegrityError:
                # Another ticket took this number between count and insert
                logger.warning("Ticket number taken, retrying", ticket_number=number)
        if saved is None:
            raise RuntimeError("Could not allocate a ticket number")

        await self.activity.log_feedback_activity(
            "created", saved.id, saved.title, user_type="user",
            details={"ticket_number": saved.ticket_number, "category": saved.category},
        )
        logger.info("Feedback ticket created", ticket_number=saved.ticket_number,
                    category=saved.category, priority=saved.priority)
        return saved

    async def _related(self, related: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        """Attach the title of the referenced project, task or subtask."""
        if not related:
            return None
        kind = related.get("type")
        _check_choice("related type", kind, FEEDBACK_RELATED_TYPES)
        try:
            target_id = int(related.get("id"))
        except (TypeError, ValueError):
            raise ValueError("Related item id must be an integer")

        if kind == "project":
            target = await self.database.get_project(target_id)
            title = target.name if target else None
        elif kind == "task":
            target = await self.database.get_task(target_id)
            title = target.title if target else None
        else:
            target = await self.database.get_subtask(target_id)
            title = target.title if target else None
        return {"type": kind, "id": target_id, "title": title}

    async def get_ticket(self, ticket_id: int) -> Optional[FeedbackTicket]:
        return await self.database.get_feedback_ticket(ticket_id)

    async def list_tickets(self, *, statuses: Optional[List[str]] = None,
                           categories: Optional[List[str]] = None,
                           priorities: Optional[List[str]] = None,
                           assigned_to: Optional[str] = None,
                           search: Optional[str] = None,
                           is_urgent: Optional[bool] = None,
                           tags: Optional[List[str]] = None,
                           created_from: Optional[datetime] = None,
                           created_to: Optional[datetime] = None,
                           page: int = 1, limit: int = 20) -> Dict[str, Any]:
        """Filtered, newest-first page of tickets with pagination metadata."""
        tickets = await self.database.list_feedback_tickets(
            statuses=statuses, categories=categories, priorities=priorities,
            assigned_to=assigned_to, is_urgent=is_urgent,
            created_from=created_from, created_to=created_to,
        )
        if search and search.strip():
            tickets = [t for t in tickets if _matches_search(t, search.strip())]
        if tags:
            wanted = set(tags)
            tickets = [t for t in tickets if wanted.intersection(t.tags or [])]

        total = len(tickets)
        start = (page - 1) * limit
        return {
            "tickets": tickets[start:start + limit],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "total_pages": math.ceil(total / limit) if total else 0,
                "has_more": start + limit < total,
            },
        }

    async def update_ticket(self, ticket_id: int, fields: Dict[str, Any],
                            user_id: Optional[int] = None) -> Optional[FeedbackTicket]:
        current = await self.database.get_feedback_ticket(ticket_id)
        if current is None:
            return None

        changes = {k: v for k, v in fields.items() if k in UPDATABLE_FIELDS}
        _validate_changes(changes)
        for key in ("title", "description"):
            if key in changes:
                changes[key] = changes[key].strip()

        now = as_utc(self.now())
        if changes.get("status") == "resolved" and current.status != "resolved":
            changes["resolved_at"] = now
        if changes.get("status") == "closed" and current.status != "closed":
            changes["closed_at"] = now

        saved = await self.database.update_feedback_ticket(ticket_id, changes)
        await self.activity.log_feedback_activity(
            "updated", ticket_id, saved.title, user_id=str(user_id) if user_id else None,
            details={"fields": sorted(changes)},
        )
        logger.info("Feedback ticket updated", ticket_number=saved.ticket_number, fields=sorted(changes))
        return saved

    async def delete_ticket(self, ticket_id: int, user_id: Optional[int] = None) -> bool:
        current = await self.database.get_feedback_ticket(ticket_id)
        if current is None:
            return False
        await self.database.delete_feedback_ticket(ticket_id)
        await self.activity.log_feedback_activity(
            "deleted", ticket_id, current.title, user_id=str(user_id) if user_id else None,
            details={"ticket_number": current.ticket_number},
        )
        return True

    async def add_response(self, ticket_id: int, content: str, is_public: bool,
                           author: AppUser, attachments: Optional[List[str]] = None) -> Optional[Dict[str, Any]]:
        if not (content or "").strip():
            raise ValueError("Response content is required")
        ticket = await self.database.get_feedback_ticket(ticket_id)
        if ticket is None:
            return None

        response = {
            "response_id": f"resp_{secrets.token_hex(6)}",
            "author_type": "admin",
            "author_name": author.username,
            "author_id": str(author.id),
            "content": content.strip(),
            "is_public": is_public,
            "attachments": list(attachments or []),
            "created_at": as_utc(self.now()).isoformat(),
        }
        await self.database.update_feedback_ticket(ticket_id, {"responses": [*ticket.responses, response]})
        await self.activity.log_feedback_activity(
            "responded", ticket_id, ticket.title, user_id=str(author.id),
            details={"response_id": response["response_id"], "is_public": is_public},
        )
        return response

    async def add_note(self, ticket_id: int, content: str, author: AppUser) -> Optional[Dict[str, Any]]:
        if not (content or "").strip():
            raise ValueError("Note content is required")
        ticket = await self.database.get_feedback_ticket(ticket_id)
        if ticket is None:
            return None

        note = {
            "note_id": f"note_{secrets.token_hex(6)}",
            "author_name": author.username,
            "author_id": str(author.id),
            "content": content.strip(),
            "created_at": as_utc(self.now()).isoformat(),
        }
        await self.database.update_feedback_ticket(ticket_id, {"internal_notes": [*ticket.internal_notes, note]})
        logger.info("Internal note added", ticket_number=ticket.ticket_number, note_id=note["note_id"])
        return note

    async def get_stats(self) -> Dict[str, Any]:
        """Counts per status/category/priority plus resolution and backlog figures."""
        tickets = await self.database.list_feedback_tickets()
        now = as_utc(self.now())
        today = now.date()
        overdue_before = now - timedelta(hours=FEEDBACK_OVERDUE_HOURS)

        by_status = {status: 0 for status in FEEDBACK_STATUSES}
        by_category = {category: 0 for category in sorted(FEEDBACK_CATEGORIES)}
        by_priority = {priority: 0 for priority in FEEDBACK_PRIORITIES}
        resolution_hours: List[float] = []
        ratings: List[int] = []
        new_today = resolved_today = overdue = 0

        for ticket in tickets:
            created = as_utc(ticket.created_at)
            resolved = as_utc(ticket.resolved_at)
            by_status[ticket.status] = by_status.get(ticket.status, 0) + 1
            by_category[ticket.category] = by_category.get(ticket.category, 0) + 1
            by_priority[ticket.priority] = by_priority.get(ticket.priority, 0) + 1
            if resolved is not None:
                resolution_hours.append((resolved - created).total_seconds() / 3600)
                if resolved.date() == today:
                    resolved_today += 1
            if ticket.customer_satisfaction is not None:
                ratings.append(ticket.customer_satisfaction)
            if created.date() == today:
                new_today += 1
            if ticket.status in FEEDBACK_OPEN_STATUSES and created < overdue_before and not ticket.responses:
                overdue += 1

        return {
            "total": len(tickets),
            "by_status": by_status,
            "by_category": by_category,
            "by_priority": by_priority,
            "avg_resolution_time": round(sum(resolution_hours) / len(resolution_hours), 1)
            if resolution_hours else 0,
            "customer_satisfaction_avg": round(sum(ratings) / len(ratings), 1) if ratings else 0,
            "new_today": new_today,
            "resolved_today": resolved_today,
            "overdue_tickets": overdue,
        }

    async def list_reportable_subtasks(self) -> List[Dict[str, Any]]:
        """Visible subtasks of visible tasks, for the form's "related to" picker."""
        result = []
        for task in await self.database.get_all_tasks(include_hidden=False):
            for subtask in await self.database.get_subtasks_by_task(task.id, include_hidden=False):
                result.append({
                    "id": subtask.id,
                    "title": subtask.title,
                    "dataco_number": subtask.dataco_number,
                    "task_id": task.id,
                    "task_title": task.title,
                })
        return result
