"""SQLModel database models and tables."""

from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
from sqlmodel import SQLModel, Field, Column, DateTime, JSON
from sqlalchemy import func


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything is stored as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Project(SQLModel, table=True):
    """A project groups driving tasks."""

    __tablename__ = "projects"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True, unique=True, max_length=255)
    description: Optional[str] = Field(default=None, max_length=2000)
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )
    updated_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), onupdate=func.now())
    )


class Task(SQLModel, table=True):
    """A data-collection task assigned to drivers."""

    __tablename__ = "tasks"

    id: Optional[int] = Field(default=None, primary_key=True)
    project_id: int = Field(foreign_key="projects.id", index=True)
    title: str = Field(max_length=255)
    subtitle: Optional[str] = Field(default=None, max_length=255)
    dataco_number: str = Field(max_length=100, index=True)
    description: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    type: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    locations: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    target_car: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    day_time: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    amount_needed: Optional[int] = Field(default=None, ge=0)
    lidar: bool = Field(default=False)
    priority: int = Field(default=0, ge=0, le=10)
    is_visible: bool = Field(default=True)
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )
    updated_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), onupdate=func.now())
    )


class Subtask(SQLModel, table=True):
    """A concrete recording scenario inside a task."""

    __tablename__ = "subtasks"

    id: Optional[int] = Field(default=None, primary_key=True)
    task_id: int = Field(foreign_key="tasks.id", index=True)
    title: str = Field(max_length=255)
    subtitle: Optional[str] = Field(default=None, max_length=255)
    image: Optional[str] = Field(default=None)
    dataco_number: str = Field(max_length=100)
    type: str = Field(default="events", max_length=20)  # 'events' or 'hours'
    amount_needed: Optional[int] = Field(default=None, ge=0)
    labels: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    target_car: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    weather: Optional[str] = Field(default=None, max_length=50)
    scene: Optional[str] = Field(default=None, max_length=50)
    day_time: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    is_visible: bool = Field(default=True)
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )
    updated_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), onupdate=func.now())
    )


class DailyUpdate(SQLModel, table=True):
    """Announcement banner shown on the home page."""

    __tablename__ = "daily_updates"

    id: Optional[int] = Field(default=None, primary_key=True)
    title: str = Field(max_length=255)
    content: str = Field(max_length=5000)
    type: str = Field(default="info", max_length=20)
    priority: int = Field(default=5, ge=1, le=10)
    duration_type: str = Field(default="permanent", max_length=20)
    duration_value: Optional[int] = Field(default=None, ge=1)
    expires_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    is_active: bool = Field(default=True)
    is_pinned: bool = Field(default=False)
    is_hidden: bool = Field(default=False)
    target_audience: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    project_id: Optional[int] = Field(default=None, foreign_key="projects.id")
    created_by: Optional[int] = Field(default=None)
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )
    updated_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), onupdate=func.now())
    )


class DailyUpdateSetting(SQLModel, table=True):
    """Key/value settings for the banner area (e.g. the fallback message)."""

    __tablename__ = "daily_update_settings"

    key: str = Field(primary_key=True, max_length=100)
    value: str
    updated_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True))
    )


class FeedbackTicket(SQLModel, table=True):
    """Support ticket submitted from the public feedback form.

    Responses and internal notes are stored inline as JSON lists; they are
    only ever read together with their ticket.
    """

    __tablename__ = "feedback_tickets"

    id: Optional[int] = Field(default=None, primary_key=True)
    ticket_number: str = Field(max_length=20, unique=True, index=True)
    user_name: str = Field(max_length=100)
    user_email: Optional[str] = Field(default=None, max_length=255)
    user_phone: Optional[str] = Field(default=None, max_length=50)
    title: str = Field(max_length=255)
    description: str
    category: str = Field(max_length=50, index=True)
    issue_type: str = Field(max_length=50)
    priority: str = Field(default="normal", max_length=20, index=True)
    status: str = Field(default="new", max_length=20, index=True)
    related_to: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    assigned_to: Optional[str] = Field(default=None, max_length=100)
    tags: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    responses: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    internal_notes: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    is_urgent: bool = Field(default=False)
    customer_satisfaction: Optional[int] = Field(default=None, ge=1, le=5)
    user_agent: Optional[str] = Field(default=None, max_length=500)
    ip_address: Optional[str] = Field(default=None, max_length=64)
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )
    updated_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), onupdate=func.now())
    )
    resolved_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    closed_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class VisitorProfile(SQLModel, table=True):
    """Server-side record of an anonymous visitor identity."""

    __tablename__ = "visitor_profiles"

    visitor_id: str = Field(primary_key=True, max_length=100)
    name: Optional[str] = Field(default=None, max_length=50)
    metadata_json: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    first_seen: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )
    last_seen: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True))
    )
    total_visits: int = Field(default=1)
    total_actions: int = Field(default=0)


class ActivityLog(SQLModel, table=True):
    """Audit trail of user and visitor actions. Action text is Hebrew."""

    __tablename__ = "activity_logs"

    id: Optional[int] = Field(default=None, primary_key=True)
    timestamp: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), index=True)
    )
    user_id: Optional[str] = Field(default=None, max_length=100, index=True)
    user_type: str = Field(default="user", max_length=20)  # admin / user / visitor / system
    action: str = Field(max_length=500)
    category: str = Field(max_length=30, index=True)
    target_id: Optional[str] = Field(default=None, max_length=100)
    target_type: Optional[str] = Field(default=None, max_length=50)
    target_title: Optional[str] = Field(default=None, max_length=255)
    details: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    severity: str = Field(default="info", max_length=20)
    is_visible: bool = Field(default=True)


class AnalyticsCounter(SQLModel, table=True):
    """Single-row aggregate of site visits."""

    __tablename__ = "analytics"

    id: Optional[int] = Field(default=None, primary_key=True)
    total_visits: int = Field(default=0)
    unique_visitors: int = Field(default=0)
    last_updated: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), onupdate=func.now())
    )


class AnalyticsDailyVisit(SQLModel, table=True):
    """Visit count per ISO day, incremented in place."""

    __tablename__ = "analytics_daily_visits"

    day: str = Field(primary_key=True, max_length=10)
    visits: int = Field(default=0)


class AnalyticsVisitor(SQLModel, table=True):
    """Membership set backing the unique-visitor count."""

    __tablename__ = "analytics_visitors"

    visitor_id: str = Field(primary_key=True, max_length=100)
    first_visit: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True))
    )
