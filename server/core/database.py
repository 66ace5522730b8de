"""Async database service with SQLModel and SQLAlchemy 2.0."""

from datetime import datetime, date
from typing import Dict, Any, List, Optional, Type, TypeVar
from sqlmodel import SQLModel, select
from sqlalchemy import delete, func, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool
from contextlib import asynccontextmanager

from core.config import Settings
from constants import DEFAULT_ROLE_PERMISSIONS, PERMISSION_DESCRIPTIONS
from models.auth import AppUser, RolePermission, UserPermission
from models.database import (
    ActivityLog, AnalyticsCounter, AnalyticsDailyVisit, AnalyticsVisitor, DailyUpdate, DailyUpdateSetting,
    FeedbackTicket, Project, Subtask, Task, VisitorProfile, utcnow,
)
from models.local import LOCAL_TABLE_NAMES
from core.logging import get_logger

logger = get_logger(__name__)

M = TypeVar("M", bound=SQLModel)

# The analytics aggregate is a single row
COUNTER_ROW_ID = 1


class Database:
    """Async database service with SQLModel."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.engine = None
        self.async_session = None

    async def startup(self):
        """Initialize database connection, create tables and seed role defaults."""
        try:
            import logging
            logging.getLogger("aiosqlite").setLevel(logging.WARNING)
            logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
            logging.getLogger("sqlalchemy.pool").setLevel(logging.WARNING)

            url = self.settings.database_url
            if url.startswith("sqlite"):
                # In-memory databases must share one connection across sessions
                engine_kwargs = {"connect_args": {"check_same_thread": False}}
                if ":memory:" in url:
                    engine_kwargs["poolclass"] = StaticPool
            else:
                engine_kwargs = {
                    "pool_size": self.settings.database_pool_size,
                    "max_overflow": self.settings.database_max_overflow,
                }

            self.engine = create_async_engine(
                url,
                echo=self.settings.database_echo,
                future=True,
                **engine_kwargs
            )

            self.async_session = async_sessionmaker(
                bind=self.engine,
                class_=AsyncSession,
                expire_on_commit=False
            )

            server_tables = [t for t in SQLModel.metadata.sorted_tables
                             if t.name not in LOCAL_TABLE_NAMES]
            async with self.engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all, tables=server_tables)

            seeded = await self.seed_role_permissions(DEFAULT_ROLE_PERMISSIONS)
            logger.info("Database initialized successfully", seeded_role_permissions=seeded)

        except Exception as e:
            logger.error("Database startup failed", error=str(e))
            raise

    async def shutdown(self):
        """Close database connections."""
        if self.engine:
            await self.engine.dispose()
            logger.info("Database connections closed")

    @asynccontextmanager
    async def get_session(self):
        """Get async database session."""
        if not self.async_session:
            raise RuntimeError("Database not initialized")

        async with self.async_session() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    # ============================================================================
    # Generic helpers
    # ============================================================================

    def _insert(self, model: Type[SQLModel]):
        """Dialect INSERT supporting ON CONFLICT (SQLite and PostgreSQL)."""
        dialect = postgresql if self.engine.dialect.name == "postgresql" else sqlite
        return dialect.insert(model)

    async def _get(self, model: Type[M], pk: Any) -> Optional[M]:
        async with self.get_session() as session:
            return await session.get(model, pk)

    async def _add(self, obj: M) -> M:
        async with self.get_session() as session:
            session.add(obj)
            await session.commit()
            await session.refresh(obj)
            return obj

    async def _update(self, model: Type[M], pk: Any, updates: Dict[str, Any]) -> Optional[M]:
        async with self.get_session() as session:
            obj = await session.get(model, pk)
            if obj is None:
                return None
            for field, value in updates.items():
                setattr(obj, field, value)
            if hasattr(obj, "updated_at"):
                obj.updated_at = utcnow()
            await session.commit()
            await session.refresh(obj)
            return obj

    async def _delete(self, model: Type[M], pk: Any) -> bool:
        async with self.get_session() as session:
            obj = await session.get(model, pk)
            if obj is None:
                return False
            await session.delete(obj)
            await session.commit()
            return True

    # ============================================================================
    # Users
    # ============================================================================

    async def get_user(self, user_id: int) -> Optional[AppUser]:
        return await self._get(AppUser, user_id)

    async def get_user_by_username(self, username: str) -> Optional[AppUser]:
        async with self.get_session() as session:
            result = await session.execute(
                select(AppUser).where(AppUser.username == username.strip())
            )
            return result.scalars().first()

    async def get_user_by_email(self, email: str) -> Optional[AppUser]:
        async with self.get_session() as session:
            result = await session.execute(
                select(AppUser).where(AppUser.email == email.lower().strip())
            )
            return result.scalars().first()

    async def list_users(self) -> List[AppUser]:
        async with self.get_session() as session:
            result = await session.execute(select(AppUser).order_by(AppUser.created_at.desc()))
            return list(result.scalars().all())

    async def create_user(self, user: AppUser) -> AppUser:
        return await self._add(user)

    async def update_user(self, user_id: int, updates: Dict[str, Any]) -> Optional[AppUser]:
        return await self._update(AppUser, user_id, updates)

    async def delete_user(self, user_id: int) -> bool:
        """Delete a user together with their permission overrides."""
        async with self.get_session() as session:
            user = await session.get(AppUser, user_id)
            if user is None:
                return False
            await session.execute(delete(UserPermission).where(UserPermission.user_id == user_id))
            await session.delete(user)
            await session.commit()
            return True

    async def touch_last_login(self, user_id: int) -> None:
        await self._update(AppUser, user_id, {"last_login": utcnow()})

    # ============================================================================
    # Permissions
    # ============================================================================

    async def get_role_permissions(self, role: str) -> List[RolePermission]:
        async with self.get_session() as session:
            result = await session.execute(
                select(RolePermission).where(RolePermission.role == role)
            )
            return list(result.scalars().all())

    async def get_user_permissions(self, user_id: int) -> List[UserPermission]:
        async with self.get_session() as session:
            result = await session.execute(
                select(UserPermission).where(UserPermission.user_id == user_id)
            )
            return list(result.scalars().all())

    async def upsert_user_permissions(self, user_id: int, values: Dict[str, bool]) -> int:
        """Insert or update override rows for user_id. Returns rows written."""
        if not values:
            return 0
        try:
            async with self.get_session() as session:
                result = await session.execute(
                    select(UserPermission).where(
                        UserPermission.user_id == user_id,
                        UserPermission.permission_key.in_(list(values)),
                    )
                )
                existing = {row.permission_key: row for row in result.scalars().all()}
                for key, value in values.items():
                    row = existing.get(key)
                    if row is None:
                        session.add(UserPermission(
                            user_id=user_id, permission_key=key, permission_value=value
                        ))
                    else:
                        row.permission_value = value
                        row.updated_at = utcnow()
                await session.commit()
                return len(values)
        except Exception as e:
            logger.error("Failed to upsert user permissions", user_id=user_id, error=str(e))
            raise

    async def delete_user_permissions(self, user_id: int, keys: List[str]) -> int:
        """Drop override rows so the role default applies again."""
        if not keys:
            return 0
        async with self.get_session() as session:
            result = await session.execute(
                delete(UserPermission).where(
                    UserPermission.user_id == user_id,
                    UserPermission.permission_key.in_(keys),
                )
            )
            await session.commit()
            return result.rowcount or 0

    async def seed_role_permissions(self, defaults: Dict[str, Dict[str, bool]]) -> int:
        """Populate role_permissions when the table is empty."""
        async with self.get_session() as session:
            result = await session.execute(select(RolePermission).limit(1))
            if result.scalars().first() is not None:
                return 0
            count = 0
            for role, values in defaults.items():
                for key, value in values.items():
                    session.add(RolePermission(
                        role=role,
                        permission_key=key,
                        permission_value=value,
                        description=PERMISSION_DESCRIPTIONS.get(key),
                    ))
                    count += 1
            await session.commit()
            return count

    async def get_all_projects(self) -> List[Project]:
        async with self.get_session() as session:
            result = await session.execute(select(Project).order_by(Project.created_at.desc()))
            return list(result.scalars().all())

    async def get_project(self, project_id: int) -> Optional[Project]:
        return await self._get(Project, project_id)

    async def get_project_by_name(self, name: str) -> Optional[Project]:
        async with self.get_session() as session:
            result = await session.execute(select(Project).where(Project.name == name))
            return result.scalars().first()

    async def create_project(self, project: Project) -> Project:
        return await self._add(project)

    async def update_project(self, project_id: int, updates: Dict[str, Any]) -> Optional[Project]:
        return await self._update(Project, project_id, updates)

    async def delete_project(self, project_id: int) -> bool:
        """Delete a project and cascade to its tasks and subtasks."""
        try:
            async with self.get_session() as session:
                project = await session.get(Project, project_id)
                if project is None:
                    return False
                task_ids = (await session.execute(
                    select(Task.id).where(Task.project_id == project_id)
                )).scalars().all()
                if task_ids:
                    await session.execute(delete(Subtask).where(Subtask.task_id.in_(task_ids)))
                    await session.execute(delete(Task).where(Task.project_id == project_id))
                await session.delete(project)
                await session.commit()
                return True
        except Exception as e:
            logger.error("Failed to delete project", project_id=project_id, error=str(e))
            raise

    # ============================================================================
    # Tasks
    # ============================================================================

    async def get_all_tasks(self, include_hidden: bool = False,
                            project_id: Optional[int] = None) -> List[Task]:
        async with self.get_session() as session:
            stmt = select(Task)
            if not include_hidden:
                stmt = stmt.where(Task.is_visible == True)  # noqa: E712
            if project_id is not None:
                stmt = stmt.where(Task.project_id == project_id)
            stmt = stmt.order_by(Task.priority.desc(), Task.created_at.desc())
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def get_task(self, task_id: int) -> Optional[Task]:
        return await self._get(Task, task_id)

    async def get_task_by_dataco_number(self, dataco_number: str) -> Optional[Task]:
        async with self.get_session() as session:
            result = await session.execute(select(Task).where(Task.dataco_number == dataco_number))
            return result.scalars().first()

    async def create_task(self, task: Task) -> Task:
        return await self._add(task)

    async def update_task(self, task_id: int, updates: Dict[str, Any]) -> Optional[Task]:
        return await self._update(Task, task_id, updates)

    async def delete_task(self, task_id: int) -> bool:
        async with self.get_session() as session:
            task = await session.get(Task, task_id)
            if task is None:
                return False
            await session.execute(delete(Subtask).where(Subtask.task_id == task_id))
            await session.delete(task)
            await session.commit()
            return True

    # ============================================================================
    # Subtasks
    # ============================================================================

    async def get_subtasks_by_task(self, task_id: int, include_hidden: bool = True) -> List[Subtask]:
        async with self.get_session() as session:
            stmt = select(Subtask).where(Subtask.task_id == task_id)
            if not include_hidden:
                stmt = stmt.where(Subtask.is_visible == True)  # noqa: E712
            result = await session.execute(stmt.order_by(Subtask.created_at))
            return list(result.scalars().all())

    async def get_all_subtasks(self) -> List[Subtask]:
        async with self.get_session() as session:
            result = await session.execute(select(Subtask))
            return list(result.scalars().all())

    async def get_subtask(self, subtask_id: int) -> Optional[Subtask]:
        return await self._get(Subtask, subtask_id)

    async def get_subtasks_by_dataco_number(self, dataco_number: str) -> List[Subtask]:
        async with self.get_session() as session:
            result = await session.execute(select(Subtask).where(Subtask.dataco_number == dataco_number))
            return list(result.scalars().all())

    async def create_subtask(self, subtask: Subtask) -> Subtask:
        return await self._add(subtask)

    async def update_subtask(self, subtask_id: int, updates: Dict[str, Any]) -> Optional[Subtask]:
        return await self._update(Subtask, subtask_id, updates)

    async def delete_subtask(self, subtask_id: int) -> bool:
        return await self._delete(Subtask, subtask_id)

    # ============================================================================
    # Daily updates
    # ============================================================================

    async def get_daily_updates(self) -> List[DailyUpdate]:
        async with self.get_session() as session:
            result = await session.execute(
                select(DailyUpdate).order_by(
                    DailyUpdate.is_pinned.desc(),
                    DailyUpdate.priority.asc(),
                    DailyUpdate.created_at.desc(),
                )
            )
            return list(result.scalars().all())

    async def get_daily_update(self, update_id: int) -> Optional[DailyUpdate]:
        return await self._get(DailyUpdate, update_id)

    async def create_daily_update(self, update: DailyUpdate) -> DailyUpdate:
        return await self._add(update)

    async def update_daily_update(self, update_id: int, updates: Dict[str, Any]) -> Optional[DailyUpdate]:
        return await self._update(DailyUpdate, update_id, updates)

    async def delete_daily_update(self, update_id: int) -> bool:
        return await self._delete(DailyUpdate, update_id)

    async def get_daily_update_setting(self, key: str) -> Optional[DailyUpdateSetting]:
        return await self._get(DailyUpdateSetting, key)

    async def set_daily_update_setting(self, key: str, value: str) -> DailyUpdateSetting:
        now = utcnow()
        stmt = self._insert(DailyUpdateSetting).values(key=key, value=value, updated_at=now)
        async with self.get_session() as session:
            await session.execute(stmt.on_conflict_do_update(
                index_elements=["key"], set_={"value": value, "updated_at": now},
            ))
            await session.commit()
            return await session.get(DailyUpdateSetting, key, populate_existing=True)

    # ============================================================================
    # Feedback tickets
    # ============================================================================

    async def count_feedback_tickets(self, number_prefix: str) -> int:
        async with self.get_session() as session:
            result = await session.execute(
                select(func.count()).select_from(FeedbackTicket)
                .where(FeedbackTicket.ticket_number.like(f"{number_prefix}%"))
            )
            return result.scalar_one()

    async def create_feedback_ticket(self, ticket: FeedbackTicket) -> FeedbackTicket:
        return await self._add(ticket)

    async def get_feedback_ticket(self, ticket_id: int) -> Optional[FeedbackTicket]:
        return await self._get(FeedbackTicket, ticket_id)

    async def list_feedback_tickets(self, statuses: Optional[List[str]] = None,
                                    categories: Optional[List[str]] = None,
                                    priorities: Optional[List[str]] = None,
                                    assigned_to: Optional[str] = None,
                                    is_urgent: Optional[bool] = None,
                                    created_from: Optional[datetime] = None,
                                    created_to: Optional[datetime] = None) -> List[FeedbackTicket]:
        """Tickets matching the column filters, newest first."""
        stmt = select(FeedbackTicket)
        if statuses:
            stmt = stmt.where(FeedbackTicket.status.in_(statuses))
        if categories:
            stmt = stmt.where(FeedbackTicket.category.in_(categories))
        if priorities:
            stmt = stmt.where(FeedbackTicket.priority.in_(priorities))
        if assigned_to:
            stmt = stmt.where(FeedbackTicket.assigned_to == assigned_to)
        if is_urgent is not None:
            stmt = stmt.where(FeedbackTicket.is_urgent == is_urgent)
        if created_from is not None:
            stmt = stmt.where(FeedbackTicket.created_at >= created_from)
        if created_to is not None:
            stmt = stmt.where(FeedbackTicket.created_at <= created_to)
        async with self.get_session() as session:
            result = await session.execute(stmt.order_by(FeedbackTicket.created_at.desc(), FeedbackTicket.id.desc()))
            return list(result.scalars().all())

    async def update_feedback_ticket(self, ticket_id: int, updates: Dict[str, Any]) -> Optional[FeedbackTicket]:
        return await self._update(FeedbackTicket, ticket_id, updates)

    async def delete_feedback_ticket(self, ticket_id: int) -> bool:
        return await self._delete(FeedbackTicket, ticket_id)

    # ============================================================================
    # Visitors
    # ============================================================================

    async def get_visitor_profile(self, visitor_id: str) -> Optional[VisitorProfile]:
        return await self._get(VisitorProfile, visitor_id)

    async def save_visitor_profile(self, profile: VisitorProfile) -> VisitorProfile:
        async with self.get_session() as session:
            merged = await session.merge(profile)
            await session.commit()
            await session.refresh(merged)
            return merged

    async def list_visitor_profiles(self, limit: int = 100) -> List[VisitorProfile]:
        async with self.get_session() as session:
            result = await session.execute(
                select(VisitorProfile).order_by(VisitorProfile.last_seen.desc()).limit(limit)
            )
            return list(result.scalars().all())

    async def delete_visitor_profile(self, visitor_id: str) -> bool:
        return await self._delete(VisitorProfile, visitor_id)

    async def increment_visitor_actions(self, visitor_id: str) -> None:
        async with self.get_session() as session:
            profile = await session.get(VisitorProfile, visitor_id)
            if profile is not None:
                profile.total_actions += 1
                profile.last_seen = utcnow()
                await session.commit()

    # ============================================================================
    # Activity log
    # ============================================================================

    async def add_activity(self, activity: ActivityLog) -> ActivityLog:
        return await self._add(activity)

    async def get_activities_since(self, since: datetime, limit: int = 5000) -> List[ActivityLog]:
        async with self.get_session() as session:
            result = await session.execute(
                select(ActivityLog)
                .where(ActivityLog.timestamp >= since)
                .order_by(ActivityLog.timestamp.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def get_activities_for_user(self, user_id: str, limit: int = 50) -> List[ActivityLog]:
        async with self.get_session() as session:
            result = await session.execute(
                select(ActivityLog)
                .where(ActivityLog.user_id == user_id)
                .order_by(ActivityLog.timestamp.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def delete_activities_for_user(self, user_id: str) -> int:
        async with self.get_session() as session:
            result = await session.execute(delete(ActivityLog).where(ActivityLog.user_id == user_id))
            await session.commit()
            return result.rowcount or 0

    # ============================================================================
    # Analytics counters
    # ============================================================================

    async def get_analytics(self) -> AnalyticsCounter:
        async with self.get_session() as session:
            result = await session.execute(select(AnalyticsCounter).limit(1))
            counter = result.scalars().first()
            return counter or AnalyticsCounter()

    async def get_daily_visits(self, day: date) -> int:
        row = await self._get(AnalyticsDailyVisit, day.isoformat())
        return row.visits if row else 0

    async def record_visit(self, day: date, visitor_id: Optional[str] = None,
                           is_unique_visitor: bool = False) -> AnalyticsCounter:
        """Increment visit totals; unique visitors are tracked by membership.

        Every write is a single statement (insert-ignore, UPDATE col + 1 or an
        upsert), so concurrent visits never lose an increment.
        """
        try:
            async with self.get_session() as session:
                unique = is_unique_visitor
                if visitor_id:
                    added = await session.execute(
                        self._insert(AnalyticsVisitor)
                        .values(visitor_id=visitor_id, first_visit=utcnow())
                        .on_conflict_do_nothing(index_elements=["visitor_id"])
                    )
                    unique = added.rowcount == 1

                await session.execute(
                    self._insert(AnalyticsCounter)
                    .values(id=COUNTER_ROW_ID, total_visits=0, unique_visitors=0, last_updated=utcnow())
                    .on_conflict_do_nothing(index_elements=["id"])
                )
                await session.execute(
                    update(AnalyticsCounter)
                    .where(AnalyticsCounter.id == COUNTER_ROW_ID)
                    .values(
                        total_visits=AnalyticsCounter.total_visits + 1,
                        unique_visitors=AnalyticsCounter.unique_visitors + (1 if unique else 0),
                        last_updated=utcnow(),
                    )
                )
                daily = self._insert(AnalyticsDailyVisit).values(day=day.isoformat(), visits=1)
                await session.execute(daily.on_conflict_do_update(
                    index_elements=["day"],
                    set_={"visits": AnalyticsDailyVisit.visits + 1},
                ))
                await session.commit()

                return await session.get(AnalyticsCounter, COUNTER_ROW_ID, populate_existing=True)
        except Exception as e:
            logger.error("Failed to record visit", visitor_id=visitor_id, error=str(e))
            raise
