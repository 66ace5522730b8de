"""Dashboard analytics derived from tasks, projects and the activity log.

Summaries are computed on demand and cached for a short TTL; nothing here is
authoritative and any cached summary can be dropped and rebuilt.
"""

import time as time_module
from collections import Counter, defaultdict
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Union

from constants import (
    ACTION_VISIT, ANALYTICS_RANGES, SUBTASK_CREATED_MARKER, TASK_ACTIONS, TASK_CREATED_MARKER,
)
from core.cache import CacheManager
from core.database import Database
from core.logging import get_logger, log_execution_time
from models.database import ActivityLog, as_utc, utcnow
from services.activity import ActivityLogger

logger = get_logger(__name__)

SUMMARY_KEY_PREFIX = "analytics:summary:"
SUMMARY_KEY_PATTERN = r"^analytics:summary:"

# Week-over-week needs two full weeks regardless of the requested range
MIN_ACTIVITY_WINDOW_DAYS = 14
DEFAULT_ACTIVITY_LIMIT = 10000

# Synthetic health score: activity volume at which the score saturates
HEALTH_SATURATION_VOLUME = 200


def parse_range(value: Union[str, int, None]) -> int:
    """Accept '7d'/'30d'/'90d' or 7/30/90. Anything else is a ValueError."""
    if value is None:
        return 30
    if isinstance(value, int):
        days = value
    else:
        text = str(value).strip().lower()
        if text in ANALYTICS_RANGES:
            days = ANALYTICS_RANGES[text]
        elif text.isdigit():
            days = int(text)
        else:
            raise ValueError(f"Invalid range: {value}")
    if days not in ANALYTICS_RANGES.values():
        raise ValueError(f"Invalid range: {value}")
    return days


def priority_bucket(priority: int) -> str:
    if 1 <= priority <= 3:
        return "high"
    if 4 <= priority <= 6:
        return "medium"
    if 7 <= priority <= 10:
        return "low"
    return "none"


def synthetic_health(activity_volume: int) -> Dict[str, Any]:
    """Cosmetic score from activity volume. Not a monitoring signal."""
    ratio = min(1.0, activity_volume / HEALTH_SATURATION_VOLUME)
    return {
        "score": 60 + round(40 * ratio),
        "activity_volume": activity_volume,
        "synthetic": True,
    }


class AnalyticsService:
    """Builds and caches the admin analytics summary."""

    def __init__(self, database: Database, cache: CacheManager,
                 activity: ActivityLogger, ttl: float = 300,
                 activity_limit: int = DEFAULT_ACTIVITY_LIMIT,
                 now: Callable[[], datetime] = utcnow):
        self.database = database
        self.cache = cache
        self.activity = activity
        self.ttl = ttl
        self.activity_limit = activity_limit
        self.now = now

    async def compute_summary(self, range_value: Union[str, int, None] = "30d") -> Dict[str, Any]:
        days = parse_range(range_value)
        return await self.cache.get(
            f"{SUMMARY_KEY_PREFIX}{days}",
            lambda: self._build_summary(days),
            ttl=self.ttl,
        )

    async def _build_summary(self, days: int) -> Dict[str, Any]:
        started = time_module.perf_counter()
        now = as_utc(self.now())
        today = now.date()

        tasks = await self.database.get_all_tasks(include_hidden=True)
        projects = await self.database.get_all_projects()
        subtasks = await self.database.get_all_subtasks()
        counter = await self.database.get_analytics()

        window_days = max(days, MIN_ACTIVITY_WINDOW_DAYS)
        window_start = datetime.combine(today - timedelta(days=window_days - 1), time.min, tzinfo=timezone.utc)
        activities = await self.database.get_activities_since(window_start, limit=self.activity_limit)

        subtasks_by_task: Dict[int, int] = Counter(s.task_id for s in subtasks)

        total_tasks = len(tasks)
        visible_tasks = sum(1 for t in tasks if t.is_visible)
        total_subtasks = len(subtasks)
        total_projects = len(projects)

        tasks_by_priority = {"high": 0, "medium": 0, "low": 0, "none": 0}
        for task in tasks:
            tasks_by_priority[priority_bucket(task.priority)] += 1

        tasks_by_type = {
            "events": sum(1 for t in tasks if "events" in (t.type or [])),
            "hours": sum(1 for t in tasks if "hours" in (t.type or [])),
        }

        project_tasks: Dict[int, List] = defaultdict(list)
        for task in tasks:
            project_tasks[task.project_id].append(task)
        tasks_by_project = [
            {
                "project_id": project.id,
                "project_name": project.name,
                "task_count": len(project_tasks[project.id]),
                "subtask_count": sum(subtasks_by_task.get(t.id, 0) for t in project_tasks[project.id]),
                "high_priority_count": sum(1 for t in project_tasks[project.id]
                                           if priority_bucket(t.priority) == "high"),
            }
            for project in projects
        ]

        buckets = self._day_buckets(activities, today, days)
        this_week = self._window_counts(activities, today - timedelta(days=6), today)
        last_week = self._window_counts(activities, today - timedelta(days=13), today - timedelta(days=7))

        range_start = today - timedelta(days=days - 1)
        volume = sum(1 for a in activities if as_utc(a.timestamp).date() >= range_start)

        summary = {
            "total_tasks": total_tasks,
            "visible_tasks": visible_tasks,
            "hidden_tasks": total_tasks - visible_tasks,
            "total_subtasks": total_subtasks,
            "total_projects": total_projects,
            "total_visits": counter.total_visits,
            "unique_visitors": counter.unique_visitors,
            "tasks_by_priority": tasks_by_priority,
            "tasks_by_type": tasks_by_type,
            "tasks_by_project": tasks_by_project,
            "recent_activity": buckets,
            "most_viewed_tasks": self._most_viewed(activities, {t.id: t for t in tasks},
                                                   {p.id: p for p in projects}),
            "completion_rate": round(visible_tasks / total_tasks * 100) if total_tasks else 0,
            "average_tasks_per_project": total_tasks / total_projects if total_projects else 0,
            "average_subtasks_per_task": total_subtasks / total_tasks if total_tasks else 0,
            "tasks_created_this_week": this_week["tasks_created"],
            "tasks_created_last_week": last_week["tasks_created"],
            "subtasks_created_this_week": this_week["subtasks_created"],
            "visits_this_week": this_week["visits"],
            "visits_last_week": last_week["visits"],
            "system_health": synthetic_health(volume),
            "range_days": days,
            "generated_at": now.isoformat(),
        }

        log_execution_time(logger, "analytics_summary", started, time_module.perf_counter(),
                           range_days=days, total_tasks=total_tasks, total_projects=total_projects,
                           activity_rows=len(activities))
        return summary

    @staticmethod
    def _classify(activity: ActivityLog) -> Optional[str]:
        if activity.category == "view":
            return "visits"
        if SUBTASK_CREATED_MARKER in activity.action:
            return "subtasks_created"
        if TASK_CREATED_MARKER in activity.action:
            return "tasks_created"
        return None

    def _day_buckets(self, activities: List[ActivityLog], today: date, days: int) -> List[Dict[str, Any]]:
        buckets: Dict[date, Dict[str, Any]] = {}
        for offset in range(days - 1, -1, -1):
            day = today - timedelta(days=offset)
            buckets[day] = {"date": day.isoformat(), "visits": 0, "tasks_created": 0, "subtasks_created": 0}

        for activity in activities:
            bucket = buckets.get(as_utc(activity.timestamp).date())
            kind = self._classify(activity)
            if bucket is not None and kind is not None:
                bucket[kind] += 1
        return list(buckets.values())

    def _window_counts(self, activities: List[ActivityLog], start: date, end: date) -> Dict[str, int]:
        counts = {"visits": 0, "tasks_created": 0, "subtasks_created": 0}
        for activity in activities:
            day = as_utc(activity.timestamp).date()
            kind = self._classify(activity)
            if kind is not None and start <= day <= end:
                counts[kind] += 1
        return counts

    @staticmethod
    def _most_viewed(activities: List[ActivityLog], tasks: Dict[int, Any],
                     projects: Dict[int, Any], limit: int = 10) -> List[Dict[str, Any]]:
        views: Counter = Counter(
            a.target_id for a in activities
            if a.category == "task" and a.action == TASK_ACTIONS["viewed"] and a.target_id
        )
        result = []
        for target_id, count in views.most_common():
            task = tasks.get(int(target_id)) if target_id.isdigit() else None
            if task is None or not task.is_visible:
                continue
            project = projects.get(task.project_id)
            result.append({
                "task_id": task.id,
                "task_title": task.title,
                "project_name": project.name if project else None,
                "views": count,
            })
            if len(result) >= limit:
                break
        return result

    async def log_visit(self, visitor_id: Optional[str] = None, is_unique_visitor: bool = False,
                        day: Optional[date] = None) -> Dict[str, Any]:
        """Count a visit, record it in the activity log and drop cached summaries."""
        visit_day = day or as_utc(self.now()).date()
        counter = await self.database.record_visit(
            visit_day, visitor_id=visitor_id, is_unique_visitor=is_unique_visitor
        )
        await self.activity.log_activity(
            ACTION_VISIT, "view",
            user_id=visitor_id, user_type="visitor",
            details={"date": visit_day.isoformat()},
            is_visible=False,
        )
        invalidated = self.cache.invalidate_pattern(SUMMARY_KEY_PATTERN)
        logger.info("Visit logged", date=visit_day.isoformat(), visitor_id=visitor_id,
                    total_visits=counter.total_visits, invalidated=invalidated)
        return {
            "total_visits": counter.total_visits,
            "unique_visitors": counter.unique_visitors,
            "visits_today": await self.database.get_daily_visits(visit_day),
            "date": visit_day.isoformat(),
        }
