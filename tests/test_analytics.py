import asyncio
from datetime import date, timedelta

import pytest

from constants import ACTION_VISIT, PROJECT_ACTIONS, SUBTASK_ACTIONS, TASK_ACTIONS
from core.cache import CacheManager
from core.config import Settings
from core.database import Database
from models.database import ActivityLog, Project, Subtask, Task, utcnow
from services.activity import ActivityLogger
from services.analytics import AnalyticsService, parse_range, priority_bucket, synthetic_health


@pytest.fixture
def cache():
    return CacheManager()


@pytest.fixture
def analytics(database, cache):
    return AnalyticsService(database, cache, ActivityLogger(database))


async def add_activity(database, action, category, days_ago, **fields):
    return await database.add_activity(ActivityLog(
        action=action, category=category, timestamp=utcnow() - timedelta(days=days_ago), **fields
    ))


def test_parse_range():
    assert parse_range("7d") == 7
    assert parse_range("90") == 90
    assert parse_range(30) == 30
    assert parse_range(None) == 30
    for bad in ("14d", "abc", 1):
        with pytest.raises(ValueError):
            parse_range(bad)


def test_priority_buckets():
    assert [priority_bucket(p) for p in (0, 1, 3, 4, 6, 7, 10)] == [
        "none", "high", "high", "medium", "medium", "low", "low",
    ]


def test_synthetic_health_is_flagged_and_bounded():
    assert synthetic_health(0) == {"score": 60, "activity_volume": 0, "synthetic": True}
    assert synthetic_health(10_000)["score"] == 100


async def test_tasks_created_this_week_counts_marker_rows(analytics, database):
    # 10 rows across the last 7 days, 3 of them task creations
    actions = [
        (f"{TASK_ACTIONS['created']}: משימה 1", "task"),
        (TASK_ACTIONS["updated"], "task"),
        (f"{TASK_ACTIONS['created']}: משימה 2", "task"),
        (PROJECT_ACTIONS["created"], "project"),
        (SUBTASK_ACTIONS["created"], "subtask"),
        (TASK_ACTIONS["deleted"], "task"),
        (f"{TASK_ACTIONS['created']}: משימה 3", "task"),
        (TASK_ACTIONS["viewed"], "task"),
        (PROJECT_ACTIONS["updated"], "project"),
        (ACTION_VISIT, "view"),
    ]
    for index, (action, category) in enumerate(actions):
        await add_activity(database, action, category, days_ago=index % 7)

    summary = await analytics.compute_summary("7d")

    assert summary["tasks_created_this_week"] == 3
    assert summary["subtasks_created_this_week"] == 1
    assert summary["visits_this_week"] == 1
    assert summary["tasks_created_last_week"] == 0


async def test_day_buckets_cover_every_day_in_range(analytics, database):
    await add_activity(database, TASK_ACTIONS["created"], "task", days_ago=0)
    await add_activity(database, TASK_ACTIONS["created"], "task", days_ago=10)

    summary = await analytics.compute_summary("30d")
    buckets = summary["recent_activity"]

    assert len(buckets) == 30
    assert buckets[-1]["date"] == utcnow().date().isoformat()
    assert buckets[-1]["tasks_created"] == 1
    assert sum(b["tasks_created"] for b in buckets) == 2
    assert summary["tasks_created_last_week"] == 1


async def test_summary_counts_tasks_projects_and_priorities(analytics, database):
    project = await database.create_project(Project(name="צפון"))
    high = await database.create_task(Task(project_id=project.id, title="a", dataco_number="D1",
                                           priority=2, type=["events"]))
    await database.create_task(Task(project_id=project.id, title="b", dataco_number="D2",
                                    priority=8, type=["hours"], is_visible=False))
    await database.create_subtask(Subtask(task_id=high.id, title="s", dataco_number="S1"))

    summary = await analytics.compute_summary("7d")

    assert summary["total_tasks"] == 2
    assert summary["hidden_tasks"] == 1
    assert summary["total_subtasks"] == 1
    assert summary["tasks_by_priority"] == {"high": 1, "medium": 0, "low": 1, "none": 0}
    assert summary["tasks_by_type"] == {"events": 1, "hours": 1}
    assert summary["tasks_by_project"] == [{
        "project_id": project.id,
        "project_name": "צפון",
        "task_count": 2,
        "subtask_count": 1,
        "high_priority_count": 1,
    }]
    assert summary["system_health"]["synthetic"] is True


async def test_summary_is_cached_until_a_visit_is_logged(analytics, database, cache):
    first = await analytics.compute_summary("7d")
    await add_activity(database, TASK_ACTIONS["created"], "task", days_ago=0)

    assert (await analytics.compute_summary("7d"))["tasks_created_this_week"] == \
        first["tasks_created_this_week"]

    result = await analytics.log_visit(visitor_id="visitor_1")
    assert result["total_visits"] == 1
    assert "analytics:summary:7" not in cache

    refreshed = await analytics.compute_summary("7d")
    assert refreshed["tasks_created_this_week"] == 1
    assert refreshed["total_visits"] == 1
    assert refreshed["visits_this_week"] == 1


async def test_unique_visitors_counted_once(analytics):
    await analytics.log_visit(visitor_id="visitor_1")
    await analytics.log_visit(visitor_id="visitor_1")
    result = await analytics.log_visit(visitor_id="visitor_2")

    assert result["total_visits"] == 3
    assert result["unique_visitors"] == 2


async def test_visits_per_day_are_counted(analytics, database):
    first = await analytics.log_visit(visitor_id="visitor_1", day=date(2024, 5, 1))
    await analytics.log_visit(visitor_id="visitor_2", day=date(2024, 5, 1))
    other_day = await analytics.log_visit(visitor_id="visitor_1", day=date(2024, 5, 2))

    assert first["visits_today"] == 1
    assert other_day["visits_today"] == 1
    assert await database.get_daily_visits(date(2024, 5, 1)) == 2
    assert await database.get_daily_visits(date(2024, 5, 3)) == 0


async def test_concurrent_visits_lose_no_increments(tmp_path):
    # File database so every session gets its own connection
    settings = Settings(database_url=f"sqlite+aiosqlite:///{tmp_path / 'visits.db'}")
    database = Database(settings)
    await database.startup()
    try:
        visitors = [f"visitor_{i % 5}" for i in range(20)]
        await asyncio.gather(*(database.record_visit(date(2024, 5, 1), visitor_id=v) for v in visitors))

        counter = await database.get_analytics()
        assert counter.total_visits == 20
        assert counter.unique_visitors == 5
        assert await database.get_daily_visits(date(2024, 5, 1)) == 20
    finally:
        await database.shutdown()


async def test_anonymous_visit_uses_caller_uniqueness(database):
    await database.record_visit(date(2024, 5, 1), is_unique_visitor=True)
    counter = await database.record_visit(date(2024, 5, 1))

    assert counter.total_visits == 2
    assert counter.unique_visitors == 1
