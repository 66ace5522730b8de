from datetime import datetime, timedelta, timezone

import pytest

from conftest import bearer, create_user, login
from models.auth import AppUser
from models.database import Project, Subtask, Task
from services.activity import ActivityLogger
from services.feedback import FeedbackService, initial_priority, public_view

START = datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc)


class MovableNow:
    def __init__(self, value: datetime):
        self.value = value

    def __call__(self) -> datetime:
        return self.value


@pytest.fixture
def now():
    return MovableNow(START)


@pytest.fixture
def service(database, now):
    return FeedbackService(database, ActivityLogger(database), now=now)


@pytest.fixture
async def admin(database):
    return await database.create_user(AppUser.create(
        username="support", email="support@example.com", password="support-pass-123", role="admin",
    ))


def ticket_fields(**overrides):
    return {
        "user_name": "דנה",
        "title": "Map does not load",
        "description": "The task map stays blank",
        "category": "technical_issue",
        "issue_type": "problem",
        **overrides,
    }


def test_initial_priority():
    assert initial_priority("general_support", is_urgent=True) == "urgent"
    assert initial_priority("bug_report", is_urgent=False) == "high"
    assert initial_priority("technical_issue", is_urgent=False) == "high"
    assert initial_priority("suggestion", is_urgent=False) == "low"
    assert initial_priority("feedback", is_urgent=False) == "normal"


async def test_tickets_are_numbered_per_year(service, now):
    first = await service.create_ticket(ticket_fields())
    second = await service.create_ticket(ticket_fields(category="suggestion", issue_type="improvement"))
    now.value = datetime(2025, 1, 2, tzinfo=timezone.utc)
    next_year = await service.create_ticket(ticket_fields())

    assert (first.ticket_number, second.ticket_number) == ("FB-2024-001", "FB-2024-002")
    assert next_year.ticket_number == "FB-2025-001"
    assert first.priority == "high" and second.priority == "low"
    assert first.status == "new"


async def test_create_validates_required_fields_and_choices(service):
    with pytest.raises(ValueError):
        await service.create_ticket(ticket_fields(user_name="  "))
    with pytest.raises(ValueError):
        await service.create_ticket(ticket_fields(category="other"))
    with pytest.raises(ValueError):
        await service.create_ticket(ticket_fields(issue_type="rant"))
    with pytest.raises(ValueError):
        await service.create_ticket(ticket_fields(related_to={"type": "user", "id": 1}))


async def test_related_item_title_is_recorded(service, database):
    project = await database.create_project(Project(name="מרכז"))
    task = await database.create_task(Task(project_id=project.id, title="Night highway", dataco_number="101"))

    ticket = await service.create_ticket(ticket_fields(related_to={"type": "task", "id": task.id}))

    assert ticket.related_to == {"type": "task", "id": task.id, "title": "Night highway"}


async def test_create_is_logged_in_activity_feed(service, database):
    ticket = await service.create_ticket(ticket_fields())

    rows = await database.get_activities_since(datetime(2000, 1, 1, tzinfo=timezone.utc))
    assert rows[0].category == "feedback"
    assert rows[0].action == "יצר פניה חדשה: Map does not load"
    assert rows[0].target_id == str(ticket.id)


async def test_status_changes_stamp_resolution_times(service, now):
    ticket = await service.create_ticket(ticket_fields())
    now.value = START + timedelta(hours=5)

    resolved = await service.update_ticket(ticket.id, {"status": "resolved", "customer_satisfaction": 4})
    closed = await service.update_ticket(ticket.id, {"status": "closed"})

    assert resolved.resolved_at is not None
    assert closed.closed_at is not None
    with pytest.raises(ValueError):
        await service.update_ticket(ticket.id, {"status": "done"})
    with pytest.raises(ValueError):
        await service.update_ticket(ticket.id, {"customer_satisfaction": 9})
    assert await service.update_ticket(9999, {"status": "closed"}) is None


async def test_responses_and_notes(service, admin):
    ticket = await service.create_ticket(ticket_fields())

    public = await service.add_response(ticket.id, "Fixed in the latest release", True, admin)
    private = await service.add_response(ticket.id, "Asked devops", False, admin)
    note = await service.add_note(ticket.id, "Probably the tile server", admin)

    assert public["response_id"].startswith("resp_")
    assert note["note_id"].startswith("note_")
    stored = await service.get_ticket(ticket.id)
    assert [r["response_id"] for r in stored.responses] == [public["response_id"], private["response_id"]]
    assert stored.internal_notes[0]["content"] == "Probably the tile server"

    view = public_view(stored)
    assert [r["response_id"] for r in view["responses"]] == [public["response_id"]]
    assert "internal_notes" not in view and "ip_address" not in view

    with pytest.raises(ValueError):
        await service.add_note(ticket.id, "   ", admin)
    assert await service.add_response(9999, "x", True, admin) is None


async def test_list_filters_and_pagination(service):
    await service.create_ticket(ticket_fields(title="Login fails", category="account_help", issue_type="question"))
    urgent = await service.create_ticket(ticket_fields(title="Site down", is_urgent=True))
    tagged = await service.create_ticket(ticket_fields(title="Typo"))
    await service.update_ticket(tagged.id, {"tags": ["ui"], "status": "in_progress"})

    assert [t.id for t in (await service.list_tickets(is_urgent=True))["tickets"]] == [urgent.id]
    assert [t.id for t in (await service.list_tickets(tags=["ui"]))["tickets"]] == [tagged.id]
    assert [t.id for t in (await service.list_tickets(statuses=["in_progress"]))["tickets"]] == [tagged.id]
    assert len((await service.list_tickets(search="LOGIN"))["tickets"]) == 1
    assert len((await service.list_tickets(priorities=["urgent", "high"]))["tickets"]) == 2

    page = await service.list_tickets(page=1, limit=2)
    assert len(page["tickets"]) == 2
    assert page["pagination"] == {"page": 1, "limit": 2, "total": 3, "total_pages": 2, "has_more": True}
    assert (await service.list_tickets(page=2, limit=2))["pagination"]["has_more"] is False


async def test_stats(service, now, admin):
    await service.create_ticket(ticket_fields(title="Old"))
    answered = await service.create_ticket(ticket_fields(title="Answered"))
    await service.add_response(answered.id, "On it", True, admin)

    now.value = START + timedelta(hours=80)
    fresh = await service.create_ticket(ticket_fields(title="Fresh", category="suggestion"))
    await service.update_ticket(fresh.id, {"status": "resolved", "customer_satisfaction": 5})

    stats = await service.get_stats()

    assert stats["total"] == 3
    assert stats["by_status"]["new"] == 2 and stats["by_status"]["resolved"] == 1
    assert stats["by_status"]["cancelled"] == 0
    assert stats["by_category"]["technical_issue"] == 2
    assert stats["by_priority"]["low"] == 1
    assert stats["avg_resolution_time"] == 0
    assert stats["customer_satisfaction_avg"] == 5
    assert stats["new_today"] == 1 and stats["resolved_today"] == 1
    # Only the unanswered ticket older than 72 hours is overdue
    assert stats["overdue_tickets"] == 1


async def test_reportable_subtasks_skip_hidden_tasks(service, database):
    project = await database.create_project(Project(name="צפון"))
    visible = await database.create_task(Task(project_id=project.id, title="Visible", dataco_number="1"))
    hidden = await database.create_task(Task(project_id=project.id, title="Hidden", dataco_number="2",
                                             is_visible=False))
    await database.create_subtask(Subtask(task_id=visible.id, title="Rain", dataco_number="1-1"))
    await database.create_subtask(Subtask(task_id=hidden.id, title="Snow", dataco_number="2-1"))

    subtasks = await service.list_reportable_subtasks()

    assert [(s["title"], s["task_title"]) for s in subtasks] == [("Rain", "Visible")]


def test_feedback_routes(client, admin_headers):
    created = client.post("/api/feedback", json=ticket_fields(), headers={"User-Agent": "pytest-agent"})
    assert created.status_code == 201, created.text
    body = created.json()
    assert body["ticket_number"].startswith("FB-")
    assert "internal_notes" not in body["ticket"]
    ticket_id = body["ticket"]["id"]

    assert client.get("/api/feedback").status_code == 401
    listed = client.get("/api/feedback", headers=admin_headers, params={"status": "new,assigned"}).json()
    assert listed["pagination"]["total"] == 1
    assert listed["tickets"][0]["user_agent"] == "pytest-agent"

    updated = client.put(f"/api/feedback/{ticket_id}", headers=admin_headers, json={"status": "assigned"})
    assert updated.json()["ticket"]["status"] == "assigned"
    assert client.put(f"/api/feedback/{ticket_id}", headers=admin_headers, json={"status": "x"}).status_code == 400

    response = client.post(f"/api/feedback/{ticket_id}/responses", headers=admin_headers,
                           json={"content": "Thanks", "is_public": True})
    assert response.status_code == 201
    note = client.post(f"/api/feedback/{ticket_id}/notes", headers=admin_headers, json={"content": "n"})
    assert note.status_code == 201

    stats = client.get("/api/feedback/stats", headers=admin_headers).json()["stats"]
    assert stats["total"] == 1 and stats["by_status"]["assigned"] == 1

    assert client.delete(f"/api/feedback/{ticket_id}", headers=admin_headers).status_code == 200
    assert client.get(f"/api/feedback/{ticket_id}", headers=admin_headers).status_code == 404


def test_feedback_submission_errors_and_gates(client, admin_headers):
    missing = client.post("/api/feedback", json=ticket_fields(title=""))
    assert missing.status_code == 400
    assert missing.json()["success"] is False

    assert client.get("/api/feedback/subtasks").status_code == 200

    driver_user = create_user(client, admin_headers, "driver", role="driver_manager")
    driver = bearer(login(client, "driver", "user-password-123"))
    # driver_manager holds access.feedback by default
    assert client.get("/api/feedback/stats", headers=driver).status_code == 200
    revoked = client.put(f"/api/users/{driver_user['id']}/permissions", headers=admin_headers,
                         json={"permissions": {"access.feedback": False}})
    assert revoked.status_code == 200
    assert client.get("/api/feedback/stats", headers=driver).status_code == 403
