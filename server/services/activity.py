"""Activity log writer.

Action strings are stored in Hebrew as shown in the admin activity feed; the
analytics day buckets count rows by matching these strings.
"""

from typing import Any, Dict, Optional

from constants import (
    AUTH_ACTIONS, DAILY_UPDATE_ACTIONS, FEEDBACK_ACTIONS, PROJECT_ACTIONS, SUBTASK_ACTIONS, TASK_ACTIONS,
)
from core.database import Database
from core.logging import get_logger
from models.database import ActivityLog

logger = get_logger(__name__)


def _severity_for(action: str) -> str:
    if action == "deleted":
        return "warning"
    if action == "created":
        return "success"
    return "info"


class ActivityLogger:
    """Writes activity rows. Failures are logged, never raised to the caller."""

    def __init__(self, database: Database):
        self.database = database

    async def log_activity(self, action: str, category: str, *,
                           user_id: Optional[str] = None,
                           user_type: str = "user",
                           target_id: Optional[str] = None,
                           target_type: Optional[str] = None,
                           target_title: Optional[str] = None,
                           details: Optional[Dict[str, Any]] = None,
                           severity: str = "info",
                           is_visible: bool = True) -> Optional[ActivityLog]:
        try:
            row = await self.database.add_activity(ActivityLog(
                user_id=user_id,
                user_type=user_type,
                action=action,
                category=category,
                target_id=target_id,
                target_type=target_type,
                target_title=target_title,
                details=details,
                severity=severity,
                is_visible=is_visible,
            ))
            logger.info("Activity logged", action=action, category=category,
                        user_id=user_id, target_id=target_id)
            return row
        except Exception as e:
            logger.error("Failed to log activity", action=action, category=category, error=str(e))
            return None

    async def log_task_activity(self, action: str, task_id: int, title: str,
                                user_id: Optional[str] = None, user_type: str = "admin",
                                details: Optional[Dict[str, Any]] = None):
        return await self.log_activity(
            TASK_ACTIONS[action], "task",
            user_id=user_id, user_type=user_type,
            target_id=str(task_id), target_type="task", target_title=title,
            details=details, severity=_severity_for(action),
            is_visible=action != "viewed",
        )

    async def log_project_activity(self, action: str, project_id: int, name: str,
                                   user_id: Optional[str] = None, user_type: str = "admin",
                                   details: Optional[Dict[str, Any]] = None):
        return await self.log_activity(
            PROJECT_ACTIONS[action], "project",
            user_id=user_id, user_type=user_type,
            target_id=str(project_id), target_type="project", target_title=name,
            details=details, severity=_severity_for(action),
            is_visible=action != "viewed",
        )

    async def log_subtask_activity(self, action: str, subtask_id: int, title: str, task_id: int,
                                   user_id: Optional[str] = None, user_type: str = "admin",
                                   details: Optional[Dict[str, Any]] = None):
        return await self.log_activity(
            SUBTASK_ACTIONS[action], "subtask",
            user_id=user_id, user_type=user_type,
            target_id=str(subtask_id), target_type="subtask", target_title=title,
            details={**(details or {}), "parent_task_id": task_id},
            severity=_severity_for(action),
            is_visible=action != "viewed",
        )

    async def log_daily_update_activity(self, action: str, update_id: int, title: str,
                                        user_id: Optional[str] = None):
        return await self.log_activity(
            DAILY_UPDATE_ACTIONS[action], "daily_update",
            user_id=user_id, user_type="admin",
            target_id=str(update_id), target_type="daily_update", target_title=title,
            severity=_severity_for(action),
        )

    async def log_feedback_activity(self, action: str, ticket_id: int, title: str,
                                    user_id: Optional[str] = None, user_type: str = "admin",
                                    details: Optional[Dict[str, Any]] = None):
        return await self.log_activity(
            f"{FEEDBACK_ACTIONS[action]}: {title}", "feedback",
            user_id=user_id, user_type=user_type,
            target_id=str(ticket_id), target_type="feedback", target_title=title,
            details=details, severity=_severity_for(action),
        )

    async def log_auth_activity(self, action: str, user_id: Optional[str] = None,
                                username: Optional[str] = None):
        return await self.log_activity(
            AUTH_ACTIONS[action], "auth",
            user_id=user_id, user_type="admin",
            details={"username": username} if username else None,
            severity="warning" if action == "login_failed" else "info",
            is_visible=False,
        )
