"""Centralized constants for roles, permission keys and activity messages.

This module provides a single source of truth for permission keys and the
Hebrew activity-log strings the analytics derivations match against.
"""

from typing import Dict, FrozenSet

# =============================================================================
# ROLES
# =============================================================================

ROLE_ADMIN = "admin"
ROLE_DATA_MANAGER = "data_manager"
ROLE_DRIVER_MANAGER = "driver_manager"

ROLES: FrozenSet[str] = frozenset([
    ROLE_ADMIN,
    ROLE_DATA_MANAGER,
    ROLE_DRIVER_MANAGER,
])

# Roles allowed to see hidden tasks and hidden daily updates
DATA_MANAGER_ROLES: FrozenSet[str] = frozenset([ROLE_ADMIN, ROLE_DATA_MANAGER])

# =============================================================================
# PERMISSION KEYS
# =============================================================================

ACCESS_ADMIN_DASHBOARD = "access.admin_dashboard"
ACCESS_USERS_MANAGEMENT = "access.users_management"
ACCESS_PROJECTS_MANAGEMENT = "access.projects_management"
ACCESS_TASKS_MANAGEMENT = "access.tasks_management"
ACCESS_DAILY_UPDATES = "access.daily_updates"
ACCESS_ANALYTICS = "access.analytics"
ACCESS_FEEDBACK = "access.feedback"
ACCESS_PUSH_NOTIFICATIONS = "access.push_notifications"
ACCESS_CACHE_MANAGEMENT = "access.cache_management"

CREATE_USERS = "create.users"
CREATE_PROJECTS = "create.projects"
CREATE_TASKS = "create.tasks"

EDIT_USERS = "edit.users"
EDIT_PROJECTS = "edit.projects"
EDIT_TASKS = "edit.tasks"

DELETE_USERS = "delete.users"
DELETE_PROJECTS = "delete.projects"
DELETE_TASKS = "delete.tasks"

VIEW_ALL_DATA = "view.all_data"

PERMISSION_DESCRIPTIONS: Dict[str, str] = {
    ACCESS_ADMIN_DASHBOARD: "גישה ללוח בקרה",
    ACCESS_USERS_MANAGEMENT: "גישה לניהול משתמשים",
    ACCESS_PROJECTS_MANAGEMENT: "גישה לניהול פרויקטים",
    ACCESS_TASKS_MANAGEMENT: "גישה לניהול משימות",
    ACCESS_DAILY_UPDATES: "גישה לעדכונים יומיים",
    ACCESS_ANALYTICS: "גישה לאנליטיקה",
    ACCESS_FEEDBACK: "גישה למשוב",
    ACCESS_PUSH_NOTIFICATIONS: "גישה להתראות Push",
    ACCESS_CACHE_MANAGEMENT: "גישה לניהול מטמון",
    CREATE_USERS: "יצירת משתמשים",
    CREATE_PROJECTS: "יצירת פרויקטים",
    CREATE_TASKS: "יצירת משימות",
    EDIT_USERS: "עריכת משתמשים",
    EDIT_PROJECTS: "עריכת פרויקטים",
    EDIT_TASKS: "עריכת משימות",
    DELETE_USERS: "מחיקת משתמשים",
    DELETE_PROJECTS: "מחיקת פרויקטים",
    DELETE_TASKS: "מחיקת משימות",
    VIEW_ALL_DATA: "צפייה בכל הנתונים",
}

ALL_PERMISSIONS: FrozenSet[str] = frozenset(PERMISSION_DESCRIPTIONS)

# Seeded into role_permissions when the table is empty. Admin is not listed:
# the admin role passes every check without consulting the table.
DEFAULT_ROLE_PERMISSIONS: Dict[str, Dict[str, bool]] = {
    ROLE_DATA_MANAGER: {
        ACCESS_ADMIN_DASHBOARD: True,
        ACCESS_PROJECTS_MANAGEMENT: True,
        ACCESS_TASKS_MANAGEMENT: True,
        ACCESS_DAILY_UPDATES: True,
        ACCESS_ANALYTICS: True,
        ACCESS_FEEDBACK: True,
        CREATE_PROJECTS: True,
        CREATE_TASKS: True,
        EDIT_PROJECTS: True,
        EDIT_TASKS: True,
        DELETE_TASKS: True,
        DELETE_PROJECTS: False,
        ACCESS_USERS_MANAGEMENT: False,
        EDIT_USERS: False,
        VIEW_ALL_DATA: True,
    },
    ROLE_DRIVER_MANAGER: {
        ACCESS_ADMIN_DASHBOARD: True,
        ACCESS_DAILY_UPDATES: True,
        ACCESS_FEEDBACK: True,
        ACCESS_TASKS_MANAGEMENT: False,
        ACCESS_ANALYTICS: False,
        EDIT_TASKS: False,
        VIEW_ALL_DATA: False,
    },
}

# =============================================================================
# ACTIVITY LOG
# =============================================================================

ACTIVITY_CATEGORIES: FrozenSet[str] = frozenset([
    "task", "project", "subtask", "user", "system", "auth", "view", "daily_update", "feedback",
])

TASK_ACTIONS: Dict[str, str] = {
    "created": "יצר משימה חדשה",
    "updated": "עדכן משימה",
    "deleted": "מחק משימה",
    "viewed": "צפה במשימה",
    "visibility_changed": "שינה נראות משימה",
}

PROJECT_ACTIONS: Dict[str, str] = {
    "created": "יצר פרויקט חדש",
    "updated": "עדכן פרויקט",
    "deleted": "מחק פרויקט",
    "viewed": "צפה בפרויקט",
}

SUBTASK_ACTIONS: Dict[str, str] = {
    "created": "יצר תת-משימה חדשה",
    "updated": "עדכן תת-משימה",
    "deleted": "מחק תת-משימה",
    "viewed": "צפה בתת-משימה",
}

AUTH_ACTIONS: Dict[str, str] = {
    "login": "התחבר למערכת",
    "logout": "התנתק מהמערכת",
    "login_failed": "ניסיון התחברות נכשל",
}

DAILY_UPDATE_ACTIONS: Dict[str, str] = {
    "created": "יצר עדכון יומי",
    "updated": "עדכן עדכון יומי",
    "deleted": "מחק עדכון יומי",
}

ACTION_VISIT = "ביקור באתר"
ACTION_VISITOR_REGISTERED = "נרשם למערכת"
ACTION_PERMISSIONS_UPDATED = "עדכן הרשאות משתמש"
ACTION_VISITOR_NAME_REMOVED = "הסיר שם מבקר"

# Substrings the analytics day buckets match against
TASK_CREATED_MARKER = TASK_ACTIONS["created"]
SUBTASK_CREATED_MARKER = SUBTASK_ACTIONS["created"]

# =============================================================================
# DOMAIN ENUMS
# =============================================================================

TASK_TYPES: FrozenSet[str] = frozenset(["events", "hours"])

DAILY_UPDATE_TYPES: FrozenSet[str] = frozenset([
    "info", "warning", "success", "error", "announcement",
])

DURATION_TYPES: FrozenSet[str] = frozenset(["hours", "days", "permanent"])

ANALYTICS_RANGES: Dict[str, int] = {"7d": 7, "30d": 30, "90d": 90}

ALLOWED_IMAGE_TYPES: FrozenSet[str] = frozenset([
    "image/jpeg", "image/png", "image/gif", "image/webp",
])

# =============================================================================
# FEEDBACK
# =============================================================================

FEEDBACK_CATEGORIES: FrozenSet[str] = frozenset([
    "general_support", "technical_issue", "feature_request", "bug_report",
    "task_related", "subtask_related", "project_related", "account_help",
    "feedback", "complaint", "suggestion",
])

FEEDBACK_ISSUE_TYPES: FrozenSet[str] = frozenset([
    "question", "problem", "request", "bug", "improvement", "complaint", "compliment", "other",
])

FEEDBACK_PRIORITIES = ("low", "normal", "high", "urgent", "critical")

FEEDBACK_STATUSES = ("new", "assigned", "in_progress", "pending_user", "resolved", "closed", "cancelled")

# Statuses still waiting on the support team
FEEDBACK_OPEN_STATUSES: FrozenSet[str] = frozenset(["new", "assigned", "in_progress"])

FEEDBACK_RELATED_TYPES: FrozenSet[str] = frozenset(["project", "task", "subtask"])

# Open tickets older than this with no response count as overdue
FEEDBACK_OVERDUE_HOURS = 72

FEEDBACK_ACTIONS: Dict[str, str] = {
    "created": "יצר פניה חדשה",
    "updated": "עדכן פניה",
    "deleted": "מחק פניה",
    "responded": "הוסיף תגובה לפניה",
}

# =============================================================================
# BULK IMPORT (Jira export)
# =============================================================================

DATACO_PREFIX = "DATACO-"

IMPORT_ISSUE_TYPES: FrozenSet[str] = frozenset(["Events", "Hours"])

# Accepted by the dry-run validator; only Events and Hours import
IMPORT_PREVIEW_ISSUE_TYPES: FrozenSet[str] = frozenset(["Events", "Hours", "Loops", "Sub Task"])

IMPORT_WEATHER: FrozenSet[str] = frozenset(["Clear", "Fog", "Overcast", "Rain", "Snow", "Mixed"])

IMPORT_SCENES: FrozenSet[str] = frozenset(["Highway", "Urban", "Rural", "Sub-Urban", "Test Track", "Mixed"])

IMPORT_DAY_TIMES: Dict[str, str] = {"Day": "day", "Night": "night", "Dusk": "dusk", "Dawn": "dawn"}
