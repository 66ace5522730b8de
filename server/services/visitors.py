"""Server-side visitor profiles.

A profile is created the first time a visitor registers a display name. The
name may later be cleared by an admin; clients reconcile against this record
and drop their local registration when the name is gone.
"""

from typing import Any, Dict, List, Optional

from constants import ACTION_VISITOR_NAME_REMOVED, ACTION_VISITOR_REGISTERED, ACTIVITY_CATEGORIES
from core.database import Database
from core.logging import get_logger
from models.database import ActivityLog, VisitorProfile, utcnow
from services.activity import ActivityLogger

logger = get_logger(__name__)

NAME_MIN_LENGTH = 2
NAME_MAX_LENGTH = 50


class VisitorNotFoundError(LookupError):
    """No profile exists for the visitor id."""

    def __init__(self, visitor_id: str):
        super().__init__(f"Visitor not found: {visitor_id}")
        self.visitor_id = visitor_id


def validate_name(name: Optional[str]) -> str:
    trimmed = (name or "").strip()
    if not NAME_MIN_LENGTH <= len(trimmed) <= NAME_MAX_LENGTH:
        raise ValueError(f"Name must be between {NAME_MIN_LENGTH} and {NAME_MAX_LENGTH} characters")
    return trimmed


def profile_to_dict(profile: VisitorProfile) -> Dict[str, Any]:
    return {
        "visitor_id": profile.visitor_id,
        "name": profile.name or None,
        "metadata": profile.metadata_json or {},
        "first_seen": profile.first_seen.isoformat() if profile.first_seen else None,
        "last_seen": profile.last_seen.isoformat() if profile.last_seen else None,
        "total_visits": profile.total_visits,
        "total_actions": profile.total_actions,
    }


class VisitorService:
    def __init__(self, database: Database, activity: ActivityLogger):
        self.database = database
        self.activity = activity

    async def create_or_update_profile(self, visitor_id: str, name: str,
                                       metadata: Optional[Dict[str, Any]] = None) -> VisitorProfile:
        """Register or rename a visitor. Returns the saved profile."""
        if not visitor_id:
            raise ValueError("Visitor ID is required")
        clean_name = validate_name(name)

        existing = await self.database.get_visitor_profile(visitor_id)
        if existing is None:
            profile = VisitorProfile(visitor_id=visitor_id, name=clean_name, metadata_json=metadata)
        else:
            profile = existing
            profile.name = clean_name
            profile.total_visits += 1
            profile.last_seen = utcnow()
            if metadata:
                profile.metadata_json = {**(profile.metadata_json or {}), **metadata}

        saved = await self.database.save_visitor_profile(profile)
        is_new = saved.total_visits == 1

        await self.track_action(visitor_id, ACTION_VISITOR_REGISTERED, "system",
                                {"first_visit": is_new, "name": clean_name})
        logger.info("Visitor profile saved", visitor_id=visitor_id, is_new=is_new)
        return saved

    async def get_profile(self, visitor_id: str) -> Optional[VisitorProfile]:
        return await self.database.get_visitor_profile(visitor_id)

    async def list_profiles(self, limit: int = 100) -> List[VisitorProfile]:
        return await self.database.list_visitor_profiles(limit=max(1, min(limit, 1000)))

    async def update_name(self, visitor_id: str, name: Optional[str],
                          actor: Optional[Dict[str, Any]] = None) -> VisitorProfile:
        """Admin rename. None or an empty string clears the registration."""
        profile = await self.database.get_visitor_profile(visitor_id)
        if profile is None:
            raise VisitorNotFoundError(visitor_id)

        previous = profile.name
        clearing = name is None or not name.strip()
        profile.name = None if clearing else validate_name(name)
        saved = await self.database.save_visitor_profile(profile)

        actor_id = str(actor["id"]) if actor else None
        if clearing:
            action = f"{ACTION_VISITOR_NAME_REMOVED}: {previous} ({visitor_id})"
            severity = "warning"
        else:
            action = f"עדכן שם מבקר: {previous} → {saved.name}"
            severity = "info"
        await self.activity.log_activity(
            action, "user",
            user_id=actor_id, user_type="admin",
            target_id=visitor_id, target_type="visitor", target_title=previous or saved.name,
            severity=severity,
        )
        logger.info("Visitor name changed", visitor_id=visitor_id, cleared=clearing, actor_id=actor_id)
        return saved

    async def delete_profile(self, visitor_id: str, actor: Optional[Dict[str, Any]] = None) -> None:
        profile = await self.database.get_visitor_profile(visitor_id)
        if profile is None:
            raise VisitorNotFoundError(visitor_id)

        removed_logs = await self.database.delete_activities_for_user(visitor_id)
        await self.database.delete_visitor_profile(visitor_id)

        await self.activity.log_activity(
            f"מחק מבקר: {profile.name} ({visitor_id})", "user",
            user_id=str(actor["id"]) if actor else None, user_type="admin",
            target_id=visitor_id, target_type="visitor", target_title=profile.name,
            severity="warning",
        )
        logger.info("Visitor deleted", visitor_id=visitor_id, removed_logs=removed_logs)

    async def track_action(self, visitor_id: str, action: str, category: str = "system",
                           metadata: Optional[Dict[str, Any]] = None) -> Optional[ActivityLog]:
        if category not in ACTIVITY_CATEGORIES:
            raise ValueError(f"Unknown activity category: {category}")
        await self.database.increment_visitor_actions(visitor_id)
        return await self.activity.log_activity(
            action, category,
            user_id=visitor_id, user_type="visitor",
            details=metadata,
            is_visible=False,
        )

    async def get_activity(self, visitor_id: str, limit: int = 50) -> List[ActivityLog]:
        if await self.database.get_visitor_profile(visitor_id) is None:
            raise VisitorNotFoundError(visitor_id)
        return await self.database.get_activities_for_user(visitor_id, limit=limit)
