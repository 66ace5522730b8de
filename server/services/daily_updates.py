"""Daily announcement banners with optional expiry."""

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from constants import DAILY_UPDATE_TYPES, DURATION_TYPES
from core.database import Database
from core.logging import get_logger
from models.database import DailyUpdate, DailyUpdateSetting, as_utc, utcnow
from services.activity import ActivityLogger

logger = get_logger(__name__)

UPDATABLE_FIELDS = frozenset([
    "title", "content", "type", "priority", "duration_type", "duration_value",
    "is_active", "is_pinned", "is_hidden", "target_audience", "project_id",
])


def compute_expiry(duration_type: str, duration_value: Optional[int],
                   start: datetime) -> Optional[datetime]:
    """Expiry for a banner starting at start; permanent banners never expire."""
    if duration_type == "permanent" or not duration_value:
        return None
    if duration_type == "hours":
        return start + timedelta(hours=duration_value)
    if duration_type == "days":
        return start + timedelta(days=duration_value)
    raise ValueError(f"Invalid duration_type: {duration_type}")


def is_live(update: DailyUpdate, now: datetime) -> bool:
    if not update.is_active or update.is_hidden:
        return False
    expires = as_utc(update.expires_at)
    return expires is None or expires > now


def _validate(fields: Dict[str, Any]) -> None:
    if "type" in fields and fields["type"] not in DAILY_UPDATE_TYPES:
        raise ValueError("Invalid type. Must be one of: " + ", ".join(sorted(DAILY_UPDATE_TYPES)))
    if "duration_type" in fields and fields["duration_type"] not in DURATION_TYPES:
        raise ValueError("Invalid duration_type. Must be one of: " + ", ".join(sorted(DURATION_TYPES)))
    if "priority" in fields and not 1 <= int(fields["priority"]) <= 10:
        raise ValueError("Priority must be between 1 and 10")
    for key in ("title", "content"):
        if key in fields and not (fields[key] or "").strip():
            raise ValueError("Title and content are required")


class DailyUpdateService:
    def __init__(self, database: Database, activity: ActivityLogger,
                 now: Callable[[], datetime] = utcnow):
        self.database = database
        self.activity = activity
        self.now = now

    async def list_updates(self, include_all: bool = False) -> List[DailyUpdate]:
        """Live banners, or every banner when include_all is set (managers)."""
        updates = await self.database.get_daily_updates()
        if include_all:
            return updates
        now = as_utc(self.now())
        return [u for u in updates if is_live(u, now)]

    async def get_update(self, update_id: int, include_hidden: bool = False) -> Optional[DailyUpdate]:
        update = await self.database.get_daily_update(update_id)
        if update is None or (update.is_hidden and not include_hidden):
            return None
        return update

    async def create_update(self, fields: Dict[str, Any], user_id: Optional[int] = None) -> DailyUpdate:
        data = {
            "type": "info",
            "priority": 5,
            "duration_type": "hours",
            "duration_value": 24,
            "is_pinned": False,
            "target_audience": [],
            **{k: v for k, v in fields.items() if k in UPDATABLE_FIELDS and v is not None},
        }
        if "title" not in data or "content" not in data:
            raise ValueError("Title and content are required")
        _validate(data)

        if data["duration_type"] == "permanent":
            data["duration_value"] = None
        data["title"] = data["title"].strip()
        data["content"] = data["content"].strip()

        update = DailyUpdate(
            **data,
            expires_at=compute_expiry(data["duration_type"], data["duration_value"], as_utc(self.now())),
            created_by=user_id,
        )
        saved = await self.database.create_daily_update(update)
        await self.activity.log_daily_update_activity(
            "created", saved.id, saved.title, user_id=str(user_id) if user_id else None
        )
        logger.info("Daily update created", update_id=saved.id, expires_at=saved.expires_at)
        return saved

    async def update_update(self, update_id: int, fields: Dict[str, Any],
                            user_id: Optional[int] = None) -> Optional[DailyUpdate]:
        current = await self.database.get_daily_update(update_id)
        if current is None:
            return None

        changes = {k: v for k, v in fields.items() if k in UPDATABLE_FIELDS}
        _validate(changes)

        if "duration_type" in changes or "duration_value" in changes:
            duration_type = changes.get("duration_type", current.duration_type)
            duration_value = changes.get("duration_value", current.duration_value)
            if duration_type == "permanent":
                changes["duration_value"] = duration_value = None
            changes["expires_at"] = compute_expiry(duration_type, duration_value, as_utc(self.now()))

        saved = await self.database.update_daily_update(update_id, changes)
        await self.activity.log_daily_update_activity(
            "updated", update_id, saved.title, user_id=str(user_id) if user_id else None
        )
        return saved

    async def delete_update(self, update_id: int, user_id: Optional[int] = None) -> bool:
        current = await self.database.get_daily_update(update_id)
        if current is None:
            return False
        await self.database.delete_daily_update(update_id)
        await self.activity.log_daily_update_activity(
            "deleted", update_id, current.title, user_id=str(user_id) if user_id else None
        )
        return True

    async def get_setting(self, key: str) -> Optional[DailyUpdateSetting]:
        return await self.database.get_daily_update_setting(key)

    async def set_setting(self, key: str, value: Any) -> DailyUpdateSetting:
        """Upsert a banner-area setting. Values are non-empty strings."""
        if not isinstance(value, str) or not value.strip():
            raise ValueError("Value must be a non-empty string")
        setting = await self.database.set_daily_update_setting(key, value.strip())
        logger.info("Daily update setting saved", key=key)
        return setting
