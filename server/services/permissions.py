"""Permission resolution: role defaults merged with per-user overrides.

Effective value for a key = user override if present, else role default,
else False. Overrides hold only deltas from the role default, so an update
that returns a key to its role value removes the override row instead of
writing a redundant one.

Resolved maps are cached per user id in process memory. Every write drops the
cached map synchronously before returning, so the next check in this process
sees the new values. A resolve that was in flight across a write is not
cached, so it cannot put the pre-write map back.
"""

from dataclasses import dataclass, asdict
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from constants import ALL_PERMISSIONS, ACTION_PERMISSIONS_UPDATED, PERMISSION_DESCRIPTIONS, ROLE_ADMIN
from core.database import Database
from core.logging import get_logger
from services.activity import ActivityLogger

logger = get_logger(__name__)

SOURCE_ROLE = "role"
SOURCE_USER = "user"


class UserNotFoundError(LookupError):
    """Target user does not exist."""

    def __init__(self, user_id: int):
        super().__init__(f"User not found: {user_id}")
        self.user_id = user_id


@dataclass
class EffectivePermission:
    value: bool
    source: str
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class PermissionResolver:
    """Resolves and updates effective permissions for app users."""

    def __init__(self, database: Database, activity: Optional[ActivityLogger] = None):
        self.database = database
        self.activity = activity
        self._cache: Dict[int, Dict[str, EffectivePermission]] = {}
        # Bumped by invalidate(); a resolve that started under an older
        # generation is returned to its caller but never cached
        self._generations: Dict[int, int] = {}
        self._epoch = 0

    async def get_effective_permissions(self, user_id: int) -> Dict[str, EffectivePermission]:
        """Return the merged permission map for user_id (cached)."""
        cached = self._cache.get(user_id)
        if cached is not None:
            return dict(cached)

        token = self._token(user_id)
        resolved = await self._resolve(user_id)
        if self._token(user_id) == token:
            self._cache[user_id] = resolved
        else:
            logger.debug("Discarding permissions resolved before invalidation", user_id=user_id)
        return dict(resolved)

    def _token(self, user_id: int) -> Tuple[int, int]:
        return self._epoch, self._generations.get(user_id, 0)

    async def _resolve(self, user_id: int) -> Dict[str, EffectivePermission]:
        user = await self.database.get_user(user_id)
        if user is None:
            raise UserNotFoundError(user_id)

        permissions: Dict[str, EffectivePermission] = {}

        if user.role == ROLE_ADMIN:
            for key in ALL_PERMISSIONS:
                permissions[key] = EffectivePermission(True, SOURCE_ROLE, PERMISSION_DESCRIPTIONS[key])

        for row in await self.database.get_role_permissions(user.role):
            permissions[row.permission_key] = EffectivePermission(
                value=row.permission_value,
                source=SOURCE_ROLE,
                description=row.description or PERMISSION_DESCRIPTIONS.get(row.permission_key, ""),
            )

        for row in await self.database.get_user_permissions(user_id):
            previous = permissions.get(row.permission_key)
            permissions[row.permission_key] = EffectivePermission(
                value=row.permission_value,
                source=SOURCE_USER,
                description=previous.description if previous
                else PERMISSION_DESCRIPTIONS.get(row.permission_key, ""),
            )

        logger.debug("Permissions resolved", user_id=user_id, role=user.role,
                     permission_count=len(permissions))
        return permissions

    async def get_permission_values(self, user_id: int) -> Dict[str, bool]:
        """Flat key -> bool view of the effective map."""
        effective = await self.get_effective_permissions(user_id)
        return {key: perm.value for key, perm in effective.items()}

    async def has_permission(self, user_id: int, role: str, key: str) -> bool:
        """Check one capability. The admin role passes every check."""
        if role == ROLE_ADMIN:
            return True
        try:
            effective = await self.get_effective_permissions(user_id)
        except UserNotFoundError:
            logger.warning("Permission check for unknown user", user_id=user_id, permission=key)
            return False
        perm = effective.get(key)
        return bool(perm and perm.value)

    async def has_any_permission(self, user_id: int, role: str, keys: Iterable[str]) -> bool:
        for key in keys:
            if await self.has_permission(user_id, role, key):
                return True
        return False

    async def update_permissions(self, user_id: int, changes: Mapping[str, Any],
                                 actor: Optional[Dict[str, Any]] = None) -> List[str]:
        """Apply changes as user overrides, writing only keys whose value changes.

        Raises UserNotFoundError before any write when the user is missing and
        ValueError for unknown keys or non-boolean values.
        """
        user = await self.database.get_user(user_id)
        if user is None:
            raise UserNotFoundError(user_id)

        for key, value in changes.items():
            if key not in ALL_PERMISSIONS:
                raise ValueError(f"Unknown permission: {key}")
            if not isinstance(value, bool):
                raise ValueError(f"Permission value for {key} must be boolean")

        current = await self._resolve(user_id)
        role_defaults = {row.permission_key: row.permission_value
                         for row in await self.database.get_role_permissions(user.role)}

        upserts: Dict[str, bool] = {}
        removals: List[str] = []
        for key, value in changes.items():
            existing = current.get(key)
            if existing is not None and existing.value == value:
                continue
            if existing is None and value is False:
                continue
            # Keys without a role row default to False, except for admins
            if value == role_defaults.get(key, user.role == ROLE_ADMIN):
                removals.append(key)
            else:
                upserts[key] = value

        changed = sorted(list(upserts) + removals)
        if not changed:
            logger.info("Permission update had no effect", user_id=user_id)
            return []

        try:
            await self.database.upsert_user_permissions(user_id, upserts)
            await self.database.delete_user_permissions(user_id, removals)
        finally:
            # Partial writes are possible; never serve the old map afterwards
            self.invalidate(user_id)

        logger.info("Permissions updated", user_id=user_id, changed=changed,
                    actor_id=actor.get("id") if actor else None)

        if self.activity is not None:
            await self.activity.log_activity(
                ACTION_PERMISSIONS_UPDATED, "user",
                user_id=str(actor.get("id")) if actor else None,
                user_type="admin",
                target_id=str(user_id), target_type="user", target_title=user.username,
                details={"changed": {key: changes[key] for key in changed}},
                severity="warning",
                is_visible=False,
            )
        return changed

    async def reset_override(self, user_id: int, key: str) -> bool:
        """Remove a single override so the role default applies again."""
        if await self.database.get_user(user_id) is None:
            raise UserNotFoundError(user_id)
        removed = await self.database.delete_user_permissions(user_id, [key])
        self.invalidate(user_id)
        return removed > 0

    def invalidate(self, user_id: Optional[int] = None) -> None:
        """Drop the cached map for one user, or for everyone."""
        if user_id is None:
            self._epoch += 1
            self._cache.clear()
        else:
            self._generations[user_id] = self._generations.get(user_id, 0) + 1
            self._cache.pop(user_id, None)
