"""User authentication service with JWT handling."""

from datetime import datetime, timezone, timedelta
from typing import Optional, Dict, Any, Tuple

from jose import jwt, JWTError

from constants import ROLES, ROLE_ADMIN
from core.config import Settings
from core.database import Database
from core.logging import get_logger
from models.auth import AppUser

logger = get_logger(__name__)


class UserAuthService:
    """Handles user login, account management and JWT token management."""

    def __init__(self, database: Database, settings: Settings):
        self.database = database
        self.settings = settings
        self._algorithm = "HS256"

    async def login(self, username: str, password: str) -> Tuple[Optional[AppUser], Optional[str]]:
        """
        Authenticate user by username or email.
        Returns (user, None) on success, (None, error_message) on failure.
        """
        user = await self.database.get_user_by_username(username)
        if user is None and "@" in username:
            user = await self.database.get_user_by_email(username)
        if not user:
            return None, "Invalid username or password"

        if not user.is_active:
            return None, "Account is disabled"

        if not user.verify_password(password):
            return None, "Invalid username or password"

        await self.database.touch_last_login(user.id)
        logger.info("User logged in", user_id=user.id, username=user.username)
        return user, None

    async def create_user(self, username: str, email: str, password: str,
                          role: str) -> Tuple[Optional[AppUser], Optional[str]]:
        """Create a new user. Returns (user, None) or (None, error_message)."""
        if role not in ROLES:
            return None, f"Invalid role: {role}"
        if len(password) < 8:
            return None, "Password must be at least 8 characters"
        if await self.database.get_user_by_username(username):
            return None, "Username already exists"
        if await self.database.get_user_by_email(email):
            return None, "Email already registered"

        user = await self.database.create_user(AppUser.create(
            username=username, email=email, password=password, role=role
        ))
        logger.info("User created", user_id=user.id, username=user.username, role=role)
        return user, None

    async def update_user(self, user_id: int, updates: Dict[str, Any]) -> Tuple[Optional[AppUser], Optional[str]]:
        """Update profile fields; password is re-hashed when present."""
        user = await self.database.get_user(user_id)
        if user is None:
            return None, "User not found"

        fields: Dict[str, Any] = {}
        if updates.get("username") is not None:
            other = await self.database.get_user_by_username(updates["username"])
            if other and other.id != user_id:
                return None, "Username already exists"
            fields["username"] = updates["username"].strip()
        if updates.get("email") is not None:
            other = await self.database.get_user_by_email(updates["email"])
            if other and other.id != user_id:
                return None, "Email already registered"
            fields["email"] = updates["email"].lower().strip()
        if updates.get("role") is not None:
            if updates["role"] not in ROLES:
                return None, f"Invalid role: {updates['role']}"
            fields["role"] = updates["role"]
        if updates.get("is_active") is not None:
            fields["is_active"] = bool(updates["is_active"])
        if updates.get("password") is not None:
            if len(updates["password"]) < 8:
                return None, "Password must be at least 8 characters"
            user.set_password(updates["password"])
            fields["password_hash"] = user.password_hash

        updated = await self.database.update_user(user_id, fields)
        return updated, None

    async def ensure_admin(self) -> Optional[AppUser]:
        """Create the bootstrap admin from settings when no users exist."""
        if not self.settings.admin_username or not self.settings.admin_password:
            return None
        if await self.database.list_users():
            return None
        user, error = await self.create_user(
            username=self.settings.admin_username,
            email=f"{self.settings.admin_username}@drivertasks.local",
            password=self.settings.admin_password,
            role=ROLE_ADMIN,
        )
        if error:
            logger.error("Bootstrap admin creation failed", error=error)
        else:
            logger.info("Bootstrap admin created", username=user.username)
        return user

    def create_access_token(self, user: AppUser) -> str:
        """Create JWT access token for user."""
        now = datetime.now(timezone.utc)
        payload = {
            "sub": str(user.id),
            "username": user.username,
            "email": user.email,
            "role": user.role,
            "exp": now + timedelta(minutes=self.settings.jwt_expire_minutes),
            "iat": now,
        }
        return jwt.encode(payload, self.settings.jwt_secret_key, algorithm=self._algorithm)

    def verify_token(self, token: str) -> Optional[Dict[str, Any]]:
        """
        Verify JWT token and return payload.
        Returns None if token is invalid or expired.
        """
        try:
            payload = jwt.decode(
                token,
                self.settings.jwt_secret_key,
                algorithms=[self._algorithm]
            )
        except JWTError as e:
            logger.debug("Token verification failed", error=str(e))
            return None
        if not payload.get("sub") or not payload.get("role"):
            return None
        return payload

    async def get_active_user(self, payload: Optional[Dict[str, Any]]) -> Optional[AppUser]:
        """Active user named by a verified token payload."""
        if not payload:
            return None
        user = await self.database.get_user(int(payload["sub"]))
        if user is None or not user.is_active:
            return None
        return user
