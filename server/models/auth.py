"""User and permission models."""

from datetime import datetime, timezone
from typing import Optional
from sqlmodel import SQLModel, Field, Column, DateTime
from sqlalchemy import UniqueConstraint, func
import bcrypt


class AppUser(SQLModel, table=True):
    """Admin-side user account."""

    __tablename__ = "app_users"

    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(unique=True, index=True, max_length=100)
    email: str = Field(unique=True, index=True, max_length=255)
    password_hash: str = Field(max_length=255)
    role: str = Field(default="data_manager", max_length=50, index=True)
    is_active: bool = Field(default=True)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )
    last_login: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True)
    )

    def set_password(self, password: str) -> None:
        """Hash and set password using bcrypt."""
        salt = bcrypt.gensalt()
        self.password_hash = bcrypt.hashpw(password.encode('utf-8'), salt).decode('utf-8')

    def verify_password(self, password: str) -> bool:
        """Verify password against stored hash."""
        return bcrypt.checkpw(
            password.encode('utf-8'),
            self.password_hash.encode('utf-8')
        )

    @classmethod
    def create(cls, username: str, email: str, password: str, role: str) -> "AppUser":
        """Factory method to create a user with hashed password."""
        user = cls(
            username=username.strip(),
            email=email.lower().strip(),
            password_hash="",
            role=role,
        )
        user.set_password(password)
        return user

    def public_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "role": self.role,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "last_login": self.last_login.isoformat() if self.last_login else None,
        }


class RolePermission(SQLModel, table=True):
    """Default permission value for every user holding a role."""

    __tablename__ = "role_permissions"
    __table_args__ = (UniqueConstraint("role", "permission_key"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    role: str = Field(index=True, max_length=50)
    permission_key: str = Field(max_length=100)
    permission_value: bool = Field(default=False)
    description: Optional[str] = Field(default=None, max_length=255)


class UserPermission(SQLModel, table=True):
    """Per-user override of a role default. Only deltas are stored."""

    __tablename__ = "user_permissions"
    __table_args__ = (UniqueConstraint("user_id", "permission_key"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="app_users.id", index=True)
    permission_key: str = Field(max_length=100)
    permission_value: bool = Field(default=False)
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), onupdate=func.now())
    )
