"""Environment-driven configuration with Pydantic v2."""

from typing import List, Literal, Optional
from pathlib import Path
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings driven entirely by environment variables."""

    # Server Configuration
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3010, ge=1024, le=65535)
    debug: bool = Field(default=False)
    workers: int = Field(default=1, ge=1, le=8)

    # Authentication (bearer JWT)
    jwt_secret_key: str = Field(min_length=32)
    jwt_expire_minutes: int = Field(default=10080, ge=5)  # 7 days
    admin_username: Optional[str] = Field(default=None)
    admin_password: Optional[str] = Field(default=None, min_length=8)

    # Security
    cors_origins: List[str] = Field(default_factory=lambda: ["http://localhost:3000"])

    # Database Configuration
    database_url: str = Field(default="sqlite+aiosqlite:///./data/drivertasks.db")
    database_echo: bool = Field(default=False)
    database_pool_size: int = Field(default=20, ge=5, le=100)
    database_max_overflow: int = Field(default=30, ge=10, le=100)

    # Cache Configuration
    redis_url: Optional[str] = Field(default=None)
    redis_enabled: bool = Field(default=False)
    cache_ttl: int = Field(default=300, ge=1)
    cache_stale_window: int = Field(default=120, ge=0)
    cache_sweep_interval: int = Field(default=60, ge=1)
    analytics_cache_ttl: int = Field(default=300, ge=1)

    # File storage
    storage_backend: Literal["auto", "cloudinary", "local", "base64"] = Field(default="auto")
    cloudinary_url: Optional[str] = Field(default=None)
    cloudinary_folder: str = Field(default="drivertasks/uploads")
    upload_dir: str = Field(default="./public/uploads")
    upload_url_prefix: str = Field(default="/uploads")
    max_upload_mb: int = Field(default=5, ge=1, le=50)

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")
    log_file: Optional[str] = Field(default=None)

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        """Ensure database directory exists for SQLite."""
        if v and v.startswith("sqlite") and ":memory:" not in v:
            if ":///" in v:
                db_path = v.split("///")[1]
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.debug

    @property
    def max_upload_bytes(self) -> int:
        return self.max_upload_mb * 1024 * 1024

    model_config = {
        "env_file": "../.env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
        "env_parse_none_str": "none",
        "env_nested_delimiter": "__",
    }
