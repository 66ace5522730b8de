"""Health snapshot served at /api/health.

Required checks (database, file storage) decide healthy vs degraded. The
Redis mirror is optional: when it is down the in-process cache keeps serving,
so a failed ping is reported without degrading the status.
"""
import os
import time
from pathlib import Path
from typing import Any, Dict, Optional, TYPE_CHECKING

import psutil
from sqlalchemy import text

from core.logging import get_logger

if TYPE_CHECKING:
    from core.config import Settings
    from core.database import Database
    from core.cache import CacheManager

logger = get_logger(__name__)

_startup_time: float = 0.0


def set_startup_time() -> None:
    """Record the application startup time. Call once during lifespan startup."""
    global _startup_time
    _startup_time = time.time()


def get_uptime() -> float:
    return time.time() - _startup_time if _startup_time else 0.0


def get_process_stats(upload_dir: str) -> Dict[str, float]:
    """Process memory and the disk usage of the volume holding uploads."""
    try:
        memory_mb = psutil.Process().memory_info().rss / (1024 * 1024)
    except psutil.Error:
        memory_mb = 0.0
    try:
        disk_percent = psutil.disk_usage(upload_dir if Path(upload_dir).exists() else ".").percent
    except (psutil.Error, OSError):
        disk_percent = 0.0
    return {"memory_mb": round(memory_mb, 1), "disk_percent": round(disk_percent, 1)}


async def check_database(database: "Database") -> bool:
    try:
        async with database.get_session() as session:
            await session.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning("Database health check failed", error=str(e))
        return False


def check_storage(settings: "Settings", backend: str) -> bool:
    """Local uploads need a writable directory; remote backends need credentials."""
    if backend == "local":
        upload_dir = Path(settings.upload_dir)
        return upload_dir.is_dir() and os.access(upload_dir, os.W_OK)
    if backend == "cloudinary":
        return bool(settings.cloudinary_url)
    return True


async def check_cache_mirror(cache: "CacheManager") -> Optional[bool]:
    if cache.mirror is None:
        return None
    try:
        return await cache.mirror.ping()
    except Exception as e:
        logger.warning("Cache mirror health check failed", error=str(e))
        return False


async def get_health_status(
    database: "Database",
    cache: "CacheManager",
    settings: "Settings",
    storage_backend: str,
) -> Dict[str, Any]:
    checks = {
        "database": await check_database(database),
        "storage": check_storage(settings, storage_backend),
    }
    mirror_ok = await check_cache_mirror(cache)
    cache_stats = cache.stats()

    return {
        "status": "healthy" if all(checks.values()) else "degraded",
        "uptime_seconds": round(get_uptime(), 1),
        **get_process_stats(settings.upload_dir),
        "checks": checks,
        "cache": {
            "size": cache_stats["size"],
            "hit_ratio": cache_stats["hit_ratio"],
            "mirror": cache_stats["mirror"],
            "mirror_reachable": mirror_ok,
        },
        "features": {
            "redis": settings.redis_enabled,
            "storage_backend": storage_backend,
        },
        "environment": "development" if settings.is_development else "production",
    }
