"""Dependency injection container for the application."""

from dependency_injector import containers, providers

from core.config import Settings
from core.database import Database
from core.cache import CacheManager, RedisCacheMirror
from services.activity import ActivityLogger
from services.analytics import AnalyticsService
from services.bulk_import import BulkImportService
from services.daily_updates import DailyUpdateService
from services.feedback import FeedbackService
from services.permissions import PermissionResolver
from services.storage import create_file_storage
from services.user_auth import UserAuthService
from services.visitors import VisitorService


def build_cache_manager(settings: Settings) -> CacheManager:
    """In-process cache, mirrored to Redis when enabled."""
    mirror = None
    if settings.redis_enabled and settings.redis_url:
        mirror = RedisCacheMirror(settings.redis_url)
    return CacheManager(
        default_ttl=settings.cache_ttl,
        stale_window=settings.cache_stale_window,
        sweep_interval=settings.cache_sweep_interval,
        mirror=mirror,
    )


class Container(containers.DeclarativeContainer):
    """Application dependency injection container."""

    # Settings
    settings = providers.Singleton(
        Settings,
    )

    database = providers.Singleton(
        Database,
        settings=settings
    )

    cache = providers.Singleton(
        build_cache_manager,
        settings=settings
    )

    activity = providers.Singleton(
        ActivityLogger,
        database=database
    )

    # Holds the per-user permission cache, so one instance per process
    permission_resolver = providers.Singleton(
        PermissionResolver,
        database=database,
        activity=activity
    )

    file_storage = providers.Singleton(
        create_file_storage,
        settings=settings
    )

    # Services
    user_auth_service = providers.Factory(
        UserAuthService,
        database=database,
        settings=settings
    )

    analytics_service = providers.Factory(
        AnalyticsService,
        database=database,
        cache=cache,
        activity=activity,
        ttl=settings.provided.analytics_cache_ttl
    )

    visitor_service = providers.Factory(
        VisitorService,
        database=database,
        activity=activity
    )

    daily_update_service = providers.Factory(
        DailyUpdateService,
        database=database,
        activity=activity
    )

    feedback_service = providers.Factory(
        FeedbackService,
        database=database,
        activity=activity
    )

    bulk_import_service = providers.Factory(
        BulkImportService,
        database=database,
        activity=activity
    )


# Global container instance
container = Container()
