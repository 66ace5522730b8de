"""Client SDK: cached API access, offline request queue and visitor identity."""

from client.api_client import ApiClient, ApiError
from client.local_store import LocalStore
from client.offline import (
    ConnectivityMonitor,
    OfflineAwareClient,
    OfflineError,
    OfflineQueue,
    OfflineStatus,
    SyncResult,
    check_cache_status,
)
from client.session import SessionContext
from client.visitor import VisitorIdentity, VisitorTracker

__all__ = [
    "ApiClient",
    "ApiError",
    "ConnectivityMonitor",
    "LocalStore",
    "OfflineAwareClient",
    "OfflineError",
    "OfflineQueue",
    "OfflineStatus",
    "SessionContext",
    "SyncResult",
    "VisitorIdentity",
    "VisitorTracker",
    "check_cache_status",
]
