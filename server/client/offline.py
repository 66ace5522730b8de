"""Offline status tracking and the deferred request queue.

Mutating requests that cannot reach the server are stored in the local
store and replayed in submission order once connectivity returns. Replay
is serialized by a single in-flight flag so a reconnect event and a manual
retry never submit the same request twice.

Retry policy: transport errors, 5xx, 408 and 429 are retried with
exponential backoff; after max_retries attempts, or on any other 4xx, the
request is dead-lettered and kept for inspection and manual retry.
"""

import asyncio
import inspect
import json
import time
import uuid
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from client.api_client import API_NAMESPACE, ApiClient
from client.local_store import LocalStore
from core.cache import CacheManager
from core.logging import get_logger, log_queue_operation
from models.local import QueuedRequest

logger = get_logger(__name__)

MUTATING_METHODS = frozenset(["POST", "PUT", "PATCH", "DELETE"])
RETRYABLE_STATUS = frozenset([408, 429])
STATIC_NAMESPACE = "static"

DEFAULT_MAX_RETRIES = 5
DEFAULT_BASE_BACKOFF = 1.0
DEFAULT_MAX_BACKOFF = 300.0


class OfflineError(Exception):
    """Operation needs connectivity and the client is offline."""


@dataclass
class SyncResult:
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    dead_lettered: int = 0
    remaining: int = 0
    skipped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class OfflineStatus:
    is_online: bool
    has_queued_requests: bool
    queued_requests_count: int
    failed_requests_count: int
    sync_in_progress: bool
    last_sync_attempt: Optional[float]
    cache_info: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def check_cache_status(cache: Optional[CacheManager]) -> Dict[str, Any]:
    """Which client cache namespaces currently hold entries (diagnostics only)."""
    if cache is None:
        return {"api_cache": False, "static_cache": False, "entries": 0, "last_update": None}
    stats = cache.stats()
    namespaces = stats["namespaces"]
    return {
        "api_cache": namespaces.get(API_NAMESPACE, 0) > 0,
        "static_cache": namespaces.get(STATIC_NAMESPACE, 0) > 0,
        "entries": stats["size"],
        "last_update": stats["last_update"],
        "namespaces": namespaces,
    }


Sender = Callable[[QueuedRequest], Awaitable[httpx.Response]]


class OfflineQueue:
    """Persistent queue of deferred mutations with serialized replay."""

    def __init__(self, store: LocalStore, sender: Sender,
                 is_online: Callable[[], bool] = lambda: True,
                 max_retries: int = DEFAULT_MAX_RETRIES,
                 base_backoff: float = DEFAULT_BASE_BACKOFF,
                 max_backoff: float = DEFAULT_MAX_BACKOFF,
                 clock: Callable[[], float] = time.time):
        self.store = store
        self.sender = sender
        self.is_online = is_online
        self.max_retries = max_retries
        self.base_backoff = base_backoff
        self.max_backoff = max_backoff
        self.clock = clock

        self.sync_in_progress = False
        self.last_sync_attempt: Optional[float] = None
        self._last_timestamp = 0.0

    def backoff(self, retry_count: int) -> float:
        return min(self.max_backoff, self.base_backoff * (2 ** max(0, retry_count - 1)))

    async def add_to_queue(self, url: str, method: str,
                           headers: Optional[Dict[str, str]] = None,
                           body: Optional[str] = None) -> str:
        method = method.upper()
        if method not in MUTATING_METHODS:
            raise ValueError(f"Only mutating requests can be queued, got {method}")

        # Strictly increasing so replay order matches submission order
        timestamp = max(self.clock(), self._last_timestamp + 1e-6)
        self._last_timestamp = timestamp

        request = await self.store.add_request(QueuedRequest(
            id=uuid.uuid4().hex,
            url=url,
            method=method,
            headers=dict(headers or {}),
            body=body,
            timestamp=timestamp,
        ))
        log_queue_operation(logger, "queued", request.id, method=method, url=url)
        return request.id

    async def get_queued_requests(self) -> List[QueuedRequest]:
        return await self.store.list_requests(dead=False)

    async def get_failed_requests(self) -> List[QueuedRequest]:
        return await self.store.list_requests(dead=True)

    async def remove_from_queue(self, request_id: str) -> bool:
        return await self.store.remove_request(request_id)

    async def clear_offline_queue(self) -> int:
        removed = await self.store.clear_requests()
        logger.info("Offline queue cleared", removed=removed)
        return removed

    async def sync_offline_queue(self) -> SyncResult:
        """Replay due requests once. A concurrent call returns skipped."""
        if not self.is_online():
            raise OfflineError("Cannot sync while offline")
        if self.sync_in_progress:
            logger.debug("Sync already in progress, skipping")
            return SyncResult(skipped=True)

        # Set before the first await so a concurrent caller sees it
        self.sync_in_progress = True
        self.last_sync_attempt = self.clock()
        result = SyncResult()
        try:
            pending = await self.store.list_requests(dead=False, due_before=self.clock())
            for request in pending:
                result.attempted += 1
                try:
                    response = await self.sender(request)
                except httpx.TransportError as e:
                    await self._record_failure(request, f"{type(e).__name__}: {e}", result)
                    # Connection is gone again; leave the rest for the next sync
                    break

                if response.status_code < 400:
                    await self.store.remove_request(request.id)
                    result.succeeded += 1
                    log_queue_operation(logger, "replayed", request.id, level="debug",
                                        status_code=response.status_code)
                elif response.status_code >= 500 or response.status_code in RETRYABLE_STATUS:
                    await self._record_failure(request, f"HTTP {response.status_code}", result)
                else:
                    await self._dead_letter(request, f"HTTP {response.status_code}", result)

            result.remaining = await self.store.count_requests(dead=False)
        finally:
            self.sync_in_progress = False

        logger.info("Offline queue sync finished", **result.to_dict())
        return result

    async def _record_failure(self, request: QueuedRequest, error: str, result: SyncResult) -> None:
        retry_count = request.retry_count + 1
        if retry_count >= self.max_retries:
            request.retry_count = retry_count
            await self._dead_letter(request, error, result)
            return
        result.failed += 1
        await self.store.update_request(request.id, {
            "retry_count": retry_count,
            "next_attempt_at": self.clock() + self.backoff(retry_count),
            "last_error": error,
        })
        log_queue_operation(logger, "retry", request.id, level="warning",
                            retry_count=retry_count, error=error)

    async def _dead_letter(self, request: QueuedRequest, error: str, result: SyncResult) -> None:
        result.dead_lettered += 1
        await self.store.update_request(request.id, {
            "retry_count": request.retry_count,
            "dead": True,
            "last_error": error,
        })
        log_queue_operation(logger, "dead_letter", request.id, level="error",
                            method=request.method, url=request.url, error=error)

    async def retry_failed_requests(self) -> SyncResult:
        """Return dead-lettered requests to the queue and sync."""
        failed = await self.get_failed_requests()
        if failed:
            await self.store.reset_requests(r.id for r in failed)
            logger.info("Dead-lettered requests requeued", count=len(failed))
        return await self.sync_offline_queue()

    async def status(self, cache: Optional[CacheManager] = None) -> OfflineStatus:
        queued = await self.store.count_requests(dead=False)
        return OfflineStatus(
            is_online=self.is_online(),
            has_queued_requests=queued > 0,
            queued_requests_count=queued,
            failed_requests_count=await self.store.count_requests(dead=True),
            sync_in_progress=self.sync_in_progress,
            last_sync_attempt=self.last_sync_attempt,
            cache_info=check_cache_status(cache) if cache is not None else None,
        )


Listener = Callable[[bool], Any]


class ConnectivityMonitor:
    """Tracks online state reported by the host and flushes the queue on reconnect."""

    def __init__(self, online: bool = True, reconnect_delay: float = 1.0):
        self._online = online
        self.reconnect_delay = reconnect_delay
        self.queue: Optional[OfflineQueue] = None
        self._listeners: List[Listener] = []
        self._flush_task: Optional[asyncio.Task] = None

    @property
    def is_online(self) -> bool:
        return self._online

    def attach_queue(self, queue: OfflineQueue) -> None:
        self.queue = queue

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def set_online(self, online: bool) -> None:
        if online == self._online:
            return
        self._online = online
        logger.info("Connectivity changed", online=online)

        for listener in list(self._listeners):
            try:
                outcome = listener(online)
                if inspect.isawaitable(outcome):
                    asyncio.ensure_future(outcome)
            except Exception as e:
                logger.warning("Connectivity listener failed", error=str(e))

        if online and self.queue is not None:
            self._schedule_flush()

    def _schedule_flush(self) -> None:
        if self._flush_task is not None and not self._flush_task.done():
            return
        self._flush_task = asyncio.create_task(self._flush_after_delay())

    async def _flush_after_delay(self) -> None:
        await asyncio.sleep(self.reconnect_delay)
        if not self._online or self.queue is None:
            return
        try:
            await self.queue.sync_offline_queue()
        except OfflineError:
            pass
        except Exception as e:
            logger.error("Queue flush after reconnect failed", error=str(e))

    async def wait_for_flush(self) -> None:
        if self._flush_task is not None:
            await self._flush_task

    async def close(self) -> None:
        if self._flush_task is not None and not self._flush_task.done():
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass


def queued_response(request_id: str, method: str, url: str) -> httpx.Response:
    """Local stand-in returned for a request that was deferred."""
    return httpx.Response(
        202,
        json={
            "success": False,
            "queued": True,
            "requestId": request_id,
            "message": "Request queued for sync when online",
        },
        headers={"X-Queued-For-Sync": "true"},
        request=httpx.Request(method, url),
    )


class OfflineAwareClient:
    """ApiClient front that defers mutations while offline."""

    def __init__(self, api: ApiClient, store: LocalStore,
                 monitor: Optional[ConnectivityMonitor] = None, **queue_options):
        self.api = api
        self.monitor = monitor or ConnectivityMonitor()
        self.queue = OfflineQueue(store, self._replay, is_online=lambda: self.monitor.is_online,
                                  **queue_options)
        self.monitor.attach_queue(self.queue)

    async def _replay(self, request: QueuedRequest) -> httpx.Response:
        return await self.api.request(request.method, request.url,
                                      content=request.body, headers=request.headers)

    async def request(self, method: str, url: str, *, json_body: Any = None,
                      headers: Optional[Dict[str, str]] = None,
                      params: Optional[Dict[str, Any]] = None) -> httpx.Response:
        method = method.upper()
        if method not in MUTATING_METHODS:
            # Reads are never deferred
            return await self.api.request(method, url, params=params, headers=headers)

        body = json.dumps(json_body, ensure_ascii=False) if json_body is not None else None
        send_headers = dict(headers or {})
        if body is not None:
            send_headers.setdefault("Content-Type", "application/json")

        if not self.monitor.is_online:
            return await self._defer(method, url, send_headers, body)

        try:
            return await self.api.request(method, url, content=body, headers=send_headers, params=params)
        except httpx.TransportError as e:
            logger.warning("Request failed, deferring until online", method=method, url=url, error=str(e))
            self.monitor.set_online(False)
            return await self._defer(method, url, send_headers, body)

    async def _defer(self, method: str, url: str, headers: Dict[str, str], body: Optional[str]) -> httpx.Response:
        request_id = await self.queue.add_to_queue(url, method, headers, body)
        return queued_response(request_id, method, url)

    async def status(self) -> OfflineStatus:
        return await self.queue.status(self.api.cache)
