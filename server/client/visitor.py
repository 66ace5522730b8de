"""Local-first visitor identity with server reconciliation.

The server profile is the source of truth for the display name. Local
registration is only written after the server acknowledges it, and is
cleared when the server no longer has a name for the visitor.
"""

import asyncio
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import httpx

from client.api_client import ApiClient, error_message
from client.local_store import LocalStore
from core.logging import get_logger

logger = get_logger(__name__)

VISITOR_ID_KEY = "visitor_id"
SESSION_ID_KEY = "session_id"
VISITOR_NAME_KEY = "visitor_name"
REGISTERED_KEY = "visitor_registered"
NAME_MODAL_SHOWN_KEY = "name_modal_shown"

REGISTRATION_KEYS = (VISITOR_NAME_KEY, REGISTERED_KEY, NAME_MODAL_SHOWN_KEY)

VISITORS_URL = "/api/visitors"


@dataclass
class VisitorIdentity:
    visitor_id: str
    session_id: str
    name: Optional[str] = None
    is_registered: bool = False


class VisitorTracker:
    def __init__(self, store: LocalStore, api: ApiClient,
                 reconcile_interval: float = 60.0,
                 throttle: float = 10.0,
                 clock: Callable[[], float] = time.monotonic):
        self.store = store
        self.api = api
        self.reconcile_interval = reconcile_interval
        self.throttle = throttle
        self.clock = clock
        self._last_reconcile: Optional[float] = None
        self._task: Optional[asyncio.Task] = None

    async def get_or_create_visitor(self) -> VisitorIdentity:
        visitor_id = await self.store.get(VISITOR_ID_KEY)
        if not visitor_id:
            visitor_id = f"visitor_{uuid.uuid4()}"
            await self.store.set(VISITOR_ID_KEY, visitor_id)
            logger.info("New visitor identity", visitor_id=visitor_id)

        session_id = await self.store.get(SESSION_ID_KEY)
        if not session_id:
            session_id = f"session_{uuid.uuid4()}"
            await self.store.set(SESSION_ID_KEY, session_id)

        return VisitorIdentity(
            visitor_id=visitor_id,
            session_id=session_id,
            name=await self.store.get(VISITOR_NAME_KEY),
            is_registered=await self.store.get(REGISTERED_KEY) == "true",
        )

    async def register_visitor(self, name: str, metadata: Optional[Dict[str, Any]] = None) -> bool:
        """Save the name on the server, then locally. False if the server refused."""
        identity = await self.get_or_create_visitor()
        payload = {"visitorId": identity.visitor_id, "name": name.strip(), "metadata": metadata or {}}
        try:
            response = await self.api.request("POST", VISITORS_URL, json=payload)
        except httpx.HTTPError as e:
            logger.warning("Visitor registration failed", visitor_id=identity.visitor_id, error=str(e))
            return False

        if response.status_code >= 400:
            logger.warning("Visitor registration rejected", visitor_id=identity.visitor_id,
                           status=response.status_code, error=error_message(response))
            return False
        body = response.json()
        if not body.get("success"):
            return False

        saved_name = (body.get("profile") or {}).get("name") or name.strip()
        await self.store.set(VISITOR_NAME_KEY, saved_name)
        await self.store.set(REGISTERED_KEY, "true")
        await self.store.set(NAME_MODAL_SHOWN_KEY, "true")
        self._last_reconcile = self.clock()
        logger.info("Visitor registered", visitor_id=identity.visitor_id)
        return True

    async def clear_registration(self) -> None:
        await self.store.delete(*REGISTRATION_KEYS)

    async def reconcile(self, force: bool = False) -> bool:
        """Align local registration with the server profile.

        Returns True when a server check was made. Calls within the throttle
        window are skipped unless forced.
        """
        now = self.clock()
        if not force and self._last_reconcile is not None and now - self._last_reconcile < self.throttle:
            return False
        self._last_reconcile = now

        identity = await self.get_or_create_visitor()
        try:
            response = await self.api.request("GET", VISITORS_URL, params={"visitorId": identity.visitor_id})
        except httpx.HTTPError as e:
            logger.warning("Visitor reconcile failed", visitor_id=identity.visitor_id, error=str(e))
            return False

        if response.status_code == 404:
            server_name = None
        elif response.status_code >= 400:
            logger.warning("Visitor reconcile rejected", visitor_id=identity.visitor_id,
                           status=response.status_code, error=error_message(response))
            return False
        else:
            server_name = ((response.json().get("profile") or {}).get("name") or "").strip() or None

        if server_name is None:
            if identity.is_registered or identity.name:
                await self.clear_registration()
                logger.info("Visitor registration revoked by server", visitor_id=identity.visitor_id)
        elif server_name != identity.name or not identity.is_registered:
            await self.store.set(VISITOR_NAME_KEY, server_name)
            await self.store.set(REGISTERED_KEY, "true")
            logger.info("Visitor name synced from server", visitor_id=identity.visitor_id)
        return True

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.reconcile_interval)
            if await self.store.get(REGISTERED_KEY) != "true":
                continue
            try:
                await self.reconcile()
            except Exception as e:
                logger.error("Periodic visitor reconcile failed", error=str(e))

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
