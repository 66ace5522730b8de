"""HTTP client for the Driver Tasks Hub API with cached reads."""

import re
from typing import Any, Dict, Optional

import httpx

from client.session import SessionContext
from core.cache import CacheManager
from core.logging import get_logger

logger = get_logger(__name__)

API_NAMESPACE = "api"


class ApiError(Exception):
    """Non-2xx response carrying the server's error envelope."""

    def __init__(self, status_code: int, message: str):
        super().__init__(f"{status_code}: {message}")
        self.status_code = status_code
        self.message = message


def error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict):
        return str(body.get("error") or body.get("detail") or body)
    return str(body)


class ApiClient:
    """Thin httpx wrapper. Authorization comes from the session on every call."""

    def __init__(self, session: SessionContext, cache: Optional[CacheManager] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.session = session
        self.cache = cache
        self._client = httpx.AsyncClient(
            base_url=session.base_url,
            timeout=session.timeout,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def request(self, method: str, url: str, *,
                      json: Any = None,
                      content: Optional[str] = None,
                      params: Optional[Dict[str, Any]] = None,
                      headers: Optional[Dict[str, str]] = None) -> httpx.Response:
        """Send a request. Transport errors propagate as httpx exceptions."""
        merged = {**self.session.auth_headers(), **(headers or {})}
        response = await self._client.request(
            method.upper(), url, json=json, content=content, params=params, headers=merged
        )
        logger.debug("API request", method=method.upper(), url=url, status=response.status_code)
        return response

    async def get_json(self, url: str, params: Optional[Dict[str, Any]] = None,
                       ttl: Optional[float] = None, version: Optional[str] = None,
                       use_cache: bool = True) -> Any:
        """GET and decode JSON, served through the cache when one is attached."""

        async def fetch() -> Any:
            response = await self.request("GET", url, params=params)
            if response.status_code >= 400:
                raise ApiError(response.status_code, error_message(response))
            return response.json()

        if not use_cache or self.cache is None:
            return await fetch()
        key = f"{API_NAMESPACE}:{CacheManager.make_key(url, params, version)}"
        return await self.cache.get(key, fetch, ttl=ttl, version=version)

    def invalidate(self, url_prefix: str) -> int:
        """Drop cached reads for every URL starting with url_prefix."""
        if self.cache is None:
            return 0
        return self.cache.invalidate_pattern(f"^{API_NAMESPACE}:{re.escape(url_prefix)}")
