"""Bearer-token middleware for route protection."""

from typing import Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from core.container import container
from core.logging import get_logger

logger = get_logger(__name__)

# Every route under these prefixes needs a valid token. Routes with public
# reads and gated writes check inside the router instead.
PROTECTED_PREFIXES = (
    "/api/users",
    "/api/admin/",
    "/api/cache/",
    "/api/upload/",
    "/api/auth/verify",
)


def extract_bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _unauthorized(message: str) -> JSONResponse:
    return JSONResponse(status_code=401, content={"success": False, "error": message})


class AuthMiddleware(BaseHTTPMiddleware):
    """Attaches the token payload to request.state and guards protected prefixes."""

    async def dispatch(self, request: Request, call_next):
        request.state.token_payload = None
        token = extract_bearer_token(request)

        if token:
            payload = container.user_auth_service().verify_token(token)
            if payload is not None:
                request.state.token_payload = payload
            elif self._is_protected(request.url.path):
                return _unauthorized("Invalid or expired token")

        if request.state.token_payload is None and self._is_protected(request.url.path) \
                and request.method != "OPTIONS":
            logger.debug("Rejected unauthenticated request", path=request.url.path)
            return _unauthorized("Authentication required")

        return await call_next(request)

    @staticmethod
    def _is_protected(path: str) -> bool:
        return path.startswith(PROTECTED_PREFIXES)
