"""
FastAPI backend for the Driver Tasks Hub.

Projects, tasks, users and permissions, analytics, daily updates and
visitor tracking, wired through the dependency injection container.
"""

# Performance: Install uvloop if available (Linux/macOS only)
try:
    import uvloop
    uvloop.install()
except ImportError:
    pass  # Windows - uvloop not available, use default asyncio

import logging
import time
import uuid
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, ORJSONResponse
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from core.container import container
from core.health import get_health_status, set_startup_time
from core.logging import bind_request_context, clear_request_context, configure_logging, get_logger
from middleware.auth import AuthMiddleware
from routers import analytics, auth, cache, daily_updates, feedback, projects, tasks, upload, users, visitors

# Initialize settings and logging
settings = container.settings()
configure_logging(settings)
logger = get_logger(__name__)

# Suppress noisy loggers
logging.getLogger("uvicorn").setLevel(logging.WARNING)
logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
logging.getLogger("uvicorn.error").setLevel(logging.WARNING)
logging.getLogger("watchfiles").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    logger.info("Starting Driver Tasks Hub")
    set_startup_time()

    database = container.database()
    cache_manager = container.cache()

    await database.startup()
    await cache_manager.connect_mirror()
    await cache_manager.start()

    await container.user_auth_service().ensure_admin()
    container.file_storage()

    logger.info("Services started successfully")
    yield

    await cache_manager.stop()
    if cache_manager.mirror is not None:
        await cache_manager.mirror.shutdown()
    await database.shutdown()
    logger.info("Services shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="Driver Tasks Hub",
    version="1.0.0",
    description="Task hub backend with permissions, analytics and visitor tracking",
    lifespan=lifespan,
    default_response_class=ORJSONResponse
)


def _envelope(status_code: int, message: str) -> ORJSONResponse:
    return ORJSONResponse(status_code=status_code, content={"success": False, "error": message})


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    message = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    return _envelope(exc.status_code, message)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        first = errors[0]
        field = ".".join(str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path"))
        message = f"{field}: {first.get('msg')}" if field else str(first.get("msg"))
    else:
        message = "Invalid request"
    return _envelope(status.HTTP_400_BAD_REQUEST, message)


class CatchAllExceptionsMiddleware(BaseHTTPMiddleware):
    """Binds a request id for logging and turns unhandled errors into the 500 envelope."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex[:12]
        bind_request_context(request_id, request.method, request.url.path)
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as e:
            logger.error("Unhandled exception", error_type=type(e).__name__, error=str(e), exc_info=True)
            response = JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={"success": False, "error": "Internal server error"}
            )
        response.headers["X-Request-ID"] = request_id
        logger.info("Request completed", status_code=response.status_code,
                    duration_ms=round((time.perf_counter() - started) * 1000, 1))
        clear_request_context()
        return response


# Auth runs inside the catch-all so its failures still get the envelope
app.add_middleware(AuthMiddleware)
app.add_middleware(CatchAllExceptionsMiddleware)

logger.info("Configuring CORS middleware",
            origins_count=len(settings.cors_origins),
            origins=settings.cors_origins)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Queued-For-Sync", "X-Request-ID"],
)

# Include routers
app.include_router(auth.router)
app.include_router(users.router)
app.include_router(visitors.router)
app.include_router(analytics.router)
app.include_router(daily_updates.router)
app.include_router(feedback.router)
app.include_router(projects.router)
app.include_router(tasks.router)
app.include_router(upload.router)
app.include_router(cache.router)

# Locally stored uploads
Path(settings.upload_dir).mkdir(parents=True, exist_ok=True)
app.mount(settings.upload_url_prefix, StaticFiles(directory=settings.upload_dir), name="uploads")


@app.get("/api/health")
async def health_check():
    """Detailed health check."""
    health = await get_health_status(container.database(), container.cache(), settings,
                                    container.file_storage().name)
    return {"success": True, **health}


if __name__ == "__main__":
    import uvicorn
    logger.info("Starting Driver Tasks Hub",
                host=settings.host, port=settings.port, debug=settings.debug)
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        reload_dirs=["."] if settings.debug else None,
        reload_excludes=["*.pyc", "__pycache__", "*.log", "*.db"] if settings.debug else None,
        workers=1 if settings.debug else settings.workers
    )
