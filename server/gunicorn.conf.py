"""Gunicorn configuration for production deployment.

Bind address, worker count and log level come from the same Settings object
the app uses, so .env stays the single source of truth.

Usage:
    gunicorn main:app -c gunicorn.conf.py
"""
import os

from core.config import Settings
from core.logging import configure_logging, get_logger

settings = Settings()
configure_logging(settings)
logger = get_logger("gunicorn.conf")

bind = f"{settings.host}:{settings.port}"

# Response cache, permission cache and the visitor set are per process.
# Scale with WORKERS only behind sticky sessions or with REDIS_ENABLED.
workers = settings.workers
worker_class = "uvicorn.workers.UvicornWorker"

timeout = int(os.getenv("GUNICORN_TIMEOUT", "120"))
graceful_timeout = int(os.getenv("GUNICORN_GRACEFUL_TIMEOUT", "30"))
keepalive = int(os.getenv("GUNICORN_KEEPALIVE", "5"))

max_requests = int(os.getenv("GUNICORN_MAX_REQUESTS", "10000"))
max_requests_jitter = int(os.getenv("GUNICORN_MAX_REQUESTS_JITTER", "1000"))

accesslog = None if settings.debug else "-"
errorlog = "-"
loglevel = settings.log_level.lower()

proc_name = "drivertasks-backend"

# The lifespan opens the database and starts the cache sweep inside each worker
preload_app = False


def when_ready(server):
    logger.info("Gunicorn ready", bind=bind, workers=workers, storage_backend=settings.storage_backend)


def post_fork(server, worker):
    logger.info("Worker started", pid=worker.pid)


def worker_exit(server, worker):
    logger.info("Worker exited", pid=worker.pid)
