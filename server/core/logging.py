"""Structured logging for the API server and the client SDK.

Both sides log through structlog on top of stdlib logging. Request handlers
bind a request id with ``bind_request_context`` so every line logged while
serving that request carries it.
"""

import sys
import structlog
import logging
from pathlib import Path
from typing import Any, List, Optional
from core.config import Settings


def _handlers(settings: Settings, level: int) -> List[logging.Handler]:
    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)
    handlers: List[logging.Handler] = [console]

    if settings.log_file:
        log_path = Path(settings.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setLevel(level)
        handlers.append(file_handler)
    return handlers


def configure_logging(settings: Settings) -> None:
    """Configure structlog and the stdlib root logger from settings."""
    level = getattr(logging, settings.log_level.upper())
    logging.basicConfig(level=level, handlers=_handlers(settings, level), format="%(message)s", force=True)

    # Chatty at INFO; the request id middleware already covers access logging
    for noisy in ("httpx", "aiosqlite", "sqlalchemy.engine.Engine"):
        logging.getLogger(noisy).setLevel(max(level, logging.WARNING))

    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.log_format == "json":
        processors.insert(1, structlog.processors.TimeStamper(fmt="iso", utc=True))
        processors.insert(1, structlog.stdlib.add_logger_name)
        # Hebrew action strings stay readable in the JSON output
        processors.append(structlog.processors.JSONRenderer(ensure_ascii=False))
    else:
        processors.insert(1, structlog.processors.TimeStamper(fmt="%H:%M:%S"))
        processors.append(structlog.dev.ConsoleRenderer(
            colors=False,
            pad_event=35,
            exception_formatter=structlog.dev.plain_traceback
        ))

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


def bind_request_context(request_id: str, method: str, path: str) -> None:
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id, method=method, path=path)


def clear_request_context() -> None:
    structlog.contextvars.clear_contextvars()


def log_execution_time(logger: structlog.stdlib.BoundLogger, operation: str,
                       start_time: float, end_time: float, **kwargs) -> None:
    """Log execution time with additional context."""
    logger.info(
        "Operation completed",
        operation=operation,
        execution_time_seconds=round(end_time - start_time, 4),
        **kwargs
    )


def log_cache_operation(logger: structlog.stdlib.BoundLogger, operation: str,
                        key: str, hit: Optional[bool] = None, **kwargs) -> None:
    """Log cache operations."""
    log_data = {
        "operation": operation,
        "cache_key": key,
        **kwargs
    }

    if hit is not None:
        log_data["cache_hit"] = hit

    logger.debug("Cache operation", **log_data)


def log_queue_operation(logger: structlog.stdlib.BoundLogger, operation: str,
                        request_id: str, level: str = "info", **kwargs) -> None:
    """Log an offline queue event (queued, replayed, retry, dead_letter)."""
    getattr(logger, level)("Offline queue operation", operation=operation,
                           queued_request_id=request_id, **kwargs)
