"""Structured logging setup and request tracking middleware."""
import logging
import json
import time
import uuid
from typing import Callable, Optional
from datetime import datetime, timezone

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from decision_memory.settings import settings

# Third-party loggers that are chatty at INFO (one line per HTTP call)
QUIET_LOGGERS = ("httpx", "httpcore", "openai")


class JSONFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
        }

        if hasattr(record, 'request_id'):
            log_data['request_id'] = record.request_id

        if hasattr(record, 'extra_fields'):
            log_data.update(record.extra_fields)

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log every request with a request id, the calling user and its duration.

    An incoming ``X-Request-ID`` header is reused so ids can be correlated
    across a proxy; otherwise a fresh one is generated.
    """

    def __init__(self, app: ASGIApp):
        super().__init__(app)
        self.logger = logging.getLogger("decision_memory.requests")

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        start_time = time.monotonic()

        extra = {
            'request_id': request_id,
            'extra_fields': {
                'method': request.method,
                'path': request.url.path,
                'user_id': request.headers.get("X-User-Id"),
                'client_ip': request.client.host if request.client else None,
            }
        }

        try:
            response = await call_next(request)
        except Exception as e:
            extra['extra_fields']['duration_ms'] = round((time.monotonic() - start_time) * 1000, 2)
            extra['extra_fields']['error'] = str(e)
            self.logger.error(
                f"Request failed: {request.method} {request.url.path} - {e}",
                extra=extra,
                exc_info=True
            )
            raise

        # For event streams this measures time to first byte, not stream length
        extra['extra_fields']['status_code'] = response.status_code
        extra['extra_fields']['duration_ms'] = round((time.monotonic() - start_time) * 1000, 2)
        self.logger.info(
            f"{request.method} {request.url.path} - {response.status_code}",
            extra=extra
        )

        response.headers["X-Request-ID"] = request_id
        return response


def setup_logging(level: Optional[str] = None):
    """
    Configure root logging from settings.

    Shared by the API process and the worker CLI.

    Args:
        level: Overrides LOG_LEVEL when given
    """
    level = (level or settings.LOG_LEVEL).upper()
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler()
    if settings.LOG_FORMAT == "json":
        console_handler.setFormatter(JSONFormatter())
    else:
        console_handler.setFormatter(
            logging.Formatter(
                '%(asctime)s - %(threadName)s - %(name)s - %(levelname)s - %(message)s'
            )
        )
    root_logger.addHandler(console_handler)

    if settings.LOG_FILE:
        file_handler = logging.FileHandler(settings.LOG_FILE)
        file_handler.setFormatter(JSONFormatter())
        root_logger.addHandler(file_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.info(f"Logging configured: level={level}, format={settings.LOG_FORMAT}")
