"""Structured logging setup and request logging middleware with PII redaction."""

import logging
import re
import time
import uuid
from typing import Callable

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

# Follow-up records carry recipient addresses; keep them out of logs
EMAIL_PATTERN = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")

REQUEST_ID_HEADER = "X-Request-ID"


def redact_pii(text: str) -> str:
    """Redact email addresses from text."""
    return EMAIL_PATTERN.sub("[REDACTED_EMAIL]", text)


def setup_logging(debug: bool = False) -> None:
    """Configure structlog for JSON output. Used by the API and the Celery worker."""
    log_level = logging.DEBUG if debug else logging.INFO

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Module loggers use the standard library
    logging.basicConfig(
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        level=log_level,
    )


class LoggingMiddleware(BaseHTTPMiddleware):
    """Log each request with a request id; client-supplied ids are reused."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())[:8]
        start_time = time.time()

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)
        logger = structlog.get_logger()

        path = redact_pii(str(request.url.path))
        await logger.ainfo(
            "request_started",
            method=request.method,
            path=path,
            client=request.client.host if request.client else "unknown",
        )

        response = await call_next(request)

        await logger.ainfo(
            "request_completed",
            method=request.method,
            path=path,
            status_code=response.status_code,
            duration_ms=round((time.time() - start_time) * 1000, 2),
        )

        response.headers[REQUEST_ID_HEADER] = request_id
        return response
