"""Global error handling middleware."""

import logging
import traceback

from fastapi import Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import DBAPIError, OperationalError
from starlette.middleware.base import BaseHTTPMiddleware

from app.middleware.logging import redact_pii

logger = logging.getLogger(__name__)


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Catch unhandled exceptions and return safe error responses.

    A lost database connection is reported as 503 so clients retry; anything
    else is a generic 500.
    """

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as exc:
            logger.error(
                "Unhandled exception on %s %s: %s\n%s",
                request.method,
                redact_pii(request.url.path),
                redact_pii(str(exc)),
                redact_pii(traceback.format_exc()),
            )

            if isinstance(exc, OperationalError) or (
                isinstance(exc, DBAPIError) and exc.connection_invalidated
            ):
                return JSONResponse(
                    status_code=503,
                    content={
                        "detail": "The record store is unavailable. Please retry shortly.",
                        "error_type": type(exc).__name__,
                    },
                )

            return JSONResponse(
                status_code=500,
                content={
                    "detail": "An internal error occurred. Please try again later.",
                    "error_type": type(exc).__name__,
                },
            )
