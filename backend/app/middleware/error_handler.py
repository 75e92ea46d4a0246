"""Production error handler middleware with PII redaction."""

import logging
from typing import Callable

from fastapi import Request, Response, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.config import settings
from app.services.error_logging_service import error_logging_service

logger = logging.getLogger(__name__)


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """
    Middleware for handling uncaught exceptions.

    - Logs errors with PII and secret redaction
    - Returns safe error messages to clients (no stack traces in production)

    Verification outcomes (invalid, rate_limited, ...) are ordinary responses
    and never reach this handler; only infrastructure failures do.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Handle request and catch any uncaught exceptions."""
        try:
            return await call_next(request)

        except Exception as exc:
            # Set by the auth dependencies once the caller is resolved
            user = getattr(request.state, "user", None)
            user_id = str(user.id) if user is not None else None

            # Query strings may carry device fingerprints; log the path only
            context = {
                "method": request.method,
                "path": request.url.path,
                "client_host": request.client.host if request.client else None,
            }

            error_logging_service.log_error(
                logger=logger, error=exc, context=context, user_id=user_id
            )

            if settings.DEBUG:
                error_detail = {
                    "error": error_logging_service.redact_pii(str(exc)),
                    "type": type(exc).__name__,
                    "detail": "An error occurred processing your request",
                }
            else:
                error_detail = {
                    "error": "Internal server error",
                    "detail": "An unexpected error occurred. Please try again later.",
                }

            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=error_detail
            )
