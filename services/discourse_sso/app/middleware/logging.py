"""
Request/Response logging middleware.

Logs all incoming requests and outgoing responses with timing information.
"""
import time
import uuid
from typing import Callable

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from ..core.logging import get_logger

logger = get_logger(__name__)

# The SSO payload and signature are credentials in their own right.
_HIDDEN_QUERY_KEYS = {"sso", "sig"}


def _loggable_query(request: Request) -> str | None:
    if not request.query_params:
        return None
    return "&".join(
        f"{key}={'***' if key in _HIDDEN_QUERY_KEYS else value}"
        for key, value in request.query_params.multi_items()
    )


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware to log all HTTP requests and responses.

    Adds X-Request-ID header to all responses for request tracing.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        structlog.contextvars.bind_contextvars(request_id=request_id)

        start_time = time.time()
        logger.info(
            "request.started",
            method=request.method,
            path=request.url.path,
            query_params=_loggable_query(request),
            client=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
        )

        try:
            response = await call_next(request)
            duration_ms = (time.time() - start_time) * 1000
            logger.info(
                "request.completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round(duration_ms, 2),
            )
            response.headers["X-Request-ID"] = request_id
            return response

        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            logger.error(
                "request.failed",
                method=request.method,
                path=request.url.path,
                error=str(e),
                error_type=type(e).__name__,
                duration_ms=round(duration_ms, 2),
                exc_info=True,
            )
            # Re-raise to let FastAPI's exception handlers deal with it
            raise

        finally:
            structlog.contextvars.unbind_contextvars("request_id")
