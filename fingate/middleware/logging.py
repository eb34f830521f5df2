"""
Logging middleware for request/response logging.

Logs all HTTP requests with timing and context.
"""
import time
import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from fingate.routes.metrics import track_request

logger = structlog.get_logger()


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware to log all HTTP requests with timing and context.

    Adds: route, method, duration_ms, status and, for guarded routes,
    api_key_id / user_id to every log.
    """

    async def dispatch(self, request: Request, call_next):
        start_time = time.perf_counter()

        request_logger = logger.bind(
            route=request.url.path,
            method=request.method,
        )

        try:
            response = await call_next(request)
        except Exception as e:
            duration_ms = (time.perf_counter() - start_time) * 1000
            request_logger.error(
                "request_failed",
                status_code=500,
                duration_ms=round(duration_ms, 2),
                error=str(e)
            )
            raise

        duration = time.perf_counter() - start_time

        # Set by the API guard once the key is verified
        auth_context = getattr(request.state, "auth_context", None)
        if auth_context is not None:
            request_logger = request_logger.bind(
                api_key_id=auth_context.key_id,
                user_id=auth_context.user_id,
            )

        request_logger.info(
            "request_completed",
            status_code=response.status_code,
            duration_ms=round(duration * 1000, 2)
        )
        track_request(request.method, _route_template(request), response.status_code, duration)

        return response


def _route_template(request: Request) -> str:
    route = request.scope.get("route")
    return getattr(route, "path", None) or "unmatched"
