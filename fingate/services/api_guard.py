"""
API guard for the public programmatic API.

Every request passes, in order: credential validation (401), scope
authorization (403), rate limiting (429). Only then does the wrapped
handler run. Usage logging and last-used updates are detached and can
never change the response.
"""
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable

import structlog
from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, Response
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fingate.config import settings
from fingate.models.api_key import ApiKey, ApiUsageLog
from fingate.models.base import as_utc, utcnow
from fingate.routes.metrics import track_auth_failure, track_rate_limit_exceeded
from fingate.services.api_key_service import WILDCARD_SCOPE, hash_api_key
from fingate.services.rate_limiter import RateLimiter
from fingate.tasks import spawn

logger = structlog.get_logger()


@dataclass
class ApiKeyContext:
    """Context from a verified API key, handed to guarded handlers."""
    key_id: str
    user_id: str
    name: str
    scopes: list[str]
    rate_limit: int


Handler = Callable[[Request, ApiKeyContext], Awaitable[Any]]


def extract_bearer(request: Request) -> str | None:
    """Return the token from ``Authorization: Bearer <token>``, if present."""
    authorization = request.headers.get("Authorization")
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


def authorize_scope(api_key: ApiKey, required_scope: str) -> bool:
    """True if the key holds ``required_scope`` or the wildcard scope."""
    scopes = api_key.scopes or []
    return required_scope in scopes or WILDCARD_SCOPE in scopes


def _error(status_code: int, error: str, message: str, headers: dict | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": error, "message": message},
        headers=headers,
    )


class ApiGuard:
    """Authenticates, authorizes and rate-limits programmatic API requests."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        rate_limiter: RateLimiter | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.rate_limiter = rate_limiter or RateLimiter(session_factory, clock=clock)
        self.clock = clock

    async def validate_credential(self, presented: str | None) -> ApiKey | None:
        """
        Look up the key whose stored hash matches ``presented``.

        Returns:
            The ApiKey record, or None if the key is missing, too short,
            unknown, inactive or expired. Never raises.
        """
        if not presented or len(presented) < settings.API_KEY_MIN_LENGTH:
            return None

        key_hash = hash_api_key(presented)
        try:
            async with self.session_factory() as db:
                result = await db.execute(select(ApiKey).where(ApiKey.key_hash == key_hash))
                api_key = result.scalar_one_or_none()
        except Exception as e:
            logger.error("api_key_lookup_failed", error=str(e))
            return None

        if api_key is None:
            logger.warning("api_key_invalid", key_prefix=presented[:8])
            return None

        if not api_key.is_active:
            logger.warning("api_key_inactive", key_id=api_key.id)
            return None

        expires_at = as_utc(api_key.expires_at)
        if expires_at is not None and expires_at <= self.clock():
            logger.warning("api_key_expired", key_id=api_key.id)
            return None

        spawn(self._touch_last_used(api_key.id), name=f"api_key_last_used:{api_key.id}")
        return api_key

    async def handle_request(
        self,
        request: Request,
        handler: Handler,
        required_scope: str,
        ceiling: int | None = None,
    ) -> Response:
        """
        Run ``handler`` behind the full guard.

        Args:
            request: Incoming request carrying ``Authorization: Bearer <key>``
            handler: Business handler, called with (request, ApiKeyContext)
            required_scope: Scope the key must hold
            ceiling: Requests per minute; defaults to the key's own limit

        Returns:
            The handler's response decorated with X-RateLimit-* headers,
            or a 401/403/429 JSON error response.
        """
        api_key = await self.validate_credential(extract_bearer(request))
        if api_key is None:
            track_auth_failure("unauthorized")
            return _error(401, "Unauthorized", "Invalid or missing API key")

        if not authorize_scope(api_key, required_scope):
            track_auth_failure("forbidden")
            logger.warning("api_key_scope_denied", key_id=api_key.id, required_scope=required_scope)
            return _error(403, "Forbidden", f"Required scope: {required_scope}")

        limit = ceiling if ceiling is not None else api_key.rate_limit
        endpoint = _endpoint_of(request)
        rate = await self.rate_limiter.check(api_key.id, endpoint, limit)
        if not rate.allowed:
            track_rate_limit_exceeded(endpoint)
            retry_after = str(int(self.rate_limiter.window.total_seconds()))
            return _error(
                429,
                "Too Many Requests",
                f"Rate limit exceeded. Try again in {retry_after} seconds.",
                headers={
                    "Retry-After": retry_after,
                    "X-RateLimit-Limit": str(rate.limit),
                    "X-RateLimit-Remaining": "0",
                },
            )

        context = ApiKeyContext(
            key_id=api_key.id,
            user_id=api_key.user_id,
            name=api_key.name,
            scopes=list(api_key.scopes or []),
            rate_limit=limit,
        )
        request.state.auth_context = context

        start_time = time.perf_counter()
        try:
            result = await handler(request, context)
        except HTTPException as e:
            result = JSONResponse(
                status_code=e.status_code,
                content={"detail": e.detail},
                headers=e.headers,
            )
        except Exception:
            self._record_usage(context, request, 500, start_time)
            raise

        response = result if isinstance(result, Response) else JSONResponse(jsonable_encoder(result))
        self._record_usage(context, request, response.status_code, start_time)

        response.headers["X-RateLimit-Limit"] = str(rate.limit)
        response.headers["X-RateLimit-Remaining"] = str(rate.remaining)
        return response

    def _record_usage(self, context: ApiKeyContext, request: Request, status_code: int, start_time: float):
        duration_ms = int((time.perf_counter() - start_time) * 1000)
        spawn(
            self._log_usage(
                api_key_id=context.key_id,
                endpoint=_endpoint_of(request),
                method=request.method,
                status_code=status_code,
                duration_ms=duration_ms,
            ),
            name=f"api_usage_log:{context.key_id}",
        )

    async def _touch_last_used(self, api_key_id: str):
        async with self.session_factory() as db:
            await db.execute(
                update(ApiKey)
                .where(ApiKey.id == api_key_id)
                .values(last_used_at=self.clock())
            )
            await db.commit()

    async def _log_usage(self, **fields):
        async with self.session_factory() as db:
            db.add(ApiUsageLog(**fields))
            await db.commit()


def _endpoint_of(request: Request) -> str:
    """Route template (``/v1/transactions/{transaction_id}``) or raw path."""
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path
