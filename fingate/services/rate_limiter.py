"""
Rate Limiter Service using database window counters (rolling minute).

Each (api key, endpoint) pair gets a counter row whose window starts at
the first request. The row is considered current while
``now < window_start + window``; after that a new row supersedes it.

The increment is read-then-write with no lock, so concurrent requests in
the same window can overshoot the ceiling slightly. A strict variant
would be a single conditional
``UPDATE ... SET request_count = request_count + 1 WHERE request_count < :ceiling``.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fingate.config import settings
from fingate.models.api_key import RateLimitWindow
from fingate.models.base import utcnow

logger = structlog.get_logger()


@dataclass
class RateLimitResult:
    """Outcome of a rate-limit check."""
    allowed: bool
    remaining: int
    limit: int


class RateLimiter:
    """Per-key, per-endpoint rate limiter backed by the api_rate_limits table."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        window_seconds: int | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.window = timedelta(seconds=window_seconds or settings.RATE_LIMIT_WINDOW_SECONDS)
        self.clock = clock

    async def check(self, api_key_id: str, endpoint: str, ceiling: int) -> RateLimitResult:
        """
        Count this request against the current window.

        Returns:
            RateLimitResult; ``allowed`` is False once ``ceiling`` requests
            were already counted in the window. Store errors fail open.
        """
        now = self.clock()
        cutoff = now - self.window

        try:
            async with self.session_factory() as db:
                stmt = (
                    select(RateLimitWindow)
                    .where(
                        RateLimitWindow.api_key_id == api_key_id,
                        RateLimitWindow.endpoint == endpoint,
                        RateLimitWindow.window_start >= cutoff,
                    )
                    .order_by(RateLimitWindow.window_start.desc())
                    .limit(1)
                )
                result = await db.execute(stmt)
                window = result.scalar_one_or_none()

                count = window.request_count if window else 0

                if count >= ceiling:
                    logger.warning(
                        "rate_limit_exceeded",
                        api_key_id=api_key_id,
                        endpoint=endpoint,
                        limit=ceiling,
                    )
                    return RateLimitResult(allowed=False, remaining=0, limit=ceiling)

                if window:
                    window.request_count = count + 1
                else:
                    db.add(RateLimitWindow(
                        api_key_id=api_key_id,
                        endpoint=endpoint,
                        window_start=now,
                        request_count=1,
                    ))
                await db.commit()

        except Exception as e:
            # Counter store unavailable: allow the request (fail open)
            logger.error(
                "rate_limit_check_failed",
                api_key_id=api_key_id,
                endpoint=endpoint,
                error=str(e),
            )
            return RateLimitResult(allowed=True, remaining=max(ceiling - 1, 0), limit=ceiling)

        return RateLimitResult(allowed=True, remaining=max(ceiling - count - 1, 0), limit=ceiling)

    async def get_current_count(self, api_key_id: str, endpoint: str) -> int:
        """Requests counted in the current window (0 if none)."""
        cutoff = self.clock() - self.window
        async with self.session_factory() as db:
            stmt = (
                select(RateLimitWindow.request_count)
                .where(
                    RateLimitWindow.api_key_id == api_key_id,
                    RateLimitWindow.endpoint == endpoint,
                    RateLimitWindow.window_start >= cutoff,
                )
                .order_by(RateLimitWindow.window_start.desc())
                .limit(1)
            )
            result = await db.execute(stmt)
            return result.scalar_one_or_none() or 0
