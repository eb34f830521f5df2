"""
Webhook Service

Handles outbound webhook delivery with signing, retry logic and a
per-attempt delivery log.
"""
import asyncio
import hashlib
import hmac
import json
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable

import httpx
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fingate.config import settings
from fingate.models.base import utcnow
from fingate.models.webhook import TEST_EVENT, Webhook, WebhookLog
from fingate.routes.metrics import track_webhook_attempt, track_webhook_failed
from fingate.sentry_config import capture_message
from fingate.tasks import spawn

logger = structlog.get_logger()


def generate_webhook_signature(payload: bytes, secret: str) -> str:
    """Generate HMAC-SHA256 hex signature for webhook payload bytes."""
    return hmac.new(
        secret.encode(),
        payload,
        hashlib.sha256
    ).hexdigest()


def verify_signature(payload: bytes, signature: str, secret: str) -> bool:
    """
    Verify an ``X-Webhook-Signature`` header on the receiving side.

    Recompute HMAC-SHA256 over the raw request body with the shared secret
    and compare in constant time.
    """
    expected = generate_webhook_signature(payload, secret)
    return hmac.compare_digest(expected, signature)


def backoff_delay_ms(attempt: int) -> int:
    """Delay before the attempt following ``attempt``: min(base * 2^attempt, cap)."""
    return min(settings.WEBHOOK_BACKOFF_BASE_MS * (2 ** attempt), settings.WEBHOOK_BACKOFF_MAX_MS)


@dataclass
class DeliveryEvent:
    """A domain event to be delivered. Never persisted itself."""
    event_type: str
    data: dict[str, Any]
    user_id: str
    occurred_at: datetime = field(default_factory=utcnow)

    def to_payload(self) -> dict[str, Any]:
        return {
            "event": self.event_type,
            "data": self.data,
            "user_id": self.user_id,
            "occurred_at": self.occurred_at.isoformat(),
        }


@dataclass
class DeliveryResult:
    """Outcome of one attempt, or of the final attempt of a sequence."""
    success: bool
    attempt: int
    status_code: int | None = None
    response_body: str | None = None
    error: str | None = None
    duration_ms: int = 0


class WebhookSender:
    """
    Delivers signed events to subscribed webhook registrations.

    ``transport`` and ``sleep`` are injectable so delivery can run against
    ``httpx.MockTransport`` without real backoff delays.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.session_factory = session_factory
        self.transport = transport
        self.sleep = sleep

    def notify(self, event_type: str, data: dict[str, Any], user_id: str) -> asyncio.Task:
        """
        Fire-and-forget entry point for business call sites.

        Returns immediately; lookup and delivery happen in the background.
        """
        return spawn(self.trigger(event_type, data, user_id), name=f"webhook_trigger:{event_type}")

    async def trigger(self, event_type: str, data: dict[str, Any], user_id: str) -> list[asyncio.Task]:
        """
        Start one independent delivery per matching registration.

        Returns:
            The spawned delivery tasks (empty if nobody is subscribed)
        """
        async with self.session_factory() as db:
            stmt = select(Webhook).where(
                Webhook.user_id == user_id,
                Webhook.is_active.is_(True),
            )
            result = await db.execute(stmt)
            webhooks = [w for w in result.scalars().all() if w.subscribes_to(event_type)]

        if not webhooks:
            logger.debug("webhook_no_subscribers", event_type=event_type, user_id=user_id)
            return []

        event = DeliveryEvent(event_type=event_type, data=data, user_id=user_id)
        logger.info(
            "webhook_triggered",
            event_type=event_type,
            user_id=user_id,
            webhooks=len(webhooks),
        )

        return [
            spawn(self.deliver(webhook, event), name=f"webhook_deliver:{webhook.id}")
            for webhook in webhooks
        ]

    async def deliver(self, webhook: Webhook, event: DeliveryEvent) -> DeliveryResult:
        """
        Deliver ``event`` to one registration with bounded retries.

        Makes at most ``webhook.retry_count`` attempts (at least one), logs
        every attempt, and sleeps ``backoff_delay_ms(k)`` before attempt k+1.
        Stops at the first 2xx.
        """
        payload, body = _encode(event)
        max_attempts = max(webhook.retry_count, 1)

        result = None
        for attempt in range(1, max_attempts + 1):
            result = await self._attempt(webhook, event.event_type, payload, body, attempt)
            await self._log_attempt(webhook, event.event_type, payload, result)

            if result.success:
                logger.info(
                    "webhook_delivered",
                    webhook_id=webhook.id,
                    event_type=event.event_type,
                    attempt=attempt,
                    status_code=result.status_code,
                )
                return result

            logger.warning(
                "webhook_attempt_failed",
                webhook_id=webhook.id,
                event_type=event.event_type,
                attempt=attempt,
                status_code=result.status_code,
                error=result.error,
            )

            if attempt < max_attempts:
                await self.sleep(backoff_delay_ms(attempt) / 1000)

        track_webhook_failed(event.event_type)
        logger.error(
            "webhook_retries_exhausted",
            webhook_id=webhook.id,
            event_type=event.event_type,
            attempts=max_attempts,
        )
        capture_message(
            f"Webhook {webhook.id} gave up on {event.event_type} after {max_attempts} attempts",
            level="warning",
        )
        return result

    async def send_test(self, webhook: Webhook, user_id: str) -> DeliveryResult:
        """Send a single logged ``webhook.test`` event, without retries."""
        event = DeliveryEvent(
            event_type=TEST_EVENT,
            data={"message": "This is a test webhook", "webhook_id": webhook.id},
            user_id=user_id,
        )
        payload, body = _encode(event)

        result = await self._attempt(webhook, TEST_EVENT, payload, body, attempt=1)
        await self._log_attempt(webhook, TEST_EVENT, payload, result)
        return result

    async def _attempt(
        self,
        webhook: Webhook,
        event_type: str,
        payload: dict[str, Any],
        body: bytes,
        attempt: int,
    ) -> DeliveryResult:
        headers = {
            "Content-Type": "application/json",
            "X-Webhook-Signature": generate_webhook_signature(body, webhook.secret),
            "X-Webhook-Event": event_type,
            "X-Webhook-Timestamp": payload["occurred_at"],
            "User-Agent": settings.WEBHOOK_USER_AGENT,
        }
        timeout = webhook.timeout_seconds

        start_time = time.perf_counter()
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self.transport) as client:
                response = await asyncio.wait_for(
                    client.post(webhook.url, content=body, headers=headers),
                    timeout=timeout,
                )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            track_webhook_attempt(event_type, "timeout")
            return DeliveryResult(
                success=False,
                attempt=attempt,
                error=f"Timeout after {timeout}s",
                duration_ms=_elapsed_ms(start_time),
            )
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            track_webhook_attempt(event_type, "error")
            return DeliveryResult(
                success=False,
                attempt=attempt,
                error=str(e) or e.__class__.__name__,
                duration_ms=_elapsed_ms(start_time),
            )

        success = 200 <= response.status_code < 300
        track_webhook_attempt(event_type, "success" if success else "http_error")
        return DeliveryResult(
            success=success,
            attempt=attempt,
            status_code=response.status_code,
            response_body=response.text[:settings.WEBHOOK_RESPONSE_BODY_LIMIT],
            error=None if success else f"HTTP {response.status_code}",
            duration_ms=_elapsed_ms(start_time),
        )

    async def _log_attempt(
        self,
        webhook: Webhook,
        event_type: str,
        payload: dict[str, Any],
        result: DeliveryResult,
    ):
        try:
            async with self.session_factory() as db:
                db.add(WebhookLog(
                    webhook_id=webhook.id,
                    event_type=event_type,
                    payload=payload,
                    status_code=result.status_code,
                    response_body=result.response_body,
                    error=result.error,
                    attempt=result.attempt,
                    success=result.success,
                    duration_ms=result.duration_ms,
                ))
                await db.commit()
        except Exception as e:
            logger.error(
                "webhook_log_failed",
                webhook_id=webhook.id,
                attempt=result.attempt,
                error=str(e),
            )


def _elapsed_ms(start_time: float) -> int:
    return int((time.perf_counter() - start_time) * 1000)


def _encode(event: DeliveryEvent) -> tuple[dict[str, Any], bytes]:
    """Serialize once; the logged snapshot is decoded from the exact bytes sent."""
    body = json.dumps(event.to_payload(), default=str).encode()
    return json.loads(body), body
