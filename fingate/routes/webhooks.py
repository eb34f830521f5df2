"""
Webhook API routes.

Provides endpoints for managing a user's webhook registrations, sending
test deliveries and reviewing the delivery attempt log.
"""
import secrets
from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from pydantic import AfterValidator, BaseModel, Field, HttpUrl
from sqlalchemy import case, delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from fingate.config import settings
from fingate.database import get_db
from fingate.dependencies.api_key import get_webhook_sender
from fingate.dependencies.auth import TokenPayload, get_current_user
from fingate.models.webhook import WEBHOOK_EVENTS, Webhook, WebhookLog
from fingate.services.webhook_service import WebhookSender


router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


def _check_events(events: list[str]) -> list[str]:
    unknown = set(events) - set(WEBHOOK_EVENTS)
    if unknown:
        raise ValueError(f"Unknown events: {', '.join(sorted(unknown))}")
    return list(dict.fromkeys(events))


EventList = Annotated[list[str], AfterValidator(_check_events)]


class CreateWebhookRequest(BaseModel):
    """Request model for registering a webhook."""
    name: str = Field(..., min_length=1, max_length=100)
    url: HttpUrl
    events: EventList = Field(..., min_length=1)
    retry_count: int = Field(settings.WEBHOOK_DEFAULT_RETRY_COUNT, ge=1, le=10)
    timeout_seconds: int = Field(settings.WEBHOOK_DEFAULT_TIMEOUT_SECONDS, ge=1, le=60)


class UpdateWebhookRequest(BaseModel):
    """Request model for editing a webhook. Omitted fields are unchanged."""
    name: str | None = Field(None, min_length=1, max_length=100)
    url: HttpUrl | None = None
    events: EventList | None = Field(None, min_length=1)
    retry_count: int | None = Field(None, ge=1, le=10)
    timeout_seconds: int | None = Field(None, ge=1, le=60)
    is_active: bool | None = None


class WebhookStats(BaseModel):
    total_calls: int
    successful_calls: int
    success_rate: float


class WebhookResponse(BaseModel):
    """Response model for a webhook (the secret is never included)."""
    id: str
    name: str
    url: str
    events: list[str]
    retry_count: int
    timeout_seconds: int
    is_active: bool
    created_at: datetime | None = None
    stats: WebhookStats | None = None


class WebhookCreatedResponse(WebhookResponse):
    """Response after creating a webhook, carrying the secret once."""
    secret: str


class WebhookTestResponse(BaseModel):
    success: bool
    message: str | None = None
    error: str | None = None
    status_code: int | None = None
    duration_ms: int


class WebhookLogResponse(BaseModel):
    id: str
    event_type: str
    payload: dict
    status_code: int | None = None
    response_body: str | None = None
    error: str | None = None
    attempt: int
    success: bool
    duration_ms: int
    created_at: datetime | None = None


def webhook_to_response(webhook: Webhook, stats: WebhookStats | None = None) -> WebhookResponse:
    """Convert Webhook model to WebhookResponse."""
    return WebhookResponse(
        id=webhook.id,
        name=webhook.name,
        url=webhook.url,
        events=list(webhook.events or []),
        retry_count=webhook.retry_count,
        timeout_seconds=webhook.timeout_seconds,
        is_active=webhook.is_active,
        created_at=webhook.created_at,
        stats=stats,
    )


async def get_owned_webhook(webhook_id: str, user_id: str, db: AsyncSession) -> Webhook:
    """Fetch a webhook owned by ``user_id`` or raise 404."""
    stmt = select(Webhook).where(Webhook.id == webhook_id, Webhook.user_id == user_id)
    result = await db.execute(stmt)
    webhook = result.scalar_one_or_none()

    if not webhook:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Webhook not found"
        )
    return webhook


@router.get("/events")
async def list_events():
    """Event types a webhook can subscribe to."""
    return {
        "events": [
            {"value": value, "label": label}
            for value, label in WEBHOOK_EVENTS.items()
        ]
    }


@router.get("")
async def list_webhooks(
    token: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """List the user's webhooks with delivery statistics."""
    stmt = (
        select(Webhook)
        .where(Webhook.user_id == token.sub)
        .order_by(Webhook.created_at.desc())
    )
    result = await db.execute(stmt)
    webhooks = result.scalars().all()

    stats_stmt = (
        select(
            WebhookLog.webhook_id,
            func.count(WebhookLog.id),
            func.sum(case((WebhookLog.success.is_(True), 1), else_=0)),
        )
        .where(WebhookLog.webhook_id.in_([w.id for w in webhooks]))
        .group_by(WebhookLog.webhook_id)
    )
    stats_result = await db.execute(stats_stmt)
    counts = {row[0]: (row[1], row[2] or 0) for row in stats_result.all()}

    response = []
    for webhook in webhooks:
        total, successful = counts.get(webhook.id, (0, 0))
        stats = WebhookStats(
            total_calls=total,
            successful_calls=successful,
            success_rate=round(successful / total * 100, 1) if total else 0.0,
        )
        response.append(webhook_to_response(webhook, stats))

    return {"webhooks": response}


@router.post("", response_model=WebhookCreatedResponse, status_code=status.HTTP_201_CREATED)
async def create_webhook(
    request: CreateWebhookRequest,
    token: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """
    Register a new webhook.

    The signing secret is returned only once and should be saved securely.
    """
    secret = f"whsec_{secrets.token_urlsafe(32)}"

    webhook = Webhook(
        user_id=token.sub,
        name=request.name,
        url=str(request.url),
        secret=secret,
        events=request.events,
        retry_count=request.retry_count,
        timeout_seconds=request.timeout_seconds,
        is_active=True,
    )
    db.add(webhook)
    await db.commit()
    await db.refresh(webhook)

    return WebhookCreatedResponse(
        **webhook_to_response(webhook).model_dump(),
        secret=secret,
    )


@router.put("/{webhook_id}", response_model=WebhookResponse)
async def update_webhook(
    webhook_id: str,
    request: UpdateWebhookRequest,
    token: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Edit a webhook registration."""
    webhook = await get_owned_webhook(webhook_id, token.sub, db)

    changes = request.model_dump(exclude_unset=True, exclude_none=True)
    if "url" in changes:
        changes["url"] = str(request.url)
    for field, value in changes.items():
        setattr(webhook, field, value)

    await db.commit()
    await db.refresh(webhook)

    return webhook_to_response(webhook)


@router.delete("/{webhook_id}", status_code=status.HTTP_204_NO_CONTENT, response_class=Response)
async def delete_webhook(
    webhook_id: str,
    token: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Remove a webhook and its delivery log."""
    webhook = await get_owned_webhook(webhook_id, token.sub, db)

    await db.execute(delete(WebhookLog).where(WebhookLog.webhook_id == webhook.id))
    await db.delete(webhook)
    await db.commit()

    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{webhook_id}/test", response_model=WebhookTestResponse)
async def test_webhook(
    webhook_id: str,
    request: Request,
    token: TokenPayload = Depends(get_current_user),
    sender: WebhookSender = Depends(get_webhook_sender)
):
    """
    Send a single test event and report what the endpoint answered.

    The lookup session is closed before the outbound call, which may take
    up to the webhook's timeout.
    """
    async with request.app.state.session_factory() as db:
        webhook = await get_owned_webhook(webhook_id, token.sub, db)

    result = await sender.send_test(webhook, token.sub)

    return WebhookTestResponse(
        success=result.success,
        message=f"Webhook responded with HTTP {result.status_code}" if result.status_code else None,
        error=result.error,
        status_code=result.status_code,
        duration_ms=result.duration_ms,
    )


@router.get("/{webhook_id}/logs")
async def list_webhook_logs(
    webhook_id: str,
    limit: int = 50,
    token: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Most recent delivery attempts for a webhook."""
    webhook = await get_owned_webhook(webhook_id, token.sub, db)

    stmt = (
        select(WebhookLog)
        .where(WebhookLog.webhook_id == webhook.id)
        .order_by(WebhookLog.created_at.desc(), WebhookLog.attempt.desc())
        .limit(min(max(limit, 1), 200))
    )
    result = await db.execute(stmt)
    logs = result.scalars().all()

    return {
        "logs": [
            WebhookLogResponse(
                id=log.id,
                event_type=log.event_type,
                payload=log.payload,
                status_code=log.status_code,
                response_body=log.response_body,
                error=log.error,
                attempt=log.attempt,
                success=log.success,
                duration_ms=log.duration_ms,
                created_at=log.created_at,
            )
            for log in logs
        ]
    }
