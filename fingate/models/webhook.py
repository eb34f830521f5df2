"""
Webhook Models

Outbound webhook registrations and the per-attempt delivery log.
"""
from datetime import datetime
from typing import Any
from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from fingate.models.base import Base, IdMixin, TimestampMixin, utcnow


# Events a registration may subscribe to
WEBHOOK_EVENTS = {
    "transaction.created": "Transaction created",
    "transaction.updated": "Transaction updated",
    "transaction.deleted": "Transaction deleted",
    "budget.exceeded": "Budget exceeded",
    "budget.warning": "Budget warning",
    "goal.achieved": "Goal achieved",
    "achievement.unlocked": "Achievement unlocked",
}

TEST_EVENT = "webhook.test"


class Webhook(Base, IdMixin, TimestampMixin):
    """A subscriber endpoint registered by a user."""
    __tablename__ = "webhooks"

    user_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    secret: Mapped[str] = mapped_column(String(100), nullable=False)
    events: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    timeout_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def subscribes_to(self, event_type: str) -> bool:
        return self.is_active and event_type in (self.events or [])

    def __repr__(self):
        return f"<Webhook(id={self.id}, url={self.url}, events={self.events})>"


class WebhookLog(Base, IdMixin):
    """One physical delivery attempt. Append-only."""
    __tablename__ = "webhook_logs"

    webhook_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("webhooks.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_body: Mapped[str | None] = mapped_column(Text, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempt: Mapped[int] = mapped_column(Integer, nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    duration_ms: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
