"""
API key models.

Credentials for programmatic access, their rolling rate-limit windows,
and the per-request usage log written by the API guard.
"""
from datetime import datetime
from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, JSON, String
from sqlalchemy.orm import Mapped, mapped_column
from fingate.models.base import Base, IdMixin, TimestampMixin, utcnow


class ApiKey(Base, IdMixin, TimestampMixin):
    """
    API key for programmatic access.

    Only the SHA-256 hash of the key is stored. The plaintext is shown to
    the owner once, at creation time.
    """
    __tablename__ = "api_keys"

    user_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    key_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    key_prefix: Mapped[str] = mapped_column(String(12), nullable=False)  # For display only
    scopes: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=lambda: ["read"])
    rate_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=60)  # per minute
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<ApiKey(id={self.id}, prefix={self.key_prefix}, user_id={self.user_id})>"


class RateLimitWindow(Base, IdMixin):
    """Request counter for one (api key, endpoint) pair within a 60s window."""
    __tablename__ = "api_rate_limits"
    __table_args__ = (
        Index("ix_api_rate_limits_key_endpoint_window", "api_key_id", "endpoint", "window_start"),
    )

    api_key_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("api_keys.id", ondelete="CASCADE"),
        nullable=False
    )
    endpoint: Mapped[str] = mapped_column(String(255), nullable=False)
    window_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    request_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class ApiUsageLog(Base, IdMixin):
    """One row per request that reached a guarded handler."""
    __tablename__ = "api_usage_logs"

    api_key_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("api_keys.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    endpoint: Mapped[str] = mapped_column(String(255), nullable=False)
    method: Mapped[str] = mapped_column(String(10), nullable=False)
    status_code: Mapped[int] = mapped_column(Integer, nullable=False)
    duration_ms: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
