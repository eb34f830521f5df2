"""
User model.

The owning principal of API keys, webhook registrations and transactions.
"""
from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column
from fingate.models.base import Base, IdMixin, TimestampMixin


class User(Base, IdMixin, TimestampMixin):
    """A platform user who owns credentials and webhook registrations."""
    __tablename__ = "users"

    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def __repr__(self):
        return f"<User(id={self.id}, email={self.email})>"
