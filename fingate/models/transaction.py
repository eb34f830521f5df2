"""
Transaction model.

The business record exposed through the public v1 API.
"""
import enum
from datetime import date as date_type
from sqlalchemy import Date, ForeignKey, Numeric, String, Text, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column
from fingate.models.base import Base, IdMixin, TimestampMixin


class TransactionType(str, enum.Enum):
    """Direction of money movement."""
    INCOME = "income"
    EXPENSE = "expense"


class Transaction(Base, IdMixin, TimestampMixin):
    """A single income or expense entry owned by a user."""
    __tablename__ = "transactions"

    user_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    amount: Mapped[float] = mapped_column(Numeric(14, 2, asdecimal=False), nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SQLEnum(TransactionType, native_enum=False, create_constraint=False,
                values_callable=lambda e: [m.value for m in e]),
        nullable=False
    )
    category: Mapped[str | None] = mapped_column(String(100), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    date: Mapped[date_type] = mapped_column(Date, nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "amount": self.amount,
            "type": self.type.value if isinstance(self.type, TransactionType) else self.type,
            "category": self.category,
            "description": self.description,
            "date": self.date.isoformat(),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
