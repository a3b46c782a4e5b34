"""Payment ORM model for member payments against a room's bills."""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from sqlalchemy import DateTime, ForeignKey, Index, Numeric, Text
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from roomsplit.models import Base, BaseModel


class BillType(str, Enum):
    """Bill component a payment is made against."""

    RENT = "rent"
    ELECTRICITY = "electricity"
    WATER = "water"
    INTERNET = "internet"

    TOTAL = "total"
    """Lump payment covering all four components"""


COMPONENT_BILL_TYPES = (BillType.RENT, BillType.ELECTRICITY, BillType.WATER, BillType.INTERNET)


class PaymentStatus(str, Enum):
    """Verification status of a payment."""

    PENDING = "pending"
    COMPLETED = "completed"
    VERIFIED = "verified"
    REJECTED = "rejected"


SETTLED_STATUSES = (PaymentStatus.COMPLETED, PaymentStatus.VERIFIED)


class Payment(Base, BaseModel):
    """Model representing a single payment made by a room member."""

    __tablename__ = "payments"

    room_id: Mapped[int] = mapped_column(
        ForeignKey("rooms.id"),
        nullable=False,
        index=True,
    )
    paid_by: Mapped[int] = mapped_column(
        nullable=False,
        index=True,
        comment="User who made the payment",
    )
    bill_type: Mapped[BillType] = mapped_column(SQLEnum(BillType), nullable=False)
    amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        comment="Payment amount in pesos",
    )
    status: Mapped[PaymentStatus] = mapped_column(
        SQLEnum(PaymentStatus),
        nullable=False,
        default=PaymentStatus.PENDING,
    )
    payment_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        comment="Scopes the payment to the cycle whose window contains it",
    )
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("idx_payment_room_date", "room_id", "payment_date"),
        Index("idx_payment_payer_status", "paid_by", "status"),
    )

    @property
    def is_settled(self) -> bool:
        return self.status in SETTLED_STATUSES

    def __repr__(self) -> str:
        return (
            f"<Payment(id={self.id}, room_id={self.room_id}, paid_by={self.paid_by}, "
            f"bill_type={self.bill_type}, amount={self.amount}, status={self.status})>"
        )


__all__ = [
    "Payment",
    "BillType",
    "PaymentStatus",
    "COMPONENT_BILL_TYPES",
    "SETTLED_STATUSES",
]
