"""Billing cycle ORM model: one billing period for a room."""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy import JSON, Boolean, Date, DateTime, ForeignKey, Index, Numeric, Text
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from roomsplit.models import Base, BaseModel
from roomsplit.models.member_charge import MemberCharge


class CycleStatus(str, Enum):
    """Lifecycle status of a billing cycle."""

    ACTIVE = "active"
    """Open for proration, adjustments and payments"""

    COMPLETED = "completed"
    """Closed; member charge snapshot is frozen"""

    ARCHIVED = "archived"
    """Terminal; no further mutation"""


class BillingCycle(Base, BaseModel):
    """Model representing one billing period of a room.

    Fixed bill totals are entered by an administrator. Water may be entered or
    derived from member presence. ``member_charges`` holds the computed per-member
    snapshot; ``version_id`` turns every UPDATE into a compare-and-swap so two
    writers cannot silently overwrite each other's snapshot.
    """

    __tablename__ = "billing_cycles"

    room_id: Mapped[int] = mapped_column(
        ForeignKey("rooms.id"),
        nullable=False,
        index=True,
    )
    cycle_number: Mapped[int] = mapped_column(
        nullable=False,
        comment="Sequence number within the room (1, 2, 3...)",
    )
    start_date: Mapped[date] = mapped_column(Date, nullable=False, comment="Cycle start (inclusive)")
    end_date: Mapped[date] = mapped_column(Date, nullable=False, comment="Cycle end (inclusive)")
    status: Mapped[CycleStatus] = mapped_column(
        SQLEnum(CycleStatus),
        nullable=False,
        default=CycleStatus.ACTIVE,
    )

    # Bill totals
    rent: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    electricity: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    internet: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    water_bill_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        default=Decimal("0"),
    )
    water_derived: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        comment="Water total is derived from presence rather than entered by an admin",
    )
    total_billed_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        default=Decimal("0"),
    )
    members_count: Mapped[int] = mapped_column(nullable=False, default=0)

    member_charges: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON,
        nullable=False,
        default=list,
    )
    version_id: Mapped[int] = mapped_column(nullable=False)

    # Audit fields
    created_by: Mapped[int | None] = mapped_column(nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    closed_by: Mapped[int | None] = mapped_column(nullable=True)
    notes: Mapped[str] = mapped_column(Text, nullable=False, default="")

    __mapper_args__ = {"version_id_col": version_id}

    __table_args__ = (
        Index("idx_cycle_room_number", "room_id", "cycle_number", unique=True),
        Index("idx_cycle_room_status", "room_id", "status"),
    )

    @property
    def charges(self) -> list[MemberCharge]:
        """Decoded member charge snapshot."""
        return [MemberCharge.from_dict(item) for item in (self.member_charges or [])]

    @property
    def is_active(self) -> bool:
        return self.status == CycleStatus.ACTIVE

    def __repr__(self) -> str:
        return (
            f"<BillingCycle(id={self.id}, room_id={self.room_id}, cycle_number={self.cycle_number}, "
            f"status={self.status}, total_billed_amount={self.total_billed_amount})>"
        )


__all__ = ["BillingCycle", "CycleStatus"]
