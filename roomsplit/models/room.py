"""Room and room member ORM models.

Rooms and their membership are owned by the room management part of the
application; the billing engine only reads the member list and presence dates.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Numeric, String, UniqueConstraint
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from roomsplit.models import Base, BaseModel


class WaterBillingMode(str, Enum):
    """How a room's water bill is split."""

    PRESENCE = "presence"
    """Water is prorated from each member's presence days"""

    FIXED_MONTHLY = "fixed_monthly"
    """A fixed monthly amount split evenly across payers"""


class Room(Base, BaseModel):
    """Model representing a shared apartment room."""

    __tablename__ = "rooms"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    code: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        unique=True,
        index=True,
        comment="Join code shared with members",
    )
    created_by: Mapped[int | None] = mapped_column(
        nullable=True,
        index=True,
        comment="Administrator who owns the room",
    )
    water_billing_mode: Mapped[WaterBillingMode] = mapped_column(
        SQLEnum(WaterBillingMode),
        nullable=False,
        default=WaterBillingMode.PRESENCE,
    )
    water_fixed_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        default=Decimal("0"),
        comment="Monthly water amount used in fixed_monthly mode",
    )
    current_cycle_id: Mapped[int | None] = mapped_column(
        nullable=True,
        comment="Active billing cycle, cleared when the cycle closes",
    )

    members: Mapped[list["RoomMember"]] = relationship(
        "RoomMember",
        back_populates="room",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<Room(id={self.id}, name={self.name}, code={self.code})>"


class RoomMember(Base, BaseModel):
    """Membership of a user in a room, with presence dates."""

    __tablename__ = "room_members"

    room_id: Mapped[int] = mapped_column(ForeignKey("rooms.id"), nullable=False, index=True)
    user_id: Mapped[int] = mapped_column(nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="Unknown")
    is_payer: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
        comment="Payers share fixed bills; non-payer water is redistributed to payers",
    )
    presence: Mapped[list[Any]] = mapped_column(
        JSON,
        nullable=False,
        default=list,
        comment="ISO dates on which the member was present",
    )
    joined_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    room: Mapped["Room"] = relationship("Room", back_populates="members")

    __table_args__ = (
        UniqueConstraint("room_id", "user_id", name="uq_room_member"),
        Index("idx_room_member_payer", "room_id", "is_payer"),
    )

    def __repr__(self) -> str:
        return (
            f"<RoomMember(id={self.id}, room_id={self.room_id}, user_id={self.user_id}, "
            f"is_payer={self.is_payer})>"
        )


__all__ = ["Room", "RoomMember", "WaterBillingMode"]
