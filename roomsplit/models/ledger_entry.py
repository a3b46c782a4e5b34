"""Append-only ledger of charge adjustments and refunds on a billing cycle."""

from decimal import Decimal
from enum import Enum

from sqlalchemy import ForeignKey, Index, Numeric, String, Text
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from roomsplit.models import Base, BaseModel
from roomsplit.models.payment import BillType


class LedgerEntryKind(str, Enum):
    """Kind of ledger entry."""

    ADJUSTMENT = "adjustment"
    """Corrects a member's component shares"""

    REFUND = "refund"
    """Reduces the cycle's billed total without rewriting member shares"""


class LedgerEntry(Base, BaseModel):
    """Immutable audit record of an admin correction to a billing cycle.

    Entries are only ever inserted. Enrichment replays adjustments onto freshly
    prorated charges in id order, so a recompute never discards a correction.
    """

    __tablename__ = "ledger_entries"

    cycle_id: Mapped[int] = mapped_column(
        ForeignKey("billing_cycles.id"),
        nullable=False,
        index=True,
    )
    kind: Mapped[LedgerEntryKind] = mapped_column(SQLEnum(LedgerEntryKind), nullable=False)
    user_id: Mapped[int] = mapped_column(nullable=False, comment="Member the entry targets")
    member_name: Mapped[str] = mapped_column(String(255), nullable=False, default="Unknown")

    # Adjustment deltas (zero for refunds)
    rent_delta: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    electricity_delta: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0")
    )
    water_delta: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))

    # Refund fields
    bill_type: Mapped[BillType | None] = mapped_column(SQLEnum(BillType), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))

    # Before/after snapshot (member total for adjustments, cycle total for refunds)
    original_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    new_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    reason: Mapped[str] = mapped_column(Text, nullable=False)
    actor_id: Mapped[int | None] = mapped_column(nullable=True, comment="Admin who made the entry")

    __table_args__ = (Index("idx_ledger_cycle_kind", "cycle_id", "kind"),)

    def __repr__(self) -> str:
        return (
            f"<LedgerEntry(id={self.id}, cycle_id={self.cycle_id}, kind={self.kind}, "
            f"user_id={self.user_id}, original={self.original_amount}, new={self.new_amount})>"
        )


__all__ = ["LedgerEntry", "LedgerEntryKind"]
