"""Billing cycle service: creation, enrichment and lookups.

``enrich`` is the single entry point for computing member charges. Every
caller that needs charges (dashboards, reconciliation, auto-close, the ledger)
goes through it, so the proration formula exists in exactly one place.
"""

import logging
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Iterable, NamedTuple

from sqlalchemy import func
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from roomsplit.api.errors import ConcurrentModificationError, CycleStateError, NotFoundError, ValidationError
from roomsplit.config import settings
from roomsplit.models.billing_cycle import BillingCycle, CycleStatus
from roomsplit.models.ledger_entry import LedgerEntry
from roomsplit.models.member_charge import MemberCharge
from roomsplit.models.payment import SETTLED_STATUSES, Payment
from roomsplit.models.room import Room, RoomMember, WaterBillingMode
from roomsplit.services.adjustment_service import replay_ledger
from roomsplit.services.audit_service import AuditService
from roomsplit.services.cycle_lock import cycle_guard
from roomsplit.services.parsers import parse_amount, parse_optional_amount
from roomsplit.services.proration import CycleTotals, MemberPresence, ProrationCalculator

logger = logging.getLogger(__name__)

MAX_ENRICH_ATTEMPTS = 3


class CycleSnapshot(NamedTuple):
    """Charges and totals computed for a cycle, ledger entries applied."""

    charges: list[MemberCharge]
    water_total: Decimal
    total_billed: Decimal
    members_count: int
    refunded: Decimal = Decimal("0.00")


def to_presence(members: Iterable[RoomMember]) -> list[MemberPresence]:
    """Convert room member rows to proration input."""
    return [
        MemberPresence(
            user_id=m.user_id,
            name=m.name,
            is_payer=bool(m.is_payer),
            presence=tuple(m.presence or ()),
            joined_at=m.joined_at,
        )
        for m in members
    ]


def cycle_window(cycle: BillingCycle) -> tuple[datetime, datetime]:
    """Half-open datetime range covering the cycle's inclusive date window."""
    start = datetime.combine(cycle.start_date, time.min)
    end = datetime.combine(cycle.end_date + timedelta(days=1), time.min)
    return start, end


class BillingCycleService:
    """Service for billing cycle database operations.

    Encapsulates BillingCycle CRUD, enrichment and the queries the
    reconciliation and lifecycle services build on.
    """

    def __init__(self, db: Session, calculator: ProrationCalculator | None = None):
        """Initialize with database session."""
        self.db = db
        self.calculator = calculator or ProrationCalculator(water_rate=settings.water_rate_per_day)

    # Lookups

    def get_by_id(self, cycle_id: int) -> BillingCycle | None:
        """Get billing cycle by ID, or None if not found."""
        return self.db.query(BillingCycle).filter(BillingCycle.id == cycle_id).first()

    def require_cycle(self, cycle_id: int) -> BillingCycle:
        """Get billing cycle by ID.

        Raises:
            NotFoundError: If the cycle does not exist
        """
        cycle = self.get_by_id(cycle_id)
        if cycle is None:
            raise NotFoundError(f"Billing cycle {cycle_id} not found")
        return cycle

    def get_room(self, room_id: int) -> Room | None:
        return self.db.query(Room).filter(Room.id == room_id).first()

    def require_room(self, room_id: int) -> Room:
        room = self.get_room(room_id)
        if room is None:
            raise NotFoundError(f"Room {room_id} not found")
        return room

    def get_active_cycle(self, room_id: int) -> BillingCycle | None:
        """Get the room's active cycle, if any."""
        return (
            self.db.query(BillingCycle)
            .filter(BillingCycle.room_id == room_id, BillingCycle.status == CycleStatus.ACTIVE)
            .order_by(BillingCycle.cycle_number.desc())
            .first()
        )

    def list_cycles(self, room_id: int, limit: int | None = None) -> list[BillingCycle]:
        """List a room's cycles, newest first."""
        query = (
            self.db.query(BillingCycle)
            .filter(BillingCycle.room_id == room_id)
            .order_by(BillingCycle.cycle_number.desc())
        )
        if limit:
            query = query.limit(limit)
        return query.all()

    def get_room_members(self, room_id: int) -> list[RoomMember]:
        """Room members in join order."""
        return (
            self.db.query(RoomMember)
            .filter(RoomMember.room_id == room_id)
            .order_by(RoomMember.joined_at.asc(), RoomMember.user_id.asc())
            .all()
        )

    def get_ledger_entries(self, cycle_id: int) -> list[LedgerEntry]:
        return (
            self.db.query(LedgerEntry)
            .filter(LedgerEntry.cycle_id == cycle_id)
            .order_by(LedgerEntry.id.asc())
            .all()
        )

    def get_cycle_payments(self, cycle: BillingCycle, settled_only: bool = True) -> list[Payment]:
        """Payments of the cycle's room made inside the cycle's date window.

        Args:
            cycle: Billing cycle defining room and window
            settled_only: Only completed/verified payments

        Returns:
            Payments ordered by payment date
        """
        start, end = cycle_window(cycle)
        query = self.db.query(Payment).filter(
            Payment.room_id == cycle.room_id,
            Payment.payment_date >= start,
            Payment.payment_date < end,
        )
        if settled_only:
            query = query.filter(Payment.status.in_(SETTLED_STATUSES))
        return query.order_by(Payment.payment_date.asc(), Payment.id.asc()).all()

    # Proration

    def compute_snapshot(
        self,
        cycle: BillingCycle,
        members: Iterable[RoomMember] | None = None,
        room: Room | None = None,
    ) -> CycleSnapshot:
        """Prorate the cycle and replay its ledger. Does not write anything."""
        if members is None:
            members = self.get_room_members(cycle.room_id)
        members = list(members)
        room = room or self.get_room(cycle.room_id)

        totals = CycleTotals(
            start_date=cycle.start_date,
            end_date=cycle.end_date,
            rent=cycle.rent,
            electricity=cycle.electricity,
            internet=cycle.internet,
            water=None if cycle.water_derived else cycle.water_bill_amount,
            water_mode=room.water_billing_mode if room else WaterBillingMode.PRESENCE,
            water_fixed_amount=room.water_fixed_amount if room else Decimal("0"),
        )
        result = self.calculator.calculate(totals, to_presence(members))
        replay = replay_ledger(result.charges, self.get_ledger_entries(cycle.id))

        if replay.adjusted:
            billed = sum((c.total_due for c in replay.charges), Decimal("0.00"))
        else:
            billed = result.total_billed
        return CycleSnapshot(
            charges=replay.charges,
            water_total=result.water_total,
            total_billed=billed - replay.refunded,
            members_count=len(members),
            refunded=replay.refunded,
        )

    def apply_snapshot(self, cycle: BillingCycle, snapshot: CycleSnapshot) -> bool:
        """Write a snapshot onto the cycle. Returns True if anything changed."""
        charges = [c.to_dict() for c in snapshot.charges]
        changed = (
            charges != (cycle.member_charges or [])
            or cycle.water_bill_amount != snapshot.water_total
            or cycle.total_billed_amount != snapshot.total_billed
            or cycle.members_count != snapshot.members_count
        )
        if changed:
            cycle.member_charges = charges
            cycle.water_bill_amount = snapshot.water_total
            cycle.total_billed_amount = snapshot.total_billed
            cycle.members_count = snapshot.members_count
        return changed

    def enrich(
        self,
        cycle: BillingCycle | None,
        members: Iterable[RoomMember] | None = None,
    ) -> BillingCycle | None:
        """Populate member charges, water total and total billed on a cycle.

        Idempotent: the snapshot is only written when the computed values
        differ from the stored ones. Completed and archived cycles are frozen
        and returned as stored. The write happens under the cycle's guard; a
        version conflict from another process is retried with fresh data.

        Args:
            cycle: Billing cycle to enrich (None passes through)
            members: Room members, fetched when not supplied

        Returns:
            The enriched cycle

        Raises:
            ConcurrentModificationError: If every retry lost the version race
        """
        if cycle is None or cycle.status != CycleStatus.ACTIVE:
            return cycle

        members = list(members) if members is not None else None
        cycle_id = cycle.id
        for attempt in range(1, MAX_ENRICH_ATTEMPTS + 1):
            try:
                with cycle_guard(self.db, cycle_id) as fresh:
                    if fresh is None or fresh.status != CycleStatus.ACTIVE:
                        return fresh or cycle
                    snapshot = self.compute_snapshot(fresh, members)
                    if self.apply_snapshot(fresh, snapshot):
                        self.db.commit()
                        logger.debug(
                            "Enriched cycle %d: water=%s total_billed=%s members=%d",
                            cycle_id,
                            snapshot.water_total,
                            snapshot.total_billed,
                            snapshot.members_count,
                        )
                    return fresh
            except StaleDataError:
                self.db.rollback()
                logger.warning(
                    "Cycle %d changed during enrichment, retrying (attempt %d/%d)",
                    cycle_id,
                    attempt,
                    MAX_ENRICH_ATTEMPTS,
                )
        raise ConcurrentModificationError(f"Billing cycle {cycle_id} kept changing during enrichment")

    def enrich_cycles(self, cycles: list[BillingCycle], room_id: int | None = None) -> list[BillingCycle]:
        """Enrich several cycles of one room, fetching members once."""
        if not cycles:
            return []
        members = self.get_room_members(room_id or cycles[0].room_id)
        return [self.enrich(cycle, members) for cycle in cycles]

    # Mutations

    def create_cycle(
        self,
        room_id: int,
        start_date: date,
        end_date: date,
        rent=0,
        electricity=0,
        internet=0,
        water=None,
        actor_id: int | None = None,
        notes: str = "",
    ) -> BillingCycle:
        """Open a new active billing cycle for a room.

        A zero or missing water amount means water is derived from presence.

        Raises:
            NotFoundError: If the room does not exist
            ValidationError: If dates or amounts are invalid
            CycleStateError: If the room already has an active cycle
        """
        room = self.require_room(room_id)
        if start_date > end_date:
            raise ValidationError("start_date must not be after end_date")
        rent = parse_amount(rent, "rent")
        electricity = parse_amount(electricity, "electricity")
        internet = parse_amount(internet, "internet")
        water = parse_optional_amount(water, "water")

        active = self.get_active_cycle(room_id)
        if active is not None:
            raise CycleStateError(
                f"Room {room_id} already has active cycle {active.id}; close it first"
            )

        last_number = (
            self.db.query(func.max(BillingCycle.cycle_number))
            .filter(BillingCycle.room_id == room_id)
            .scalar()
        )
        water_derived = not water
        cycle = BillingCycle(
            room_id=room_id,
            cycle_number=(last_number or 0) + 1,
            start_date=start_date,
            end_date=end_date,
            status=CycleStatus.ACTIVE,
            rent=rent,
            electricity=electricity,
            internet=internet,
            water_bill_amount=Decimal("0.00") if water_derived else water,
            water_derived=water_derived,
            total_billed_amount=Decimal("0.00"),
            member_charges=[],
            created_by=actor_id,
            notes=notes or "",
        )
        self.db.add(cycle)
        self.db.flush()

        room.current_cycle_id = cycle.id
        AuditService.log(
            self.db,
            "cycle",
            cycle.id,
            "create",
            actor_id,
            {"room_id": room_id, "cycle_number": cycle.cycle_number},
        )
        self.db.commit()

        logger.info(
            "Created billing cycle: id=%d, room=%d, number=%d, dates=%s to %s",
            cycle.id,
            room_id,
            cycle.cycle_number,
            start_date,
            end_date,
        )
        return self.enrich(cycle)

    def update_cycle_totals(
        self,
        cycle_id: int,
        rent=None,
        electricity=None,
        internet=None,
        water=None,
        actor_id: int | None = None,
    ) -> BillingCycle:
        """Change bill totals on an active cycle and re-enrich it.

        Passing water=0 switches the cycle back to presence-derived water.

        Raises:
            NotFoundError: If the cycle does not exist
            ValidationError: If an amount is invalid
            CycleStateError: If the cycle is not active
        """
        updates = {
            name: parse_amount(value, name)
            for name, value in (("rent", rent), ("electricity", electricity), ("internet", internet))
            if value is not None
        }
        water = parse_optional_amount(water, "water")

        with cycle_guard(self.db, cycle_id) as cycle:
            if cycle is None:
                raise NotFoundError(f"Billing cycle {cycle_id} not found")
            if cycle.status != CycleStatus.ACTIVE:
                raise CycleStateError(f"Billing cycle {cycle_id} is {cycle.status.value}")

            for name, value in updates.items():
                setattr(cycle, name, value)
            if water is not None:
                cycle.water_derived = water == 0
                cycle.water_bill_amount = water
                updates["water"] = water

            AuditService.log(
                self.db,
                "cycle",
                cycle_id,
                "update",
                actor_id,
                {name: str(value) for name, value in updates.items()},
            )
            try:
                self.db.commit()
            except StaleDataError as e:
                self.db.rollback()
                raise ConcurrentModificationError() from e

        logger.info("Updated totals of cycle %d: %s", cycle_id, updates)
        return self.enrich(cycle)

    # Reporting

    def get_trends(self, room_id: int) -> list[dict]:
        """Per-cycle billing history for a room, oldest first."""
        self.require_room(room_id)
        cycles = sorted(self.list_cycles(room_id), key=lambda c: c.start_date)
        return [
            {
                "cycle_id": c.id,
                "cycle_number": c.cycle_number,
                "start_date": c.start_date,
                "end_date": c.end_date,
                "status": c.status.value,
                "rent": c.rent,
                "electricity": c.electricity,
                "water": c.water_bill_amount,
                "internet": c.internet,
                "total_billed": c.total_billed_amount,
            }
            for c in cycles
        ]


__all__ = ["BillingCycleService", "CycleSnapshot", "to_presence", "cycle_window"]
