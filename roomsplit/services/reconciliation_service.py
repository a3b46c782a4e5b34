"""Payment reconciliation and collection statistics.

``PaymentReconciler`` is pure: it cross-references a cycle's member charges
with payment records and never touches the database. ``CollectionService``
loads cycles and payments and aggregates per room and across an admin's rooms.

A ``total`` payment discharges all four bill types for its payer. For
per-component collection figures, its amount is imputed across components in
proportion to the cycle's component totals, since it carries no breakdown.
"""

import logging
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from roomsplit.api.errors import ConcurrentModificationError, NotFoundError
from roomsplit.models.billing_cycle import BillingCycle, CycleStatus
from roomsplit.models.payment import COMPONENT_BILL_TYPES, SETTLED_STATUSES, BillType, Payment
from roomsplit.models.room import Room
from roomsplit.services.allocation_service import AllocationService, to_cents
from roomsplit.services.billing_cycle_service import BillingCycleService

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")
PAID = "paid"
PENDING = "pending"

_SHARE_FIELD = {
    BillType.RENT: "rent_share",
    BillType.ELECTRICITY: "electricity_share",
    BillType.WATER: "water_share",
    BillType.INTERNET: "internet_share",
}


def percentage(part: Decimal, whole: Decimal) -> int:
    """Whole-number percentage rounded half-up; 0 when whole is 0."""
    if not whole:
        return 0
    return int((Decimal(part) / Decimal(whole) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _bill_type(payment) -> BillType | None:
    try:
        return BillType(payment.bill_type)
    except ValueError:
        return None


def _is_settled(payment) -> bool:
    return payment.status in SETTLED_STATUSES


@dataclass
class MemberStatus:
    """Paid/pending state of one member's bills."""

    user_id: int
    name: str
    is_payer: bool
    total_due: Decimal
    bill_statuses: dict[str, str]
    all_paid: bool
    amount_paid: Decimal = ZERO


@dataclass
class CollectionSummary:
    """Room-level collection figures for one cycle."""

    total_due: Decimal = ZERO
    total_paid: Decimal = ZERO
    total_pending: Decimal = ZERO
    collection_percentage: int = 0
    fully_paid_members: int = 0
    total_members: int = 0


@dataclass
class ReconciliationResult:
    per_member: list[MemberStatus] = field(default_factory=list)
    summary: CollectionSummary = field(default_factory=CollectionSummary)

    def for_member(self, user_id: int) -> MemberStatus | None:
        return next((m for m in self.per_member if m.user_id == user_id), None)


@dataclass
class ComponentCollection:
    expected: Decimal = ZERO
    collected: Decimal = ZERO
    pending: Decimal = ZERO


@dataclass
class PortfolioStats:
    """Collection figures across all active cycles of an admin's rooms."""

    total_billed: Decimal = ZERO
    total_collected: Decimal = ZERO
    total_pending: Decimal = ZERO
    collection_rate: int = 0
    cycle_count: int = 0
    skipped_cycle_ids: list[int] = field(default_factory=list)


class PaymentReconciler:
    """Derive paid/pending status from member charges and payment records."""

    def __init__(self, allocation: AllocationService | None = None):
        self.allocation = allocation or AllocationService()

    @staticmethod
    def settled_by_member(payments: Iterable) -> dict[int, list]:
        """Group completed/verified payments by payer."""
        grouped: dict[int, list] = {}
        for payment in payments or ():
            if not _is_settled(payment) or _bill_type(payment) is None:
                continue
            grouped.setdefault(payment.paid_by, []).append(payment)
        return grouped

    @staticmethod
    def bill_statuses(member_payments: Iterable) -> dict[str, str]:
        """Per-bill-type status for one member's settled payments."""
        types = {_bill_type(p) for p in member_payments}
        if BillType.TOTAL in types:
            return {t.value: PAID for t in COMPONENT_BILL_TYPES}
        return {t.value: PAID if t in types else PENDING for t in COMPONENT_BILL_TYPES}

    def reconcile(self, cycle: BillingCycle, payments: Iterable) -> ReconciliationResult:
        """Cross-reference a cycle's member charges with its payments.

        Args:
            cycle: Enriched billing cycle (its member_charges snapshot is used)
            payments: Payment records scoped to the cycle; unsettled ones are ignored

        Returns:
            ReconciliationResult with per-member statuses and the summary
        """
        by_member = self.settled_by_member(payments)
        per_member = []
        for charge in cycle.charges:
            member_payments = by_member.get(charge.user_id, [])
            statuses = self.bill_statuses(member_payments)
            per_member.append(
                MemberStatus(
                    user_id=charge.user_id,
                    name=charge.name,
                    is_payer=charge.is_payer,
                    total_due=charge.total_due,
                    bill_statuses=statuses,
                    all_paid=all(s == PAID for s in statuses.values()),
                    amount_paid=sum((to_cents(p.amount) for p in member_payments), ZERO),
                )
            )

        total_due = to_cents(cycle.total_billed_amount)
        total_paid = sum((m.total_due for m in per_member if m.all_paid), ZERO)
        summary = CollectionSummary(
            total_due=total_due,
            total_paid=total_paid,
            total_pending=max(ZERO, total_due - total_paid),
            collection_percentage=percentage(total_paid, total_due),
            fully_paid_members=sum(1 for m in per_member if m.all_paid and m.is_payer),
            total_members=len(per_member),
        )
        return ReconciliationResult(per_member=per_member, summary=summary)

    def all_payers_paid(self, result: ReconciliationResult) -> bool:
        """True when there is at least one payer and every payer has paid everything."""
        payers = [m for m in result.per_member if m.is_payer]
        return bool(payers) and all(m.all_paid for m in payers)

    def component_breakdown(self, cycle: BillingCycle, payments: Iterable) -> dict[str, ComponentCollection]:
        """Expected, collected and pending amounts per bill component.

        Members paying by bill type are credited their own share for each paid
        component; unpaid shares are pending. ``total`` payments are split
        across components by the cycle's component totals.
        """
        expected = {
            BillType.RENT: to_cents(cycle.rent),
            BillType.ELECTRICITY: to_cents(cycle.electricity),
            BillType.WATER: to_cents(cycle.water_bill_amount),
            BillType.INTERNET: to_cents(cycle.internet),
        }
        breakdown = {t.value: ComponentCollection(expected=expected[t]) for t in COMPONENT_BILL_TYPES}
        by_member = self.settled_by_member(payments)

        for charge in cycle.charges:
            if not charge.is_payer:
                continue
            member_payments = by_member.get(charge.user_id, [])
            lump = [p for p in member_payments if _bill_type(p) == BillType.TOTAL]
            if lump:
                paid = sum((to_cents(p.amount) for p in lump), ZERO)
                imputed = self.allocation.allocate_proportional(paid, expected)
                for bill_type, amount in imputed.items():
                    breakdown[bill_type.value].collected += amount
                continue

            paid_types = {_bill_type(p) for p in member_payments}
            for bill_type in COMPONENT_BILL_TYPES:
                share = getattr(charge, _SHARE_FIELD[bill_type])
                if bill_type in paid_types:
                    breakdown[bill_type.value].collected += share
                else:
                    breakdown[bill_type.value].pending += share
        return breakdown


class CollectionService:
    """Collection statistics for rooms and admin portfolios."""

    def __init__(self, db: Session, reconciler: PaymentReconciler | None = None):
        """Initialize with database session."""
        self.db = db
        self.cycles = BillingCycleService(db)
        self.reconciler = reconciler or PaymentReconciler()

    def reconcile_cycle(self, cycle_id: int) -> tuple[BillingCycle, ReconciliationResult]:
        """Enrich and reconcile one cycle.

        Raises:
            NotFoundError: If the cycle does not exist
        """
        cycle = self.cycles.enrich(self.cycles.require_cycle(cycle_id))
        payments = self.cycles.get_cycle_payments(cycle)
        return cycle, self.reconciler.reconcile(cycle, payments)

    def collection_status(self, room_id: int) -> dict:
        """Per-member collection status of the room's active cycle.

        Raises:
            NotFoundError: If the room does not exist
        """
        self.cycles.require_room(room_id)
        cycle = self.cycles.get_active_cycle(room_id)
        if cycle is None:
            return {"cycle": None, "result": ReconciliationResult()}

        cycle = self.cycles.enrich(cycle)
        result = self.reconciler.reconcile(cycle, self.cycles.get_cycle_payments(cycle))
        return {"cycle": cycle, "result": result}

    def room_dashboard(self, room_id: int) -> dict:
        """Financial dashboard for a room's active cycle.

        Raises:
            NotFoundError: If the room does not exist
        """
        room = self.cycles.require_room(room_id)
        members = self.cycles.get_room_members(room_id)
        payer_count = sum(1 for m in members if m.is_payer)
        dashboard = {
            "room_id": room.id,
            "room_name": room.name,
            "room_code": room.code,
            "payer_count": payer_count,
            "non_payer_count": len(members) - payer_count,
            "total_members": len(members),
            "active_cycle_id": None,
            "total_billed": ZERO,
            "total_collected": ZERO,
            "outstanding": ZERO,
            "collection_rate": 0,
            "breakdown": {},
        }

        cycle = self.cycles.get_active_cycle(room_id)
        if cycle is None:
            return dashboard

        cycle = self.cycles.enrich(cycle, members)
        breakdown = self.reconciler.component_breakdown(cycle, self.cycles.get_cycle_payments(cycle))
        total_billed = to_cents(cycle.total_billed_amount)
        collected = sum((c.collected for c in breakdown.values()), ZERO)
        dashboard.update(
            active_cycle_id=cycle.id,
            active_cycle_start=cycle.start_date,
            active_cycle_end=cycle.end_date,
            total_billed=total_billed,
            total_collected=collected,
            outstanding=max(ZERO, total_billed - collected),
            collection_rate=percentage(min(collected, total_billed), total_billed),
            breakdown=breakdown,
        )
        return dashboard

    def portfolio_stats(self, admin_id: int) -> PortfolioStats:
        """Collection figures across the active cycles of an admin's rooms.

        Completed and archived cycles are excluded. A cycle whose enrichment or
        payment lookup fails is logged and skipped; the rest still count.
        Collected money is capped at the billed total to absorb rounding
        overshoot from independently rounded payments.
        """
        rooms = self.db.query(Room).filter(Room.created_by == admin_id).all()
        room_ids = [r.id for r in rooms]
        if not room_ids:
            return PortfolioStats()

        cycles = (
            self.db.query(BillingCycle)
            .filter(BillingCycle.room_id.in_(room_ids), BillingCycle.status == CycleStatus.ACTIVE)
            .order_by(BillingCycle.id.asc())
            .all()
        )

        stats = PortfolioStats()
        raw_collected = ZERO
        for cycle in cycles:
            cycle_id = cycle.id
            try:
                cycle = self.cycles.enrich(cycle)
                payments = self.cycles.get_cycle_payments(cycle)
                billed = to_cents(cycle.total_billed_amount)
            except (SQLAlchemyError, ConcurrentModificationError):
                self.db.rollback()
                logger.error("Skipping cycle %d in portfolio stats for admin %d", cycle_id, admin_id, exc_info=True)
                stats.skipped_cycle_ids.append(cycle_id)
                continue
            stats.total_billed += billed
            raw_collected += sum((to_cents(p.amount) for p in payments), ZERO)
            stats.cycle_count += 1

        stats.total_collected = min(raw_collected, stats.total_billed)
        stats.total_pending = max(ZERO, stats.total_billed - stats.total_collected)
        stats.collection_rate = percentage(stats.total_collected, stats.total_billed)
        return stats

    def member_history(self, room_id: int, user_id: int) -> dict:
        """A member's payments in a room, newest first, with totals by bill type.

        Raises:
            NotFoundError: If the room or the member does not exist
        """
        self.cycles.require_room(room_id)
        member = next((m for m in self.cycles.get_room_members(room_id) if m.user_id == user_id), None)
        if member is None:
            raise NotFoundError(f"Member {user_id} not found in room {room_id}")

        payments = (
            self.db.query(Payment)
            .filter(Payment.room_id == room_id, Payment.paid_by == user_id)
            .order_by(Payment.payment_date.desc(), Payment.id.desc())
            .all()
        )
        by_type = {t.value: ZERO for t in BillType}
        for payment in payments:
            if payment.is_settled:
                by_type[payment.bill_type.value] += to_cents(payment.amount)
        return {
            "user_id": user_id,
            "name": member.name,
            "is_payer": member.is_payer,
            "joined_at": member.joined_at,
            "payments": payments,
            "total_paid": sum(by_type.values(), ZERO),
            "by_type": by_type,
        }


__all__ = [
    "PaymentReconciler",
    "CollectionService",
    "ReconciliationResult",
    "MemberStatus",
    "CollectionSummary",
    "ComponentCollection",
    "PortfolioStats",
    "percentage",
    "PAID",
    "PENDING",
]
