"""Adjustment ledger: admin corrections and refunds on a billing cycle.

Adjustments change a payer's component shares (each clamped at zero) and ripple
up into the cycle's billed total. Refunds only reduce the billed total; the
member's charge is left as billed. Both are recorded as immutable
``LedgerEntry`` rows, and enrichment replays them onto every recompute.
"""

import logging
from decimal import Decimal
from typing import Iterable, NamedTuple

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from roomsplit.api.errors import ConcurrentModificationError, CycleStateError, NotFoundError, ValidationError
from roomsplit.models.billing_cycle import BillingCycle, CycleStatus
from roomsplit.models.ledger_entry import LedgerEntry, LedgerEntryKind
from roomsplit.models.member_charge import MemberCharge
from roomsplit.services.cycle_lock import cycle_guard
from roomsplit.services.parsers import parse_amount, parse_bill_type, parse_delta, require_reason

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


class LedgerReplay(NamedTuple):
    """Charges after replaying a cycle's ledger entries."""

    charges: list[MemberCharge]
    refunded: Decimal
    adjusted: bool


class AdjustmentResult(NamedTuple):
    """Outcome of a ledger operation."""

    cycle: BillingCycle
    charge: MemberCharge | None
    entry: LedgerEntry


def apply_adjustment(
    charge: MemberCharge,
    rent_delta: Decimal = ZERO,
    electricity_delta: Decimal = ZERO,
    water_delta: Decimal = ZERO,
) -> MemberCharge:
    """Apply component deltas in place, clamping each component at zero."""
    charge.rent_share = max(ZERO, charge.rent_share + rent_delta)
    charge.electricity_share = max(ZERO, charge.electricity_share + electricity_delta)
    charge.water_share = max(ZERO, charge.water_share + water_delta)
    charge.total_due = charge.component_sum()
    return charge


def replay_ledger(charges: list[MemberCharge], entries: Iterable[LedgerEntry]) -> LedgerReplay:
    """Re-apply ledger entries, in order, to freshly prorated charges.

    Adjustments for members no longer in the room are skipped.
    """
    by_user = {c.user_id: c for c in charges}
    refunded = ZERO
    adjusted = False
    for entry in entries:
        if entry.kind == LedgerEntryKind.REFUND:
            refunded += entry.amount
            continue
        charge = by_user.get(entry.user_id)
        if charge is None or not charge.is_payer:
            logger.debug("Skipping adjustment %s: member %s has no payer charge", entry.id, entry.user_id)
            continue
        apply_adjustment(charge, entry.rent_delta, entry.electricity_delta, entry.water_delta)
        adjusted = True
    return LedgerReplay(charges=charges, refunded=refunded, adjusted=adjusted)


class AdjustmentLedger:
    """Service for charge adjustments and refunds.

    All writes happen under the cycle's guard and in one transaction: the
    ledger entry, the new snapshot and the new billed total are committed
    together or not at all.
    """

    def __init__(self, db: Session):
        """Initialize with database session."""
        from roomsplit.services.billing_cycle_service import BillingCycleService

        self.db = db
        self.cycles = BillingCycleService(db)

    def list_entries(self, cycle_id: int) -> list[LedgerEntry]:
        """Ledger entries of a cycle, oldest first.

        Raises:
            NotFoundError: If the cycle does not exist
        """
        self.cycles.require_cycle(cycle_id)
        return self.cycles.get_ledger_entries(cycle_id)

    def adjust_charge(
        self,
        cycle_id: int,
        member_id: int,
        rent_delta=None,
        electricity_delta=None,
        water_delta=None,
        reason: str | None = None,
        actor_id: int | None = None,
    ) -> AdjustmentResult:
        """Adjust a payer's component shares on an active cycle.

        Args:
            cycle_id: Billing cycle ID
            member_id: User ID of the member whose charge is adjusted
            rent_delta: Signed change to the rent share
            electricity_delta: Signed change to the electricity share
            water_delta: Signed change to the water share
            reason: Required free-text justification
            actor_id: Admin making the adjustment

        Returns:
            AdjustmentResult with the updated cycle, charge and ledger entry

        Raises:
            ValidationError: Missing reason, non-numeric delta, non-payer target,
                or a cycle total that would drop below the refunded amount
            NotFoundError: Unknown cycle or member charge
            CycleStateError: Cycle is not active
            ConcurrentModificationError: Another writer updated the cycle first
        """
        reason = require_reason(reason)
        rent_delta = parse_delta(rent_delta, "rent_delta")
        electricity_delta = parse_delta(electricity_delta, "electricity_delta")
        water_delta = parse_delta(water_delta, "water_delta")

        with cycle_guard(self.db, cycle_id) as cycle:
            if cycle is None:
                raise NotFoundError(f"Billing cycle {cycle_id} not found")
            if cycle.status != CycleStatus.ACTIVE:
                raise CycleStateError(
                    f"Charges can only be adjusted on an active cycle (cycle {cycle_id} is {cycle.status.value})"
                )

            snapshot = self.cycles.compute_snapshot(cycle)
            charge = next((c for c in snapshot.charges if c.user_id == member_id), None)
            if charge is None:
                raise NotFoundError(f"Member charge for user {member_id} not found in cycle {cycle_id}")
            if not charge.is_payer:
                raise ValidationError("Adjustments apply to payer charges only")

            original_total = charge.total_due
            apply_adjustment(charge, rent_delta, electricity_delta, water_delta)
            billed = sum((c.total_due for c in snapshot.charges), ZERO) - snapshot.refunded
            if billed < 0:
                raise ValidationError(
                    f"Adjustment would bring cycle {cycle_id} below its refunded amount {snapshot.refunded}"
                )

            entry = LedgerEntry(
                cycle_id=cycle_id,
                kind=LedgerEntryKind.ADJUSTMENT,
                user_id=member_id,
                member_name=charge.name,
                rent_delta=rent_delta,
                electricity_delta=electricity_delta,
                water_delta=water_delta,
                original_amount=original_total,
                new_amount=charge.total_due,
                reason=reason,
                actor_id=actor_id,
            )
            self.db.add(entry)

            self.cycles.apply_snapshot(cycle, snapshot._replace(total_billed=billed))
            self._commit(cycle_id)

        logger.info(
            "Adjusted charge of user %d in cycle %d: %s -> %s (rent %s, electricity %s, water %s) by %s",
            member_id,
            cycle_id,
            original_total,
            charge.total_due,
            rent_delta,
            electricity_delta,
            water_delta,
            actor_id,
        )
        return AdjustmentResult(cycle=cycle, charge=charge, entry=entry)

    def refund(
        self,
        cycle_id: int,
        member_id: int,
        amount=None,
        bill_type=None,
        reason: str | None = None,
        actor_id: int | None = None,
    ) -> AdjustmentResult:
        """Record a refund and subtract it from the cycle's billed total.

        Allowed on active and completed cycles; archived cycles are immutable.
        The member's charge is not rewritten.

        Raises:
            ValidationError: Missing reason, amount or bill type, or an amount
                above the billed total
            NotFoundError: Unknown cycle, or member without a charge
            CycleStateError: Cycle is archived
            ConcurrentModificationError: Another writer updated the cycle first
        """
        if member_id is None:
            raise ValidationError("member_id is required")
        amount = parse_amount(amount, "amount", positive=True)
        bill_type = parse_bill_type(bill_type)
        reason = require_reason(reason)

        with cycle_guard(self.db, cycle_id) as cycle:
            if cycle is None:
                raise NotFoundError(f"Billing cycle {cycle_id} not found")
            if cycle.status == CycleStatus.ARCHIVED:
                raise CycleStateError(f"Billing cycle {cycle_id} is archived")

            # Active cycles refund against a fresh snapshot; closed ones against the frozen one
            snapshot = self.cycles.compute_snapshot(cycle) if cycle.is_active else None
            charges = snapshot.charges if snapshot else cycle.charges
            charge = next((c for c in charges if c.user_id == member_id), None)
            if charge is None:
                raise NotFoundError(f"Member {member_id} not found in cycle {cycle_id}")

            previous_total = snapshot.total_billed if snapshot else cycle.total_billed_amount
            if amount > previous_total:
                raise ValidationError(
                    f"Refund of {amount} exceeds the billed total {previous_total} of cycle {cycle_id}"
                )
            new_total = previous_total - amount
            entry = LedgerEntry(
                cycle_id=cycle_id,
                kind=LedgerEntryKind.REFUND,
                user_id=member_id,
                member_name=charge.name,
                bill_type=bill_type,
                amount=amount,
                original_amount=previous_total,
                new_amount=new_total,
                reason=reason,
                actor_id=actor_id,
            )
            self.db.add(entry)
            if snapshot:
                self.cycles.apply_snapshot(cycle, snapshot._replace(total_billed=new_total))
            else:
                cycle.total_billed_amount = new_total
            self._commit(cycle_id)

        logger.info(
            "Refunded %s (%s) to user %d in cycle %d: total %s -> %s by %s",
            amount,
            bill_type.value,
            member_id,
            cycle_id,
            previous_total,
            new_total,
            actor_id,
        )
        return AdjustmentResult(cycle=cycle, charge=charge, entry=entry)

    def _commit(self, cycle_id: int) -> None:
        try:
            self.db.commit()
        except StaleDataError as e:
            self.db.rollback()
            logger.warning("Lost version race on cycle %d, ledger write rolled back", cycle_id)
            raise ConcurrentModificationError() from e
        except Exception:
            self.db.rollback()
            raise


__all__ = [
    "AdjustmentLedger",
    "AdjustmentResult",
    "LedgerReplay",
    "apply_adjustment",
    "replay_ledger",
]
