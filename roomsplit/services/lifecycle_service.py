"""Billing cycle lifecycle: active -> completed -> archived.

``check_auto_close`` runs after every completed payment. It closes the room's
active cycle once every payer has paid all four bill types (or made a ``total``
payment). It never raises: a failed check reports "not closed" so the payment
flow that triggered it is unaffected.
"""

import logging
from datetime import datetime, timezone
from typing import NamedTuple

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from roomsplit.api.errors import ConcurrentModificationError, CycleStateError, NotFoundError
from roomsplit.models.billing_cycle import BillingCycle, CycleStatus
from roomsplit.models.room import Room
from roomsplit.services.audit_service import AuditService
from roomsplit.services.billing_cycle_service import BillingCycleService
from roomsplit.services.cycle_lock import cycle_guard
from roomsplit.services.reconciliation_service import PaymentReconciler

logger = logging.getLogger(__name__)


class AutoCloseResult(NamedTuple):
    """Outcome of an auto-close check."""

    closed: bool
    cycle_id: int | None = None
    reason: str | None = None


class CycleLifecycleService:
    """State machine over a billing cycle's status."""

    def __init__(self, db: Session, reconciler: PaymentReconciler | None = None):
        """Initialize with database session."""
        self.db = db
        self.cycles = BillingCycleService(db)
        self.reconciler = reconciler or PaymentReconciler()

    def check_auto_close(self, room_id: int) -> AutoCloseResult:
        """Close the room's active cycle if every payer is fully paid.

        Safe to call redundantly: once the cycle is completed there is no
        active cycle left and the call is a no-op.

        Args:
            room_id: Room whose active cycle is checked

        Returns:
            AutoCloseResult(closed=True, cycle_id) exactly once per cycle;
            closed=False with a reason otherwise ("no_active_cycle",
            "no_paying_members", "not_all_paid", "error")
        """
        try:
            active = self.cycles.get_active_cycle(room_id)
            if active is None:
                return AutoCloseResult(closed=False, reason="no_active_cycle")
            cycle_id = active.id
            members = self.cycles.get_room_members(room_id)

            with cycle_guard(self.db, cycle_id) as cycle:
                if cycle is None or cycle.status != CycleStatus.ACTIVE:
                    return AutoCloseResult(closed=False, cycle_id=cycle_id, reason="no_active_cycle")

                if not any(m.is_payer for m in members):
                    return AutoCloseResult(closed=False, cycle_id=cycle_id, reason="no_paying_members")

                snapshot = self.cycles.compute_snapshot(cycle, members)
                self.cycles.apply_snapshot(cycle, snapshot)
                result = self.reconciler.reconcile(cycle, self.cycles.get_cycle_payments(cycle))
                if not self.reconciler.all_payers_paid(result):
                    # Persist the refreshed snapshot even when the cycle stays open
                    self.db.commit()
                    return AutoCloseResult(closed=False, cycle_id=cycle_id, reason="not_all_paid")

                self._complete(cycle, actor_id=None, action="auto_close")
                self.db.commit()

            logger.info(
                "Billing cycle %d auto-closed: all %d payers paid",
                cycle_id,
                sum(1 for m in members if m.is_payer),
            )
            return AutoCloseResult(closed=True, cycle_id=cycle_id)
        except Exception as e:
            self.db.rollback()
            logger.error("Auto-close check failed for room %s: %s", room_id, e, exc_info=True)
            return AutoCloseResult(closed=False, reason="error")

    def close_cycle(self, cycle_id: int, actor_id: int | None = None) -> BillingCycle:
        """Manually close an active cycle, freezing its member charges.

        Raises:
            NotFoundError: If the cycle does not exist
            CycleStateError: If the cycle is not active
            ConcurrentModificationError: Another writer updated the cycle first
        """
        with cycle_guard(self.db, cycle_id) as cycle:
            if cycle is None:
                raise NotFoundError(f"Billing cycle {cycle_id} not found")
            if cycle.status != CycleStatus.ACTIVE:
                raise CycleStateError(f"Billing cycle {cycle_id} is already {cycle.status.value}")

            self.cycles.apply_snapshot(cycle, self.cycles.compute_snapshot(cycle))
            self._complete(cycle, actor_id=actor_id, action="close")
            self._commit(cycle_id)

        logger.info("Billing cycle %d closed by %s", cycle_id, actor_id)
        return cycle

    def archive_cycle(self, cycle_id: int, actor_id: int | None = None) -> BillingCycle:
        """Archive a completed cycle. Archived cycles accept no further changes.

        Raises:
            NotFoundError: If the cycle does not exist
            CycleStateError: If the cycle is not completed
        """
        with cycle_guard(self.db, cycle_id) as cycle:
            if cycle is None:
                raise NotFoundError(f"Billing cycle {cycle_id} not found")
            if cycle.status != CycleStatus.COMPLETED:
                raise CycleStateError(
                    f"Only completed cycles can be archived (cycle {cycle_id} is {cycle.status.value})"
                )
            cycle.status = CycleStatus.ARCHIVED
            AuditService.log(self.db, "cycle", cycle_id, "archive", actor_id, {"status": "archived"})
            self._commit(cycle_id)

        logger.info("Billing cycle %d archived by %s", cycle_id, actor_id)
        return cycle

    def _complete(self, cycle: BillingCycle, actor_id: int | None, action: str) -> None:
        cycle.status = CycleStatus.COMPLETED
        cycle.closed_at = datetime.now(timezone.utc)
        cycle.closed_by = actor_id

        room = self.db.query(Room).filter(Room.id == cycle.room_id).first()
        if room is not None and room.current_cycle_id == cycle.id:
            room.current_cycle_id = None

        AuditService.log(
            self.db,
            "cycle",
            cycle.id,
            action,
            actor_id,
            {"status": "completed", "total_billed": str(cycle.total_billed_amount)},
        )

    def _commit(self, cycle_id: int) -> None:
        try:
            self.db.commit()
        except StaleDataError as e:
            self.db.rollback()
            raise ConcurrentModificationError(f"Billing cycle {cycle_id} was modified concurrently") from e


__all__ = ["CycleLifecycleService", "AutoCloseResult"]
