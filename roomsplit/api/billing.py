"""Billing API endpoints."""

import logging
import time
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, TypeVar

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict
from sqlalchemy.orm import Session

from roomsplit.api.errors import AppError, raise_app_error
from roomsplit.models.billing_cycle import BillingCycle
from roomsplit.services import get_db
from roomsplit.services.adjustment_service import AdjustmentLedger
from roomsplit.services.billing_cycle_service import BillingCycleService
from roomsplit.services.lifecycle_service import CycleLifecycleService
from roomsplit.services.reconciliation_service import CollectionService, ReconciliationResult

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Create router for billing endpoints
router = APIRouter(prefix="/api/billing", tags=["billing"])


def _call(endpoint: str, fn: Callable[[], T]) -> T:
    """Run a service call, translating application errors to HTTP responses."""
    start_time = time.time()
    try:
        result = fn()
    except AppError as e:
        logger.info("billing.%s rejected: %s (%s)", endpoint, e.message, e.code)
        raise_app_error(e)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error in /api/billing/{endpoint}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Server error") from e
    logger.debug("billing.%s: duration_ms=%d", endpoint, int((time.time() - start_time) * 1000))
    return result


# Response schemas
class MemberChargeResponse(BaseModel):
    """One member's charge within a cycle snapshot."""

    user_id: int
    name: str
    is_payer: bool
    presence_days: int
    rent_share: Decimal
    electricity_share: Decimal
    water_share: Decimal
    internet_share: Decimal
    water_own: Decimal
    water_shared_nonpayer: Decimal
    total_due: Decimal

    model_config = ConfigDict(from_attributes=True)


class CycleResponse(BaseModel):
    """Billing cycle with its member charge snapshot."""

    id: int
    room_id: int
    cycle_number: int
    start_date: date
    end_date: date
    status: str
    rent: Decimal
    electricity: Decimal
    internet: Decimal
    water_bill_amount: Decimal
    water_derived: bool
    total_billed_amount: Decimal
    members_count: int
    member_charges: list[MemberChargeResponse]
    closed_at: datetime | None = None
    notes: str | None = None


class MemberStatusResponse(BaseModel):
    user_id: int
    name: str
    is_payer: bool
    total_due: Decimal
    amount_paid: Decimal
    bill_statuses: dict[str, str]
    all_paid: bool

    model_config = ConfigDict(from_attributes=True)


class CollectionSummaryResponse(BaseModel):
    total_due: Decimal
    total_paid: Decimal
    total_pending: Decimal
    collection_percentage: int
    fully_paid_members: int
    total_members: int

    model_config = ConfigDict(from_attributes=True)


class ReconciliationResponse(BaseModel):
    """Per-member paid/pending status and room summary for one cycle."""

    cycle_id: int | None
    per_member: list[MemberStatusResponse]
    summary: CollectionSummaryResponse


class ComponentCollectionResponse(BaseModel):
    expected: Decimal
    collected: Decimal
    pending: Decimal

    model_config = ConfigDict(from_attributes=True)


class DashboardResponse(BaseModel):
    room_id: int
    room_name: str
    room_code: str
    payer_count: int
    non_payer_count: int
    total_members: int
    active_cycle_id: int | None = None
    active_cycle_start: date | None = None
    active_cycle_end: date | None = None
    total_billed: Decimal
    total_collected: Decimal
    outstanding: Decimal
    collection_rate: int
    breakdown: dict[str, ComponentCollectionResponse]


class TrendResponse(BaseModel):
    cycle_id: int
    cycle_number: int
    start_date: date
    end_date: date
    status: str
    rent: Decimal
    electricity: Decimal
    water: Decimal
    internet: Decimal
    total_billed: Decimal


class PortfolioStatsResponse(BaseModel):
    """Collection figures across an admin's active cycles."""

    total_billed: Decimal
    total_collected: Decimal
    total_pending: Decimal
    collection_rate: int
    cycle_count: int
    skipped_cycle_ids: list[int]

    model_config = ConfigDict(from_attributes=True)


class LedgerEntryResponse(BaseModel):
    id: int
    cycle_id: int
    kind: str
    user_id: int
    member_name: str
    bill_type: str | None = None
    rent_delta: Decimal | None = None
    electricity_delta: Decimal | None = None
    water_delta: Decimal | None = None
    amount: Decimal | None = None
    original_amount: Decimal
    new_amount: Decimal
    reason: str
    actor_id: int | None = None


class LedgerResultResponse(BaseModel):
    """Updated cycle plus the ledger entry just recorded."""

    cycle: CycleResponse
    entry: LedgerEntryResponse


class AutoCloseResponse(BaseModel):
    closed: bool
    cycle_id: int | None = None
    reason: str | None = None


class PaymentResponse(BaseModel):
    id: int
    bill_type: str
    amount: Decimal
    status: str
    payment_date: datetime
    comment: str | None = None


class MemberHistoryResponse(BaseModel):
    """A member's payments in a room, newest first."""

    user_id: int
    name: str
    is_payer: bool
    joined_at: datetime | None = None
    payments: list[PaymentResponse]
    total_paid: Decimal
    by_type: dict[str, Decimal]


# Request schemas
class CreateCycleRequest(BaseModel):
    room_id: int
    start_date: date
    end_date: date
    rent: Any = 0
    electricity: Any = 0
    internet: Any = 0
    water: Any = None
    actor_id: int | None = None
    notes: str = ""


class AdjustmentRequest(BaseModel):
    member_id: int
    rent_delta: Any = None
    electricity_delta: Any = None
    water_delta: Any = None
    reason: str | None = None
    actor_id: int | None = None


class RefundRequest(BaseModel):
    member_id: int
    amount: Any = None
    bill_type: str | None = None
    reason: str | None = None
    actor_id: int | None = None


class ActorRequest(BaseModel):
    actor_id: int | None = None


def _cycle_response(cycle: BillingCycle) -> CycleResponse:
    return CycleResponse(
        id=cycle.id,
        room_id=cycle.room_id,
        cycle_number=cycle.cycle_number,
        start_date=cycle.start_date,
        end_date=cycle.end_date,
        status=cycle.status.value,
        rent=cycle.rent,
        electricity=cycle.electricity,
        internet=cycle.internet,
        water_bill_amount=cycle.water_bill_amount,
        water_derived=cycle.water_derived,
        total_billed_amount=cycle.total_billed_amount,
        members_count=cycle.members_count,
        member_charges=[MemberChargeResponse.model_validate(c) for c in cycle.charges],
        closed_at=cycle.closed_at,
        notes=cycle.notes,
    )


def _reconciliation_response(cycle: BillingCycle | None, result: ReconciliationResult) -> ReconciliationResponse:
    return ReconciliationResponse(
        cycle_id=cycle.id if cycle else None,
        per_member=[MemberStatusResponse.model_validate(m) for m in result.per_member],
        summary=CollectionSummaryResponse.model_validate(result.summary),
    )


def _entry_response(entry) -> LedgerEntryResponse:
    return LedgerEntryResponse(
        id=entry.id,
        cycle_id=entry.cycle_id,
        kind=entry.kind.value,
        user_id=entry.user_id,
        member_name=entry.member_name,
        bill_type=entry.bill_type.value if entry.bill_type else None,
        rent_delta=entry.rent_delta,
        electricity_delta=entry.electricity_delta,
        water_delta=entry.water_delta,
        amount=entry.amount,
        original_amount=entry.original_amount,
        new_amount=entry.new_amount,
        reason=entry.reason,
        actor_id=entry.actor_id,
    )


@router.get("/cycles/{cycle_id}", response_model=CycleResponse)
def get_cycle(cycle_id: int, db: Session = Depends(get_db)) -> CycleResponse:  # noqa: B008
    """Get a billing cycle with up-to-date member charges.

    Raises:
        404: Cycle not found
    """
    service = BillingCycleService(db)
    cycle = _call("cycle", lambda: service.enrich(service.require_cycle(cycle_id)))
    return _cycle_response(cycle)


@router.get("/cycles/{cycle_id}/reconciliation", response_model=ReconciliationResponse)
def get_reconciliation(cycle_id: int, db: Session = Depends(get_db)) -> ReconciliationResponse:  # noqa: B008
    """Per-member paid/pending status for a cycle."""
    cycle, result = _call("reconciliation", lambda: CollectionService(db).reconcile_cycle(cycle_id))
    return _reconciliation_response(cycle, result)


@router.get("/cycles/{cycle_id}/ledger", response_model=list[LedgerEntryResponse])
def get_ledger(cycle_id: int, db: Session = Depends(get_db)) -> list[LedgerEntryResponse]:  # noqa: B008
    """Adjustment and refund history of a cycle, oldest first."""
    entries = _call("ledger", lambda: AdjustmentLedger(db).list_entries(cycle_id))
    return [_entry_response(e) for e in entries]


@router.get("/rooms/{room_id}/collection-status", response_model=ReconciliationResponse)
def get_collection_status(room_id: int, db: Session = Depends(get_db)) -> ReconciliationResponse:  # noqa: B008
    """Collection status of the room's active cycle (empty when there is none)."""
    status = _call("collection-status", lambda: CollectionService(db).collection_status(room_id))
    return _reconciliation_response(status["cycle"], status["result"])


@router.get("/rooms/{room_id}/dashboard", response_model=DashboardResponse)
def get_dashboard(room_id: int, db: Session = Depends(get_db)) -> DashboardResponse:  # noqa: B008
    """Financial dashboard of a room's active cycle."""
    dashboard = _call("dashboard", lambda: CollectionService(db).room_dashboard(room_id))
    dashboard["breakdown"] = {
        name: ComponentCollectionResponse.model_validate(c) for name, c in dashboard["breakdown"].items()
    }
    return DashboardResponse(**dashboard)


@router.get("/rooms/{room_id}/trends", response_model=list[TrendResponse])
def get_trends(room_id: int, db: Session = Depends(get_db)) -> list[TrendResponse]:  # noqa: B008
    """Per-cycle billing history of a room, oldest first."""
    rows = _call("trends", lambda: BillingCycleService(db).get_trends(room_id))
    return [TrendResponse(**row) for row in rows]


@router.get("/rooms/{room_id}/members/{user_id}/history", response_model=MemberHistoryResponse)
def get_member_history(
    room_id: int,
    user_id: int,
    db: Session = Depends(get_db),  # noqa: B008
) -> MemberHistoryResponse:
    """Payment history of one room member with settled totals by bill type."""
    history = _call("member-history", lambda: CollectionService(db).member_history(room_id, user_id))
    history["payments"] = [
        PaymentResponse(
            id=p.id,
            bill_type=p.bill_type.value,
            amount=p.amount,
            status=p.status.value,
            payment_date=p.payment_date,
            comment=p.comment,
        )
        for p in history["payments"]
    ]
    return MemberHistoryResponse(**history)


@router.get("/admins/{admin_id}/payment-stats", response_model=PortfolioStatsResponse)
def get_payment_stats(admin_id: int, db: Session = Depends(get_db)) -> PortfolioStatsResponse:  # noqa: B008
    """Collection figures across the active cycles of an admin's rooms."""
    stats = _call("payment-stats", lambda: CollectionService(db).portfolio_stats(admin_id))
    return PortfolioStatsResponse.model_validate(stats)


@router.post("/cycles", response_model=CycleResponse, status_code=201)
def create_cycle(request: CreateCycleRequest, db: Session = Depends(get_db)) -> CycleResponse:  # noqa: B008
    """Open a new active billing cycle.

    Raises:
        400: Invalid dates or amounts
        404: Room not found
        409: Room already has an active cycle
    """
    service = BillingCycleService(db)
    cycle = _call(
        "create-cycle",
        lambda: service.create_cycle(
            request.room_id,
            request.start_date,
            request.end_date,
            rent=request.rent,
            electricity=request.electricity,
            internet=request.internet,
            water=request.water,
            actor_id=request.actor_id,
            notes=request.notes,
        ),
    )
    return _cycle_response(cycle)


@router.post("/cycles/{cycle_id}/adjustments", response_model=LedgerResultResponse)
def adjust_charge(
    cycle_id: int,
    request: AdjustmentRequest,
    db: Session = Depends(get_db),  # noqa: B008
) -> LedgerResultResponse:
    """Adjust a payer's component shares on an active cycle."""
    result = _call(
        "adjustments",
        lambda: AdjustmentLedger(db).adjust_charge(
            cycle_id,
            request.member_id,
            rent_delta=request.rent_delta,
            electricity_delta=request.electricity_delta,
            water_delta=request.water_delta,
            reason=request.reason,
            actor_id=request.actor_id,
        ),
    )
    return LedgerResultResponse(cycle=_cycle_response(result.cycle), entry=_entry_response(result.entry))


@router.post("/cycles/{cycle_id}/refunds", response_model=LedgerResultResponse)
def refund(
    cycle_id: int,
    request: RefundRequest,
    db: Session = Depends(get_db),  # noqa: B008
) -> LedgerResultResponse:
    """Record a refund against a member's charge."""
    result = _call(
        "refunds",
        lambda: AdjustmentLedger(db).refund(
            cycle_id,
            request.member_id,
            amount=request.amount,
            bill_type=request.bill_type,
            reason=request.reason,
            actor_id=request.actor_id,
        ),
    )
    return LedgerResultResponse(cycle=_cycle_response(result.cycle), entry=_entry_response(result.entry))


@router.post("/rooms/{room_id}/auto-close", response_model=AutoCloseResponse)
def auto_close(room_id: int, db: Session = Depends(get_db)) -> AutoCloseResponse:  # noqa: B008
    """Close the room's active cycle if every payer has paid."""
    result = _call("auto-close", lambda: CycleLifecycleService(db).check_auto_close(room_id))
    return AutoCloseResponse(closed=result.closed, cycle_id=result.cycle_id, reason=result.reason)


@router.post("/cycles/{cycle_id}/close", response_model=CycleResponse)
def close_cycle(
    cycle_id: int,
    request: ActorRequest | None = None,
    db: Session = Depends(get_db),  # noqa: B008
) -> CycleResponse:
    """Manually close an active cycle."""
    actor_id = request.actor_id if request else None
    cycle = _call("close", lambda: CycleLifecycleService(db).close_cycle(cycle_id, actor_id))
    return _cycle_response(cycle)


@router.post("/cycles/{cycle_id}/archive", response_model=CycleResponse)
def archive_cycle(
    cycle_id: int,
    request: ActorRequest | None = None,
    db: Session = Depends(get_db),  # noqa: B008
) -> CycleResponse:
    """Archive a completed cycle."""
    actor_id = request.actor_id if request else None
    cycle = _call("archive", lambda: CycleLifecycleService(db).archive_cycle(cycle_id, actor_id))
    return _cycle_response(cycle)


__all__ = ["router"]
