"""Integration tests for the cycle settlement workflow: bill, pay, auto-close."""

from datetime import date
from decimal import Decimal

import pytest

from roomsplit.api.errors import CycleStateError, NotFoundError
from roomsplit.models.billing_cycle import CycleStatus
from roomsplit.models.payment import BillType, PaymentStatus
from roomsplit.services.audit_service import AuditService
from roomsplit.services.billing_cycle_service import BillingCycleService
from roomsplit.services.lifecycle_service import CycleLifecycleService
from roomsplit.services.reconciliation_service import CollectionService, PaymentReconciler

START = date(2025, 1, 1)
END = date(2025, 1, 31)


@pytest.fixture
def room(make_room, add_member):
    room = make_room()
    add_member(room, 1, "Ana", days=20)
    add_member(room, 2, "Ben", days=25)
    add_member(room, 3, "Cy", days=15)
    add_member(room, 4, "Dee", is_payer=False, days=10)
    return room


@pytest.fixture
def cycle(db_session, room):
    return BillingCycleService(db_session).create_cycle(
        room.id, START, END, rent="900", electricity="450", actor_id=100
    )


@pytest.fixture
def lifecycle(db_session):
    return CycleLifecycleService(db_session)


class TestAutoClose:
    """Auto-close fires exactly once, when every payer has paid everything."""

    def test_closes_only_when_all_payers_paid(self, db_session, room, cycle, lifecycle, pay_all, add_payment):
        pay_all(room, 1)
        pay_all(room, 2)
        for bill_type in (BillType.RENT, BillType.ELECTRICITY, BillType.WATER):
            add_payment(room, 3, bill_type, "100")

        first = lifecycle.check_auto_close(room.id)
        assert first.closed is False
        assert first.reason == "not_all_paid"

        add_payment(room, 3, BillType.INTERNET, "0.01")
        second = lifecycle.check_auto_close(room.id)
        assert second.closed is True
        assert second.cycle_id == cycle.id

        third = lifecycle.check_auto_close(room.id)
        assert third.closed is False
        assert third.reason == "no_active_cycle"

    def test_closing_updates_cycle_and_room(self, db_session, room, cycle, lifecycle, add_payment):
        for user_id in (1, 2, 3):
            add_payment(room, user_id, BillType.TOTAL, "566.67")

        result = lifecycle.check_auto_close(room.id)

        assert result.closed is True
        closed = BillingCycleService(db_session).require_cycle(cycle.id)
        assert closed.status == CycleStatus.COMPLETED
        assert closed.closed_at is not None
        assert closed.closed_by is None
        db_session.refresh(room)
        assert room.current_cycle_id is None
        actions = [h.action for h in AuditService.history(db_session, "cycle", cycle.id)]
        assert actions == ["create", "auto_close"]

    def test_pending_payments_do_not_count(self, room, cycle, lifecycle, add_payment):
        for user_id in (1, 2, 3):
            add_payment(room, user_id, BillType.TOTAL, "566.67", status=PaymentStatus.PENDING)

        assert lifecycle.check_auto_close(room.id).closed is False

    def test_payments_outside_window_do_not_count(self, room, cycle, lifecycle, add_payment):
        for user_id in (1, 2, 3):
            add_payment(room, user_id, BillType.TOTAL, "566.67", paid_on=date(2025, 2, 3))

        assert lifecycle.check_auto_close(room.id).closed is False

    def test_zero_payers_never_close(self, db_session, make_room, add_member, lifecycle):
        room = make_room()
        add_member(room, 1, is_payer=False, days=5)
        BillingCycleService(db_session).create_cycle(room.id, START, END, rent="100")

        result = lifecycle.check_auto_close(room.id)

        assert result.closed is False
        assert result.reason == "no_paying_members"

    def test_no_active_cycle(self, room, lifecycle):
        result = lifecycle.check_auto_close(room.id)

        assert result.closed is False
        assert result.reason == "no_active_cycle"

    def test_failure_reported_not_raised(self, room, cycle, lifecycle, monkeypatch, caplog):
        def broken(self, cycle, payments):
            raise RuntimeError("payments store unavailable")

        monkeypatch.setattr(PaymentReconciler, "reconcile", broken)

        result = lifecycle.check_auto_close(room.id)

        assert result.closed is False
        assert result.reason == "error"
        assert "Auto-close check failed" in caplog.text


class TestManualLifecycle:
    def test_close_then_archive(self, db_session, cycle, lifecycle):
        closed = lifecycle.close_cycle(cycle.id, actor_id=100)
        assert closed.status == CycleStatus.COMPLETED
        assert closed.closed_by == 100

        archived = lifecycle.archive_cycle(cycle.id, actor_id=100)
        assert archived.status == CycleStatus.ARCHIVED

    def test_close_twice_rejected(self, cycle, lifecycle):
        lifecycle.close_cycle(cycle.id)

        with pytest.raises(CycleStateError):
            lifecycle.close_cycle(cycle.id)

    def test_archive_active_rejected(self, cycle, lifecycle):
        with pytest.raises(CycleStateError):
            lifecycle.archive_cycle(cycle.id)

    def test_unknown_cycle(self, lifecycle):
        with pytest.raises(NotFoundError):
            lifecycle.close_cycle(424242)


class TestCollectionService:
    """Room collection status, dashboard and member history."""

    def test_collection_status(self, db_session, room, cycle, pay_all, add_payment):
        pay_all(room, 1)
        add_payment(room, 2, BillType.RENT, "300")

        status = CollectionService(db_session).collection_status(room.id)
        result = status["result"]

        assert status["cycle"].id == cycle.id
        assert result.summary.total_due == Decimal("1700.00")
        assert result.summary.total_paid == Decimal("566.67")
        assert result.summary.total_pending == Decimal("1133.33")
        assert result.summary.collection_percentage == 33
        assert result.summary.fully_paid_members == 1
        assert result.for_member(2).bill_statuses["rent"] == "paid"
        assert result.for_member(2).bill_statuses["water"] == "pending"

    def test_collection_status_without_active_cycle(self, db_session, room):
        status = CollectionService(db_session).collection_status(room.id)

        assert status["cycle"] is None
        assert status["result"].per_member == []

    def test_collection_status_unknown_room(self, db_session):
        with pytest.raises(NotFoundError):
            CollectionService(db_session).collection_status(999)

    def test_dashboard(self, db_session, room, cycle, add_payment):
        add_payment(room, 1, BillType.TOTAL, "566.67")

        dashboard = CollectionService(db_session).room_dashboard(room.id)

        assert dashboard["payer_count"] == 3
        assert dashboard["non_payer_count"] == 1
        assert dashboard["active_cycle_id"] == cycle.id
        assert dashboard["total_billed"] == Decimal("1700.00")
        assert dashboard["total_collected"] == Decimal("566.67")
        assert dashboard["outstanding"] == Decimal("1133.33")
        assert set(dashboard["breakdown"]) == {"rent", "electricity", "water", "internet"}

    def test_member_history(self, db_session, room, cycle, add_payment):
        add_payment(room, 2, BillType.RENT, "300", paid_on=date(2025, 1, 3))
        add_payment(room, 2, BillType.WATER, "141.67", paid_on=date(2025, 1, 9))
        add_payment(room, 2, BillType.ELECTRICITY, "150", status=PaymentStatus.REJECTED)

        history = CollectionService(db_session).member_history(room.id, 2)

        assert [p.bill_type for p in history["payments"]] == [
            BillType.ELECTRICITY,
            BillType.WATER,
            BillType.RENT,
        ]
        assert history["total_paid"] == Decimal("441.67")
        assert history["by_type"]["electricity"] == Decimal("0.00")

    def test_member_history_unknown_member(self, db_session, room):
        with pytest.raises(NotFoundError):
            CollectionService(db_session).member_history(room.id, 77)
