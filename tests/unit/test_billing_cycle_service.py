"""Unit tests for billing cycle creation and enrichment."""

from datetime import date
from decimal import Decimal

import pytest

from roomsplit.api.errors import CycleStateError, NotFoundError, ValidationError
from roomsplit.models.billing_cycle import CycleStatus
from roomsplit.models.room import WaterBillingMode
from roomsplit.services.audit_service import AuditService
from roomsplit.services.billing_cycle_service import BillingCycleService
from roomsplit.services.lifecycle_service import CycleLifecycleService

START = date(2025, 1, 1)
END = date(2025, 1, 31)


@pytest.fixture
def service(db_session):
    return BillingCycleService(db_session)


@pytest.fixture
def room(make_room, add_member):
    room = make_room()
    add_member(room, 1, "Ana", days=20)
    add_member(room, 2, "Ben", days=25)
    add_member(room, 3, "Cy", days=15)
    add_member(room, 4, "Dee", is_payer=False, days=10)
    return room


class TestCreateCycle:
    """Tests for BillingCycleService.create_cycle."""

    def test_creates_enriched_active_cycle(self, service, room):
        cycle = service.create_cycle(room.id, START, END, rent="900", electricity="450", actor_id=100)

        assert cycle.status == CycleStatus.ACTIVE
        assert cycle.cycle_number == 1
        assert cycle.water_derived is True
        assert cycle.water_bill_amount == Decimal("350.00")
        assert cycle.total_billed_amount == Decimal("1700.00")
        assert cycle.members_count == 4
        assert [c.user_id for c in cycle.charges] == [1, 2, 3, 4]

    def test_sets_room_current_cycle(self, db_session, service, room):
        cycle = service.create_cycle(room.id, START, END, rent="900")

        db_session.refresh(room)
        assert room.current_cycle_id == cycle.id

    def test_admin_water_kept(self, service, room):
        cycle = service.create_cycle(room.id, START, END, water="700")

        assert cycle.water_derived is False
        assert cycle.water_bill_amount == Decimal("700.00")
        assert sum(c.water_share for c in cycle.charges if c.is_payer) == Decimal("700.00")

    def test_second_active_cycle_rejected(self, service, room):
        service.create_cycle(room.id, START, END, rent="900")

        with pytest.raises(CycleStateError):
            service.create_cycle(room.id, date(2025, 2, 1), date(2025, 2, 28), rent="900")

    def test_numbers_increase_per_room(self, db_session, service, room):
        first = service.create_cycle(room.id, START, END, rent="900")
        CycleLifecycleService(db_session).close_cycle(first.id)

        second = service.create_cycle(room.id, date(2025, 2, 1), date(2025, 2, 28), rent="900")

        assert second.cycle_number == 2

    def test_inverted_dates_rejected(self, service, room):
        with pytest.raises(ValidationError):
            service.create_cycle(room.id, END, START, rent="900")

    def test_negative_amount_rejected(self, service, room):
        with pytest.raises(ValidationError):
            service.create_cycle(room.id, START, END, rent="-1")

    def test_unknown_room(self, service):
        with pytest.raises(NotFoundError):
            service.create_cycle(999, START, END)

    def test_audited(self, db_session, service, room):
        cycle = service.create_cycle(room.id, START, END, rent="900", actor_id=100)

        history = AuditService.history(db_session, "cycle", cycle.id)
        assert [h.action for h in history] == ["create"]
        assert history[0].actor_id == 100


class TestEnrich:
    """Tests for BillingCycleService.enrich."""

    def test_idempotent_without_rewrite(self, service, room):
        cycle = service.create_cycle(room.id, START, END, rent="900", electricity="450")
        version = cycle.version_id
        charges = list(cycle.member_charges)

        again = service.enrich(cycle)

        assert again.version_id == version
        assert again.member_charges == charges

    def test_picks_up_presence_changes(self, db_session, service, room):
        cycle = service.create_cycle(room.id, START, END, rent="900")
        member = service.get_room_members(room.id)[0]
        member.presence = member.presence + ["2025-01-25"]
        db_session.commit()

        enriched = service.enrich(service.require_cycle(cycle.id))

        assert enriched.water_bill_amount == Decimal("355.00")

    def test_completed_cycle_frozen(self, db_session, service, room):
        cycle = service.create_cycle(room.id, START, END, rent="900")
        CycleLifecycleService(db_session).close_cycle(cycle.id)
        stored = list(service.require_cycle(cycle.id).member_charges)

        member = service.get_room_members(room.id)[0]
        member.is_payer = False
        db_session.commit()

        enriched = service.enrich(service.require_cycle(cycle.id))

        assert enriched.status == CycleStatus.COMPLETED
        assert enriched.member_charges == stored

    def test_none_passes_through(self, service):
        assert service.enrich(None) is None

    def test_enrich_cycles_fetches_members_once(self, service, room):
        cycle = service.create_cycle(room.id, START, END, rent="900")

        result = service.enrich_cycles([cycle])

        assert [c.id for c in result] == [cycle.id]
        assert service.enrich_cycles([]) == []

    def test_fixed_monthly_room(self, make_room, add_member, service):
        room = make_room(water_mode=WaterBillingMode.FIXED_MONTHLY, water_fixed_amount=Decimal("200"))
        add_member(room, 1, days=30)
        add_member(room, 2, days=2)

        cycle = service.create_cycle(room.id, START, END)

        assert cycle.water_bill_amount == Decimal("200.00")
        assert [c.water_share for c in cycle.charges] == [Decimal("100.00"), Decimal("100.00")]


class TestUpdateCycleTotals:
    def test_water_zero_switches_back_to_derived(self, service, room):
        cycle = service.create_cycle(room.id, START, END, water="700")

        updated = service.update_cycle_totals(cycle.id, water="0")

        assert updated.water_derived is True
        assert updated.water_bill_amount == Decimal("350.00")

    def test_completed_cycle_rejected(self, db_session, service, room):
        cycle = service.create_cycle(room.id, START, END, rent="900")
        CycleLifecycleService(db_session).close_cycle(cycle.id)

        with pytest.raises(CycleStateError):
            service.update_cycle_totals(cycle.id, rent="1000")


class TestTrends:
    def test_oldest_first(self, db_session, service, room):
        first = service.create_cycle(room.id, START, END, rent="900")
        CycleLifecycleService(db_session).close_cycle(first.id)
        service.create_cycle(room.id, date(2025, 2, 1), date(2025, 2, 28), rent="950")

        trends = service.get_trends(room.id)

        assert [t["cycle_number"] for t in trends] == [1, 2]
        assert trends[0]["status"] == "completed"
        assert trends[1]["rent"] == Decimal("950.00")

    def test_unknown_room(self, service):
        with pytest.raises(NotFoundError):
            service.get_trends(999)
