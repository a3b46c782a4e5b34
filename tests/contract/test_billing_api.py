"""Contract tests for the billing API endpoints."""

from datetime import date
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from roomsplit.main import create_app
from roomsplit.models.payment import BillType
from roomsplit.services import get_db

BASE = "/api/billing"


@pytest.fixture
def client(session_factory):
    """Test client whose requests use the test database."""
    app = create_app()

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    return TestClient(app)


@pytest.fixture
def room(make_room, add_member):
    room = make_room(admin_id=100)
    add_member(room, 1, "Ana", days=20)
    add_member(room, 2, "Ben", days=25)
    add_member(room, 3, "Cy", days=15)
    add_member(room, 4, "Dee", is_payer=False, days=10)
    return room


@pytest.fixture
def cycle(client, room):
    response = client.post(
        f"{BASE}/cycles",
        json={
            "room_id": room.id,
            "start_date": "2025-01-01",
            "end_date": "2025-01-31",
            "rent": "900",
            "electricity": 450,
            "actor_id": 100,
        },
    )
    assert response.status_code == 201
    return response.json()


def error_code(response) -> str:
    return response.json()["detail"]["error"]["code"]


class TestCycleEndpoints:
    def test_create_cycle(self, cycle):
        assert cycle["status"] == "active"
        assert cycle["cycle_number"] == 1
        assert Decimal(cycle["total_billed_amount"]) == Decimal("1700.00")
        assert Decimal(cycle["water_bill_amount"]) == Decimal("350.00")
        assert len(cycle["member_charges"]) == 4
        water = [Decimal(c["water_share"]) for c in cycle["member_charges"]]
        assert water == [Decimal("116.67"), Decimal("141.67"), Decimal("91.66"), Decimal("0.00")]

    def test_amounts_serialized_as_strings(self, cycle):
        assert isinstance(cycle["total_billed_amount"], str)
        assert isinstance(cycle["member_charges"][0]["total_due"], str)

    def test_second_active_cycle_conflict(self, client, room, cycle):
        response = client.post(
            f"{BASE}/cycles",
            json={"room_id": room.id, "start_date": "2025-02-01", "end_date": "2025-02-28", "rent": "900"},
        )

        assert response.status_code == 409
        assert error_code(response) == "invalid_cycle_state"

    def test_invalid_amount(self, client, room):
        response = client.post(
            f"{BASE}/cycles",
            json={"room_id": room.id, "start_date": "2025-01-01", "end_date": "2025-01-31", "rent": "lots"},
        )

        assert response.status_code == 400
        assert error_code(response) == "validation_error"

    def test_get_cycle(self, client, cycle):
        response = client.get(f"{BASE}/cycles/{cycle['id']}")

        assert response.status_code == 200
        assert response.json()["member_charges"] == cycle["member_charges"]

    def test_get_missing_cycle(self, client):
        response = client.get(f"{BASE}/cycles/9999")

        assert response.status_code == 404
        assert error_code(response) == "not_found"

    def test_trends(self, client, room, cycle):
        response = client.get(f"{BASE}/rooms/{room.id}/trends")

        assert response.status_code == 200
        assert [row["cycle_id"] for row in response.json()] == [cycle["id"]]


class TestLedgerEndpoints:
    def test_adjustment(self, client, cycle):
        response = client.post(
            f"{BASE}/cycles/{cycle['id']}/adjustments",
            json={"member_id": 1, "rent_delta": "-5000", "reason": "Rent waived", "actor_id": 100},
        )

        assert response.status_code == 200
        body = response.json()
        assert Decimal(body["entry"]["original_amount"]) == Decimal("566.67")
        assert Decimal(body["entry"]["new_amount"]) == Decimal("266.67")
        assert body["entry"]["kind"] == "adjustment"
        assert Decimal(body["cycle"]["total_billed_amount"]) == Decimal("1400.00")

    def test_adjustment_requires_reason(self, client, cycle):
        response = client.post(f"{BASE}/cycles/{cycle['id']}/adjustments", json={"member_id": 1, "rent_delta": "-5"})

        assert response.status_code == 400
        assert error_code(response) == "validation_error"

    def test_refund_and_ledger(self, client, cycle):
        response = client.post(
            f"{BASE}/cycles/{cycle['id']}/refunds",
            json={"member_id": 2, "amount": "41.67", "bill_type": "water", "reason": "Leak credit"},
        )

        assert response.status_code == 200
        assert Decimal(response.json()["cycle"]["total_billed_amount"]) == Decimal("1658.33")

        ledger = client.get(f"{BASE}/cycles/{cycle['id']}/ledger").json()
        assert [(e["kind"], e["bill_type"]) for e in ledger] == [("refund", "water")]


class TestCollectionEndpoints:
    def test_reconciliation(self, client, room, cycle, add_payment):
        add_payment(room, 1, BillType.TOTAL, "566.67")

        response = client.get(f"{BASE}/cycles/{cycle['id']}/reconciliation")

        assert response.status_code == 200
        body = response.json()
        assert body["summary"]["fully_paid_members"] == 1
        assert body["summary"]["collection_percentage"] == 33
        assert body["per_member"][0]["all_paid"] is True

    def test_collection_status(self, client, room, cycle):
        response = client.get(f"{BASE}/rooms/{room.id}/collection-status")

        assert response.status_code == 200
        assert response.json()["cycle_id"] == cycle["id"]

    def test_collection_status_unknown_room(self, client):
        response = client.get(f"{BASE}/rooms/999/collection-status")

        assert response.status_code == 404

    def test_dashboard(self, client, room, cycle):
        response = client.get(f"{BASE}/rooms/{room.id}/dashboard")

        assert response.status_code == 200
        body = response.json()
        assert body["payer_count"] == 3
        assert Decimal(body["breakdown"]["rent"]["expected"]) == Decimal("900.00")

    def test_payment_stats(self, client, room, cycle, add_payment):
        add_payment(room, 2, BillType.RENT, "300")

        response = client.get(f"{BASE}/admins/100/payment-stats")

        assert response.status_code == 200
        body = response.json()
        assert body["cycle_count"] == 1
        assert Decimal(body["total_collected"]) == Decimal("300.00")
        assert body["skipped_cycle_ids"] == []

    def test_member_history(self, client, room, cycle, add_payment):
        add_payment(room, 2, BillType.RENT, "300", paid_on=date(2025, 1, 3))
        add_payment(room, 2, BillType.WATER, "141.67", paid_on=date(2025, 1, 9))
        add_payment(room, 1, BillType.TOTAL, "566.67")

        response = client.get(f"{BASE}/rooms/{room.id}/members/2/history")

        assert response.status_code == 200
        body = response.json()
        assert body["name"] == "Ben"
        assert [p["bill_type"] for p in body["payments"]] == ["water", "rent"]
        assert body["payments"][0]["status"] == "completed"
        assert Decimal(body["total_paid"]) == Decimal("441.67")
        assert Decimal(body["by_type"]["rent"]) == Decimal("300.00")

    def test_member_history_unknown_member(self, client, room):
        response = client.get(f"{BASE}/rooms/{room.id}/members/77/history")

        assert response.status_code == 404
        assert error_code(response) == "not_found"


class TestLifecycleEndpoints:
    def test_auto_close_not_ready(self, client, room, cycle):
        response = client.post(f"{BASE}/rooms/{room.id}/auto-close")

        assert response.status_code == 200
        assert response.json() == {"closed": False, "cycle_id": cycle["id"], "reason": "not_all_paid"}

    def test_auto_close(self, client, room, cycle, add_payment):
        for user_id in (1, 2, 3):
            add_payment(room, user_id, BillType.TOTAL, "600", paid_on=date(2025, 1, 20))

        response = client.post(f"{BASE}/rooms/{room.id}/auto-close")

        assert response.json()["closed"] is True
        assert client.get(f"{BASE}/cycles/{cycle['id']}").json()["status"] == "completed"

    def test_close_and_archive(self, client, cycle):
        closed = client.post(f"{BASE}/cycles/{cycle['id']}/close", json={"actor_id": 100})
        assert closed.status_code == 200
        assert closed.json()["status"] == "completed"

        archived = client.post(f"{BASE}/cycles/{cycle['id']}/archive", json={"actor_id": 100})
        assert archived.json()["status"] == "archived"

        again = client.post(f"{BASE}/cycles/{cycle['id']}/archive")
        assert again.status_code == 409
        assert error_code(again) == "invalid_cycle_state"


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
