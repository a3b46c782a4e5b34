"""Shared pytest fixtures: in-memory database and billing object factories."""

import os

# Set test database URL BEFORE any imports from roomsplit
# This ensures the SessionLocal and engine use the test database
os.environ["DATABASE_URL"] = "sqlite:///:memory:"

from datetime import date, datetime, timedelta, timezone  # noqa: E402
from decimal import Decimal  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from roomsplit.models import (  # noqa: E402
    Base,
    BillType,
    Payment,
    PaymentStatus,
    Room,
    RoomMember,
    WaterBillingMode,
)

CYCLE_START = date(2025, 1, 1)
CYCLE_END = date(2025, 1, 31)


def presence_days(count: int, start: date = CYCLE_START) -> list[str]:
    """ISO dates for `count` consecutive days starting at `start`."""
    return [(start + timedelta(days=i)).isoformat() for i in range(count)]


@pytest.fixture
def engine():
    """In-memory SQLite engine shared across connections."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db_session(session_factory):
    """Create test database session."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def make_room(db_session):
    """Factory creating a room owned by an admin."""
    counter = {"n": 0}

    def _make_room(
        name: str = "Unit 4B",
        admin_id: int = 100,
        water_mode: WaterBillingMode = WaterBillingMode.PRESENCE,
        water_fixed_amount: Decimal = Decimal("0"),
    ) -> Room:
        counter["n"] += 1
        room = Room(
            name=name,
            code=f"ROOM{counter['n']:03d}",
            created_by=admin_id,
            water_billing_mode=water_mode,
            water_fixed_amount=water_fixed_amount,
        )
        db_session.add(room)
        db_session.commit()
        return room

    return _make_room


@pytest.fixture
def add_member(db_session):
    """Factory adding a member to a room; join order follows call order."""
    counter = {"n": 0}

    def _add_member(
        room: Room,
        user_id: int,
        name: str | None = None,
        is_payer: bool = True,
        days: int = 0,
        presence: list[str] | None = None,
    ) -> RoomMember:
        counter["n"] += 1
        member = RoomMember(
            room_id=room.id,
            user_id=user_id,
            name=name or f"Member {user_id}",
            is_payer=is_payer,
            presence=presence if presence is not None else presence_days(days),
            joined_at=datetime(2024, 12, 1, tzinfo=timezone.utc) + timedelta(hours=counter["n"]),
        )
        db_session.add(member)
        db_session.commit()
        return member

    return _add_member


@pytest.fixture
def add_payment(db_session):
    """Factory recording a payment inside the January 2025 cycle window."""

    def _add_payment(
        room: Room,
        user_id: int,
        bill_type: BillType,
        amount,
        status: PaymentStatus = PaymentStatus.COMPLETED,
        paid_on: date = date(2025, 1, 15),
    ) -> Payment:
        payment = Payment(
            room_id=room.id,
            paid_by=user_id,
            bill_type=bill_type,
            amount=Decimal(str(amount)),
            status=status,
            payment_date=datetime(paid_on.year, paid_on.month, paid_on.day, 12, 0, tzinfo=timezone.utc),
        )
        db_session.add(payment)
        db_session.commit()
        return payment

    return _add_payment


@pytest.fixture
def pay_all(add_payment):
    """Pay all four bill types for a member."""

    def _pay_all(room: Room, user_id: int, amount="1") -> None:
        for bill_type in (BillType.RENT, BillType.ELECTRICITY, BillType.WATER, BillType.INTERNET):
            add_payment(room, user_id, bill_type, amount)

    return _pay_all
