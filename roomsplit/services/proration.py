"""Proration calculator: splits a billing cycle's bills across room members.

Pure computation, no database access. Rent, electricity and internet are split
evenly across payers. Water is prorated from presence days at a fixed daily
rate; water consumed by non-payers is folded into the payers' shares. The last
payer in member order absorbs the rounding remainder of every even split, and
an admin-entered water total is scaled with a proportional split that never
goes below zero. Each component's payer shares add up to the component total
to the cent.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, NamedTuple, Sequence

from roomsplit.models.member_charge import MemberCharge
from roomsplit.models.room import WaterBillingMode
from roomsplit.services.allocation_service import CENTS, AllocationService, to_cents

logger = logging.getLogger(__name__)

WATER_RATE_PER_DAY = Decimal("5")


@dataclass(frozen=True)
class MemberPresence:
    """Proration input for one room member."""

    user_id: int
    name: str
    is_payer: bool
    presence: Sequence = field(default_factory=tuple)
    joined_at: datetime | None = None


@dataclass(frozen=True)
class CycleTotals:
    """Proration input for one billing cycle.

    ``water`` is the admin-entered water total, or None when water is derived
    from presence.
    """

    start_date: date
    end_date: date
    rent: Decimal = Decimal("0")
    electricity: Decimal = Decimal("0")
    internet: Decimal = Decimal("0")
    water: Decimal | None = None
    water_mode: WaterBillingMode = WaterBillingMode.PRESENCE
    water_fixed_amount: Decimal = Decimal("0")


class ProrationResult(NamedTuple):
    """Computed member charges and cycle-level totals."""

    charges: list[MemberCharge]
    water_total: Decimal
    total_billed: Decimal


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def member_order_key(member: MemberPresence) -> tuple:
    """Stable ordering: join time, then user id. Members without a join time go last."""
    if member.joined_at is None:
        return (1, datetime.min, member.user_id)
    return (0, _naive_utc(member.joined_at), member.user_id)


def _parse_day(value) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip()[:10])
        except ValueError:
            return None
    return None


def count_presence_days(presence: Iterable, start_date: date, end_date: date) -> int:
    """Count distinct presence dates inside the inclusive [start_date, end_date] window."""
    days = set()
    for raw in presence or ():
        day = _parse_day(raw)
        if day is None:
            logger.debug("Skipping unparseable presence entry %r", raw)
            continue
        if start_date <= day <= end_date:
            days.add(day)
    return len(days)


class ProrationCalculator:
    """Split cycle totals into per-member charges."""

    def __init__(
        self,
        water_rate: Decimal = WATER_RATE_PER_DAY,
        allocation: AllocationService | None = None,
    ):
        self.water_rate = Decimal(str(water_rate))
        self.allocation = allocation or AllocationService()

    def calculate(self, totals: CycleTotals, members: Iterable[MemberPresence]) -> ProrationResult:
        """Compute member charges for a cycle.

        Identical inputs always produce identical outputs: members are sorted by
        ``member_order_key`` before any remainder is assigned.

        Args:
            totals: Cycle bill totals and date window
            members: Room members with payer flag and presence dates

        Returns:
            ProrationResult with one MemberCharge per member (payers and
            non-payers), the cycle water total and the total billed amount
        """
        ordered = sorted(members, key=member_order_key)
        payers = [m for m in ordered if m.is_payer]
        payer_count = len(payers)

        rent = to_cents(totals.rent)
        electricity = to_cents(totals.electricity)
        internet = to_cents(totals.internet)

        presence_days = {
            m.user_id: count_presence_days(m.presence, totals.start_date, totals.end_date)
            for m in ordered
        }
        own_water = {
            m.user_id: (presence_days[m.user_id] * self.water_rate).quantize(CENTS, rounding=ROUND_HALF_UP)
            for m in ordered
        }

        if totals.water_mode == WaterBillingMode.FIXED_MONTHLY:
            water_total = to_cents(totals.water_fixed_amount)
            payer_water = self.allocation.split_evenly(water_total, payer_count)
            display_own = dict.fromkeys(own_water, Decimal("0.00"))
            for payer, share in zip(payers, payer_water):
                display_own[payer.user_id] = share
            folded_nonpayer = [Decimal("0.00")] * payer_count
        else:
            water_total, payer_water, display_own, folded_nonpayer = self._presence_water(
                totals, ordered, payers, own_water
            )

        rent_shares = self.allocation.split_evenly(rent, payer_count)
        electricity_shares = self.allocation.split_evenly(electricity, payer_count)
        internet_shares = self.allocation.split_evenly(internet, payer_count)

        payer_index = {m.user_id: i for i, m in enumerate(payers)}
        charges = []
        for member in ordered:
            charge = MemberCharge(
                user_id=member.user_id,
                name=member.name or "Unknown",
                is_payer=member.is_payer,
                presence_days=presence_days[member.user_id],
                water_own=display_own[member.user_id],
            )
            if member.is_payer:
                i = payer_index[member.user_id]
                charge.rent_share = rent_shares[i]
                charge.electricity_share = electricity_shares[i]
                charge.internet_share = internet_shares[i]
                charge.water_share = payer_water[i]
                charge.water_shared_nonpayer = folded_nonpayer[i]
                charge.total_due = charge.component_sum()
            charges.append(charge)

        total_billed = rent + electricity + water_total + internet
        return ProrationResult(charges=charges, water_total=water_total, total_billed=total_billed)

    def _presence_water(self, totals, ordered, payers, own_water):
        """Presence-based water split.

        Returns (water_total, payer water shares in payer order, displayed own
        water per user id, non-payer water folded into each payer's share).
        """
        payer_count = len(payers)
        raw_total = sum(own_water.values(), Decimal("0.00"))
        admin_water = to_cents(totals.water) if totals.water is not None else Decimal("0.00")

        if raw_total == 0:
            # No presence in the window: an entered total is split evenly
            water_total = admin_water
            zero = dict.fromkeys(own_water, Decimal("0.00"))
            shares = self.allocation.split_evenly(water_total, payer_count)
            return water_total, shares, zero, [Decimal("0.00")] * payer_count

        water_total = admin_water if admin_water > 0 else raw_total
        if water_total == raw_total:
            scaled_own = dict(own_water)
        else:
            # Cent remainder goes to the largest consumers; no share drops below zero
            scaled_own = self.allocation.allocate_proportional(water_total, own_water)

        if payer_count == 0:
            return water_total, [], scaled_own, []

        nonpayer_total = sum(
            (scaled_own[m.user_id] for m in ordered if not m.is_payer), Decimal("0.00")
        )
        folded = self.allocation.split_evenly(nonpayer_total, payer_count)
        shares = [scaled_own[p.user_id] + extra for p, extra in zip(payers, folded)]
        return water_total, shares, scaled_own, folded


__all__ = [
    "ProrationCalculator",
    "ProrationResult",
    "CycleTotals",
    "MemberPresence",
    "WATER_RATE_PER_DAY",
    "count_presence_days",
    "member_order_key",
]
