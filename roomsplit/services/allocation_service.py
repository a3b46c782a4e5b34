"""Allocation service for splitting money amounts without losing cents.

Supports:
- EVEN: equal split across N payers, last payer absorbs the rounding remainder
- PROPORTIONAL: split by weights, remainder cents to the largest weights
"""

from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Dict, Hashable, List

CENTS = Decimal("0.01")


def to_cents(value) -> Decimal:
    """Quantize any numeric-ish value to cents; None and garbage read as zero."""
    if value is None:
        return Decimal("0.00")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return Decimal("0.00")
    if not amount.is_finite():
        return Decimal("0.00")
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)


class AllocationService:
    """Money splitting engine shared by proration and payment imputation."""

    def split_evenly(self, total_amount: Decimal, count: int) -> List[Decimal]:
        """Split total into count cent-rounded shares that sum to total exactly.

        Every share except the last is total/count rounded half-up; the last
        share is total minus everything already assigned. When half-up rounding
        would leave the last share negative (tiny totals over many payers),
        shares are rounded down instead.

        Args:
            total_amount: Amount to split
            count: Number of shares

        Returns:
            List of count shares, in assignment order
        """
        if count <= 0:
            return []

        total = to_cents(total_amount)
        divisor = Decimal(count)

        share = (total / divisor).quantize(CENTS, rounding=ROUND_HALF_UP)
        if share * (count - 1) > total:
            share = (total / divisor).quantize(CENTS, rounding=ROUND_DOWN)

        shares = [share] * (count - 1)
        shares.append(total - share * (count - 1))
        return shares

    def distribute_with_remainder(
        self,
        total_amount: Decimal,
        shares: Dict[Hashable, Decimal],
    ) -> Dict[Hashable, Decimal]:
        """Distribute amount by weights, allocating remainder to largest weights.

        Ensures: sum(result) == total_amount (zero money loss/creation)

        Algorithm:
        1. Calculate per-unit allocation: total / sum(weights)
        2. Allocate: per_unit * weight, rounded half-up to cents
        3. Calculate remainder (may be negative after rounding up)
        4. Walk holders by weight descending, moving 1 cent per holder
           until the remainder is absorbed

        Args:
            total_amount: Total to distribute
            shares: Dict mapping key to weight

        Returns:
            Dict mapping key to allocated amount
        """
        if not shares:
            return {}

        total = to_cents(total_amount)
        weights = {k: Decimal(str(v)) for k, v in shares.items()}

        total_weight = sum(weights.values())
        if total_weight == 0:
            return {k: Decimal("0.00") for k in weights.keys()}

        per_unit = total / total_weight

        allocations = {}
        allocated_total = Decimal("0.00")
        for key, weight in weights.items():
            allocated = (per_unit * weight).quantize(CENTS, rounding=ROUND_HALF_UP)
            allocations[key] = allocated
            allocated_total += allocated

        remainder_cents = int((total - allocated_total) / CENTS)
        if remainder_cents:
            step = CENTS if remainder_cents > 0 else -CENTS
            # Stable sort keeps insertion order among equal weights
            holders = [k for k, w in sorted(weights.items(), key=lambda x: x[1], reverse=True) if w > 0]
            i = 0
            while remainder_cents and holders:
                key = holders[i % len(holders)]
                allocations[key] += step
                remainder_cents -= 1 if step > 0 else -1
                i += 1

        return allocations

    def allocate_proportional(
        self,
        total_amount: Decimal,
        weights: Dict[Hashable, Decimal],
    ) -> Dict[Hashable, Decimal]:
        """Allocate by proportional weights.

        Args:
            total_amount: Amount to allocate
            weights: Dict mapping key to weight

        Returns:
            Dict mapping key to allocated amount
        """
        return self.distribute_with_remainder(total_amount, weights)


__all__ = ["AllocationService", "to_cents", "CENTS"]
