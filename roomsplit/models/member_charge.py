"""Per-member charge snapshot stored on a billing cycle.

Not an ORM table: charges live as a JSON list on ``BillingCycle.member_charges``
so a whole snapshot is swapped in one versioned row update.
"""

from dataclasses import dataclass, fields
from decimal import Decimal
from typing import Any

AMOUNT_FIELDS = (
    "rent_share",
    "electricity_share",
    "water_share",
    "internet_share",
    "water_own",
    "water_shared_nonpayer",
    "total_due",
)

COMPONENT_FIELDS = ("rent_share", "electricity_share", "water_share", "internet_share")


@dataclass
class MemberCharge:
    """One room member's obligation for one billing cycle."""

    user_id: int
    name: str
    is_payer: bool
    presence_days: int = 0
    rent_share: Decimal = Decimal("0.00")
    electricity_share: Decimal = Decimal("0.00")
    water_share: Decimal = Decimal("0.00")
    internet_share: Decimal = Decimal("0.00")
    water_own: Decimal = Decimal("0.00")
    water_shared_nonpayer: Decimal = Decimal("0.00")
    total_due: Decimal = Decimal("0.00")

    def component_sum(self) -> Decimal:
        """Sum of the four billed components."""
        return self.rent_share + self.electricity_share + self.water_share + self.internet_share

    def to_dict(self) -> dict[str, Any]:
        """Serialize for JSON storage; amounts become fixed-point strings."""
        data: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            data[f.name] = f"{value:.2f}" if f.name in AMOUNT_FIELDS else value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MemberCharge":
        kwargs: dict[str, Any] = {
            "user_id": data["user_id"],
            "name": data.get("name") or "Unknown",
            "is_payer": bool(data.get("is_payer")),
            "presence_days": int(data.get("presence_days") or 0),
        }
        for name in AMOUNT_FIELDS:
            kwargs[name] = Decimal(str(data.get(name) or "0")).quantize(Decimal("0.01"))
        return cls(**kwargs)


__all__ = ["MemberCharge", "AMOUNT_FIELDS", "COMPONENT_FIELDS"]
