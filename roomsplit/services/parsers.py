"""Strict parsing of admin-supplied billing input.

Mutating operations (cycle creation, adjustments, refunds) validate every value
here before touching the database. Failures raise ``ValidationError``.

Example:
    >>> parse_amount("1,250.50", "rent")
    Decimal('1250.50')

    >>> parse_delta("-20", "rent_delta")
    Decimal('-20.00')

    >>> require_reason("  meter misread ")
    'meter misread'
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional

from roomsplit.api.errors import ValidationError
from roomsplit.models.payment import BillType

CENTS = Decimal("0.01")


def _to_decimal(value, field: str) -> Decimal:
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number")
    if isinstance(value, str):
        value = value.strip().replace(",", "").replace("₱", "")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError) as e:
        raise ValidationError(f"{field} must be a number, got {value!r}") from e
    if not amount.is_finite():
        raise ValidationError(f"{field} must be a finite number")
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)


def parse_amount(value, field: str, *, positive: bool = False) -> Decimal:
    """
    Parse a non-negative money amount.

    Args:
        value: Number or numeric string
        field: Field name used in error messages
        positive: Reject zero as well as negative values

    Returns:
        Decimal quantized to cents

    Raises:
        ValidationError: If value is missing, non-numeric or out of range
    """
    if value is None or value == "":
        raise ValidationError(f"{field} is required")
    amount = _to_decimal(value, field)
    if amount < 0 or (positive and amount == 0):
        raise ValidationError(f"{field} must be {'positive' if positive else 'non-negative'}")
    return amount


def parse_optional_amount(value, field: str) -> Optional[Decimal]:
    """Like parse_amount, but None stays None."""
    if value is None:
        return None
    return parse_amount(value, field)


def parse_delta(value, field: str) -> Decimal:
    """Parse a signed adjustment delta; None and empty read as zero."""
    if value is None or value == "":
        return Decimal("0.00")
    return _to_decimal(value, field)


def parse_bill_type(value) -> BillType:
    """Parse a bill type name ("rent", "water", "total", ...)."""
    if isinstance(value, BillType):
        return value
    if not value:
        raise ValidationError("bill_type is required")
    try:
        return BillType(str(value).strip().lower())
    except ValueError as e:
        allowed = ", ".join(t.value for t in BillType)
        raise ValidationError(f"Unknown bill_type {value!r}, expected one of: {allowed}") from e


def require_reason(reason: Optional[str]) -> str:
    """Return the stripped reason, rejecting missing or blank text."""
    if reason is None or not str(reason).strip():
        raise ValidationError("A reason is required")
    return str(reason).strip()


__all__ = [
    "parse_amount",
    "parse_optional_amount",
    "parse_delta",
    "parse_bill_type",
    "require_reason",
]
