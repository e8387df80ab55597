"""
Fixed-precision fuel quantities.

Liters, kilograms and densities are decimal.Decimal end to end.  They are
stored as TEXT in sqlite so no value ever round-trips through a float.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Optional

from constants import DENSITY_PLACES, QUANTITY_PLACES, ZERO
from ledger_errors import ValidationError


def to_decimal(value: Any, field: str = "quantity") -> Decimal:
    """Parse a number or numeric string ("1 234,5" is accepted) into a Decimal."""
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be numeric")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, int):
        result = Decimal(value)
    elif isinstance(value, float):
        result = Decimal(repr(value))
    elif isinstance(value, str):
        raw = value.strip().replace(" ", "")
        if "," in raw and "." not in raw:
            raw = raw.replace(",", ".")
        else:
            raw = raw.replace(",", "")
        try:
            result = Decimal(raw)
        except InvalidOperation:
            raise ValidationError(f"{field} must be numeric, got {value!r}")
    else:
        raise ValidationError(f"{field} must be numeric")
    if not result.is_finite():
        raise ValidationError(f"{field} must be a finite number")
    return result


def qty(value: Any, field: str = "quantity") -> Decimal:
    return to_decimal(value, field).quantize(QUANTITY_PLACES, rounding=ROUND_HALF_UP)


def dens(value: Any, field: str = "density") -> Decimal:
    return to_decimal(value, field).quantize(DENSITY_PLACES, rounding=ROUND_HALF_UP)


def positive_qty(value: Any, field: str = "quantity") -> Decimal:
    result = qty(value, field)
    if result <= ZERO:
        raise ValidationError(f"{field} must be greater than zero")
    return result


def positive_density(value: Any, field: str = "density") -> Decimal:
    result = dens(value, field)
    if result <= ZERO:
        raise ValidationError(f"{field} must be greater than zero")
    return result


def optional_density(value: Any, field: str = "density") -> Optional[Decimal]:
    if value is None:
        return None
    return positive_density(value, field)


def from_db(value: Any) -> Decimal:
    """Read a stored TEXT quantity.  NULL reads as zero."""
    if value is None or value == "":
        return ZERO
    return Decimal(str(value))


def to_db(value: Decimal) -> str:
    return str(value)


def as_number(value: Optional[Decimal]) -> Optional[float]:
    """JSON-friendly view used by API payloads and log details."""
    if value is None:
        return None
    return float(value)
