"""Money and timestamp parsing utilities for gateway payloads.

Amounts inside the engine are integer minor units (kobo, cents). Gateway
payloads carry major-unit decimals ("5000.00") and timestamps in either ISO
8601 or the gateway's "YYYY-MM-DD HH:MM:SS.f" form.

Example:
    >>> to_minor_units("50.25")
    5025

    >>> from_minor_units(5025)
    Decimal('50.25')

    >>> parse_gateway_timestamp("2025-06-23 10:15:00.0").year
    2025
"""

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional, Union

MINOR_UNIT_EXPONENT = 2
_QUANT = Decimal(1).scaleb(-MINOR_UNIT_EXPONENT)


def to_minor_units(value: Union[str, int, float, Decimal]) -> int:
    """
    Convert a major-unit amount to integer minor units.

    Args:
        value: Amount such as "5000.00", 5000, Decimal("12.5")

    Returns:
        Integer minor units

    Raises:
        ValueError: If the value is not a number or has more than two decimals

    Examples:
        >>> to_minor_units("1,000.50")
        100050
        >>> to_minor_units(12.5)
        1250
    """
    if isinstance(value, bool) or value is None:
        raise ValueError(f"Cannot parse amount {value!r}")

    try:
        if isinstance(value, float):
            # repr gives the shortest round-tripping form
            amount = Decimal(repr(value))
        else:
            amount = Decimal(str(value).strip().replace(",", ""))
    except (ValueError, InvalidOperation) as e:
        raise ValueError(f"Cannot parse amount {value!r}: {e}") from e

    if not amount.is_finite():
        raise ValueError(f"Cannot parse amount {value!r}")

    quantized = amount.quantize(_QUANT, rounding=ROUND_HALF_UP)
    if quantized != amount:
        raise ValueError(f"Amount {value!r} has more than {MINOR_UNIT_EXPONENT} decimal places")
    return int(quantized.scaleb(MINOR_UNIT_EXPONENT))


def from_minor_units(value: int) -> Decimal:
    """Convert integer minor units to a two-place Decimal."""
    return Decimal(value).scaleb(-MINOR_UNIT_EXPONENT).quantize(_QUANT)


def parse_gateway_timestamp(value: Optional[str]) -> Optional[datetime]:
    """
    Parse a gateway timestamp into an aware UTC datetime.

    Args:
        value: "2025-06-23T10:15:00Z", "2025-06-23 10:15:00.0" or None/empty

    Returns:
        Aware datetime or None if input is empty

    Raises:
        ValueError: If the string is not a recognizable timestamp
    """
    if not value:
        return None

    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"

    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        try:
            parsed = datetime.strptime(text, "%d/%m/%Y %I:%M:%S %p")
        except ValueError as e:
            raise ValueError(f"Cannot parse timestamp '{value}'") from e

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


__all__ = ["to_minor_units", "from_minor_units", "parse_gateway_timestamp", "MINOR_UNIT_EXPONENT"]
