"""Fixed-point conversions between human amounts and on-chain integer units.

All arithmetic goes through :class:`decimal.Decimal` and Python integers:
18-decimal token amounts are far outside the range a float can hold exactly.
"""

from __future__ import annotations

from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal, InvalidOperation, localcontext

from .calldata import HEX_DIGITS_RE, MAX_UINT256
from .errors import InvalidAmount


DISPLAY_PRECISION = 6
NATIVE_DECIMALS = 18
NATIVE_GAS_RESERVE = Decimal("0.001")

_DISPLAY_QUANTUM = Decimal(1).scaleb(-DISPLAY_PRECISION)


def parse_amount(amount: str) -> Decimal:
    """Parse a user supplied decimal string, rejecting anything non-numeric."""

    if isinstance(amount, (int, Decimal)):
        value = Decimal(amount)
    elif isinstance(amount, str):
        text = amount.strip()
        if not text:
            raise InvalidAmount("Amount is empty")
        try:
            value = Decimal(text)
        except InvalidOperation as exc:
            raise InvalidAmount(f"Amount '{amount}' is not a number") from exc
    else:
        raise InvalidAmount(f"Unsupported amount type {type(amount).__name__}")

    if not value.is_finite():
        raise InvalidAmount(f"Amount '{amount}' is not finite")
    if value < 0:
        raise InvalidAmount(f"Amount '{amount}' is negative")
    return value


def to_units(amount: str, decimals: int) -> int:
    """Scale ``amount`` by ``10**decimals`` and return the exact integer."""

    if decimals < 0:
        raise ValueError("decimals must be >= 0")

    value = parse_amount(amount)
    with localcontext() as ctx:
        ctx.prec = max(78, len(value.as_tuple().digits) + decimals + 2)
        scaled = value.scaleb(decimals)
        if scaled != scaled.to_integral_value():
            raise InvalidAmount(
                f"Amount '{amount}' has more than {decimals} fractional digits"
            )
        units = int(scaled)
    if units > MAX_UINT256:
        raise InvalidAmount(f"Amount '{amount}' does not fit in 256 bits of units")
    return units


def from_units(units: int, decimals: int) -> str:
    """Render integer ``units`` as a decimal string with six fractional digits."""

    if decimals < 0:
        raise ValueError("decimals must be >= 0")

    with localcontext() as ctx:
        ctx.prec = max(78, len(str(abs(units))) + DISPLAY_PRECISION + 2)
        value = Decimal(units).scaleb(-decimals)
        return format(value.quantize(_DISPLAY_QUANTUM, rounding=ROUND_HALF_UP), "f")


def to_hex(value: int) -> str:
    if value < 0:
        raise ValueError("Only unsigned integers can be hex encoded")
    return hex(value)


def from_hex(value: str) -> int:
    """Decode a ``0x`` prefixed quantity; an empty ``0x`` result means zero."""

    if not isinstance(value, str):
        raise ValueError(f"Expected a hex string, got {value!r}")
    text = value[2:] if value[:2].lower() == "0x" else value
    if HEX_DIGITS_RE.fullmatch(text) is None:
        raise ValueError(f"'{value}' is not a hex quantity")
    if not text:
        return 0
    return int(text, 16)


def max_sendable(balance: str, *, is_native: bool) -> str:
    """Largest amount worth offering for a transfer out of ``balance``.

    The native asset keeps a small reserve back for gas.
    """

    value = parse_amount(balance)
    if is_native:
        value = max(Decimal(0), value - NATIVE_GAS_RESERVE)
    return format(value.quantize(_DISPLAY_QUANTUM, rounding=ROUND_DOWN), "f")
