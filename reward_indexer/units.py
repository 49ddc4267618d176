"""
Fixed-point helpers for 6-decimal USDC amounts.

Amounts are carried as integers of micro-USDC everywhere; these helpers are
the only place they turn into (or back from) decimal strings.
"""

from decimal import Decimal, InvalidOperation, ROUND_DOWN
from typing import Optional, Union

USDC_DECIMALS = 6
USDC_SCALE = 10 ** USDC_DECIMALS


def format_usdc(value: int, decimals: int = USDC_DECIMALS) -> str:
    """Render an integer amount as a decimal string with trailing zeros trimmed.

    >>> format_usdc(350_000_000)
    '350'
    >>> format_usdc(1_500_000)
    '1.5'
    """
    value = int(value)
    sign = "-" if value < 0 else ""
    whole, frac = divmod(abs(value), 10 ** decimals)
    frac_str = str(frac).rjust(decimals, "0").rstrip("0")
    if frac_str:
        return f"{sign}{whole}.{frac_str}"
    return f"{sign}{whole}"


def parse_usdc(value: Union[str, int, float, Decimal], decimals: int = USDC_DECIMALS) -> int:
    """Parse a decimal amount back to integer base units.

    Digits beyond ``decimals`` are truncated. Raises ValueError on garbage.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid USDC amount: {value!r}")
    text = str(value).strip()
    if not text:
        return 0
    try:
        amount = Decimal(text)
    except InvalidOperation:
        raise ValueError(f"Invalid USDC amount: {value!r}")
    if not amount.is_finite():
        raise ValueError(f"Invalid USDC amount: {value!r}")
    scaled = amount.scaleb(decimals).to_integral_value(rounding=ROUND_DOWN)
    return int(scaled)


def pct_change(current: int, previous: int) -> Optional[str]:
    """Signed percentage change with two decimals, or None when previous is 0.

    Computed in integer basis points, truncated toward zero.
    """
    if previous == 0:
        return None
    diff = current - previous
    bp = abs(diff) * 10000 // abs(previous)
    negative = (diff < 0) != (previous < 0)
    sign = "-" if negative and bp != 0 else ""
    whole, frac = divmod(bp, 100)
    return f"{sign}{whole}.{frac:02d}"


def short_address(address: str) -> str:
    """0x1234…abcd"""
    return f"{address[:6]}…{address[-4:]}"
