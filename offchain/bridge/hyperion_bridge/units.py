"""
Unit conversion between chain amounts and ledger balances.

The chain reports native tMETIS amounts in wei (18 decimals). The ledger
keeps balances as integers of base units with 9 decimals, so a balance
never passes through a float. All conversions use Decimal arithmetic.
"""

from decimal import Decimal
from typing import Union

CHAIN_DECIMALS = 18
LEDGER_DECIMALS = 9

WEI_PER_ETHER = 10**CHAIN_DECIMALS
UNITS_PER_TOKEN = 10**LEDGER_DECIMALS
WEI_PER_UNIT = 10 ** (CHAIN_DECIMALS - LEDGER_DECIMALS)


def wei_to_units(value_wei: int) -> tuple[int, int]:
    """
    Convert a wei amount into ledger base units.

    Returns:
        (units, remainder) where remainder is the wei below one base unit.

    Examples:
        >>> wei_to_units(2 * 10**18)
        (2000000000, 0)
        >>> wei_to_units(1_500_000_001)
        (1, 500000001)
    """
    if value_wei < 0:
        raise ValueError(f"Negative amount: {value_wei}")
    return divmod(int(value_wei), WEI_PER_UNIT)


def to_units(amount: Union[int, str, Decimal]) -> int:
    """
    Convert a token amount (e.g. "2.5") into ledger base units.

    Floats are accepted via their string form, which keeps 0.1 as exactly
    100000000 units instead of 99999999.

    Raises:
        ValueError: if the amount needs more than LEDGER_DECIMALS places
    """
    if isinstance(amount, Decimal):
        dec_value = amount
    elif isinstance(amount, str):
        dec_value = Decimal(amount)
    else:
        dec_value = Decimal(str(amount))

    units = dec_value * UNITS_PER_TOKEN
    if units != units.to_integral_value():
        raise ValueError(f"Amount {amount} results in fractional ledger units: {units}")
    return int(units)


def _shift(value: int, decimals: int) -> Decimal:
    # exact: reuse the digits with a new exponent instead of dividing
    sign, digits, _ = Decimal(int(value)).as_tuple()
    return Decimal((sign, digits, -decimals))


def from_units(units: int) -> Decimal:
    """Convert ledger base units to a token Decimal."""
    return _shift(units, LEDGER_DECIMALS)


def format_units(units: int) -> str:
    """Render ledger base units for display, without trailing zeros."""
    text = format(from_units(units), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def format_ether(value_wei: int) -> str:
    """Render a wei amount as tMETIS for logs."""
    text = format(_shift(value_wei, CHAIN_DECIMALS), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text
