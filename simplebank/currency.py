"""
Currency Support Module

Supported ISO 4217 currencies. Amounts are integers in minor units (cents),
so no floating point or Decimal arithmetic is needed on balances.
"""

from enum import Enum
from typing import Union


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    USD = ("USD", 2)  # US Dollar, 2 decimal places
    EUR = ("EUR", 2)  # Euro, 2 decimal places
    CAD = ("CAD", 2)  # Canadian Dollar, 2 decimal places

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @classmethod
    def from_code(cls, code: Union[str, "Currency"]) -> "Currency":
        """Look up a currency by its ISO code (case-insensitive)"""
        if isinstance(code, Currency):
            return code
        try:
            return cls[str(code).upper()]
        except KeyError:
            raise ValueError(f"Unsupported currency: {code}")


def is_supported_currency(code: str) -> bool:
    """Check if a currency code is supported"""
    try:
        Currency.from_code(code)
        return True
    except ValueError:
        return False


def format_minor_units(amount: int, currency: Currency) -> str:
    """Format an amount in minor units for display, e.g. 'USD 12.34'"""
    sign = "-" if amount < 0 else ""
    major, minor = divmod(abs(amount), 10 ** currency.precision)
    if currency.precision == 0:
        return f"{currency.code} {sign}{major:,}"
    return f"{currency.code} {sign}{major:,}.{minor:0{currency.precision}d}"
