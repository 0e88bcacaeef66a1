"""
Currency Support Module

Decimal rounding and display formatting for servicing amounts. Every amount
the core returns is a Decimal quantized to the currency's minor unit.
NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from enum import Enum
from typing import Union
import re

# Set global decimal context for financial precision
getcontext().prec = 28

CENT = Decimal('0.01')
ZERO = Decimal('0')

Numeric = Union[Decimal, int, float, str]


class Currency(Enum):
    """ISO 4217 Currency Codes with precision and display symbol"""
    GBP = ("GBP", 2, "£")
    EUR = ("EUR", 2, "€")
    USD = ("USD", 2, "$")
    JPY = ("JPY", 0, "¥")

    def __init__(self, code: str, precision: int, symbol: str):
        self.code = code
        self.precision = precision
        self.symbol = symbol


def to_decimal(value: Numeric) -> Decimal:
    """
    Coerce a numeric value to Decimal without binary float artifacts

    Floats go through ``str`` so that ``0.1`` becomes ``Decimal('0.1')``.
    """
    if isinstance(value, Decimal):
        return value
    if value is None:
        return ZERO
    if isinstance(value, str):
        return decimal_from_string(value)
    return Decimal(str(value))


def round_currency(value: Numeric) -> Decimal:
    """Round to two decimal places, half away from zero"""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def decimal_from_string(value: str) -> Decimal:
    """
    Safely convert string to Decimal, handling common formats

    Args:
        value: String representation of number, e.g. "£1,250.00"

    Returns:
        Decimal value

    Raises:
        ValueError: If string cannot be converted to valid Decimal
    """
    if not value or not isinstance(value, str):
        raise ValueError("Value must be a non-empty string")

    # Remove currency symbols and whitespace
    clean_value = re.sub(r'[^\d.,\-+eE]', '', value.strip())

    if ',' in clean_value and '.' in clean_value:
        # Both comma and dot - comma is the thousands separator
        clean_value = clean_value.replace(',', '')
    elif ',' in clean_value and clean_value.count(',') == 1:
        parts = clean_value.split(',')
        if len(parts[1]) <= 2:  # Decimal separator
            clean_value = clean_value.replace(',', '.')
        else:  # Thousands separator
            clean_value = clean_value.replace(',', '')
    else:
        clean_value = clean_value.replace(',', '')

    try:
        return Decimal(clean_value)
    except InvalidOperation:
        raise ValueError(f"Cannot convert '{value}' to Decimal")


def format_currency(amount: Numeric, currency: Union[Currency, str] = Currency.GBP) -> str:
    """
    Format an amount for display, e.g. ``format_currency(1234.5) == '£1,234.50'``

    Display only: the numeric core never returns formatted strings.
    Unparseable input formats as zero.
    """
    if isinstance(currency, str):
        currency = Currency[currency.upper()]

    try:
        value = to_decimal(amount)
    except ValueError:
        value = ZERO

    quantum = Decimal('0.1') ** currency.precision
    value = value.quantize(quantum, rounding=ROUND_HALF_UP)
    sign = "-" if value < 0 else ""
    return f"{sign}{currency.symbol}{abs(value):,.{currency.precision}f}"


def format_percentage(value: Numeric, decimals: int = 2) -> str:
    """Format a percentage value, e.g. ``'12.50%'``"""
    return f"{to_decimal(value):.{decimals}f}%"
