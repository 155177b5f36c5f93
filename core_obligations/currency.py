"""
Money Rounding Module

Every monetary value the engine stores or compares goes through round_money().
The rule is ROUND_HALF_UP at the currency's precision. NEVER uses float for
monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from enum import Enum
from typing import Union

# Set global decimal context for financial precision
getcontext().prec = 28


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    USD = ("USD", 2)  # US Dollar, 2 decimal places
    EUR = ("EUR", 2)  # Euro, 2 decimal places
    CLP = ("CLP", 0)  # Chilean Peso, 0 decimal places
    CLF = ("CLF", 4)  # Unidad de Fomento, 4 decimal places
    
    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision
    
    @property
    def quantum(self) -> Decimal:
        """Smallest representable unit"""
        return Decimal('0.1') ** self.precision
    
    @classmethod
    def from_code(cls, code: str) -> 'Currency':
        try:
            return cls[code.upper()]
        except KeyError:
            raise ValueError(f"Unsupported currency code: {code}")


DEFAULT_CURRENCY = Currency.USD

Numeric = Union[Decimal, int, float, str]


def to_decimal(value: Numeric) -> Decimal:
    """Convert a numeric input to Decimal without float drift"""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValueError("Booleans are not monetary values")
    if isinstance(value, float):
        return Decimal(str(value))
    try:
        return Decimal(value)
    except (InvalidOperation, TypeError):
        raise ValueError(f"Cannot convert {value!r} to Decimal")


def round_money(value: Numeric, currency: Currency = DEFAULT_CURRENCY) -> Decimal:
    """
    Round an amount to the currency's smallest unit
    
    Args:
        value: Amount to round
        currency: Currency defining precision
        
    Returns:
        Decimal quantized with ROUND_HALF_UP
    """
    return to_decimal(value).quantize(currency.quantum, rounding=ROUND_HALF_UP)
