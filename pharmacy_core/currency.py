"""
Money Module

Two-decimal currency amounts for the wallet ledger. NEVER uses float for
monetary values; everything is Decimal quantized to the currency precision.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, getcontext
from dataclasses import dataclass
from enum import Enum
import re

# Set global decimal context for financial precision
getcontext().prec = 28


class Currency(Enum):
    """Supported currencies with display symbol and precision"""
    EGP = ("EGP", "LE", 2)   # Egyptian Pound, shown as LE
    USD = ("USD", "$", 2)
    EUR = ("EUR", "EUR", 2)
    
    def __init__(self, code: str, symbol: str, precision: int):
        self.code = code
        self.symbol = symbol
        self.precision = precision


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation with currency and proper precision.
    """
    amount: Decimal
    currency: Currency = Currency.EGP
    
    def __post_init__(self):
        if isinstance(self.amount, float):
            raise TypeError("Money amounts must not be float; use Decimal or str")
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', Decimal(str(self.amount)))
        
        rounded = self.amount.quantize(
            Decimal('0.1') ** self.currency.precision,
            rounding=ROUND_HALF_UP
        )
        object.__setattr__(self, 'amount', rounded)
    
    @classmethod
    def zero(cls, currency: Currency = Currency.EGP) -> 'Money':
        return cls(Decimal('0'), currency)
    
    def _check(self, other: 'Money') -> None:
        if self.currency != other.currency:
            raise ValueError(f"Currency mismatch: {self.currency.code} and {other.currency.code}")
    
    def __add__(self, other: 'Money') -> 'Money':
        self._check(other)
        return Money(self.amount + other.amount, self.currency)
    
    def __sub__(self, other: 'Money') -> 'Money':
        self._check(other)
        return Money(self.amount - other.amount, self.currency)
    
    def __neg__(self) -> 'Money':
        return Money(-self.amount, self.currency)
    
    def __lt__(self, other: 'Money') -> bool:
        self._check(other)
        return self.amount < other.amount
    
    def __le__(self, other: 'Money') -> bool:
        self._check(other)
        return self.amount <= other.amount
    
    def __gt__(self, other: 'Money') -> bool:
        self._check(other)
        return self.amount > other.amount
    
    def __ge__(self, other: 'Money') -> bool:
        self._check(other)
        return self.amount >= other.amount
    
    def is_zero(self) -> bool:
        return self.amount == Decimal('0')
    
    def is_positive(self) -> bool:
        return self.amount > Decimal('0')
    
    def is_negative(self) -> bool:
        return self.amount < Decimal('0')
    
    def to_string(self) -> str:
        """Format for display, e.g. ``100.00 LE``"""
        return f"{self.amount:.{self.currency.precision}f} {self.currency.symbol}"


# Optional currency mark before or after the number
_CURRENCY_MARK = r"(?:LE|EGP|USD|EUR|\$)"

_AMOUNT_PATTERN = re.compile(
    rf"^(?:{_CURRENCY_MARK}\s*)?"
    r"(?P<sign>[-+])?"
    r"(?P<number>\d{1,3}(?:,\d{3})+(?:\.\d+)?|\d+,\d{1,2}|\d*\.\d+|\d+)"
    rf"(?:\s*{_CURRENCY_MARK})?$",
    re.IGNORECASE
)

_DECIMAL_COMMA = re.compile(r"^\d+,\d{1,2}$")


def decimal_from_string(value: str) -> Decimal:
    """
    Safely convert string to Decimal, handling common formats
    
    Accepts an optional currency mark (``LE``, ``EGP``, ``USD``, ``EUR``,
    ``$``), an optional sign, digits with comma thousands separators and at
    most one decimal separator. ``12,5`` is read as a decimal comma.
    
    Args:
        value: String representation of number
        
    Returns:
        Decimal value
        
    Raises:
        ValueError: If the string is not a well-formed amount
    """
    if not value or not isinstance(value, str):
        raise ValueError("Value must be a non-empty string")
    
    match = _AMOUNT_PATTERN.match(value.strip())
    if not match:
        raise ValueError(f"Cannot convert '{value}' to Decimal")
    
    number = match.group('number')
    if _DECIMAL_COMMA.match(number):
        number = number.replace(',', '.')
    else:
        number = number.replace(',', '')
    
    try:
        result = Decimal(f"{match.group('sign') or ''}{number}")
    except InvalidOperation:
        raise ValueError(f"Cannot convert '{value}' to Decimal")
    return result


def format_signed(money: Money, negative: bool) -> str:
    """Format an amount with an explicit sign, e.g. ``+100.00 LE``"""
    sign = "-" if negative else "+"
    return f"{sign}{money.to_string()}"
