"""
Money Module

Exact Decimal money tied to an ISO 4217 currency. Arithmetic keeps full
working precision; rounding happens only when a value leaves the engine,
either to the storage shape (19 digits, 6 fractional) or to the currency's
minor unit for display. NEVER uses float for monetary values.
"""

from decimal import Context, Decimal, ROUND_HALF_EVEN, ROUND_HALF_UP
from dataclasses import dataclass
from typing import Iterable, Union
from enum import Enum
import threading

from .config import get_config
from .exceptions import CurrencyMismatchError, ValidationError

ZERO = Decimal('0')

_local = threading.local()


def ledger_context() -> Context:
    """
    Decimal context for ledger arithmetic at the configured working precision

    Each thread gets its own context; the interpreter's default and current
    contexts are left alone.
    """
    precision = get_config().decimal_context_precision
    context = getattr(_local, "context", None)
    if context is None or context.prec != precision:
        context = Context(prec=precision, rounding=ROUND_HALF_EVEN)
        _local.context = context
    return context


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    USD = ("USD", 2)  # US Dollar, 2 decimal places
    EUR = ("EUR", 2)  # Euro, 2 decimal places
    GBP = ("GBP", 2)  # British Pound, 2 decimal places
    JPY = ("JPY", 0)  # Japanese Yen, 0 decimal places
    CAD = ("CAD", 2)  # Canadian Dollar, 2 decimal places
    CHF = ("CHF", 2)  # Swiss Franc, 2 decimal places
    INR = ("INR", 2)  # Indian Rupee, 2 decimal places
    KES = ("KES", 2)  # Kenyan Shilling, 2 decimal places

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @classmethod
    def from_code(cls, code: str) -> 'Currency':
        for currency in cls:
            if currency.code == code.upper():
                return currency
        raise ValidationError(f"Unsupported currency code {code}")


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation with currency.

    The amount is never rounded on construction so chained allocation steps
    do not accumulate rounding drift.
    """
    amount: Decimal
    currency: Currency

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', Decimal(str(self.amount)))

    @classmethod
    def zero(cls, currency: Currency) -> 'Money':
        return cls(ZERO, currency)

    @classmethod
    def of(cls, currency: Currency, amount: Union[Decimal, int, str, None]) -> 'Money':
        """Build Money from a raw amount, treating None as zero"""
        if amount is None:
            return cls.zero(currency)
        return cls(amount, currency)

    @classmethod
    def total(cls, currency: Currency, values: Iterable['Money']) -> 'Money':
        """Sum Money values, starting from zero in the given currency"""
        result = cls.zero(currency)
        for value in values:
            result = result + value
        return result

    def _check_currency(self, other: 'Money', operation: str) -> None:
        if self.currency != other.currency:
            raise CurrencyMismatchError(
                f"Cannot {operation} {self.currency.code} and {other.currency.code}"
            )

    def __add__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "add")
        return Money(ledger_context().add(self.amount, other.amount), self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "subtract")
        return Money(ledger_context().subtract(self.amount, other.amount), self.currency)

    def __mul__(self, multiplier: Decimal) -> 'Money':
        if not isinstance(multiplier, Decimal):
            multiplier = Decimal(str(multiplier))
        return Money(ledger_context().multiply(self.amount, multiplier), self.currency)

    def __truediv__(self, divisor: Decimal) -> 'Money':
        if not isinstance(divisor, Decimal):
            divisor = Decimal(str(divisor))
        return Money(ledger_context().divide(self.amount, divisor), self.currency)

    def __neg__(self) -> 'Money':
        return Money(ledger_context().minus(self.amount), self.currency)

    def __abs__(self) -> 'Money':
        return Money(ledger_context().abs(self.amount), self.currency)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Money):
            return False
        return self.amount == other.amount and self.currency == other.currency

    def __hash__(self) -> int:
        return hash((self.amount, self.currency))

    def __lt__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount < other.amount

    def __le__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount <= other.amount

    def __gt__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount > other.amount

    def __ge__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount >= other.amount

    def plus(self, other: Union['Money', Decimal]) -> 'Money':
        """Add Money or a raw Decimal in this currency"""
        if isinstance(other, Money):
            return self + other
        return Money(ledger_context().add(self.amount, other), self.currency)

    def minus(self, other: Union['Money', Decimal]) -> 'Money':
        """Subtract Money or a raw Decimal in this currency"""
        if isinstance(other, Money):
            return self - other
        return Money(ledger_context().subtract(self.amount, other), self.currency)

    def minus_floor_zero(self, other: 'Money') -> 'Money':
        """Saturating subtraction: never goes below zero"""
        result = self - other
        if result.is_negative():
            return Money.zero(self.currency)
        return result

    def min_of(self, other: 'Money') -> 'Money':
        """Return the smaller of two amounts"""
        return self if self <= other else other

    def is_zero(self) -> bool:
        """Check if amount is exactly zero"""
        return self.amount == ZERO

    def is_positive(self) -> bool:
        """Check if amount is positive"""
        return self.amount > ZERO

    def is_negative(self) -> bool:
        """Check if amount is negative"""
        return self.amount < ZERO

    def is_greater_than_zero(self) -> bool:
        return self.is_positive()

    def to_storage(self) -> Decimal:
        """
        Round to the persisted column shape (HALF_UP, 6 fractional digits)

        Raises:
            ValidationError: If the value does not fit 19 significant digits
        """
        return quantize_storage(self.amount)

    def to_currency_precision(self) -> Decimal:
        return self.amount.quantize(
            Decimal('0.1') ** self.currency.precision,
            rounding=ROUND_HALF_UP,
            context=ledger_context()
        )

    def to_string(self) -> str:
        """Format for display"""
        if self.currency.precision == 0:
            return f"{self.currency.code} {self.to_currency_precision():,.0f}"
        else:
            return f"{self.currency.code} {self.to_currency_precision():,.{self.currency.precision}f}"


def quantize_storage(value: Decimal) -> Decimal:
    """
    Round a Decimal to the storage scale and validate its precision

    Args:
        value: Decimal to round

    Returns:
        Value rounded HALF_UP to the configured scale

    Raises:
        ValidationError: If the rounded value needs more digits than the column holds
    """
    settings = get_config()
    rounded = value.quantize(
        Decimal('0.1') ** settings.storage_scale, rounding=ROUND_HALF_UP, context=ledger_context()
    )
    integer_digits = settings.storage_precision - settings.storage_scale
    if abs(rounded) >= Decimal(10) ** integer_digits:
        raise ValidationError(
            f"Value {value} exceeds storage precision ({settings.storage_precision}, {settings.storage_scale})"
        )
    return rounded
