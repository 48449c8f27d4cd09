"""
Money for the cooperative ledger

Amounts are Decimals quantized to the currency's minor unit with half-up
rounding every time a Money is built, so a balance can never carry a
fraction of a kobo. Floats are never accepted as-is: they are converted
through their string form first.
"""

import re
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from enum import Enum

getcontext().prec = 28


class Currency(Enum):
    """Currencies a society may keep its books in: (code, minor digits, symbol)"""
    NGN = ("NGN", 2, "₦")
    USD = ("USD", 2, "$")
    GHS = ("GHS", 2, "GH₵")
    KES = ("KES", 2, "KSh")

    def __init__(self, code: str, precision: int, symbol: str):
        self.code = code
        self.precision = precision
        self.symbol = symbol

    @property
    def quantum(self) -> Decimal:
        return Decimal(1).scaleb(-self.precision)


def _as_decimal(value) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


@dataclass(frozen=True)
class Money:
    """Immutable amount in one currency"""
    amount: Decimal
    currency: Currency

    def __post_init__(self):
        amount = _as_decimal(self.amount).quantize(self.currency.quantum, rounding=ROUND_HALF_UP)
        object.__setattr__(self, 'amount', amount)

    @classmethod
    def zero(cls, currency: Currency) -> 'Money':
        return cls(Decimal(0), currency)

    def _same_currency(self, other: 'Money', operation: str) -> 'Money':
        if self.currency is not other.currency:
            raise ValueError(f"Cannot {operation} {self.currency.code} and {other.currency.code}")
        return other

    def _with(self, amount: Decimal) -> 'Money':
        return Money(amount, self.currency)

    def __add__(self, other: 'Money') -> 'Money':
        return self._with(self.amount + self._same_currency(other, "add").amount)

    def __sub__(self, other: 'Money') -> 'Money':
        return self._with(self.amount - self._same_currency(other, "subtract").amount)

    def __mul__(self, factor) -> 'Money':
        return self._with(self.amount * _as_decimal(factor))

    def __truediv__(self, divisor) -> 'Money':
        return self._with(self.amount / _as_decimal(divisor))

    def __neg__(self) -> 'Money':
        return self._with(-self.amount)

    def __abs__(self) -> 'Money':
        return self._with(abs(self.amount))

    def __eq__(self, other) -> bool:
        return isinstance(other, Money) and (self.currency, self.amount) == (other.currency, other.amount)

    def __hash__(self) -> int:
        return hash((self.currency, self.amount))

    # Ordering across currencies is meaningless, so it raises instead of guessing
    def __lt__(self, other: 'Money') -> bool:
        return self.amount < self._same_currency(other, "compare").amount

    def __le__(self, other: 'Money') -> bool:
        return self.amount <= self._same_currency(other, "compare").amount

    def __gt__(self, other: 'Money') -> bool:
        return self.amount > self._same_currency(other, "compare").amount

    def __ge__(self, other: 'Money') -> bool:
        return self.amount >= self._same_currency(other, "compare").amount

    def is_zero(self) -> bool:
        return self.amount.is_zero()

    def is_positive(self) -> bool:
        return self.amount > 0

    def is_negative(self) -> bool:
        return self.amount < 0

    def to_string(self) -> str:
        """e.g. "NGN 1,500,000.00"; used in log lines, audit metadata and error messages"""
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"


_NOT_NUMERIC = re.compile(r'[^\d.\-+]')


def decimal_from_string(value: str) -> Decimal:
    """
    Parse an amount as typed by a teller or sent by a client.

    Currency symbols, whitespace and thousands separators are ignored, so
    "₦1,500.00" and "1500" both parse.

    Raises:
        ValueError: If nothing numeric is left or the number is not finite
    """
    if not value or not isinstance(value, str):
        raise ValueError("Value must be a non-empty string")

    cleaned = _NOT_NUMERIC.sub('', value.replace(',', ''))
    try:
        result = Decimal(cleaned)
    except InvalidOperation:
        raise ValueError(f"Cannot convert '{value}' to Decimal")
    if not result.is_finite():
        raise ValueError(f"Cannot convert '{value}' to Decimal")
    return result
