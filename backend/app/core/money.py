"""
Fixed-point money helpers.

Amounts are Decimal throughout; floats never enter ledger arithmetic.
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP
from typing import Union

from app.core.errors import CurrencyMismatch, InvalidAmount

# ISO 4217 currencies whose minor unit is not 2 decimal places
_ZERO_DECIMAL_CURRENCIES = {
    "BIF", "CLP", "DJF", "GNF", "ISK", "JPY", "KMF", "KRW", "PYG",
    "RWF", "UGX", "UYI", "VND", "VUV", "XAF", "XOF", "XPF",
}
_THREE_DECIMAL_CURRENCIES = {"BHD", "IQD", "JOD", "KWD", "LYD", "OMR", "TND"}

Number = Union[Decimal, int, str]

RATE_EXPONENT = Decimal("0.00000001")  # Scale of stored exchange rates


def normalize_currency(currency: str) -> str:
    """Upper-case and validate a 3-letter currency code."""
    code = (currency or "").strip().upper()
    if len(code) != 3 or not code.isalpha():
        raise CurrencyMismatch(f"Invalid currency code: {currency!r}")
    return code


def minor_units(currency: str) -> int:
    """Number of decimal places used by a currency."""
    code = normalize_currency(currency)
    if code in _ZERO_DECIMAL_CURRENCIES:
        return 0
    if code in _THREE_DECIMAL_CURRENCIES:
        return 3
    return 2


def minor_unit(currency: str) -> Decimal:
    """Smallest representable amount of a currency, e.g. Decimal('0.01')."""
    return Decimal(1).scaleb(-minor_units(currency))


def to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        # str() keeps the shortest repr instead of the binary expansion
        return Decimal(str(value))
    return Decimal(value)


def quantize(amount: Number, currency: str, rounding: str = ROUND_HALF_UP) -> Decimal:
    """Round an amount to the currency's minor unit."""
    return to_decimal(amount).quantize(minor_unit(currency), rounding=rounding)


def quantize_down(amount: Number, currency: str) -> Decimal:
    return quantize(amount, currency, rounding=ROUND_DOWN)


@dataclass(frozen=True)
class Money:
    """An amount in a specific currency."""
    amount: Decimal
    currency: str

    def __post_init__(self):
        object.__setattr__(self, "currency", normalize_currency(self.currency))
        object.__setattr__(self, "amount", to_decimal(self.amount))

    @classmethod
    def of(cls, amount: Number, currency: str) -> "Money":
        """Build a Money rounded to the currency's minor unit."""
        return cls(quantize(amount, currency), currency)

    @classmethod
    def zero(cls, currency: str) -> "Money":
        return cls.of(0, currency)

    def _check(self, other: "Money") -> None:
        if not isinstance(other, Money):
            raise TypeError(f"Cannot combine Money with {type(other).__name__}")
        if other.currency != self.currency:
            raise CurrencyMismatch(
                f"Cannot combine {self.currency} with {other.currency}"
            )

    def __add__(self, other: "Money") -> "Money":
        self._check(other)
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: "Money") -> "Money":
        self._check(other)
        return Money(self.amount - other.amount, self.currency)

    def __neg__(self) -> "Money":
        return Money(-self.amount, self.currency)

    def __lt__(self, other: "Money") -> bool:
        self._check(other)
        return self.amount < other.amount

    def __le__(self, other: "Money") -> bool:
        self._check(other)
        return self.amount <= other.amount

    def __gt__(self, other: "Money") -> bool:
        self._check(other)
        return self.amount > other.amount

    def __ge__(self, other: "Money") -> bool:
        self._check(other)
        return self.amount >= other.amount

    def is_zero(self) -> bool:
        return self.amount == 0

    def rounded(self, rounding: str = ROUND_HALF_UP) -> "Money":
        return Money(quantize(self.amount, self.currency, rounding), self.currency)

    def convert(self, rate: Number, to_currency: str) -> "Money":
        """Convert with a fixed rate (1 unit of self.currency = rate to_currency)."""
        rate = to_decimal(rate)
        if rate <= 0:
            raise InvalidAmount(f"Exchange rate must be positive, got {rate}")
        return Money.of(self.amount * rate, to_currency)

    def __str__(self) -> str:
        return f"{quantize(self.amount, self.currency)} {self.currency}"
