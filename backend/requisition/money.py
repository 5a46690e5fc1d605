from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable

from requisition import rules

_CENTS = Decimal("0.01")


def _to_decimal(value: object) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        # Go through str so binary float noise never reaches the amount.
        value = repr(value)
    try:
        return Decimal(str(value).strip())
    except (InvalidOperation, ValueError, TypeError) as exc:
        raise ValueError(f"Invalid monetary amount: {value!r}") from exc


@dataclass(frozen=True)
class Money:
    """Fixed-point amount in a single currency, kept at two decimal places."""

    amount: Decimal
    currency: str

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "amount", _to_decimal(self.amount).quantize(_CENTS, rounding=ROUND_HALF_UP)
        )
        object.__setattr__(self, "currency", str(self.currency).upper())

    @classmethod
    def of(cls, amount: object, currency: str | None = None) -> Money:
        return cls(_to_decimal(amount), currency or rules.get_currency_code())

    @classmethod
    def zero(cls, currency: str | None = None) -> Money:
        return cls(Decimal("0"), currency or rules.get_currency_code())

    @classmethod
    def parse(cls, value: object, currency: str | None = None) -> Money | None:
        """Parse a bare amount (``"12.50"``) or a ``"USD 12.50"`` string."""
        if value is None or value == "":
            return None
        if isinstance(value, Money):
            return value
        text = str(value).strip()
        parts = text.split()
        if len(parts) == 2:
            return cls(_to_decimal(parts[1]), parts[0])
        return cls.of(text, currency)

    def _check_currency(self, other: Money) -> None:
        if other.currency != self.currency:
            raise ValueError(
                f"Currency mismatch: {self.currency} and {other.currency}"
            )

    def __add__(self, other: Money) -> Money:
        if not isinstance(other, Money):
            return NotImplemented
        self._check_currency(other)
        return Money(self.amount + other.amount, self.currency)

    def mul(self, factor: int) -> Money:
        return Money(self.amount * int(factor), self.currency)

    def __str__(self) -> str:
        return f"{self.currency} {self.amount}"


def total(values: Iterable[Money | None], currency: str | None = None) -> Money:
    result = Money.zero(currency)
    for value in values:
        if value is not None:
            result = result + value
    return result
