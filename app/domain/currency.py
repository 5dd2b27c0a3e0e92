from __future__ import annotations

import math
from dataclasses import dataclass

from app.domain.errors import ValidationError


@dataclass(frozen=True)
class CurrencyConverter:
    rate: float
    entry_currency: str = "LKR"
    canonical_currency: str = "USD"

    def __post_init__(self) -> None:
        if not math.isfinite(self.rate) or self.rate <= 0:
            raise ValidationError(f"exchange rate must be a positive number, got {self.rate}")

    def to_canonical(self, amount: float) -> float:
        return amount / self.rate

    def to_entry(self, amount: float) -> float:
        return amount * self.rate


def require_non_negative(name: str, value: float) -> float:
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise ValidationError(f"{name} must be a number")
    if not math.isfinite(value):
        raise ValidationError(f"{name} must be finite")
    if value < 0:
        raise ValidationError(f"{name} must not be negative")
    return float(value)
