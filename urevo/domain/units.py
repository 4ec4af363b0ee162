"""Weight rounding and display units."""
from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

KG_PER_LB = 0.45359237


def round_to_tenth(value: float) -> float:
    """Round half away from zero to one decimal (176.45 -> 176.5)."""
    return float(Decimal(repr(float(value))).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


class DisplayUnit(str, Enum):
    LBS = "lbs"
    KG = "kg"

    @property
    def symbol(self) -> str:
        return self.value

    @property
    def label(self) -> str:
        return "Pounds (lbs)" if self is DisplayUnit.LBS else "Kilograms (kg)"

    def from_lbs(self, value: float) -> float:
        if self is DisplayUnit.KG:
            return value * KG_PER_LB
        return value

    def to_lbs(self, value: float) -> float:
        if self is DisplayUnit.KG:
            return value / KG_PER_LB
        return value

    @classmethod
    def parse(cls, value: str) -> "DisplayUnit":
        return cls.KG if str(value or "").strip().lower() == "kg" else cls.LBS


def format_weight(weight_lbs: float, unit: DisplayUnit = DisplayUnit.LBS) -> str:
    return f"{unit.from_lbs(weight_lbs):.1f} {unit.symbol}"


__all__ = ["DisplayUnit", "KG_PER_LB", "format_weight", "round_to_tenth"]
