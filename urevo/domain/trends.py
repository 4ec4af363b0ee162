"""Summary statistics over stored weigh-ins."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from statistics import mean
from typing import List, Optional, Protocol, Sequence, TypeVar


class _Timestamped(Protocol):
    timestamp: datetime
    weight_lbs: float


T = TypeVar("T", bound=_Timestamped)


class TrendRange(str, Enum):
    SEVEN_DAYS = "7d"
    THIRTY_DAYS = "30d"
    NINETY_DAYS = "90d"
    ONE_YEAR = "1y"
    ALL = "all"

    def start(self, reference: datetime) -> Optional[datetime]:
        if self is TrendRange.ALL:
            return None
        if self is TrendRange.ONE_YEAR:
            try:
                return reference.replace(year=reference.year - 1)
            except ValueError:  # 29 February
                return reference.replace(year=reference.year - 1, day=28)
        days = {"7d": 7, "30d": 30, "90d": 90}[self.value]
        return reference - timedelta(days=days)


@dataclass(frozen=True)
class TrendStats:
    count: int
    average: Optional[float] = None
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    net_change: Optional[float] = None
    net_change_percent: Optional[float] = None


def filtered_samples(entries: Sequence[T], preset: TrendRange, reference: datetime) -> List[T]:
    """Entries inside the preset window ending at ``reference``, oldest first."""
    start = preset.start(reference)
    selected = [
        entry
        for entry in entries
        if entry.timestamp <= reference and (start is None or entry.timestamp >= start)
    ]
    return sorted(selected, key=lambda entry: entry.timestamp)


def stats(entries: Sequence[_Timestamped]) -> TrendStats:
    ordered = sorted(entries, key=lambda entry: entry.timestamp)
    weights = [entry.weight_lbs for entry in ordered]
    if not weights:
        return TrendStats(count=0)

    net_change: Optional[float] = None
    net_percent: Optional[float] = None
    if len(weights) >= 2:
        first, last = weights[0], weights[-1]
        net_change = last - first
        if first != 0:
            net_percent = net_change / first * 100.0

    return TrendStats(
        count=len(weights),
        average=mean(weights),
        minimum=min(weights),
        maximum=max(weights),
        net_change=net_change,
        net_change_percent=net_percent,
    )


def nearest_sample(target: Optional[datetime], entries: Sequence[T]) -> Optional[T]:
    if target is None or not entries:
        return None
    return min(entries, key=lambda entry: abs((entry.timestamp - target).total_seconds()))


__all__ = ["TrendRange", "TrendStats", "filtered_samples", "nearest_sample", "stats"]
