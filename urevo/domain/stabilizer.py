"""Windowed state machine turning raw scale readings into weigh-ins.

Readings first fill a *collecting* window.  Once that window is full and
its spread (max - min) is within tolerance the stabilizer starts
*confirming*: the weight has to stay inside a tighter tolerance for a
minimum time and sample count before the mean is reported as settled.
After settling the stabilizer is *locked* and keeps reporting live
readings until it is reset, either explicitly or by a gap in readings
longer than the idle timeout.
"""
from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from statistics import mean
from typing import Callable, Deque, Iterable, Optional

from ..config.settings import StabilizerSettings
from .units import round_to_tenth

LOGGER = logging.getLogger("urevo.stabilizer")


@dataclass(frozen=True)
class WeightSample:
    value: float
    observed_at: float


class Phase(str, Enum):
    COLLECTING = "collecting"
    CONFIRMING = "confirming"
    LOCKED = "locked"


class EventKind(str, Enum):
    NONE = "none"
    MEASURING = "measuring"
    CONFIRMING = "confirming"
    SETTLED = "settled"


@dataclass(frozen=True)
class StabilizerEvent:
    """Outcome of feeding one reading.

    Exactly one of the payload groups is meaningful per ``kind``:
    ``current``/``samples`` for measuring, ``current``/``progress`` for
    confirming and ``weight`` for settled.
    """

    kind: EventKind
    current: Optional[float] = None
    samples: Optional[int] = None
    progress: Optional[float] = None
    weight: Optional[float] = None

    @classmethod
    def none(cls) -> "StabilizerEvent":
        return cls(EventKind.NONE)

    @classmethod
    def measuring(cls, current: float, samples: int) -> "StabilizerEvent":
        return cls(EventKind.MEASURING, current=current, samples=samples)

    @classmethod
    def confirming(cls, current: float, progress: float) -> "StabilizerEvent":
        return cls(EventKind.CONFIRMING, current=current, progress=progress)

    @classmethod
    def settled(cls, weight: float) -> "StabilizerEvent":
        return cls(EventKind.SETTLED, weight=weight)


def _spread(values: Iterable[float]) -> float:
    values = tuple(values)
    if not values:
        return 0.0
    return max(values) - min(values)


def _clamp_unit(value: float) -> float:
    return min(max(value, 0.0), 1.0)


class Stabilizer:
    """Detect when a person is standing still on the scale.

    Not thread safe: callers receiving readings from several threads must
    serialise calls to :meth:`feed_at`.
    """

    def __init__(
        self,
        settings: Optional[StabilizerSettings] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._settings = settings or StabilizerSettings()
        self._clock = clock
        self.logger = logger or LOGGER
        self._collecting_limit = max(self._settings.window_size, 1)
        self._confirming_limit = max(self._settings.window_size, self._settings.confirm_min_samples, 1)

        self._phase = Phase.COLLECTING
        self._confirm_started_at: Optional[float] = None
        self._collecting: Deque[float] = deque(maxlen=self._collecting_limit)
        self._confirming: Deque[float] = deque(maxlen=self._confirming_limit)
        self._last_reading_at: Optional[float] = None

    # Public API ---------------------------------------------------------
    @property
    def settings(self) -> StabilizerSettings:
        return self._settings

    @property
    def phase(self) -> Phase:
        return self._phase

    @property
    def sample_count(self) -> int:
        if self._phase is Phase.CONFIRMING:
            return len(self._confirming)
        return len(self._collecting)

    def history(self) -> tuple:
        if self._phase is Phase.CONFIRMING:
            return tuple(self._confirming)
        return tuple(self._collecting)

    def feed(self, weight: float) -> StabilizerEvent:
        return self.feed_at(weight, self._clock())

    def feed_sample(self, sample: WeightSample) -> StabilizerEvent:
        return self.feed_at(sample.value, sample.observed_at)

    def feed_at(self, weight: float, at: float) -> StabilizerEvent:
        cfg = self._settings
        if self._last_reading_at is not None and at - self._last_reading_at > cfg.idle_timeout_s:
            self.logger.debug("Idle gap of %.2fs; starting a new session", at - self._last_reading_at)
            self.reset()
        self._last_reading_at = at

        if weight < cfg.min_weight_lbs:
            return StabilizerEvent.none()

        if self._phase is Phase.COLLECTING:
            return self._feed_collecting(weight, at)
        if self._phase is Phase.CONFIRMING:
            return self._feed_confirming(weight, at)
        self._collecting.append(weight)
        return StabilizerEvent.measuring(weight, len(self._collecting))

    def reset(self) -> None:
        self._phase = Phase.COLLECTING
        self._confirm_started_at = None
        self._collecting.clear()
        self._confirming.clear()
        self._last_reading_at = None

    # Internal machinery -------------------------------------------------
    def _feed_collecting(self, weight: float, at: float) -> StabilizerEvent:
        cfg = self._settings
        self._collecting.append(weight)
        if len(self._collecting) < cfg.window_size:
            return StabilizerEvent.measuring(weight, len(self._collecting))
        if _spread(self._collecting) > cfg.tolerance_lbs:
            return StabilizerEvent.measuring(weight, len(self._collecting))

        self._phase = Phase.CONFIRMING
        self._confirm_started_at = at
        self._confirming.clear()
        self._confirming.extend(self._collecting)
        self.logger.debug("Window stable around %.1f lbs; confirming", weight)
        return StabilizerEvent.confirming(weight, 0.0)

    def _feed_confirming(self, weight: float, at: float) -> StabilizerEvent:
        cfg = self._settings
        self._confirming.append(weight)

        spread = _spread(self._confirming)
        if spread > cfg.confirm_tolerance_lbs:
            recent = list(self._confirming)[-self._collecting_limit:]
            self._phase = Phase.COLLECTING
            self._confirm_started_at = None
            self._collecting.clear()
            self._collecting.extend(recent)
            self._confirming.clear()
            self.logger.debug("Drift of %.2f lbs while confirming; collecting again", spread)
            return StabilizerEvent.measuring(weight, len(self._collecting))

        started = self._confirm_started_at if self._confirm_started_at is not None else at
        elapsed = at - started
        if cfg.confirm_duration_s > 0:
            time_progress = _clamp_unit(elapsed / cfg.confirm_duration_s)
        else:
            time_progress = 1.0
        count = len(self._confirming)
        sample_progress = _clamp_unit(count / max(cfg.confirm_min_samples, 1))
        progress = min(time_progress, sample_progress)

        if elapsed < cfg.confirm_duration_s or count < cfg.confirm_min_samples:
            return StabilizerEvent.confirming(weight, progress)

        settled = round_to_tenth(mean(self._confirming))
        self._phase = Phase.LOCKED
        self._confirm_started_at = None
        self.logger.info("Weight settled at %.1f lbs (%d samples)", settled, count)
        return StabilizerEvent.settled(settled)


__all__ = ["EventKind", "Phase", "Stabilizer", "StabilizerEvent", "WeightSample"]
