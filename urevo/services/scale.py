"""Scale session service fed by Bluetooth advertisement backends."""
from __future__ import annotations

import asyncio
import logging
import math
import random
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

from ..config.settings import Settings
from ..core.protocol import ScaleAdvertisement, decode_weight, encode_weight, is_candidate
from ..domain.stabilizer import EventKind, Stabilizer, StabilizerEvent
from ..domain.units import round_to_tenth
from .storage import EntrySource, WeightEntry, WeightHistory

try:  # pragma: no cover - optional dependency
    from bleak import BleakScanner  # type: ignore
except Exception:  # pragma: no cover
    BleakScanner = None  # type: ignore

LOGGER = logging.getLogger("urevo.scale")

AdvertisementCallback = Callable[[ScaleAdvertisement], object]
ErrorCallback = Callable[[Exception], None]


class BackendUnavailable(RuntimeError):
    """Raised when a backend cannot operate."""


class BaseScaleBackend:
    """Common interface implemented by all backends."""

    name = "BASE"

    def start(self, callback: AdvertisementCallback, on_error: Optional[ErrorCallback] = None) -> None:  # pragma: no cover - interface method
        raise NotImplementedError

    def stop(self) -> None:  # pragma: no cover - default no-op
        """Release backend resources."""


class _ThreadedBackend(BaseScaleBackend):
    def __init__(self, *, logger: Optional[logging.Logger] = None) -> None:
        self._logger = logger or LOGGER
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._callback: Optional[AdvertisementCallback] = None
        self._on_error: Optional[ErrorCallback] = None

    def start(self, callback: AdvertisementCallback, on_error: Optional[ErrorCallback] = None) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._callback = callback
        self._on_error = on_error
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name=type(self).__name__, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=1.5)
        self._thread = None

    def _run(self) -> None:  # pragma: no cover - interface method
        raise NotImplementedError

    def _dispatch(self, advertisement: ScaleAdvertisement) -> None:
        callback = self._callback
        if callback is None:
            return
        try:
            callback(advertisement)
        except Exception:
            self._logger.exception("Advertisement handler failed")

    def _report_error(self, exc: Exception) -> None:
        if self._on_error is None:
            return
        try:
            self._on_error(exc)
        except Exception:  # pragma: no cover - protect backend thread
            self._logger.exception("Backend error handler failed")


class BleakScaleBackend(_ThreadedBackend):
    """Passive BLE scan with bleak on a private asyncio loop."""

    name = "BLE (bleak)"

    def __init__(self, *, poll_interval: float = 0.5, logger: Optional[logging.Logger] = None) -> None:
        if BleakScanner is None:
            raise BackendUnavailable("bleak not available")
        super().__init__(logger=logger)
        self._poll_interval = max(0.05, float(poll_interval))

    def _run(self) -> None:
        try:
            asyncio.run(self._scan())
        except Exception as exc:
            self._logger.error("BLE scan stopped: %s", exc, exc_info=True)
            self._report_error(BackendUnavailable(str(exc) or type(exc).__name__))

    async def _scan(self) -> None:
        scanner = BleakScanner(detection_callback=self._on_detection)
        await scanner.start()
        self._logger.info("BLE scan started")
        try:
            while not self._stop_event.is_set():
                await asyncio.sleep(self._poll_interval)
        finally:
            await scanner.stop()
            self._logger.info("BLE scan stopped")

    def _on_detection(self, device, advertisement_data) -> None:
        local_name = advertisement_data.local_name or getattr(device, "name", None)
        for company_id, payload in (advertisement_data.manufacturer_data or {}).items():
            self._dispatch(
                ScaleAdvertisement(
                    address=str(device.address).upper(),
                    local_name=local_name,
                    company_id=int(company_id),
                    payload=bytes(payload),
                    rssi=getattr(advertisement_data, "rssi", None),
                )
            )


class SimulatedScaleBackend(_ThreadedBackend):
    """Broadcast vendor-format advertisements for a person stepping on and off."""

    name = "SIMULATED"
    address = "SIM:00:00:00:00:01"

    def __init__(
        self,
        *,
        interval: float = 0.15,
        target_lbs: Optional[float] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        super().__init__(logger=logger)
        self._interval = max(0.01, float(interval))
        self._target = float(target_lbs) if target_lbs is not None else random.uniform(120.0, 240.0)

    def _run(self) -> None:
        self._logger.info("Scale simulation active (target %.1f lbs)", self._target)
        start = time.monotonic()
        while not self._stop_event.is_set():
            t = time.monotonic() - start
            phase = t % 14.0
            if phase < 2.0 or phase >= 11.0:
                # scale asleep, nothing broadcast
                self._stop_event.wait(self._interval)
                continue
            if phase < 3.0:
                weight = self._target * (phase - 2.0) + random.gauss(0.0, 1.5)
            else:
                wobble = 0.4 * math.exp(-(phase - 3.0)) * math.sin(phase * 9.0)
                weight = self._target + wobble + random.gauss(0.0, 0.02)
            company_id, payload = encode_weight(max(0.0, weight))
            self._dispatch(
                ScaleAdvertisement(
                    address=self.address,
                    local_name="urevo",
                    company_id=company_id,
                    payload=payload,
                    rssi=-50,
                )
            )
            self._stop_event.wait(self._interval)


class ScanStateKind(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    MEASURING = "measuring"
    CONFIRMING = "confirming"
    SETTLED = "settled"
    ERROR = "error"


@dataclass(frozen=True)
class ScanState:
    kind: ScanStateKind
    current: Optional[float] = None
    samples: Optional[int] = None
    progress: Optional[float] = None
    weight: Optional[float] = None
    message: Optional[str] = None

    @classmethod
    def idle(cls) -> "ScanState":
        return cls(ScanStateKind.IDLE)

    @classmethod
    def scanning(cls) -> "ScanState":
        return cls(ScanStateKind.SCANNING)

    @classmethod
    def error(cls, message: str) -> "ScanState":
        return cls(ScanStateKind.ERROR, message=message)

    @classmethod
    def from_event(cls, event: StabilizerEvent) -> Optional["ScanState"]:
        if event.kind is EventKind.MEASURING:
            return cls(ScanStateKind.MEASURING, current=round_to_tenth(event.current), samples=event.samples)
        if event.kind is EventKind.CONFIRMING:
            return cls(ScanStateKind.CONFIRMING, current=round_to_tenth(event.current), progress=event.progress)
        if event.kind is EventKind.SETTLED:
            return cls(ScanStateKind.SETTLED, weight=event.weight)
        return None


class ScaleService:
    """Route scale advertisements through the stabilizer and record weigh-ins."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        history: Optional[WeightHistory] = None,
        backend: Optional[BaseScaleBackend] = None,
        simulate: bool = False,
        settings_path: Optional[Path] = None,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.logger = logger or LOGGER
        self._settings = settings or Settings()
        self._history = history
        self._backend = backend
        self._simulate = bool(simulate)
        self._settings_path = settings_path
        self._clock = clock
        self._now = now
        self._lock = threading.RLock()
        self._callbacks: List[Callable[[ScanState], None]] = []

        self._stabilizer = Stabilizer(self._settings.stabilizer, clock=clock)
        self._state = ScanState.idle()
        self._running = False
        self._scan_started_at: Optional[float] = None
        self._last_reading_at: Optional[float] = None
        self._last_entry: Optional[WeightEntry] = None
        self.status_message: Optional[str] = None

    # ------------------------------------------------------------------
    def _select_backend(self) -> BaseScaleBackend:
        interval = self._settings.scanner.poll_interval_s
        if self._simulate:
            return SimulatedScaleBackend(logger=self.logger)
        try:
            return BleakScaleBackend(poll_interval=interval, logger=self.logger)
        except BackendUnavailable as exc:
            if not self._settings.scanner.simulate_if_unavailable:
                self.logger.error("BLE backend unavailable (%s)", exc)
                raise
            self.logger.warning("BLE backend unavailable (%s); falling back to simulation", exc)
            return SimulatedScaleBackend(logger=self.logger)

    # ------------------------------------------------------------------
    @property
    def state(self) -> ScanState:
        with self._lock:
            return self._state

    @property
    def last_entry(self) -> Optional[WeightEntry]:
        with self._lock:
            return self._last_entry

    @property
    def stabilizer(self) -> Stabilizer:
        return self._stabilizer

    @property
    def backend_name(self) -> Optional[str]:
        return self._backend.name if self._backend is not None else None

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            if self._backend is None:
                self._backend = self._select_backend()
            self._running = True
            self._scan_started_at = self._clock()
            backend = self._backend
        self.logger.info("Scale backend: %s", backend.name)
        self._set_state(ScanState.scanning())
        backend.start(self.handle_advertisement, on_error=self._on_backend_error)

    def stop(self) -> None:
        with self._lock:
            was_running = self._running
            self._running = False
        if self._backend is not None and was_running:
            try:
                self._backend.stop()
            except Exception:
                self.logger.debug("Backend stop failed", exc_info=True)
        self._set_state(ScanState.idle())

    close = stop

    def reset_session(self) -> None:
        with self._lock:
            self._stabilizer.reset()
        self.logger.info("Weigh-in session reset")

    def reset_pinned_scale(self) -> None:
        with self._lock:
            self._settings.scanner.pinned_address = None
        self._persist_settings()
        self.status_message = "Pinned scale reset."
        self.logger.info("Pinned scale reset")

    # ------------------------------------------------------------------
    def handle_advertisement(self, advertisement: ScaleAdvertisement) -> Optional[StabilizerEvent]:
        if not is_candidate(advertisement.local_name, advertisement.payload):
            return None
        if not self._accept_peripheral(advertisement.address):
            return None
        weight = decode_weight(advertisement.company_id, advertisement.payload)
        if weight is None:
            return None
        return self.handle_reading(weight)

    def handle_reading(self, weight: float, at: Optional[float] = None) -> StabilizerEvent:
        entry: Optional[WeightEntry] = None
        with self._lock:
            at = self._clock() if at is None else at
            self._last_reading_at = at
            event = self._stabilizer.feed_at(weight, at)
            new_state = ScanState.from_event(event)
            if event.kind is EventKind.SETTLED:
                try:
                    entry = self._persist_settled(event.weight)
                except OSError as exc:
                    self.logger.exception("Could not store settled weight")
                    new_state = ScanState.error(f"Failed to save reading: {exc}")
                    self.status_message = new_state.message
        if new_state is not None:
            self._set_state(new_state)
        if entry is not None:
            self.logger.info("Recorded %.1f lbs", entry.weight_lbs)
        return event

    def _persist_settled(self, weight: float) -> Optional[WeightEntry]:
        timestamp = self._now()
        if self._history is not None:
            entry = self._history.save(weight, timestamp, EntrySource.LIVE)
        else:
            entry = WeightEntry(timestamp=timestamp, weight_lbs=weight)
        self._last_entry = entry
        self.status_message = f"Recorded {weight:.1f} lbs"
        return entry

    def _accept_peripheral(self, address: str) -> bool:
        address = (address or "").upper()
        with self._lock:
            pinned = self._settings.scanner.pinned_address
            if pinned:
                return pinned == address
            self._settings.scanner.pinned_address = address
        self.logger.info("Pinned scale %s", address)
        self._persist_settings()
        return True

    def _persist_settings(self) -> None:
        if self._settings_path is None:
            return
        try:
            self._settings.save(self._settings_path)
        except OSError:
            self.logger.warning("Could not persist scanner settings", exc_info=True)

    def _on_backend_error(self, exc: Exception) -> None:
        self.logger.warning("Backend %s reported: %s", self.backend_name, exc)
        if (
            isinstance(exc, BackendUnavailable)
            and self._settings.scanner.simulate_if_unavailable
            and not isinstance(self._backend, SimulatedScaleBackend)
        ):
            self._fall_back_to_simulation()
            return
        self._set_state(ScanState.error(str(exc) or "Bluetooth is currently unavailable."))

    def _fall_back_to_simulation(self) -> None:
        with self._lock:
            if not self._running:
                return
            failed = self._backend
            replacement = SimulatedScaleBackend(logger=self.logger)
            self._backend = replacement
            self._scan_started_at = self._clock()
        self.logger.warning("BLE scan failed; falling back to simulation")
        if failed is not None:
            try:
                failed.stop()
            except Exception:
                self.logger.debug("Failed backend did not stop cleanly", exc_info=True)
        self._set_state(ScanState.scanning())
        replacement.start(self.handle_advertisement, on_error=self._on_backend_error)

    # ------------------------------------------------------------------
    def no_scale_detected(self, now: Optional[float] = None) -> bool:
        now = self._clock() if now is None else now
        timeout = self._settings.scanner.no_scale_timeout_s
        with self._lock:
            if self._state.kind not in {ScanStateKind.SCANNING, ScanStateKind.MEASURING}:
                return False
            if self._last_reading_at is not None:
                return now - self._last_reading_at > timeout
            if self._scan_started_at is not None:
                return now - self._scan_started_at > timeout
        return False

    # ------------------------------------------------------------------
    def subscribe(self, callback: Callable[[ScanState], None]) -> None:
        if not callable(callback):
            return
        with self._lock:
            self._callbacks.append(callback)
            state = self._state
        self._notify([callback], state)

    def unsubscribe(self, callback: Callable[[ScanState], None]) -> None:
        with self._lock:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass

    def _set_state(self, state: ScanState) -> None:
        with self._lock:
            self._state = state
            callbacks = list(self._callbacks)
        self._notify(callbacks, state)

    def _notify(self, callbacks: List[Callable[[ScanState], None]], state: ScanState) -> None:
        for callback in callbacks:
            try:
                callback(state)
            except Exception:
                self.logger.exception("Scale subscriber failed")


__all__ = [
    "BackendUnavailable",
    "BaseScaleBackend",
    "BleakScaleBackend",
    "ScaleService",
    "ScanState",
    "ScanStateKind",
    "SimulatedScaleBackend",
]
