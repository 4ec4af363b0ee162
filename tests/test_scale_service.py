"""Session behaviour of the scale service with a scripted backend."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import List

import pytest

from urevo.config.settings import Settings, StabilizerSettings
from urevo.core.protocol import ScaleAdvertisement, encode_weight
from urevo.services import scale
from urevo.services.storage import WeightHistory

FIXED_NOW = datetime(2024, 5, 1, 7, 30, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self) -> None:
        self.value = 0.0

    def __call__(self) -> float:
        return self.value


class ScriptedBackend(scale.BaseScaleBackend):
    name = "SCRIPTED"

    def __init__(self) -> None:
        self.callback = None
        self.on_error = None
        self.stopped = False

    def start(self, callback, on_error=None) -> None:
        self.callback = callback
        self.on_error = on_error

    def stop(self) -> None:
        self.stopped = True

    def emit(self, weight: float, address: str = "AA:BB:CC:DD:EE:01", name: str = "urevo") -> None:
        company_id, payload = encode_weight(weight)
        self.callback(ScaleAdvertisement(address=address, local_name=name, company_id=company_id, payload=payload))


def _settings() -> Settings:
    settings = Settings()
    settings.stabilizer = StabilizerSettings(
        window_size=4,
        tolerance_lbs=0.3,
        min_weight_lbs=5.0,
        idle_timeout_s=3.0,
        confirm_duration_s=0.0,
        confirm_min_samples=4,
    )
    return settings


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def backend() -> ScriptedBackend:
    return ScriptedBackend()


def _service(tmp_path: Path, backend, clock, **kwargs) -> scale.ScaleService:
    return scale.ScaleService(
        kwargs.pop("settings", None) or _settings(),
        history=WeightHistory(tmp_path / "history.csv"),
        backend=backend,
        clock=clock,
        now=lambda: FIXED_NOW,
        logger=logging.getLogger("test.scale"),
        **kwargs,
    )


def _emit_series(backend: ScriptedBackend, clock: FakeClock, weights, step: float = 0.1, **kwargs) -> None:
    for weight in weights:
        backend.emit(weight, **kwargs)
        clock.value += step


def test_settled_weight_is_recorded(tmp_path: Path, backend, clock) -> None:
    service = _service(tmp_path, backend, clock)
    states: List[scale.ScanState] = []
    service.subscribe(states.append)
    service.start()

    _emit_series(backend, clock, [180.0, 180.1, 180.0, 180.1, 180.1])

    kinds = [state.kind for state in states]
    assert kinds[:2] == [scale.ScanStateKind.IDLE, scale.ScanStateKind.SCANNING]
    assert scale.ScanStateKind.CONFIRMING in kinds
    assert states[-1] == scale.ScanState(scale.ScanStateKind.SETTLED, weight=180.1)
    assert service.last_entry.weight_lbs == pytest.approx(180.1)
    assert service.status_message == "Recorded 180.1 lbs"

    stored = WeightHistory(tmp_path / "history.csv").fetch_all()
    assert len(stored) == 1
    assert stored[0].timestamp == FIXED_NOW

    service.stop()
    assert backend.stopped
    assert service.state.kind is scale.ScanStateKind.IDLE


def test_only_one_record_per_session(tmp_path: Path, backend, clock) -> None:
    service = _service(tmp_path, backend, clock)
    service.start()
    _emit_series(backend, clock, [180.0] * 12)
    assert len(WeightHistory(tmp_path / "history.csv").fetch_all()) == 1
    assert service.state.kind is scale.ScanStateKind.MEASURING

    clock.value += 5.0
    _emit_series(backend, clock, [181.0] * 5)
    assert len(WeightHistory(tmp_path / "history.csv").fetch_all()) == 2


def test_first_scale_is_pinned_and_persisted(tmp_path: Path, backend, clock) -> None:
    cfg_path = tmp_path / "config.json"
    service = _service(tmp_path, backend, clock, settings_path=cfg_path)
    service.start()

    backend.emit(180.0, address="aa:bb:cc:dd:ee:01")
    backend.emit(150.0, address="11:22:33:44:55:66")

    assert service.stabilizer.sample_count == 1
    payload = json.loads(cfg_path.read_text(encoding="utf-8"))
    assert payload["scanner"]["pinned_address"] == "AA:BB:CC:DD:EE:01"

    service.reset_pinned_scale()
    assert service.status_message == "Pinned scale reset."
    payload = json.loads(cfg_path.read_text(encoding="utf-8"))
    assert payload["scanner"]["pinned_address"] is None


def test_non_candidates_are_ignored(tmp_path: Path, backend, clock) -> None:
    service = _service(tmp_path, backend, clock)
    service.start()
    backend.callback(
        ScaleAdvertisement(address="AA", local_name="Speaker", company_id=0x004C, payload=b"\x02\x15" * 6)
    )
    assert service.state.kind is scale.ScanStateKind.SCANNING
    assert service.stabilizer.sample_count == 0


def test_reset_session_clears_samples(tmp_path: Path, backend, clock) -> None:
    service = _service(tmp_path, backend, clock)
    service.start()
    _emit_series(backend, clock, [180.0, 180.1])
    service.reset_session()
    assert service.stabilizer.sample_count == 0


def test_subscriber_failure_is_logged(tmp_path: Path, backend, clock, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.ERROR, logger="test.scale")
    service = _service(tmp_path, backend, clock)
    seen: List[scale.ScanState] = []

    def broken(_state) -> None:
        raise RuntimeError("boom")

    service.subscribe(broken)
    service.subscribe(seen.append)
    service.start()
    backend.emit(180.0)

    assert seen[-1].kind is scale.ScanStateKind.MEASURING
    assert any("Scale subscriber failed" in record.message for record in caplog.records)

    service.unsubscribe(broken)
    service.unsubscribe(broken)


def test_backend_error_sets_error_state(tmp_path: Path, backend, clock) -> None:
    service = _service(tmp_path, backend, clock)
    service.start()
    backend.on_error(scale.BackendUnavailable("adapter powered off"))
    assert service.state == scale.ScanState.error("adapter powered off")


def test_storage_failure_reports_error(tmp_path: Path, backend, clock, monkeypatch: pytest.MonkeyPatch) -> None:
    service = _service(tmp_path, backend, clock)

    def fail(*_args, **_kwargs):
        raise OSError("disk full")

    monkeypatch.setattr(service._history, "save", fail)  # type: ignore[attr-defined]
    service.start()
    _emit_series(backend, clock, [180.0] * 5)

    assert service.state.kind is scale.ScanStateKind.ERROR
    assert "disk full" in service.state.message


def test_no_scale_detected_timeout(tmp_path: Path, backend, clock) -> None:
    settings = _settings()
    settings.scanner.no_scale_timeout_s = 20.0
    service = _service(tmp_path, backend, clock, settings=settings)
    assert service.no_scale_detected() is False

    service.start()
    assert service.no_scale_detected(now=20.0) is False
    assert service.no_scale_detected(now=20.5) is True

    clock.value = 30.0
    backend.emit(180.0)
    assert service.no_scale_detected(now=45.0) is False
    assert service.no_scale_detected(now=50.5) is True


def test_without_history_entries_stay_in_memory(backend, clock) -> None:
    service = scale.ScaleService(_settings(), backend=backend, clock=clock, now=lambda: FIXED_NOW)
    service.start()
    _emit_series(backend, clock, [180.0] * 5)
    assert service.last_entry is not None
    assert service.last_entry.weight_lbs == pytest.approx(180.0)


def test_scan_state_from_event_rounds_current() -> None:
    from urevo.domain.stabilizer import StabilizerEvent

    assert scale.ScanState.from_event(StabilizerEvent.none()) is None
    state = scale.ScanState.from_event(StabilizerEvent.confirming(180.04, 0.5))
    assert state == scale.ScanState(scale.ScanStateKind.CONFIRMING, current=180.0, progress=0.5)


def test_subscribers_can_change_while_notifying(tmp_path: Path, backend, clock) -> None:
    service = _service(tmp_path, backend, clock)
    later: List[scale.ScanState] = []
    once: List[scale.ScanState] = []

    def one_shot(state) -> None:
        once.append(state)
        if len(once) == 2:
            service.unsubscribe(one_shot)
            service.subscribe(later.append)

    service.subscribe(one_shot)
    service.start()
    backend.emit(180.0)

    assert [state.kind for state in once] == [scale.ScanStateKind.IDLE, scale.ScanStateKind.SCANNING]
    assert [state.kind for state in later] == [scale.ScanStateKind.SCANNING, scale.ScanStateKind.MEASURING]
