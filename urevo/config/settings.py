"""Robust configuration handling for the scale companion."""
from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Literal, Optional

log = logging.getLogger(__name__)

CONFIG_DIR = Path(os.environ.get("UREVO_SETTINGS_DIR", Path.home() / ".urevo"))
CONFIG_PATH = CONFIG_DIR / "config.json"


@dataclass
class StabilizerSettings:
    """Tuning parameters for the weigh-in stabilizer."""

    window_size: int = 8
    tolerance_lbs: float = 0.3
    min_weight_lbs: float = 5.0
    idle_timeout_s: float = 3.0
    confirm_duration_s: float = 1.0
    confirm_tolerance_lbs: float = 0.2
    confirm_min_samples: int = 6

    def __post_init__(self) -> None:
        try:
            self.window_size = max(1, int(self.window_size))
        except Exception:
            self.window_size = 8
        try:
            self.tolerance_lbs = max(0.0, float(self.tolerance_lbs))
        except Exception:
            self.tolerance_lbs = 0.3
        try:
            self.min_weight_lbs = float(self.min_weight_lbs)
        except Exception:
            self.min_weight_lbs = 5.0
        try:
            self.idle_timeout_s = float(self.idle_timeout_s)
        except Exception:
            self.idle_timeout_s = 3.0
        if self.idle_timeout_s <= 0:
            self.idle_timeout_s = 3.0
        try:
            self.confirm_duration_s = max(0.0, float(self.confirm_duration_s))
        except Exception:
            self.confirm_duration_s = 1.0
        try:
            self.confirm_tolerance_lbs = max(0.0, float(self.confirm_tolerance_lbs))
        except Exception:
            self.confirm_tolerance_lbs = 0.2
        try:
            self.confirm_min_samples = max(1, int(self.confirm_min_samples))
        except Exception:
            self.confirm_min_samples = 6


@dataclass
class ScannerSettings:
    """Bluetooth scanning and peripheral pinning."""

    pinned_address: Optional[str] = None
    poll_interval_s: float = 0.5
    no_scale_timeout_s: float = 20.0
    simulate_if_unavailable: bool = False

    def __post_init__(self) -> None:
        address = (self.pinned_address or "").strip()
        self.pinned_address = address.upper() or None
        try:
            self.poll_interval_s = max(0.05, float(self.poll_interval_s))
        except Exception:
            self.poll_interval_s = 0.5
        try:
            self.no_scale_timeout_s = max(1.0, float(self.no_scale_timeout_s))
        except Exception:
            self.no_scale_timeout_s = 20.0
        self.simulate_if_unavailable = bool(self.simulate_if_unavailable)


@dataclass
class DisplaySettings:
    """How weights are shown to the user."""

    unit: Literal["lbs", "kg"] = "lbs"

    def __post_init__(self) -> None:
        self.unit = "kg" if str(self.unit or "lbs").lower() == "kg" else "lbs"


@dataclass
class StorageSettings:
    """Location of the weigh-in history."""

    history_path: str = ""

    @property
    def resolved_history_path(self) -> Path:
        if self.history_path:
            return Path(self.history_path).expanduser()
        return CONFIG_DIR / "history.csv"


@dataclass
class Settings:
    """Top level application settings dataclass."""

    stabilizer: StabilizerSettings = field(default_factory=StabilizerSettings)
    scanner: ScannerSettings = field(default_factory=ScannerSettings)
    display: DisplaySettings = field(default_factory=DisplaySettings)
    storage: StorageSettings = field(default_factory=StorageSettings)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    # ------------------------------------------------------------------
    @staticmethod
    def _atomic_save(payload: Dict[str, Any], path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
        tmp_path.replace(path)

    # ------------------------------------------------------------------
    def save(self, path: Path = CONFIG_PATH) -> None:
        """Persist the settings to disk atomically."""

        self._atomic_save(self.to_dict(), path)
        log.info("Settings saved to %s", path)

    # ------------------------------------------------------------------
    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "Settings":
        def load_section(section: type, data: Dict[str, Any]) -> Any:
            if not isinstance(data, dict):
                data = {}
            if section is StabilizerSettings:
                data = _normalize_stabilizer_payload(dict(data))
            field_names = {f.name for f in section.__dataclass_fields__.values()}
            filtered = {k: v for k, v in data.items() if k in field_names}
            return section(**filtered)

        return cls(
            stabilizer=load_section(StabilizerSettings, payload.get("stabilizer", {})),
            scanner=load_section(ScannerSettings, payload.get("scanner", {})),
            display=load_section(DisplaySettings, payload.get("display", {})),
            storage=load_section(StorageSettings, payload.get("storage", {})),
        )

    # ------------------------------------------------------------------
    @classmethod
    def load(cls, path: Path = CONFIG_PATH) -> "Settings":
        """Load settings from disk, regenerating defaults on corruption."""

        path.parent.mkdir(parents=True, exist_ok=True)
        default_payload = cls().to_dict()
        needs_resave = False

        try:
            raw = path.read_text(encoding="utf-8")
            if not raw.strip():
                raise ValueError("empty settings file")
            payload = json.loads(raw)
            if not isinstance(payload, dict):
                raise ValueError("settings payload must be a JSON object")
            payload = _normalize_legacy_payload(payload)
            log.info("Loaded settings from %s", path)
        except FileNotFoundError:
            log.warning("Settings file %s missing; regenerating defaults", path)
            payload = default_payload
            needs_resave = True
        except (json.JSONDecodeError, ValueError) as exc:
            log.warning("Settings file %s invalid (%s); regenerating defaults", path, exc)
            _backup_corrupt_file(path)
            payload = default_payload
            needs_resave = True

        merged = _merge_defaults(default_payload, payload)
        settings = cls.from_dict(merged)

        if merged != payload or needs_resave:
            try:
                cls._atomic_save(merged, path)
            except OSError:  # pragma: no cover - read-only filesystems
                log.exception("Could not persist regenerated configuration")

        stab = settings.stabilizer
        log.info(
            "Stabilizer config: window=%s tol=%.2f min=%.1f idle=%.1fs confirm=%.1fs/%s tol=%.2f",
            stab.window_size,
            stab.tolerance_lbs,
            stab.min_weight_lbs,
            stab.idle_timeout_s,
            stab.confirm_duration_s,
            stab.confirm_min_samples,
            stab.confirm_tolerance_lbs,
        )
        return settings


# ----------------------------------------------------------------------
def _backup_corrupt_file(path: Path) -> None:
    backup = path.with_name(path.name + ".bak")
    try:
        if path.exists():
            backup.write_bytes(path.read_bytes())
            path.unlink()
    except OSError:  # pragma: no cover - best effort
        log.debug("Could not create backup for corrupt settings", exc_info=True)


def _merge_defaults(defaults: Dict[str, Any], payload: Dict[str, Any]) -> Dict[str, Any]:
    """Fill every known section with default values; unknown sections are dropped."""
    merged: Dict[str, Any] = {}
    for section, section_defaults in defaults.items():
        stored = payload.get(section) if payload else None
        values = dict(section_defaults)
        if isinstance(stored, dict):
            values.update(stored)
        merged[section] = values
    return merged


_LEGACY_STABILIZER_KEYS = {
    "windowSize": "window_size",
    "toleranceLbs": "tolerance_lbs",
    "minWeightLbs": "min_weight_lbs",
    "idleTimeoutSec": "idle_timeout_s",
    "confirmDurationSec": "confirm_duration_s",
    "confirmToleranceLbs": "confirm_tolerance_lbs",
    "confirmMinSamples": "confirm_min_samples",
}


def _normalize_stabilizer_payload(data: Dict[str, Any]) -> Dict[str, Any]:
    for legacy, current in _LEGACY_STABILIZER_KEYS.items():
        if legacy in data and current not in data:
            data[current] = data.pop(legacy)
    return data


def _normalize_legacy_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    section = payload.get("stabilizer")
    if isinstance(section, dict):
        payload = dict(payload)
        payload["stabilizer"] = _normalize_stabilizer_payload(dict(section))
    return payload


__all__ = [
    "Settings",
    "StabilizerSettings",
    "ScannerSettings",
    "DisplaySettings",
    "StorageSettings",
    "CONFIG_PATH",
]
