"""
urevo/services/storage.py

Weigh-in history persisted as CSV, plus import/export of the plain
``timestamp,weight_lbs`` exchange format.
"""
from __future__ import annotations

import csv
import logging
import re
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Iterable, List, Optional, Set, Tuple

from ..domain.units import round_to_tenth

logger = logging.getLogger("urevo.storage")

HISTORY_HEADERS = ["id", "timestamp", "weight_lbs", "source", "created_at", "updated_at"]
EXCHANGE_HEADER = ["timestamp", "weight_lbs"]
_FRACTION = re.compile(r"\.(\d+)")


class EntrySource(str, Enum):
    LIVE = "live"
    CSV_IMPORT = "csv_import"


class CSVImportError(ValueError):
    """Raised when an import file cannot be read at all."""


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class WeightEntry:
    timestamp: datetime
    weight_lbs: float
    source: EntrySource = EntrySource.LIVE
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)


@dataclass
class ImportResult:
    imported: int = 0
    skipped: int = 0
    duplicates: int = 0
    errors: List[str] = field(default_factory=list)


# -------------------------------
# Timestamps
# -------------------------------

def parse_timestamp(value: str) -> Optional[datetime]:
    """Parse ISO-8601 with or without fraction/zone; naive means local time."""
    text = (value or "").strip()
    if not text:
        return None
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    # fromisoformat before 3.11 only takes 3 or 6 fraction digits
    text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.astimezone()
    return parsed


def format_export_timestamp(value: datetime) -> str:
    utc = value.astimezone(timezone.utc)
    return utc.isoformat(timespec="milliseconds").replace("+00:00", "Z")


# -------------------------------
# History
# -------------------------------

class WeightHistory:
    """CSV backed repository of confirmed weigh-ins."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def save(
        self,
        weight_lbs: float,
        timestamp: datetime,
        source: EntrySource = EntrySource.LIVE,
    ) -> WeightEntry:
        entry = WeightEntry(
            timestamp=_aware(timestamp),
            weight_lbs=round_to_tenth(weight_lbs),
            source=source,
        )
        self._append(entry)
        logger.info("Stored weigh-in %.1f lbs (%s)", entry.weight_lbs, entry.source.value)
        return entry

    def fetch_all(self) -> List[WeightEntry]:
        """All entries, newest first."""
        return sorted(self._read(), key=lambda entry: entry.timestamp, reverse=True)

    def get(self, entry_id: str) -> Optional[WeightEntry]:
        for entry in self._read():
            if entry.id == entry_id:
                return entry
        return None

    def delete(self, entry_id: str) -> bool:
        entries = self._read()
        kept = [entry for entry in entries if entry.id != entry_id]
        if len(kept) == len(entries):
            return False
        self._write(kept)
        logger.info("Deleted weigh-in %s", entry_id)
        return True

    def update(self, entry_id: str, timestamp: datetime, weight_lbs: float) -> Optional[WeightEntry]:
        entries = self._read()
        updated: Optional[WeightEntry] = None
        for index, entry in enumerate(entries):
            if entry.id == entry_id:
                updated = replace(
                    entry,
                    timestamp=_aware(timestamp),
                    weight_lbs=round_to_tenth(weight_lbs),
                    updated_at=_now(),
                )
                entries[index] = updated
                break
        if updated is None:
            return None
        self._write(entries)
        return updated

    def has_duplicate(self, timestamp: datetime, weight_lbs: float) -> bool:
        target = _duplicate_key(timestamp, weight_lbs)
        return any(_duplicate_key(entry.timestamp, entry.weight_lbs) == target for entry in self._read())

    # ------------------------------------------------------------------
    def import_csv(self, path: Path) -> ImportResult:
        try:
            raw = Path(path).read_bytes()
        except OSError as exc:
            raise CSVImportError(f"Cannot read {path}: {exc.strerror or exc}") from exc
        try:
            content = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise CSVImportError("CSV file is not UTF-8 encoded.") from exc

        result = ImportResult()
        existing = self._read()
        seen: Set[Tuple[int, float]] = {_duplicate_key(e.timestamp, e.weight_lbs) for e in existing}
        added: List[WeightEntry] = []
        rows = content.replace("\r\n", "\n").split("\n")
        for row_number, raw_row in enumerate(rows, start=1):
            row = raw_row.strip()
            if not row:
                continue
            if row_number == 1 and row.lower() == ",".join(EXCHANGE_HEADER):
                continue

            fields = row.split(",")
            if len(fields) != 2:
                result.skipped += 1
                result.errors.append(f"Row {row_number}: expected 2 columns")
                continue

            timestamp = parse_timestamp(fields[0])
            if timestamp is None:
                result.skipped += 1
                result.errors.append(f"Row {row_number}: invalid timestamp")
                continue

            try:
                weight_lbs = float(fields[1].strip())
            except ValueError:
                result.skipped += 1
                result.errors.append(f"Row {row_number}: invalid weight")
                continue

            key = _duplicate_key(timestamp, weight_lbs)
            if key in seen:
                result.duplicates += 1
                continue

            seen.add(key)
            added.append(
                WeightEntry(timestamp=timestamp, weight_lbs=round_to_tenth(weight_lbs), source=EntrySource.CSV_IMPORT)
            )

        if added:
            self._write(existing + added)
        result.imported = len(added)

        logger.info(
            "CSV import from %s: %d imported, %d skipped, %d duplicates",
            path,
            result.imported,
            result.skipped,
            result.duplicates,
        )
        return result

    def export_csv(self, path: Path, entries: Optional[Iterable[WeightEntry]] = None) -> int:
        rows = sorted(self._read() if entries is None else entries, key=lambda entry: entry.timestamp)
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = target.with_suffix(target.suffix + ".tmp")
        with open(tmp_path, "w", newline="", encoding="utf-8") as f:
            writer = csv.writer(f, lineterminator="\n")
            writer.writerow(EXCHANGE_HEADER)
            for entry in rows:
                writer.writerow(
                    [format_export_timestamp(entry.timestamp), f"{round_to_tenth(entry.weight_lbs):.1f}"]
                )
        tmp_path.replace(target)
        logger.info("Exported %d weigh-ins to %s", len(rows), target)
        return len(rows)

    # ------------------------------------------------------------------
    def _read(self) -> List[WeightEntry]:
        if not self.path.exists():
            return []
        entries: List[WeightEntry] = []
        with open(self.path, "r", newline="", encoding="utf-8") as f:
            for row in csv.DictReader(f):
                try:
                    entries.append(
                        WeightEntry(
                            id=row["id"],
                            timestamp=datetime.fromisoformat(row["timestamp"]),
                            weight_lbs=float(row["weight_lbs"]),
                            source=EntrySource(row.get("source") or EntrySource.LIVE.value),
                            created_at=datetime.fromisoformat(row["created_at"]),
                            updated_at=datetime.fromisoformat(row["updated_at"]),
                        )
                    )
                except (KeyError, TypeError, ValueError):
                    logger.warning("Skipping unreadable history row in %s: %r", self.path, row)
        return entries

    def _write(self, entries: Iterable[WeightEntry]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, "w", newline="", encoding="utf-8") as f:
            writer = csv.DictWriter(f, fieldnames=HISTORY_HEADERS)
            writer.writeheader()
            for entry in entries:
                writer.writerow(_history_row(entry))
        tmp_path.replace(self.path)

    def _append(self, entry: WeightEntry) -> None:
        if not self.path.exists() or self.path.stat().st_size == 0:
            self._write([entry])
            return
        with open(self.path, "a", newline="", encoding="utf-8") as f:
            csv.DictWriter(f, fieldnames=HISTORY_HEADERS).writerow(_history_row(entry))


def _history_row(entry: WeightEntry) -> dict:
    return {
        "id": entry.id,
        "timestamp": entry.timestamp.isoformat(),
        "weight_lbs": f"{entry.weight_lbs:.1f}",
        "source": entry.source.value,
        "created_at": entry.created_at.isoformat(),
        "updated_at": entry.updated_at.isoformat(),
    }


def _duplicate_key(timestamp: datetime, weight_lbs: float) -> Tuple[int, float]:
    """Entries match when they share the epoch second and the rounded tenth."""
    return int(_aware(timestamp).timestamp()), round_to_tenth(weight_lbs)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.astimezone()


__all__ = [
    "CSVImportError",
    "EntrySource",
    "ImportResult",
    "WeightEntry",
    "WeightHistory",
    "format_export_timestamp",
    "parse_timestamp",
]
