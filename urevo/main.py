#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Command line entry point for the Urevo scale companion."""
from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from urevo.config import settings as settings_mod
from urevo.config.settings import Settings
from urevo.core.protocol import advertisement_from_blob, decode_weight, is_candidate
from urevo.domain import trends
from urevo.domain.units import DisplayUnit, format_weight
from urevo.services.logging import setup_logging
from urevo.services.scale import BackendUnavailable, ScaleService, ScanState, ScanStateKind
from urevo.services.storage import CSVImportError, WeightHistory


def _describe(state: ScanState, unit: DisplayUnit) -> str:
    if state.kind is ScanStateKind.MEASURING:
        return f"measuring {format_weight(state.current, unit)} ({state.samples} samples)"
    if state.kind is ScanStateKind.CONFIRMING:
        return f"confirming {format_weight(state.current, unit)} {state.progress * 100:.0f}%"
    if state.kind is ScanStateKind.SETTLED:
        return f"settled {format_weight(state.weight, unit)}"
    if state.kind is ScanStateKind.ERROR:
        return f"error: {state.message}"
    return state.kind.value


def _cmd_scan(args: argparse.Namespace, settings: Settings, history: WeightHistory, logger) -> int:
    unit = DisplayUnit.parse(args.unit or settings.display.unit)
    service = ScaleService(
        settings,
        history=history,
        simulate=args.simulate,
        settings_path=args.config,
        logger=logger.getChild("scale"),
    )
    done = threading.Event()
    last_line: List[str] = []

    def on_state(state: ScanState) -> None:
        line = _describe(state, unit)
        if last_line and last_line[-1] == line:
            return
        last_line.append(line)
        print(line, flush=True)
        if state.kind is ScanStateKind.SETTLED and args.once:
            done.set()

    def on_signal(signum, _frame) -> None:
        logger.info("Received signal %s, stopping", signum)
        done.set()

    signal.signal(signal.SIGINT, on_signal)
    signal.signal(signal.SIGTERM, on_signal)

    service.subscribe(on_state)
    try:
        service.start()
    except BackendUnavailable as exc:
        print(f"Bluetooth unavailable: {exc}", file=sys.stderr)
        return 1
    try:
        deadline = time.monotonic() + args.duration if args.duration > 0 else None
        warned = False
        while not done.wait(1.0):
            if deadline is not None and time.monotonic() >= deadline:
                break
            missing = service.no_scale_detected()
            if missing and not warned:
                print("no scale detected yet; step on the scale to wake it", flush=True)
            warned = missing
    finally:
        service.stop()
    return 0


def _cmd_decode(args: argparse.Namespace, *_: object) -> int:
    try:
        blob = bytes.fromhex(args.blob.replace(":", "").replace(" ", ""))
    except ValueError:
        print(f"Invalid hex: {args.blob!r}", file=sys.stderr)
        return 1
    advertisement = advertisement_from_blob("", args.name, blob)
    if advertisement is None:
        print("Blob too short", file=sys.stderr)
        return 1
    print(f"company_id=0x{advertisement.company_id:04X} payload={advertisement.payload.hex()}")
    if not is_candidate(args.name, advertisement.payload):
        print("Not a Urevo advertisement", file=sys.stderr)
        return 1
    weight = decode_weight(advertisement.company_id, advertisement.payload)
    if weight is None:
        print("No weight in advertisement", file=sys.stderr)
        return 1
    print(format_weight(weight, DisplayUnit.parse(args.unit or "lbs")))
    return 0


def _cmd_history(args: argparse.Namespace, settings: Settings, history: WeightHistory, _logger) -> int:
    unit = DisplayUnit.parse(args.unit or settings.display.unit)
    entries = history.fetch_all()
    if args.limit:
        entries = entries[: args.limit]
    for entry in entries:
        stamp = entry.timestamp.astimezone().strftime("%Y-%m-%d %H:%M:%S")
        print(f"{stamp}  {format_weight(entry.weight_lbs, unit):>12}  {entry.source.value}")
    return 0


def _cmd_export(args: argparse.Namespace, _settings: Settings, history: WeightHistory, _logger) -> int:
    count = history.export_csv(Path(args.path))
    print(f"Exported {count} record(s) to {args.path}")
    return 0


def _cmd_import(args: argparse.Namespace, _settings: Settings, history: WeightHistory, _logger) -> int:
    try:
        result = history.import_csv(Path(args.path))
    except CSVImportError as exc:
        print(str(exc), file=sys.stderr)
        return 1
    print(
        f"Imported {result.imported} record(s), "
        f"{result.duplicates} duplicate(s), {result.skipped} skipped"
    )
    for error in result.errors:
        print(f"  {error}")
    return 0


def _cmd_stats(args: argparse.Namespace, settings: Settings, history: WeightHistory, _logger) -> int:
    unit = DisplayUnit.parse(args.unit or settings.display.unit)
    preset = trends.TrendRange(args.range)
    selected = trends.filtered_samples(history.fetch_all(), preset, datetime.now(timezone.utc))
    summary = trends.stats(selected)
    print(f"Range: {preset.value}  entries: {summary.count}")
    if summary.count == 0:
        return 0
    print(f"Average: {format_weight(summary.average, unit)}")
    print(f"Min/Max: {format_weight(summary.minimum, unit)} / {format_weight(summary.maximum, unit)}")
    if summary.net_change is not None:
        line = f"Net change: {unit.from_lbs(summary.net_change):+.1f} {unit.symbol}"
        if summary.net_change_percent is not None:
            line += f" ({summary.net_change_percent:+.1f}%)"
        print(line)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="urevo-scale", description="Urevo Bluetooth scale companion")
    parser.add_argument("--config", type=Path, default=None, help="Settings file (default ~/.urevo/config.json)")
    parser.add_argument("--unit", choices=["lbs", "kg"], default=None)
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    scan = sub.add_parser("scan", help="Listen for the scale and record settled weigh-ins")
    scan.add_argument("--simulate", action="store_true", help="Use the built-in simulated scale")
    scan.add_argument("--duration", type=float, default=0.0, help="Stop after N seconds")
    scan.add_argument("--once", action="store_true", help="Stop after the first settled weight")
    scan.set_defaults(handler=_cmd_scan)

    decode = sub.add_parser("decode", help="Decode a manufacturer-data blob given as hex")
    decode.add_argument("blob")
    decode.add_argument("--name", default=None, help="Advertised local name")
    decode.set_defaults(handler=_cmd_decode)

    history = sub.add_parser("history", help="List stored weigh-ins")
    history.add_argument("--limit", type=int, default=0)
    history.set_defaults(handler=_cmd_history)

    export = sub.add_parser("export", help="Export history as timestamp,weight_lbs CSV")
    export.add_argument("path")
    export.set_defaults(handler=_cmd_export)

    imp = sub.add_parser("import", help="Import timestamp,weight_lbs CSV")
    imp.add_argument("path")
    imp.set_defaults(handler=_cmd_import)

    stats = sub.add_parser("stats", help="Summary statistics")
    stats.add_argument("--range", choices=[r.value for r in trends.TrendRange], default="30d")
    stats.set_defaults(handler=_cmd_stats)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    urevo_logger = setup_logging(logging.DEBUG if args.verbose else logging.INFO)
    logger = urevo_logger.getChild("main")

    if args.command == "decode":
        return args.handler(args)

    if args.config is None:
        args.config = settings_mod.CONFIG_PATH
    settings = Settings.load(args.config)
    if settings.storage.history_path:
        history_path = settings.storage.resolved_history_path
    else:
        history_path = Path(args.config).parent / "history.csv"
    history = WeightHistory(history_path)
    try:
        return args.handler(args, settings, history, logger)
    except OSError:
        logger.exception("Command %s failed", args.command)
        return 1


if __name__ == "__main__":
    sys.exit(main())
