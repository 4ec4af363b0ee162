from __future__ import annotations

import logging

import pytest

from urevo.config.settings import StabilizerSettings
from urevo.domain.stabilizer import Stabilizer
from urevo.services import logging as urevo_logging


def test_stabilizer_logs_transitions(caplog: pytest.LogCaptureFixture) -> None:
    logger = logging.getLogger("test.stabilizer.logs")
    caplog.set_level(logging.DEBUG, logger="test.stabilizer.logs")

    settings = StabilizerSettings(window_size=3, confirm_duration_s=0.0, confirm_min_samples=3)
    stabilizer = Stabilizer(settings, logger=logger)
    for index, weight in enumerate([150.0, 150.0, 150.0, 150.0]):
        stabilizer.feed_at(weight, index * 0.1)

    messages = [record.message for record in caplog.records]
    assert "Window stable around 150.0 lbs; confirming" in messages
    assert "Weight settled at 150.0 lbs (3 samples)" in messages
    settled = [r for r in caplog.records if r.message.startswith("Weight settled")]
    assert settled[0].levelno == logging.INFO


def test_setup_logging_is_idempotent(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(urevo_logging, "LOG_FILE", None)
    root = logging.getLogger("urevo")
    saved = list(root.handlers)
    for handler in saved:
        root.removeHandler(handler)
    try:
        first = urevo_logging.setup_logging(logging.DEBUG)
        count = len(first.handlers)
        second = urevo_logging.setup_logging(logging.INFO)
        assert first is second
        assert len(second.handlers) == count == 1
        assert second.level == logging.INFO
    finally:
        for handler in list(root.handlers):
            root.removeHandler(handler)
        for handler in saved:
            root.addHandler(handler)
