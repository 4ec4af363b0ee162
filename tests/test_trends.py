from datetime import datetime, timedelta, timezone

import pytest

from urevo.domain import trends
from urevo.services.storage import WeightEntry

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def _entry(days_ago: float, weight: float) -> WeightEntry:
    return WeightEntry(timestamp=NOW - timedelta(days=days_ago), weight_lbs=weight)


@pytest.fixture
def entries():
    return [
        _entry(0, 178.0),
        _entry(3, 179.0),
        _entry(20, 181.0),
        _entry(60, 184.0),
        _entry(400, 190.0),
        _entry(-1, 170.0),  # future entries are ignored
    ]


def test_filtered_samples_oldest_first(entries):
    selected = trends.filtered_samples(entries, trends.TrendRange.THIRTY_DAYS, NOW)
    assert [e.weight_lbs for e in selected] == [181.0, 179.0, 178.0]


@pytest.mark.parametrize(
    "preset, count",
    [
        (trends.TrendRange.SEVEN_DAYS, 2),
        (trends.TrendRange.NINETY_DAYS, 4),
        (trends.TrendRange.ONE_YEAR, 4),
        (trends.TrendRange.ALL, 5),
    ],
)
def test_filtered_sample_counts(entries, preset, count):
    assert len(trends.filtered_samples(entries, preset, NOW)) == count


def test_one_year_from_leap_day():
    leap = datetime(2024, 2, 29, tzinfo=timezone.utc)
    assert trends.TrendRange.ONE_YEAR.start(leap) == datetime(2023, 2, 28, tzinfo=timezone.utc)
    assert trends.TrendRange.ALL.start(leap) is None


def test_stats(entries):
    selected = trends.filtered_samples(entries, trends.TrendRange.NINETY_DAYS, NOW)
    summary = trends.stats(selected)
    assert summary.count == 4
    assert summary.average == pytest.approx(180.5)
    assert summary.minimum == 178.0
    assert summary.maximum == 184.0
    assert summary.net_change == pytest.approx(-6.0)
    assert summary.net_change_percent == pytest.approx(-6.0 / 184.0 * 100)


def test_stats_single_and_empty():
    assert trends.stats([]) == trends.TrendStats(count=0)
    single = trends.stats([_entry(1, 180.0)])
    assert single.count == 1
    assert single.net_change is None
    assert single.net_change_percent is None


def test_nearest_sample(entries):
    target = NOW - timedelta(days=18)
    assert trends.nearest_sample(target, entries).weight_lbs == 181.0
    assert trends.nearest_sample(None, entries) is None
    assert trends.nearest_sample(target, []) is None
