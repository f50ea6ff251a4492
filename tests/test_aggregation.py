"""
Unit tests for history aggregation
"""

from datetime import datetime, timezone

import pytest

from conftest import make_reading
from ecoflow_monitor.aggregation import (
    HOUR_MS,
    aggregate_readings,
    bucket_start,
    compute_summary,
    history,
    parse_timestamp,
    resolve_time_range,
)
from ecoflow_monitor.errors import AuthorizationError, ValidationError
from ecoflow_monitor.models import AggregatedBucket, ChargingType, ReadingStatus


def ts(hour, minute=0, day=1):
    return int(datetime(2024, 6, day, hour, minute, tzinfo=timezone.utc).timestamp() * 1000)


# ---------------------------------------------------------------------
# Bucketing
# ---------------------------------------------------------------------

def test_bucket_start_floor():
    assert bucket_start(ts(10, 7), 5 * 60 * 1000) == ts(10, 5)
    assert bucket_start(ts(10, 59), HOUR_MS) == ts(10)


def test_five_minute_bucket_mean():
    """Test that 10:00/10:02/10:04 with battery 80/78/76 gives one bucket at 78."""
    readings = [
        make_reading(recorded_at=ts(10, 0), battery_level=80),
        make_reading(recorded_at=ts(10, 2), battery_level=78),
        make_reading(recorded_at=ts(10, 4), battery_level=76),
    ]

    buckets = aggregate_readings(readings, "5m")

    assert len(buckets) == 1
    assert isinstance(buckets[0], AggregatedBucket)
    assert buckets[0].recorded_at == ts(10, 0)
    assert buckets[0].battery_level == 78
    assert buckets[0].reading_count == 3


def test_bucket_membership():
    """Test that every reading lands in the bucket containing its timestamp."""
    readings = [make_reading(recorded_at=ts(10, m), output_watts=m) for m in range(0, 60, 7)]

    buckets = aggregate_readings(readings, "15m")

    assert [b.recorded_at for b in buckets] == [ts(10, 0), ts(10, 15), ts(10, 30), ts(10, 45)]
    assert sum(b.reading_count for b in buckets) == len(readings)
    for bucket in buckets:
        members = [r for r in readings if bucket_start(r.recorded_at, 15 * 60 * 1000) == bucket.recorded_at]
        assert len(members) == bucket.reading_count


def test_means_ignore_nulls():
    readings = [
        make_reading(recorded_at=ts(10, 0), temperature=None, battery_level=60),
        make_reading(recorded_at=ts(10, 10), temperature=30, battery_level=None),
        make_reading(recorded_at=ts(10, 20), temperature=None, battery_level=None),
    ]

    bucket = aggregate_readings(readings, "1h")[0]

    assert bucket.temperature == 30
    assert bucket.battery_level == 60
    assert bucket.remaining_time is None


def test_status_from_last_reading_by_timestamp():
    """Test that status and charging type come from the chronologically last reading."""
    readings = [
        make_reading(recorded_at=ts(10, 40), status=ReadingStatus.CHARGING, charging_type=ChargingType.SOLAR),
        make_reading(recorded_at=ts(10, 5), status=ReadingStatus.DISCHARGING, charging_type=ChargingType.NONE),
    ]

    bucket = aggregate_readings(readings, "1h")[0]

    assert bucket.status == ReadingStatus.CHARGING
    assert bucket.charging_type == ChargingType.SOLAR


def test_buckets_are_per_device_and_sorted():
    readings = [
        make_reading(device_id=2, recorded_at=ts(11, 0)),
        make_reading(device_id=1, recorded_at=ts(12, 0)),
        make_reading(device_id=1, recorded_at=ts(11, 30)),
    ]

    buckets = aggregate_readings(readings, "1h")

    assert [(b.recorded_at, b.device_id) for b in buckets] == [
        (ts(11), 1),
        (ts(11), 2),
        (ts(12), 1),
    ]


def test_daily_buckets():
    readings = [make_reading(recorded_at=ts(h, day=d)) for d in (1, 2) for h in (3, 15)]
    buckets = aggregate_readings(readings, "1d")
    assert [b.reading_count for b in buckets] == [2, 2]


def test_raw_is_sorted_copy():
    readings = [make_reading(recorded_at=ts(11)), make_reading(recorded_at=ts(10))]
    result = aggregate_readings(readings, "raw")
    assert [r.recorded_at for r in result] == [ts(10), ts(11)]


def test_unknown_granularity_rejected():
    with pytest.raises(ValidationError):
        aggregate_readings([], "2h")


# ---------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------

def test_summary_none_when_empty():
    assert compute_summary([], ts(0), ts(23)) is None


def test_summary_values():
    readings = [
        make_reading(recorded_at=ts(10), battery_level=80, output_watts=100, temperature=25),
        make_reading(recorded_at=ts(11), battery_level=70, output_watts=250, temperature=None),
        make_reading(recorded_at=ts(12), battery_level=65, output_watts=50, temperature=28),
    ]

    summary = compute_summary(readings, ts(0), ts(0, day=2))

    assert summary.total_readings == 3
    assert summary.avg_battery_level == 71.67
    assert summary.avg_power_output == 133.33
    assert summary.avg_temperature == 26.5
    assert summary.peak_power_output == 250
    assert summary.lowest_battery_level == 65
    assert summary.highest_temperature == 28
    assert summary.time_span == "1 days"
    assert summary.start_time == ts(0)


def test_summary_time_span_hours():
    summary = compute_summary([make_reading(recorded_at=ts(10))], ts(4), ts(10))
    assert summary.time_span == "6 hours"


# ---------------------------------------------------------------------
# Time ranges
# ---------------------------------------------------------------------

def test_resolve_named_range():
    now = ts(12)
    assert resolve_time_range("6h", None, None, now) == (ts(6), now)
    assert resolve_time_range(None, None, None, now) == (ts(12) - 24 * HOUR_MS, now)


def test_resolve_explicit_range():
    start, end = resolve_time_range("1h", "2024-06-01T00:00:00Z", str(ts(5)), ts(12))
    assert (start, end) == (ts(0), ts(5))


@pytest.mark.parametrize("args", [
    ("2y", None, None),
    (None, "2024-06-01T00:00:00Z", None),
    (None, "2024-06-02T00:00:00Z", "2024-06-01T00:00:00Z"),
    (None, "yesterday", "2024-06-01T00:00:00Z"),
])
def test_resolve_invalid_ranges(args):
    with pytest.raises(ValidationError):
        resolve_time_range(*args, now_ms=ts(12))


def test_parse_naive_timestamp_is_utc():
    assert parse_timestamp("2024-06-01T10:00:00") == ts(10)


# ---------------------------------------------------------------------
# History query
# ---------------------------------------------------------------------

def test_history_scoped_to_owned_devices(store):
    store.insert_reading(make_reading(device_id=1, recorded_at=ts(10), battery_level=90))
    store.insert_reading(make_reading(device_id=2, recorded_at=ts(10, 30), battery_level=40))
    store.insert_reading(make_reading(device_id=3, recorded_at=ts(10, 45), battery_level=10))

    result = history(store, 10, ts(0), ts(23))

    assert [r.device_id for r in result["readings"]] == [1, 2]
    assert result["readings"][0].device_name == "Delta 2"
    assert result["summary"].total_readings == 2


def test_history_rejects_foreign_device(store):
    with pytest.raises(AuthorizationError):
        history(store, 10, ts(0), ts(23), device_id=3)


def test_history_empty_summary_is_none(store):
    result = history(store, 10, ts(0), ts(23), granularity="1h", device_id=1)
    assert result == {
        "readings": [],
        "summary": None,
        "pagination": {"hasMore": False, "nextOffset": None, "total": 0},
    }


def test_history_limit_keeps_most_recent(store):
    for minute in range(5):
        store.insert_reading(make_reading(device_id=1, recorded_at=ts(10, minute), output_watts=minute))

    result = history(store, 10, ts(0), ts(23), limit=2)

    assert [r.recorded_at for r in result["readings"]] == [ts(10, 3), ts(10, 4)]
    assert result["summary"].total_readings == 2
    assert result["pagination"] == {"hasMore": True, "nextOffset": 2, "total": 5}


def test_history_offset_pages_back_to_oldest(store):
    """Test that following nextOffset reaches every row exactly once."""
    for minute in range(5):
        store.insert_reading(make_reading(device_id=1, recorded_at=ts(10, minute)))

    middle = history(store, 10, ts(0), ts(23), limit=2, offset=2)
    last = history(store, 10, ts(0), ts(23), limit=2, offset=middle["pagination"]["nextOffset"])

    assert [r.recorded_at for r in middle["readings"]] == [ts(10, 1), ts(10, 2)]
    assert middle["pagination"]["nextOffset"] == 4
    assert [r.recorded_at for r in last["readings"]] == [ts(10, 0)]
    assert last["pagination"] == {"hasMore": False, "nextOffset": None, "total": 5}


def test_history_offset_past_end_is_empty(store):
    store.insert_reading(make_reading(device_id=1, recorded_at=ts(10)))

    result = history(store, 10, ts(0), ts(23), offset=5)

    assert result["readings"] == []
    assert result["summary"] is None
    assert result["pagination"]["hasMore"] is False


def test_history_negative_offset_rejected(store):
    with pytest.raises(ValidationError):
        history(store, 10, ts(0), ts(23), offset=-1)


@pytest.mark.parametrize("limit", [0, 10001])
def test_history_limit_bounds(store, limit):
    with pytest.raises(ValidationError):
        history(store, 10, ts(0), ts(23), limit=limit)
