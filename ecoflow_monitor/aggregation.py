"""
History aggregation: time buckets and summaries over stored readings.

Bucket boundaries are ``floor(ts / size) * size`` in epoch milliseconds.
Numeric fields are averaged over the non-null values of a bucket (a bucket
whose values are all null stays null). Categorical fields (status,
charging type) are taken from the chronologically last reading.
"""

import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from .errors import AuthorizationError, ValidationError
from .models import AggregatedBucket, HistorySummary, Reading
from .storage import ReadingStore


logger = logging.getLogger("ecoflow-monitor.aggregation")

MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS
DAY_MS = 24 * HOUR_MS

BUCKET_SIZES: Dict[str, Optional[int]] = {
    "raw": None,
    "5m": 5 * MINUTE_MS,
    "15m": 15 * MINUTE_MS,
    "1h": HOUR_MS,
    "1d": DAY_MS,
}

TIME_RANGES: Dict[str, int] = {
    "1h": HOUR_MS,
    "6h": 6 * HOUR_MS,
    "24h": DAY_MS,
    "7d": 7 * DAY_MS,
    "30d": 30 * DAY_MS,
}

DEFAULT_TIME_RANGE = "24h"
DEFAULT_LIMIT = 1000
MAX_LIMIT = 10000

NUMERIC_FIELDS = (
    "battery_level",
    "input_watts",
    "ac_input_watts",
    "dc_input_watts",
    "output_watts",
    "ac_output_watts",
    "dc_output_watts",
    "usb_output_watts",
    "remaining_time",
    "temperature",
)


def bucket_start(timestamp_ms: int, bucket_size_ms: int) -> int:
    return (timestamp_ms // bucket_size_ms) * bucket_size_ms


def _mean(values: Sequence[Optional[float]]) -> Optional[float]:
    present = [v for v in values if v is not None]
    if not present:
        return None
    return sum(present) / len(present)


def aggregate_readings(readings: Sequence[Reading], granularity: str) -> List[Reading]:
    """
    Bucket readings per device at the given granularity.

    ``raw`` returns the readings sorted by timestamp. Any other granularity
    returns one AggregatedBucket per (device, bucket start), sorted by bucket
    start ascending.
    """
    if granularity not in BUCKET_SIZES:
        raise ValidationError(f"Unsupported aggregation: {granularity}")

    ordered = sorted(readings, key=lambda r: r.recorded_at)
    size = BUCKET_SIZES[granularity]
    if size is None:
        return ordered

    groups: Dict[Tuple[int, int], List[Reading]] = defaultdict(list)
    for reading in ordered:
        groups[(bucket_start(reading.recorded_at, size), reading.device_id)].append(reading)

    buckets: List[Reading] = []
    for (start, device_id), items in sorted(groups.items()):
        last = items[-1]
        averaged = {field: _mean([getattr(r, field) for r in items]) for field in NUMERIC_FIELDS}
        buckets.append(AggregatedBucket(
            device_id=device_id,
            recorded_at=start,
            status=last.status,
            charging_type=last.charging_type,
            device_name=last.device_name,
            device_serial=last.device_serial,
            reading_count=len(items),
            **averaged,
        ))
    return buckets


def _time_span(start_ms: int, end_ms: int) -> str:
    hours = round((end_ms - start_ms) / HOUR_MS)
    if hours >= 24:
        return f"{round(hours / 24)} days"
    return f"{hours} hours"


def compute_summary(readings: Sequence[Reading], start_ms: int, end_ms: int) -> Optional[HistorySummary]:
    """Summary over the result set; None means "no data", never "all zero"."""
    if not readings:
        return None

    battery = [r.battery_level for r in readings if r.battery_level is not None]
    output = [r.output_watts for r in readings if r.output_watts is not None]
    temperature = [r.temperature for r in readings if r.temperature is not None]

    def avg(values: List[float]) -> float:
        return round(sum(values) / len(values), 2) if values else 0

    return HistorySummary(
        total_readings=len(readings),
        avg_battery_level=avg(battery),
        avg_power_output=avg(output),
        avg_temperature=avg(temperature),
        peak_power_output=max(output) if output else 0,
        lowest_battery_level=min(battery) if battery else 0,
        highest_temperature=max(temperature) if temperature else 0,
        time_span=_time_span(start_ms, end_ms),
        start_time=start_ms,
        end_time=end_ms,
    )


def parse_timestamp(value: str) -> int:
    """Epoch milliseconds from either a millisecond number or an ISO 8601 string."""
    value = value.strip()
    if value.lstrip("-").isdigit():
        return int(value)
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise ValidationError(f"Invalid timestamp: {value}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)


def resolve_time_range(
    time_range: Optional[str],
    start_date: Optional[str],
    end_date: Optional[str],
    now_ms: int,
) -> Tuple[int, int]:
    if start_date and end_date:
        start_ms, end_ms = parse_timestamp(start_date), parse_timestamp(end_date)
    elif start_date or end_date:
        raise ValidationError("startDate and endDate must be given together")
    else:
        time_range = time_range or DEFAULT_TIME_RANGE
        if time_range not in TIME_RANGES:
            raise ValidationError(f"Unsupported time range: {time_range}")
        start_ms, end_ms = now_ms - TIME_RANGES[time_range], now_ms

    if start_ms > end_ms:
        raise ValidationError("startDate must not be after endDate")
    return start_ms, end_ms


def history(
    store: ReadingStore,
    user_id: int,
    start_ms: int,
    end_ms: int,
    granularity: str = "raw",
    device_id: Optional[int] = None,
    limit: int = DEFAULT_LIMIT,
    offset: int = 0,
) -> Dict[str, object]:
    """
    Readings (raw or bucketed) and their summary for one owned device or all of them.

    Pages run backwards from the newest row: ``offset`` skips that many of the
    most recent rows and ``limit`` keeps the next most recent ones, still in
    ascending order. ``pagination.nextOffset`` fetches the older page and is
    None once the oldest row has been returned.
    """
    if granularity not in BUCKET_SIZES:
        raise ValidationError(f"Unsupported aggregation: {granularity}")
    if not 1 <= limit <= MAX_LIMIT:
        raise ValidationError(f"limit must be between 1 and {MAX_LIMIT}")
    if offset < 0:
        raise ValidationError("offset must not be negative")

    owned = store.list_devices_for_user(user_id)
    if device_id is None:
        device_ids = [d.id for d in owned]
    elif any(d.id == device_id for d in owned):
        device_ids = [device_id]
    else:
        raise AuthorizationError(f"Device {device_id} is not owned by user {user_id}")

    readings = store.query_readings(device_ids, start_ms, end_ms)
    rows = aggregate_readings(readings, granularity)
    page_end = max(len(rows) - offset, 0)
    page_start = max(page_end - limit, 0)
    result = rows[page_start:page_end]
    has_more = page_start > 0
    summary = compute_summary(result, start_ms, end_ms)

    logger.debug(
        "History for user=%s devices=%s: %d raw, %d returned from offset %d (%s)",
        user_id,
        device_ids,
        len(readings),
        len(result),
        offset,
        granularity,
    )
    return {
        "readings": result,
        "summary": summary,
        "pagination": {
            "hasMore": has_more,
            "nextOffset": offset + limit if has_more else None,
            "total": len(rows),
        },
    }
