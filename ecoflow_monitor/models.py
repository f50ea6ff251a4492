"""
Data models for devices, readings and history payloads.

Timestamps are epoch milliseconds throughout; storage converts them to and
from ``timestamptz``. API payloads are serialized with camelCase aliases.
"""

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class ReadingStatus(str, Enum):
    CHARGING = "charging"
    DISCHARGING = "discharging"
    FULL = "full"
    LOW = "low"
    STANDBY = "standby"


class ChargingType(str, Enum):
    NONE = "none"
    ADAPTER = "adapter"
    SOLAR = "solar"
    AC = "ac"
    GAS = "gas"
    WIND = "wind"


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Device(ApiModel):
    id: int
    serial: str
    name: Optional[str] = None
    device_type: Optional[str] = None
    owner_id: int
    is_active: bool = True
    backup_enabled: bool = False

    @property
    def display_name(self) -> str:
        return self.name or "EcoFlow Device"


class Reading(ApiModel):
    id: Optional[int] = None
    device_id: int
    recorded_at: int
    battery_level: Optional[float] = None
    input_watts: Optional[float] = None
    ac_input_watts: Optional[float] = None
    dc_input_watts: Optional[float] = None
    charging_type: Optional[ChargingType] = None
    output_watts: Optional[float] = None
    ac_output_watts: Optional[float] = None
    dc_output_watts: Optional[float] = None
    usb_output_watts: Optional[float] = None
    remaining_time: Optional[float] = None
    temperature: Optional[float] = None
    status: Optional[ReadingStatus] = None
    raw_data: Optional[Dict[str, Any]] = None

    # Annotations added on the read path
    device_name: Optional[str] = None
    device_serial: Optional[str] = None


class AggregatedBucket(Reading):
    """One bucket of readings for a device; ``recorded_at`` is the bucket start."""

    reading_count: int = 0

    @property
    def bucket_start(self) -> int:
        return self.recorded_at


class HistorySummary(ApiModel):
    total_readings: int
    avg_battery_level: float
    avg_power_output: float
    avg_temperature: float
    peak_power_output: float
    lowest_battery_level: float
    highest_temperature: float
    time_span: str
    start_time: int
    end_time: int


class CollectionStatus(ApiModel):
    is_active: bool
    last_collection: Optional[int] = None
    next_scheduled: Optional[int] = None
    success_count: int = 0
    error_count: int = 0
    interval_minutes: float
