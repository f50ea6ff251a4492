"""
Quota snapshot -> Reading transformation.

EcoFlow models report the same quantity under different dotted keys
(``pd.soc`` on one firmware, ``bms_bmsStatus.soc`` on another). Each
canonical field is therefore resolved through an ordered chain of accessors;
the first accessor that yields a value wins. The chains live in
``FIELD_CHAINS`` so their priority order can be inspected and tested on its
own.
"""

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from .models import ChargingType, Reading, ReadingStatus


Accessor = Callable[[Mapping[str, Any]], Optional[float]]

# Some fields use 65535-style large numbers as "not available"
SENTINEL_LIMIT = 100_000_000

# Thresholds (W / %) used to derive the reading status
ACTIVE_WATTS = 10
FULL_PERCENT = 95
LOW_PERCENT = 10

CHARGING_TYPES = {
    0: ChargingType.NONE,
    1: ChargingType.ADAPTER,
    2: ChargingType.SOLAR,
    3: ChargingType.AC,
    4: ChargingType.GAS,
    5: ChargingType.WIND,
}


def quota_value(quota: Mapping[str, Any], key: str) -> Optional[float]:
    """
    Read one numeric quota value.

    Accepts plain numbers, numeric strings and ``{"val": v, "scale": s}``
    objects, where the value is ``v / 10**s``. Returns None when the key is
    absent, non-numeric or a "not available" sentinel.
    """
    raw = quota.get(key)
    scale = 0
    if isinstance(raw, dict):
        try:
            scale = int(float(raw.get("scale") or 0))
        except (TypeError, ValueError):
            scale = 0
        raw = raw.get("val")

    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, str):
        try:
            raw = float(raw)
        except ValueError:
            return None
    if not isinstance(raw, (int, float)):
        return None
    if raw > SENTINEL_LIMIT:
        return None
    if scale:
        return raw / 10 ** scale
    return raw


def key(name: str) -> Accessor:
    def accessor(quota: Mapping[str, Any]) -> Optional[float]:
        return quota_value(quota, name)

    accessor.source = name
    return accessor


def total_of(*names: str) -> Accessor:
    """Sum of the keys that are present; None when none of them is."""

    def accessor(quota: Mapping[str, Any]) -> Optional[float]:
        values = [v for v in (quota_value(quota, n) for n in names) if v is not None]
        return sum(values) if values else None

    accessor.source = "+".join(names)
    return accessor


@dataclass(frozen=True)
class FieldChain:
    field: str
    sources: Tuple[Accessor, ...]
    default: Optional[float] = None

    def first_match(self, quota: Mapping[str, Any]) -> Optional[float]:
        for source in self.sources:
            value = source(quota)
            if value is not None:
                return value
        return None

    def resolve(self, quota: Mapping[str, Any]) -> Optional[float]:
        value = self.first_match(quota)
        return self.default if value is None else value


def chain_total(*chains: FieldChain) -> Accessor:
    """Sum of other chains' matches; None when none of them matched."""

    def accessor(quota: Mapping[str, Any]) -> Optional[float]:
        values = [v for v in (c.first_match(quota) for c in chains) if v is not None]
        return sum(values) if values else None

    accessor.source = "+".join(c.field for c in chains)
    return accessor


USB_OUTPUT_KEYS = (
    "pd.usb1Watts", "pd.usb2Watts",
    "pd.qcUsb1Watts", "pd.qcUsb2Watts",
    "pd.typec1Watts", "pd.typec2Watts",
)

BATTERY_LEVEL = FieldChain("battery_level", (
    key("bms_bmsStatus.soc"), key("pd.soc"), key("bmsMaster.soc"), key("ems.lcdShowSoc"),
))
TEMPERATURE = FieldChain("temperature", (
    key("bms_bmsStatus.temp"), key("bmsMaster.temp"),
))
AC_INPUT = FieldChain("ac_input_watts", (key("inv.inputWatts"),), default=0)
DC_INPUT = FieldChain("dc_input_watts", (key("mppt.inWatts"), key("pd.chgSunPower")), default=0)
INPUT = FieldChain("input_watts", (
    key("pd.wattsInSum"), chain_total(AC_INPUT, DC_INPUT),
), default=0)
AC_OUTPUT = FieldChain("ac_output_watts", (key("inv.outputWatts"),), default=0)
DC_OUTPUT = FieldChain("dc_output_watts", (key("pd.carWatts"), key("mppt.carOutWatts")), default=0)
USB_OUTPUT = FieldChain("usb_output_watts", (total_of(*USB_OUTPUT_KEYS),), default=0)
OUTPUT = FieldChain("output_watts", (
    key("pd.wattsOutSum"), key("pd.outputWatts"), key("wattsOutSum"),
    chain_total(AC_OUTPUT, DC_OUTPUT, USB_OUTPUT),
), default=0)

CHARGE_REMAINING = FieldChain("charge_remaining", (
    key("bms_emsStatus.chgRemainTime"), key("ems.chgRemainTime"),
))
DISCHARGE_REMAINING = FieldChain("discharge_remaining", (
    key("bms_emsStatus.dsgRemainTime"), key("ems.dsgRemainTime"),
))
# Already signed by the firmware: positive while charging, negative otherwise
SIGNED_REMAINING = FieldChain("remaining_time", (
    key("pd.remainTime"), key("bms_bmsStatus.remainTime"), key("bmsMaster.remainTime"),
))
CHARGING_TYPE = FieldChain("charging_type", (key("mppt.chgType"), key("pd.chgType")))

FIELD_CHAINS: Dict[str, FieldChain] = {
    chain.field: chain
    for chain in (
        BATTERY_LEVEL, TEMPERATURE,
        AC_INPUT, DC_INPUT, INPUT,
        AC_OUTPUT, DC_OUTPUT, USB_OUTPUT, OUTPUT,
    )
}


def derive_status(
    input_watts: float,
    output_watts: float,
    battery_level: Optional[float],
) -> ReadingStatus:
    if input_watts > ACTIVE_WATTS:
        return ReadingStatus.CHARGING
    if output_watts > ACTIVE_WATTS:
        return ReadingStatus.DISCHARGING
    if battery_level is not None and battery_level > FULL_PERCENT:
        return ReadingStatus.FULL
    if battery_level is not None and battery_level < LOW_PERCENT:
        return ReadingStatus.LOW
    return ReadingStatus.STANDBY


def resolve_remaining_time(quota: Mapping[str, Any], status: ReadingStatus) -> Optional[float]:
    charge = CHARGE_REMAINING.first_match(quota)
    discharge = DISCHARGE_REMAINING.first_match(quota)

    if status == ReadingStatus.CHARGING and charge:
        return charge
    if status == ReadingStatus.DISCHARGING and discharge:
        return -discharge
    return SIGNED_REMAINING.first_match(quota)


def resolve_charging_type(quota: Mapping[str, Any]) -> Optional[ChargingType]:
    code = CHARGING_TYPE.first_match(quota)
    if code is None:
        return None
    return CHARGING_TYPES.get(int(code))


def transform_quota_to_reading(
    quota_map: Mapping[str, Any],
    device_id: int,
    recorded_at: Optional[int] = None,
) -> Reading:
    """Map a quota snapshot onto the canonical reading fields. Never raises on missing keys."""
    values = {name: chain.resolve(quota_map) for name, chain in FIELD_CHAINS.items()}
    status = derive_status(values["input_watts"], values["output_watts"], values["battery_level"])

    return Reading(
        device_id=device_id,
        recorded_at=recorded_at if recorded_at is not None else int(time.time() * 1000),
        charging_type=resolve_charging_type(quota_map),
        remaining_time=resolve_remaining_time(quota_map, status),
        status=status,
        raw_data=dict(quota_map),
        **values,
    )
