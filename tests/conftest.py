"""
Shared fixtures: an in-memory stand-in for ReadingStore plus sample data.
"""

import os

import pytest

from ecoflow_monitor.models import Device, Reading, ReadingStatus

# Required settings, so importing the API module never needs a real .env
os.environ.setdefault("ECOFLOW_ACCESS_KEY", "test_key")
os.environ.setdefault("ECOFLOW_SECRET_KEY", "test_secret")
os.environ.setdefault("PGUSER", "test")
os.environ.setdefault("PGPASSWORD", "test")
os.environ.setdefault("PGDATABASE", "test")


class FakeStore:
    """Implements the ReadingStore methods over plain lists."""

    def __init__(self, devices=None, sessions=None, intervals=None):
        self.devices = {d.id: d for d in (devices or [])}
        self.sessions = dict(sessions or {})
        self.intervals = dict(intervals or {})
        self.readings = []
        self.closed = False

    def ensure_connection(self):
        pass

    def resolve_session(self, token):
        return self.sessions.get(token)

    def get_device(self, device_id):
        return self.devices.get(device_id)

    def list_devices_for_user(self, user_id):
        return [d for d in self.devices.values() if d.owner_id == user_id]

    def list_backup_devices(self):
        return [d for d in self.devices.values() if d.backup_enabled and d.is_active]

    def get_collection_interval_minutes(self, user_id):
        return self.intervals.get(user_id, 5)

    def insert_reading(self, reading):
        saved = reading.model_copy(update={"id": len(self.readings) + 1})
        self.readings.append(saved)
        return saved

    def count_readings(self, device_id=None):
        return len([r for r in self.readings if device_id is None or r.device_id == device_id])

    def _annotate(self, reading):
        device = self.devices[reading.device_id]
        return reading.model_copy(update={"device_name": device.name, "device_serial": device.serial})

    def query_readings(self, device_ids, start_ms, end_ms):
        rows = [
            r for r in self.readings
            if r.device_id in device_ids and start_ms <= r.recorded_at <= end_ms
        ]
        return [self._annotate(r) for r in sorted(rows, key=lambda r: r.recorded_at)]

    def latest_reading(self, device_id):
        rows = [r for r in self.readings if r.device_id == device_id]
        if not rows:
            return None
        return self._annotate(max(rows, key=lambda r: r.recorded_at))

    def last_recorded_at_for_user(self, user_id):
        owned = {d.id for d in self.list_devices_for_user(user_id)}
        stamps = [r.recorded_at for r in self.readings if r.device_id in owned]
        return max(stamps) if stamps else None

    def close(self):
        self.closed = True


def make_reading(device_id=1, recorded_at=0, **fields):
    fields.setdefault("status", ReadingStatus.STANDBY)
    return Reading(device_id=device_id, recorded_at=recorded_at, **fields)


@pytest.fixture
def devices():
    return [
        Device(id=1, serial="R331ZEB4ZEA0001", name="Delta 2", owner_id=10, backup_enabled=True),
        Device(id=2, serial="R331ZEB4ZEA0002", name="River 2", owner_id=10),
        Device(id=3, serial="P231ZEB4ZEA0003", name="Neighbour", owner_id=20, backup_enabled=True),
    ]


@pytest.fixture
def store(devices):
    return FakeStore(devices=devices, sessions={"valid-token": 10, "other-token": 20})


@pytest.fixture
def sample_quota():
    return {
        "pd.soc": 82,
        "pd.wattsInSum": 0,
        "pd.wattsOutSum": 120,
        "inv.outputWatts": 100,
        "pd.carWatts": 12,
        "pd.usb1Watts": 5,
        "pd.typec1Watts": 3,
        "bms_bmsStatus.temp": 27,
        "bms_emsStatus.dsgRemainTime": 300,
        "mppt.chgType": 0,
    }
