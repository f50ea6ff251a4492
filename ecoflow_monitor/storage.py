"""
Postgres access for devices, sessions and readings.

Readings are append-only; this module exposes inserts and range reads only.
Timestamps cross this boundary as epoch milliseconds.
"""

import json
import logging
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

import psycopg
from psycopg.rows import dict_row

from .config import Settings
from .models import Device, Reading


logger = logging.getLogger("ecoflow-monitor.storage")

DEFAULT_COLLECTION_INTERVAL_MINUTES = 5

DEVICE_COLUMNS = """
    id,
    device_sn AS serial,
    device_name AS name,
    device_type,
    user_id AS owner_id,
    is_active,
    backup_enabled
"""

READING_COLUMNS = """
    dr.id,
    dr.device_id,
    (EXTRACT(EPOCH FROM dr.recorded_at) * 1000)::bigint AS recorded_at,
    dr.battery_level,
    dr.input_watts,
    dr.ac_input_watts,
    dr.dc_input_watts,
    dr.charging_type,
    dr.output_watts,
    dr.ac_output_watts,
    dr.dc_output_watts,
    dr.usb_output_watts,
    dr.remaining_time,
    dr.temperature,
    dr.status,
    d.device_name,
    d.device_sn AS device_serial
"""


def connect_to_database(cfg: Settings) -> psycopg.Connection:
    logger.info(
        "Connecting to Postgres at %s:%s db=%s",
        cfg.pghost,
        cfg.pgport,
        cfg.pgdatabase,
    )
    conn = psycopg.connect(
        host=cfg.pghost,
        port=cfg.pgport,
        user=cfg.pguser,
        password=cfg.pgpassword,
        dbname=cfg.pgdatabase,
        autocommit=True,
        row_factory=dict_row,
    )
    return conn


class ReadingStore:
    """Storage contract used by ingestion, aggregation and the schedulers."""

    def __init__(
        self,
        conn: psycopg.Connection,
        connect: Optional[Callable[[], psycopg.Connection]] = None,
    ) -> None:
        self.conn = conn
        self.connect = connect

    def ensure_connection(self) -> None:
        """Check the connection is alive and reconnect through ``connect`` if not."""
        if self.connect is None:
            return
        if self.conn is None or self.conn.closed:
            logger.warning("Database connection is closed, reconnecting...")
            self.conn = self.connect()
            return

        try:
            with self.conn.cursor() as cur:
                cur.execute("SELECT 1")
        except psycopg.Error as exc:
            logger.warning("Database connection test failed: %s, reconnecting...", exc)
            try:
                self.conn.close()
            except psycopg.Error:
                logger.debug("Closing the broken connection failed", exc_info=True)
            self.conn = self.connect()

    # Sessions & devices ---------------------------------------------
    def resolve_session(self, token: str) -> Optional[int]:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                SELECT user_id FROM user_sessions
                WHERE token = %(token)s AND expires_at > NOW()
                """,
                {"token": token},
            )
            row = cur.fetchone()
        return row["user_id"] if row else None

    def get_device(self, device_id: int) -> Optional[Device]:
        with self.conn.cursor() as cur:
            cur.execute(
                f"SELECT {DEVICE_COLUMNS} FROM devices WHERE id = %(device_id)s",
                {"device_id": device_id},
            )
            row = cur.fetchone()
        return Device(**row) if row else None

    def list_devices_for_user(self, user_id: int) -> List[Device]:
        with self.conn.cursor() as cur:
            cur.execute(
                f"SELECT {DEVICE_COLUMNS} FROM devices WHERE user_id = %(user_id)s ORDER BY id",
                {"user_id": user_id},
            )
            return [Device(**row) for row in cur.fetchall()]

    def list_backup_devices(self) -> List[Device]:
        with self.conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {DEVICE_COLUMNS} FROM devices
                WHERE backup_enabled = true AND is_active = true
                ORDER BY id
                """
            )
            return [Device(**row) for row in cur.fetchall()]

    def get_collection_interval_minutes(self, user_id: int) -> int:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                SELECT collection_interval_minutes FROM collection_settings
                WHERE user_id = %(user_id)s
                """,
                {"user_id": user_id},
            )
            row = cur.fetchone()
        if not row or row["collection_interval_minutes"] is None:
            return DEFAULT_COLLECTION_INTERVAL_MINUTES
        return row["collection_interval_minutes"]

    # Readings -------------------------------------------------------
    def insert_reading(self, reading: Reading) -> Reading:
        data = reading.model_dump(exclude={"id", "device_name", "device_serial"})
        data["status"] = reading.status.value if reading.status else None
        data["charging_type"] = reading.charging_type.value if reading.charging_type else None
        data["raw_data"] = json.dumps(reading.raw_data or {})

        with self.conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO device_readings (
                    device_id,
                    recorded_at,
                    battery_level,
                    input_watts,
                    ac_input_watts,
                    dc_input_watts,
                    charging_type,
                    output_watts,
                    ac_output_watts,
                    dc_output_watts,
                    usb_output_watts,
                    remaining_time,
                    temperature,
                    status,
                    raw_data
                )
                VALUES (
                    %(device_id)s,
                    to_timestamp(%(recorded_at)s / 1000.0),
                    %(battery_level)s,
                    %(input_watts)s,
                    %(ac_input_watts)s,
                    %(dc_input_watts)s,
                    %(charging_type)s,
                    %(output_watts)s,
                    %(ac_output_watts)s,
                    %(dc_output_watts)s,
                    %(usb_output_watts)s,
                    %(remaining_time)s,
                    %(temperature)s,
                    %(status)s,
                    %(raw_data)s::jsonb
                )
                RETURNING id
                """,
                data,
            )
            row = cur.fetchone()

        logger.debug("Inserted reading id=%s for device=%s", row["id"], reading.device_id)
        return reading.model_copy(update={"id": row["id"]})

    def count_readings(self, device_id: Optional[int] = None) -> int:
        with self.conn.cursor() as cur:
            if device_id is None:
                cur.execute("SELECT COUNT(*) AS n FROM device_readings")
            else:
                cur.execute(
                    "SELECT COUNT(*) AS n FROM device_readings WHERE device_id = %(device_id)s",
                    {"device_id": device_id},
                )
            return cur.fetchone()["n"]

    def query_readings(
        self,
        device_ids: Sequence[int],
        start_ms: int,
        end_ms: int,
    ) -> List[Reading]:
        """Readings of the given devices within [start, end], oldest first."""
        if not device_ids:
            return []
        with self.conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {READING_COLUMNS}
                FROM device_readings dr
                JOIN devices d ON d.id = dr.device_id
                WHERE dr.device_id = ANY(%(device_ids)s)
                  AND dr.recorded_at >= to_timestamp(%(start_ms)s / 1000.0)
                  AND dr.recorded_at <= to_timestamp(%(end_ms)s / 1000.0)
                ORDER BY dr.recorded_at ASC, dr.id ASC
                """,
                {"device_ids": list(device_ids), "start_ms": start_ms, "end_ms": end_ms},
            )
            return [Reading(**row) for row in cur.fetchall()]

    def latest_reading(self, device_id: int) -> Optional[Reading]:
        with self.conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {READING_COLUMNS}
                FROM device_readings dr
                JOIN devices d ON d.id = dr.device_id
                WHERE dr.device_id = %(device_id)s
                ORDER BY dr.recorded_at DESC, dr.id DESC
                LIMIT 1
                """,
                {"device_id": device_id},
            )
            row = cur.fetchone()
        return Reading(**row) if row else None

    def last_recorded_at_for_user(self, user_id: int) -> Optional[int]:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                SELECT (EXTRACT(EPOCH FROM MAX(dr.recorded_at)) * 1000)::bigint AS last_recorded
                FROM device_readings dr
                JOIN devices d ON d.id = dr.device_id
                WHERE d.user_id = %(user_id)s
                """,
                {"user_id": user_id},
            )
            row = cur.fetchone()
        return row["last_recorded"] if row else None

    def close(self) -> None:
        self.conn.close()


def open_store(cfg: Settings) -> Iterator[ReadingStore]:
    """Yield a store on a fresh connection and close it afterwards."""
    store = ReadingStore(connect_to_database(cfg))
    try:
        yield store
    finally:
        store.close()


def reading_row(reading: Reading) -> Dict[str, Any]:
    """JSON-ready projection used by the HTTP surfaces."""
    return reading.model_dump(by_alias=True, mode="json", exclude={"raw_data"})
