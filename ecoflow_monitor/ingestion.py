"""
Ingestion: authorize the caller, fetch a quota snapshot, persist one reading.

Every trigger source (foreground scheduler, background fallback, server
backup batch, manual calls) ends up here. Calls are not de-duplicated: two
near-simultaneous calls for the same device write two rows.
"""

import logging
import time
from typing import Any, Callable, Dict, List, Mapping, Optional

from .ecoflow_api import EcoFlowAPI
from .errors import AuthorizationError, MonitorError, is_retryable
from .models import Reading
from .quota import transform_quota_to_reading
from .storage import ReadingStore


logger = logging.getLogger("ecoflow-monitor.ingestion")


class IngestionService:
    def __init__(
        self,
        store: ReadingStore,
        api: EcoFlowAPI,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.api = api
        self.clock = clock

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    def ingest(
        self,
        caller_id: int,
        device_id: int,
        quota: Optional[Mapping[str, Any]] = None,
    ) -> Reading:
        """
        Collect and store one reading for ``device_id`` on behalf of ``caller_id``.

        Raises AuthorizationError when the caller does not own the device, and
        lets VendorTransportError / VendorAPIError through untouched. Nothing
        is written unless the whole fetch + transform succeeded.
        """
        device = self.store.get_device(device_id)
        if device is None or device.owner_id != caller_id:
            logger.warning("User %s may not collect for device %s", caller_id, device_id)
            raise AuthorizationError(f"Device {device_id} is not owned by user {caller_id}")

        if quota is None:
            quota = self.api.get_device_quota(device.serial)

        reading = transform_quota_to_reading(quota, device.id, recorded_at=self._now_ms())
        saved = self.store.insert_reading(reading)
        logger.info(
            "Stored reading for device=%s, soc=%s%%, out=%sW, status=%s",
            device.serial,
            saved.battery_level,
            saved.output_watts,
            saved.status.value if saved.status else None,
        )
        return saved

    def collect_for_user(self, user_id: int, force: bool = False) -> Dict[str, Any]:
        """
        Collect one reading for every active device of ``user_id``.

        Skips the whole run when the newest stored reading is younger than the
        user's collection interval, unless ``force`` is set. Per-device
        failures are counted as skipped; if nothing could be imported and at
        least one failure is retryable (unexpected errors count as retryable),
        that failure is raised so the caller
        answers with a server-class status.
        """
        if not force:
            interval_ms = self.store.get_collection_interval_minutes(user_id) * 60 * 1000
            last = self.store.last_recorded_at_for_user(user_id)
            if last is not None:
                elapsed = self._now_ms() - last
                if elapsed < interval_ms:
                    logger.debug("Skipping collection for user %s: within interval", user_id)
                    return {
                        "imported": 0,
                        "skipped": 0,
                        "errors": [],
                        "next_collection_in": -(-(interval_ms - elapsed) // 1000),
                    }

        devices = [d for d in self.store.list_devices_for_user(user_id) if d.is_active]
        imported = 0
        errors: List[Dict[str, Any]] = []
        retryable: List[Exception] = []

        for device in devices:
            try:
                self.ingest(user_id, device.id)
                imported += 1
            except MonitorError as exc:
                logger.warning("Collection failed for device %s: %s", device.serial, exc)
                errors.append({"device_sn": device.serial, "error": str(exc)})
                if is_retryable(exc):
                    retryable.append(exc)
            except Exception as exc:
                # Storage and other unexpected failures are server-side faults
                logger.exception("Collection failed for device %s: %s", device.serial, exc)
                errors.append({"device_sn": device.serial, "error": str(exc)})
                retryable.append(exc)

        if imported == 0 and retryable:
            raise retryable[0]

        logger.info(
            "Collection for user %s complete: %d imported, %d skipped",
            user_id,
            imported,
            len(errors),
        )
        return {"imported": imported, "skipped": len(errors), "errors": errors}
