"""
Server-side backup collection.

Runs independently of any client: once per ``interval_s`` (daily by default)
every active device flagged for backup gets one reading through the normal
ingestion path, collected as the device's owner.
"""

import logging
import threading
from typing import Any, Dict, List, Optional

from .ingestion import IngestionService
from .storage import ReadingStore


logger = logging.getLogger("ecoflow-monitor.backup")

DEFAULT_BACKUP_INTERVAL_S = 24 * 60 * 60


class ServerBackupScheduler:
    def __init__(
        self,
        store: ReadingStore,
        ingestion: IngestionService,
        interval_s: int = DEFAULT_BACKUP_INTERVAL_S,
    ) -> None:
        self.store = store
        self.ingestion = ingestion
        self.interval_s = interval_s
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_once(self) -> Dict[str, Any]:
        """
        Collect one reading per backup device.

        Returns ``{"total", "success", "errors", "results"}``. Never raises:
        a failing device is recorded and the batch moves on.
        """
        try:
            self.store.ensure_connection()
            devices = self.store.list_backup_devices()
        except Exception as e:
            logger.exception("Could not list backup devices: %s", e)
            return {"total": 0, "success": 0, "errors": 1, "results": [{"error": str(e)}]}

        logger.info("Starting backup collection for %d devices", len(devices))
        success = 0
        results: List[Dict[str, Any]] = []

        for device in devices:
            try:
                reading = self.ingestion.ingest(device.owner_id, device.id)
            except Exception as e:
                logger.error("Backup collection failed for %s: %s", device.serial, e)
                results.append({"deviceSn": device.serial, "status": "error", "error": str(e)})
                continue
            success += 1
            results.append({
                "deviceSn": device.serial,
                "status": "ok",
                "readingId": reading.id,
                "batteryLevel": reading.battery_level,
            })

        errors = len(devices) - success
        logger.info(
            "Backup collection complete: %d/%d succeeded, %d errors",
            success,
            len(devices),
            errors,
        )
        return {"total": len(devices), "success": success, "errors": errors, "results": results}

    def _loop(self) -> None:
        while not self._stop.is_set():
            self.run_once()
            self._stop.wait(self.interval_s)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="backup-collection", daemon=True)
        self._thread.start()
        logger.info("Backup collection scheduled every %ss", self.interval_s)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
