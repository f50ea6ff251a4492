"""
Background sync fallback.

Keeps collection going when no foreground scheduler is running. Sync
registrations are stored in a small JSON queue file so they survive restarts;
``run_due()`` fires every entry whose time has come.

A fired entry POSTs the self-collection endpoint:

* success: one-off entries are removed, periodic entries are rescheduled at
  their minimum interval, and a READING_COLLECTED event is broadcast
* server error (>= 500) or no response: retried with exponential backoff;
  one-off entries give up after ``max_attempts``
* client error (4xx): terminal; logged, one-off entries removed, periodic
  entries keep their normal cadence
"""

import json
import logging
import os
import threading
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .broadcast import EventBroadcaster
from .collection_client import CollectionClient
from .errors import CollectionRequestError


logger = logging.getLogger("ecoflow-monitor.background-sync")

SYNC_TAG = "collect-readings"
ONE_OFF = "one-off"
PERIODIC = "periodic"


@dataclass
class SyncEntry:
    tag: str
    kind: str
    attempts: int = 0
    next_attempt_at: float = 0.0
    min_interval: Optional[float] = None


class BackgroundSync:
    def __init__(
        self,
        client: CollectionClient,
        queue_path: str,
        broadcaster: Optional[EventBroadcaster] = None,
        periodic_enabled: bool = True,
        base_delay_s: float = 30.0,
        max_delay_s: float = 3600.0,
        max_attempts: int = 5,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.client = client
        self.queue_path = Path(queue_path)
        self.broadcaster = broadcaster
        self.periodic_enabled = periodic_enabled
        self.base_delay_s = base_delay_s
        self.max_delay_s = max_delay_s
        self.max_attempts = max_attempts
        self.clock = clock

        self._lock = threading.Lock()
        self._entries: Dict[str, SyncEntry] = self._load()

    # Persistence ----------------------------------------------------
    def _load(self) -> Dict[str, SyncEntry]:
        if not self.queue_path.exists():
            return {}
        try:
            raw = json.loads(self.queue_path.read_text())
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable sync queue %s: %s", self.queue_path, e)
            return {}
        entries = {}
        for item in raw:
            entry = SyncEntry(**item)
            entries[entry.tag] = entry
        logger.info("Loaded %d pending sync registrations", len(entries))
        return entries

    def _save(self) -> None:
        self.queue_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.queue_path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps([asdict(e) for e in self._entries.values()]))
        os.replace(tmp_path, self.queue_path)

    # Registration ---------------------------------------------------
    def register(self, tag: str = SYNC_TAG) -> None:
        """Register a one-off sync that fires as soon as possible."""
        with self._lock:
            self._entries[tag] = SyncEntry(tag=tag, kind=ONE_OFF, next_attempt_at=self.clock())
            self._save()
        logger.info("Registered one-off sync %r", tag)

    def register_periodic(self, tag: str = SYNC_TAG, min_interval_s: float = 300) -> bool:
        if not self.periodic_enabled:
            logger.info("Periodic sync disabled, not registering %r", tag)
            return False
        min_interval_s = max(min_interval_s, 60)
        with self._lock:
            self._entries[tag] = SyncEntry(
                tag=tag,
                kind=PERIODIC,
                next_attempt_at=self.clock() + min_interval_s,
                min_interval=min_interval_s,
            )
            self._save()
        logger.info("Registered periodic sync %r every %ss", tag, min_interval_s)
        return True

    def unregister(self, tag: str = SYNC_TAG) -> None:
        with self._lock:
            if self._entries.pop(tag, None) is not None:
                self._save()

    def pending(self) -> List[SyncEntry]:
        with self._lock:
            return list(self._entries.values())

    def backoff_delay(self, attempts: int) -> float:
        return min(self.base_delay_s * 2 ** attempts, self.max_delay_s)

    # Firing ---------------------------------------------------------
    def run_due(self) -> int:
        """Fire every due entry once. Returns the number of entries fired."""
        now = self.clock()
        with self._lock:
            due = [e for e in self._entries.values() if e.next_attempt_at <= now]

        for entry in due:
            self._fire(entry)
        return len(due)

    def _fire(self, entry: SyncEntry) -> bool:
        logger.info("Background sync %r firing (attempt %d)", entry.tag, entry.attempts + 1)
        try:
            result = self.client.collect_self()
        except CollectionRequestError as e:
            with self._lock:
                if e.retryable:
                    self._schedule_retry(entry, e)
                else:
                    logger.warning("Background sync %r rejected, not retrying: %s", entry.tag, e)
                    self._finish(entry)
                self._save()
            return False

        with self._lock:
            self._finish(entry)
            self._save()

        summary = result.get("summary")
        logger.info("Background sync %r collected readings: %s", entry.tag, summary)
        if self.broadcaster is not None:
            self.broadcaster.publish_reading_collected(summary, int(self.clock() * 1000))
        return True

    def _finish(self, entry: SyncEntry) -> None:
        # Caller holds self._lock
        if entry.kind == ONE_OFF:
            self._entries.pop(entry.tag, None)
            return
        entry.attempts = 0
        entry.next_attempt_at = self.clock() + (entry.min_interval or 0)

    def _schedule_retry(self, entry: SyncEntry, error: CollectionRequestError) -> None:
        # Caller holds self._lock
        delay = self.backoff_delay(entry.attempts)
        entry.attempts += 1
        if entry.kind == ONE_OFF and entry.attempts >= self.max_attempts:
            logger.error(
                "Background sync %r giving up after %d attempts: %s",
                entry.tag,
                entry.attempts,
                error,
            )
            self._entries.pop(entry.tag, None)
            return
        entry.next_attempt_at = self.clock() + delay
        logger.warning("Background sync %r failed (%s), retrying in %.0fs", entry.tag, error, delay)

    def run_forever(self, stop_event: threading.Event, poll_interval_s: float = 5.0) -> None:
        logger.info("Background sync loop started (%s)", self.queue_path)
        while not stop_event.is_set():
            try:
                self.run_due()
            except Exception as e:
                logger.exception("Background sync loop error: %s", e)
            stop_event.wait(poll_interval_s)
