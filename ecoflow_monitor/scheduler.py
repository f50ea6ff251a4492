"""
Foreground collection scheduler.

The interval timer lives in its own thread (TimerWorker) and only talks to
the scheduler through queues:

    -> START(interval_ms), STOP, UPDATE_INTERVAL(interval_ms)
    <- TICK, HEARTBEAT

START emits one TICK immediately, then one per interval. While the timer
runs, a HEARTBEAT goes out every ``heartbeat_ms`` so the owner can notice a
stalled worker and replace it on the next start().

Each TICK runs the injected ``collect`` callable in a background thread,
behind a non-blocking lock. A tick that arrives while a collection is in
flight is dropped, never queued.
"""

import logging
import math
import queue
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from .errors import ValidationError
from .models import CollectionStatus


logger = logging.getLogger("ecoflow-monitor.scheduler")

HEARTBEAT_INTERVAL_MS = 30 * 1000


class MessageType(str, Enum):
    START = "START"
    STOP = "STOP"
    UPDATE_INTERVAL = "UPDATE_INTERVAL"
    SHUTDOWN = "SHUTDOWN"
    TICK = "TICK"
    HEARTBEAT = "HEARTBEAT"


@dataclass
class Message:
    type: MessageType
    interval_ms: Optional[int] = None
    timestamp: Optional[int] = None


class TimerWorker(threading.Thread):
    """Interval timer thread. Never calls back into the scheduler directly."""

    def __init__(
        self,
        outbox: "queue.Queue[Message]",
        heartbeat_ms: int = HEARTBEAT_INTERVAL_MS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(name="collection-timer", daemon=True)
        self.inbox: "queue.Queue[Message]" = queue.Queue()
        self.outbox = outbox
        self.heartbeat_ms = heartbeat_ms
        self.clock = clock

    def post(self, message: Message) -> None:
        self.inbox.put(message)

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    def _emit(self, kind: MessageType, now: int) -> None:
        self.outbox.put(Message(kind, timestamp=now))

    def run(self) -> None:
        interval: Optional[int] = None
        next_tick: Optional[int] = None
        next_heartbeat: Optional[int] = None

        while True:
            deadlines = [d for d in (next_tick, next_heartbeat) if d is not None]
            timeout = None
            if deadlines:
                timeout = max(0, min(deadlines) - self._now_ms()) / 1000.0

            try:
                message = self.inbox.get(timeout=timeout)
            except queue.Empty:
                message = None

            now = self._now_ms()

            if message is not None:
                if message.type == MessageType.SHUTDOWN:
                    return
                if message.type == MessageType.START:
                    if message.interval_ms and message.interval_ms > 0:
                        interval = message.interval_ms
                    interval = interval or 5 * 60 * 1000
                    self._emit(MessageType.TICK, now)
                    next_tick = now + interval
                    next_heartbeat = now + self.heartbeat_ms
                elif message.type == MessageType.STOP:
                    next_tick = None
                    next_heartbeat = None
                elif message.type == MessageType.UPDATE_INTERVAL:
                    if message.interval_ms and message.interval_ms > 0:
                        interval = message.interval_ms
                    # Reschedule only if running
                    if next_tick is not None:
                        next_tick = now + interval
                continue

            if next_tick is not None and now >= next_tick:
                self._emit(MessageType.TICK, now)
                next_tick = now + interval
            if next_heartbeat is not None and now >= next_heartbeat:
                self._emit(MessageType.HEARTBEAT, now)
                next_heartbeat = now + self.heartbeat_ms


def check_interval(interval_ms: int) -> int:
    if interval_ms <= 0:
        raise ValidationError(f"Collection interval must be positive, got {interval_ms} ms")
    return interval_ms


class CollectionScheduler:
    """
    Owns a TimerWorker and turns its ticks into guarded collection calls.

    ``collect`` is any zero-argument callable; it raising counts as an error.
    ``on_interval_change`` is called with the new interval in minutes so the
    background fallback can be re-registered at the same cadence.
    """

    def __init__(
        self,
        collect: Callable[[], Any],
        interval_minutes: float = 5,
        min_manual_spacing_s: int = 60,
        heartbeat_ms: int = HEARTBEAT_INTERVAL_MS,
        clock: Callable[[], float] = time.time,
        on_success: Optional[Callable[[Any], None]] = None,
        on_interval_change: Optional[Callable[[float], None]] = None,
    ) -> None:
        self._collect = collect
        self.interval_ms = check_interval(int(interval_minutes * 60 * 1000))
        self.min_manual_spacing_s = min_manual_spacing_s
        self.heartbeat_ms = heartbeat_ms
        self.clock = clock
        self.on_success = on_success
        self.on_interval_change = on_interval_change

        self.is_active = False
        self.last_collection: Optional[int] = None
        self.success_count = 0
        self.error_count = 0
        self.last_tick: Optional[int] = None
        self.last_heartbeat: Optional[int] = None

        self._guard = threading.Lock()
        self._state_lock = threading.Lock()
        self._outbox: "queue.Queue[Message]" = queue.Queue()
        self._worker: Optional[TimerWorker] = None
        self._dispatcher: Optional[threading.Thread] = None
        self._inflight_thread: Optional[threading.Thread] = None

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    # Worker lifecycle -----------------------------------------------
    def _ensure_worker(self) -> TimerWorker:
        if self._worker is None or not self._worker.is_alive():
            self._worker = TimerWorker(self._outbox, self.heartbeat_ms, self.clock)
            self._worker.start()
            logger.debug("Started timer worker")
        if self._dispatcher is None or not self._dispatcher.is_alive():
            self._dispatcher = threading.Thread(
                target=self._pump, name="collection-dispatch", daemon=True
            )
            self._dispatcher.start()
        return self._worker

    def _retire_worker(self) -> None:
        if self._worker is not None:
            self._worker.post(Message(MessageType.SHUTDOWN))
            self._worker = None

    def _pump(self) -> None:
        while True:
            message = self._outbox.get()
            if message is None:
                return
            self.handle_message(message)

    def handle_message(self, message: Message) -> None:
        if message.type == MessageType.TICK:
            self._on_tick(message.timestamp)
        elif message.type == MessageType.HEARTBEAT:
            self.last_heartbeat = message.timestamp

    def is_worker_stalled(self) -> bool:
        """True when the timer should be running but has gone quiet."""
        if not self.is_active:
            return False
        if self._worker is None or not self._worker.is_alive():
            return True
        last_sign_of_life = max(self.last_heartbeat or 0, self.last_tick or 0)
        return self._now_ms() - last_sign_of_life > 2 * self.heartbeat_ms

    # Public API -----------------------------------------------------
    def start(self, interval_ms: Optional[int] = None) -> bool:
        """
        Start periodic collection. Returns False when nothing had to change.

        Starting again at the current interval is a no-op; starting at a new
        interval while active only updates the interval, keeping counters.
        """
        interval_ms = self.interval_ms if interval_ms is None else check_interval(interval_ms)

        if self.is_active and not self.is_worker_stalled():
            if interval_ms == self.interval_ms:
                logger.debug("Collection already active, skipping duplicate start")
                return False
            return self.update_interval(interval_ms)

        if self.is_active:
            logger.warning("Timer worker stalled, replacing it")
            self._retire_worker()

        self.interval_ms = interval_ms
        self.is_active = True
        self.last_heartbeat = self._now_ms()
        logger.info("Starting reading collection every %.1f min", interval_ms / 60000)
        self._ensure_worker().post(Message(MessageType.START, interval_ms=interval_ms))
        return True

    def stop(self) -> None:
        """Stop ticking. A collection already in flight is left to finish."""
        logger.info("Stopping reading collection")
        if self._worker is not None:
            self._worker.post(Message(MessageType.STOP))
        self.is_active = False

    def shutdown(self) -> None:
        self.stop()
        self._retire_worker()
        self._outbox.put(None)

    def update_interval(self, interval_ms: int) -> bool:
        check_interval(interval_ms)
        if interval_ms == self.interval_ms:
            return False
        logger.info("Updating collection interval to %.1f min", interval_ms / 60000)
        self.interval_ms = interval_ms
        if self._worker is not None:
            self._worker.post(Message(MessageType.UPDATE_INTERVAL, interval_ms=interval_ms))
        if self.on_interval_change is not None:
            self.on_interval_change(interval_ms / 60000)
        return True

    def collect_now(self) -> Dict[str, Any]:
        """Manual collection, rate limited to one per ``min_manual_spacing_s``."""
        if self.last_collection is not None:
            elapsed_s = (self._now_ms() - self.last_collection) / 1000
            if elapsed_s < self.min_manual_spacing_s:
                return {
                    "success": False,
                    "error": "too_soon",
                    "retry_in_seconds": math.ceil(self.min_manual_spacing_s - elapsed_s),
                }

        if not self._guard.acquire(blocking=False):
            return {"success": False, "error": "in_progress"}
        return self._run_guarded()

    def status(self) -> CollectionStatus:
        next_scheduled = None
        if self.is_active and self.last_tick is not None:
            next_scheduled = self.last_tick + self.interval_ms
        with self._state_lock:
            return CollectionStatus(
                is_active=self.is_active,
                last_collection=self.last_collection,
                next_scheduled=next_scheduled,
                success_count=self.success_count,
                error_count=self.error_count,
                interval_minutes=self.interval_ms / 60000,
            )

    # Collection -----------------------------------------------------
    def _on_tick(self, timestamp: Optional[int] = None) -> bool:
        if not self.is_active:
            return False
        self.last_tick = timestamp if timestamp is not None else self._now_ms()

        if not self._guard.acquire(blocking=False):
            logger.debug("Collection still in flight, dropping tick")
            return False

        self._inflight_thread = threading.Thread(
            target=self._run_guarded, name="collection-run", daemon=True
        )
        self._inflight_thread.start()
        return True

    def _run_guarded(self) -> Dict[str, Any]:
        # Caller holds self._guard
        try:
            result = self._collect()
        except Exception as e:
            logger.error("Reading collection failed: %s", e)
            with self._state_lock:
                self.error_count += 1
            return {"success": False, "error": str(e)}
        finally:
            self._guard.release()

        with self._state_lock:
            self.success_count += 1
            self.last_collection = self._now_ms()
        logger.info("Reading collection successful")

        if self.on_success is not None:
            self.on_success(result)
        return {"success": True, "data": result}
