"""
EcoFlow Monitor worker

Long-running process next to the API. It always runs the server-side backup
collection. With COLLECTOR_SESSION_TOKEN set it also acts as a client-side
collector for that session: a foreground scheduler on the user's interval
plus the background sync fallback.
"""

import logging
import signal
import sys
import threading

from .background_sync import SYNC_TAG, BackgroundSync
from .backup import ServerBackupScheduler
from .broadcast import EventBroadcaster
from .collection_client import CollectionClient
from .config import Settings, configure_logging, get_settings
from .ecoflow_api import EcoFlowAPI
from .ingestion import IngestionService
from .scheduler import CollectionScheduler
from .storage import ReadingStore, connect_to_database


logger = logging.getLogger("ecoflow-monitor.worker")


def build_backup_scheduler(settings: Settings) -> ServerBackupScheduler:
    store = ReadingStore(connect_to_database(settings), connect=lambda: connect_to_database(settings))
    api = EcoFlowAPI(
        settings.ecoflow_access_key,
        settings.ecoflow_secret_key,
        base_url=settings.ecoflow_api_url,
        timeout=settings.ecoflow_request_timeout,
    )
    return ServerBackupScheduler(store, IngestionService(store, api), settings.backup_interval_seconds)


def build_client_collectors(settings: Settings):
    client = CollectionClient(
        settings.collector_base_url,
        settings.collector_session_token,
        cookie_name=settings.session_cookie_name,
        timeout=settings.ecoflow_request_timeout,
    )
    broadcaster = EventBroadcaster(settings.mqtt_host, settings.mqtt_port, settings.mqtt_events_topic)
    sync = BackgroundSync(
        client,
        settings.sync_queue_path,
        broadcaster=broadcaster,
        periodic_enabled=settings.periodic_sync_enabled,
        base_delay_s=settings.sync_base_delay_seconds,
        max_delay_s=settings.sync_max_delay_seconds,
        max_attempts=settings.sync_max_attempts,
    )
    scheduler = CollectionScheduler(
        client.collect_self,
        interval_minutes=settings.collection_interval_minutes,
        min_manual_spacing_s=settings.min_manual_spacing_seconds,
        on_interval_change=lambda minutes: sync.register_periodic(SYNC_TAG, max(minutes, 1) * 60),
    )
    return scheduler, sync, broadcaster


def main() -> None:
    settings = get_settings()
    configure_logging(settings.log_level)
    logger.info("Starting EcoFlow Monitor worker")

    stop_event = threading.Event()

    def handle_signal(signum, frame):
        logger.info("Received signal %s, shutting down", signum)
        stop_event.set()

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)

    try:
        backup = build_backup_scheduler(settings)
        backup.start()

        scheduler = broadcaster = None
        if settings.collector_session_token:
            scheduler, sync, broadcaster = build_client_collectors(settings)
            broadcaster.connect()
            sync.register_periodic(SYNC_TAG, settings.collection_interval_minutes * 60)
            scheduler.start()
            threading.Thread(
                target=sync.run_forever,
                args=(stop_event,),
                name="background-sync",
                daemon=True,
            ).start()
        else:
            logger.info("COLLECTOR_SESSION_TOKEN not set, client-side collection disabled")

        stop_event.wait()

        if scheduler is not None:
            scheduler.shutdown()
        if broadcaster is not None:
            broadcaster.close()
        backup.stop(timeout=5)
    except Exception as exc:
        logger.exception("Fatal error: %s", exc)
        sys.exit(1)


if __name__ == "__main__":
    main()
