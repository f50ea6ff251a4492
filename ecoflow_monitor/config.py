"""
Configuration and logging setup shared by the API service and the worker.

Environment variables (set via docker compose or a local .env file):

    ECOFLOW_ACCESS_KEY - EcoFlow Developer API access key
    ECOFLOW_SECRET_KEY - EcoFlow Developer API secret key
    ECOFLOW_API_URL - API endpoint (EU by default, https://api.ecoflow.com for US)

    PGHOST
    PGPORT
    PGUSER
    PGPASSWORD
    PGDATABASE

    CRON_SECRET - bearer token for the scheduled collection endpoint
    MQTT_HOST, MQTT_PORT, MQTT_EVENTS_TOPIC - completion broadcast
    COLLECTOR_BASE_URL, COLLECTOR_SESSION_TOKEN - client side collectors
"""

import logging
import sys
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings


LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"


class Settings(BaseSettings):
    # EcoFlow
    ecoflow_access_key: str
    ecoflow_secret_key: str
    ecoflow_api_url: str = "https://api-e.ecoflow.com"
    ecoflow_request_timeout: float = 30.0

    # Database
    pghost: str = "postgres"
    pgport: int = 5432
    pguser: str
    pgpassword: str
    pgdatabase: str

    # API security
    cron_secret: Optional[str] = None
    session_cookie_name: str = "ecoflow_session"

    # Server
    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "INFO"

    # MQTT completion broadcast
    mqtt_host: str = "mosquitto"
    mqtt_port: int = 1883
    mqtt_events_topic: str = "ecoflow/events"

    # Client side collectors
    collector_base_url: str = "http://localhost:8080"
    collector_session_token: Optional[str] = None
    collection_interval_minutes: int = 5
    min_manual_spacing_seconds: int = 60

    # Background sync fallback
    sync_queue_path: str = "/var/lib/ecoflow-monitor/sync-queue.json"
    periodic_sync_enabled: bool = True
    sync_base_delay_seconds: float = 30.0
    sync_max_delay_seconds: float = 3600.0
    sync_max_attempts: int = 5

    # Server side backup collection
    backup_interval_seconds: int = 86400

    class Config:
        env_file = ".env"
        case_sensitive = False


@lru_cache
def get_settings() -> Settings:
    return Settings()


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        stream=sys.stdout,
    )
