"""
EcoFlow Monitor API

REST API for reading collection and history. Provides endpoints for:
- Collecting readings for the signed-in user (manual and self-scheduled)
- Scheduled backup collection (bearer token)
- Historical readings, raw or bucketed, with a summary
- Latest reading per device and vendor device discovery

Users are identified by the session cookie issued by the login flow.
"""

import logging
import time
from typing import Any, Dict, Iterator, Optional

import uvicorn
from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse

from . import __version__
from .aggregation import DEFAULT_LIMIT, history, resolve_time_range
from .backup import ServerBackupScheduler
from .config import Settings, configure_logging, get_settings
from .ecoflow_api import EcoFlowAPI
from .errors import (
    AuthenticationError,
    AuthorizationError,
    MonitorError,
    ValidationError,
    VendorAPIError,
    VendorTransportError,
)
from .ingestion import IngestionService
from .storage import ReadingStore, open_store, reading_row


logger = logging.getLogger("ecoflow-monitor.api")

# ---------------------------------------------------------------------
# FastAPI App
# ---------------------------------------------------------------------
app = FastAPI(
    title="EcoFlow Monitor",
    description="Telemetry collection and history for EcoFlow power stations",
    version=__version__,
)


def status_for_error(exc: MonitorError) -> int:
    if isinstance(exc, AuthenticationError):
        return 401
    if isinstance(exc, AuthorizationError):
        return 403
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, VendorTransportError):
        return 503
    if isinstance(exc, VendorAPIError):
        return 502 if exc.retryable else 424
    return 500


# ---------------------------------------------------------------------
# Exception Handlers
# ---------------------------------------------------------------------
@app.exception_handler(MonitorError)
async def monitor_exception_handler(request: Request, exc: MonitorError):
    status_code = status_for_error(exc)
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    else:
        logger.warning("%s %s rejected (%s): %s", request.method, request.url.path, status_code, exc)
    return JSONResponse(status_code=status_code, content={"success": False, "error": str(exc)})


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all incoming requests."""
    logger.info("Request: %s %s", request.method, request.url.path)
    logger.debug("Query params: %s", dict(request.query_params))
    response = await call_next(request)
    logger.info("Response status: %s", response.status_code)
    return response


# ---------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------
def get_store(settings: Settings = Depends(get_settings)) -> Iterator[ReadingStore]:
    yield from open_store(settings)


def get_vendor_api(settings: Settings = Depends(get_settings)) -> EcoFlowAPI:
    return EcoFlowAPI(
        settings.ecoflow_access_key,
        settings.ecoflow_secret_key,
        base_url=settings.ecoflow_api_url,
        timeout=settings.ecoflow_request_timeout,
    )


def get_ingestion(
    store: ReadingStore = Depends(get_store),
    api: EcoFlowAPI = Depends(get_vendor_api),
) -> IngestionService:
    return IngestionService(store, api)


def current_user(
    request: Request,
    store: ReadingStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
) -> int:
    """Resolve the session cookie to a user id."""
    token = request.cookies.get(settings.session_cookie_name)
    if not token:
        raise AuthenticationError("Not authenticated")
    user_id = store.resolve_session(token)
    if user_id is None:
        raise AuthenticationError("Session expired or invalid")
    return user_id


def verify_cron_secret(
    authorization: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings),
) -> bool:
    if not settings.cron_secret or authorization != f"Bearer {settings.cron_secret}":
        raise AuthenticationError("Unauthorized")
    return True


# ---------------------------------------------------------------------
# Collection
# ---------------------------------------------------------------------
@app.post("/api/devices/collect-readings")
def collect_readings(
    device_id: Optional[int] = Query(None, alias="deviceId"),
    user_id: int = Depends(current_user),
    ingestion: IngestionService = Depends(get_ingestion),
) -> Dict[str, Any]:
    """
    Collect readings now, for one device or for every active device of the user.

    Manual calls ignore the collection interval.
    """
    if device_id is not None:
        reading = ingestion.ingest(user_id, device_id)
        return {
            "success": True,
            "summary": {"imported": 1, "skipped": 0},
            "reading": reading_row(reading),
        }

    result = ingestion.collect_for_user(user_id, force=True)
    return {
        "success": True,
        "summary": {"imported": result["imported"], "skipped": result["skipped"]},
        "errors": result["errors"],
    }


@app.post("/api/devices/collect-readings/self")
def collect_readings_self(
    force: bool = Query(False),
    user_id: int = Depends(current_user),
    ingestion: IngestionService = Depends(get_ingestion),
) -> Dict[str, Any]:
    """Collection entry point for the foreground scheduler and background sync."""
    result = ingestion.collect_for_user(user_id, force=force)
    response = {
        "success": True,
        "summary": {"imported": result["imported"], "skipped": result["skipped"]},
        "errors": result["errors"],
    }
    if "next_collection_in" in result:
        response["nextCollectionIn"] = result["next_collection_in"]
    return response


@app.api_route("/api/cron/collect-readings", methods=["GET", "POST"])
def cron_collect_readings(
    _: bool = Depends(verify_cron_secret),
    store: ReadingStore = Depends(get_store),
    ingestion: IngestionService = Depends(get_ingestion),
) -> Dict[str, Any]:
    """Run the server-side backup batch once."""
    started = time.time()
    tally = ServerBackupScheduler(store, ingestion).run_once()
    tally["duration"] = int((time.time() - started) * 1000)
    return tally


# ---------------------------------------------------------------------
# History & devices
# ---------------------------------------------------------------------
@app.get("/api/history/readings")
def history_readings(
    device_id: Optional[int] = Query(None, alias="deviceId"),
    time_range: Optional[str] = Query(None, alias="timeRange"),
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    aggregation: str = Query("raw"),
    limit: int = Query(DEFAULT_LIMIT),
    offset: int = Query(0),
    user_id: int = Depends(current_user),
    store: ReadingStore = Depends(get_store),
) -> Dict[str, Any]:
    start_ms, end_ms = resolve_time_range(time_range, start_date, end_date, int(time.time() * 1000))
    result = history(
        store,
        user_id,
        start_ms,
        end_ms,
        granularity=aggregation,
        device_id=device_id,
        limit=limit,
        offset=offset,
    )
    summary = result["summary"]
    return {
        "readings": [reading_row(r) for r in result["readings"]],
        "summary": summary.model_dump(by_alias=True) if summary is not None else None,
        "pagination": result["pagination"],
    }


@app.get("/api/devices/latest-readings")
def latest_readings(
    user_id: int = Depends(current_user),
    store: ReadingStore = Depends(get_store),
) -> Dict[str, Any]:
    devices = []
    for device in store.list_devices_for_user(user_id):
        reading = store.latest_reading(device.id)
        devices.append({
            "device": device.model_dump(by_alias=True),
            "reading": reading_row(reading) if reading else None,
            # Online is derived, never stored
            "online": reading is not None and reading.status is not None,
        })
    return {"devices": devices}


@app.get("/api/devices/discover")
def discover_devices(
    user_id: int = Depends(current_user),
    api: EcoFlowAPI = Depends(get_vendor_api),
) -> Dict[str, Any]:
    devices = api.get_device_list()
    logger.info("User %s discovered %d devices", user_id, len(devices))
    return {"devices": devices}


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "healthy", "version": __version__}


# ---------------------------------------------------------------------
# Entry Point
# ---------------------------------------------------------------------
def main() -> None:
    settings = get_settings()
    configure_logging(settings.log_level)
    logger.info("Starting EcoFlow Monitor API on %s:%s", settings.host, settings.port)
    uvicorn.run(
        "ecoflow_monitor.api:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
