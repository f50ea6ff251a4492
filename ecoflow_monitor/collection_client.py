"""
HTTP client for the user-scoped collection endpoint.

Used by the foreground scheduler and the background sync fallback; both
authenticate with the same session cookie the dashboard uses.
"""

import logging
from typing import Any, Dict, Optional

import requests

from .errors import CollectionRequestError


logger = logging.getLogger("ecoflow-monitor.collection-client")

SELF_COLLECT_PATH = "/api/devices/collect-readings/self"


class CollectionClient:
    def __init__(
        self,
        base_url: str,
        session_token: Optional[str] = None,
        cookie_name: str = "ecoflow_session",
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        if session_token:
            self.session.cookies.set(cookie_name, session_token)

    def collect_self(self, force: bool = False) -> Dict[str, Any]:
        """
        Ask the server to collect readings for the session's user.

        Returns the decoded response body. Raises CollectionRequestError
        carrying the HTTP status (None on transport failure).
        """
        url = f"{self.base_url}{SELF_COLLECT_PATH}"
        params = {"force": "true"} if force else None

        try:
            response = self.session.post(url, params=params, json={}, timeout=self.timeout)
        except requests.RequestException as e:
            raise CollectionRequestError(f"Collection endpoint unreachable: {e}") from e

        if response.status_code >= 400:
            try:
                detail = response.json().get("error")
            except ValueError:
                detail = None
            raise CollectionRequestError(
                f"HTTP {response.status_code}: {detail or response.reason}",
                status=response.status_code,
            )

        data = response.json()
        logger.debug("Collection response: %s", data.get("summary"))
        return data
