"""
EcoFlow Developer API client.

Every request is signed: the request parameters plus accessKey, nonce and
timestamp are sorted by key, joined as ``k=v&k=v`` and signed with
HMAC-SHA256 using the secret key. The signature travels in the ``sign``
header next to accessKey, nonce and timestamp.

The quota endpoint is the exception: its signature is computed WITHOUT the
``sn`` query parameter even though ``sn`` is sent in the URL. Including it
makes the vendor reject the signature.

The client never retries; callers decide what a failure means.
"""

import hashlib
import hmac
import logging
import random
import string
import time
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import requests

from .errors import VendorAPIError, VendorTransportError


logger = logging.getLogger("ecoflow-monitor.ecoflow-api")

DEVICE_LIST_ENDPOINT = "/iot-open/sign/device/list"
DEVICE_QUOTA_ENDPOINT = "/iot-open/sign/device/quota/all"


class EcoFlowAPI:
    """Signed access to the EcoFlow open API."""

    def __init__(
        self,
        access_key: str,
        secret_key: str,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
    ):
        self.access_key = access_key
        self.secret_key = secret_key
        # Support regional endpoints: EU (default), US, or custom
        self.base_url = (base_url or "https://api-e.ecoflow.com").rstrip("/")
        self.timeout = timeout

    def _generate_sign(self, params: Dict[str, Any]) -> str:
        """
        Generate HMAC-SHA256 signature for an EcoFlow API request.

        The signature is computed from a sorted, concatenated string of parameters.
        """
        sorted_params = sorted(params.items())
        param_str = "&".join(f"{k}={v}" for k, v in sorted_params)
        signature = hmac.new(
            self.secret_key.encode("utf-8"),
            param_str.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
        return signature

    def _signed_headers(self, sign_params: Dict[str, Any]) -> Dict[str, str]:
        nonce = "".join(random.choices(string.ascii_letters + string.digits, k=16))
        timestamp = str(int(time.time() * 1000))  # milliseconds

        canonical = dict(sign_params)
        canonical.update({
            "accessKey": self.access_key,
            "nonce": nonce,
            "timestamp": timestamp,
        })

        return {
            "accessKey": self.access_key,
            "nonce": nonce,
            "timestamp": timestamp,
            "sign": self._generate_sign(canonical),
            "Content-Type": "application/json",
        }

    def _make_api_request(
        self,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        sign_params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """
        Make an authenticated GET request to the EcoFlow REST API.

        Args:
            endpoint: API endpoint path (e.g., "/iot-open/sign/device/list")
            params: Query parameters sent in the URL
            sign_params: Parameters covered by the signature; defaults to ``params``

        Returns:
            The ``data`` member of a successful response envelope

        Raises:
            VendorTransportError: the request never produced a response
            VendorAPIError: non-200 HTTP status or a non-zero envelope code
        """
        params = params or {}
        headers = self._signed_headers(params if sign_params is None else sign_params)

        url = f"{self.base_url}{endpoint}"
        if params:
            url = f"{url}?{urlencode(params)}"
        logger.debug("REST API request: GET %s", url)

        try:
            response = requests.get(url, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            logger.error("API request exception: %s", e)
            raise VendorTransportError(f"EcoFlow API unreachable: {e}") from e

        if response.status_code != 200:
            logger.error("API request failed: HTTP %s - %s", response.status_code, response.text)
            raise VendorAPIError(
                f"EcoFlow API HTTP {response.status_code}",
                code=str(response.status_code),
                status=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise VendorAPIError("EcoFlow API returned a non-JSON body", status=502) from e

        code = str(data.get("code"))
        if code != "0":
            logger.warning("API returned error code: %s, message: %s", code, data.get("message"))
            raise VendorAPIError(
                f"EcoFlow API error: {data.get('message', 'Unknown error')} (code: {code})",
                code=code,
                status=400,
            )

        return data.get("data")

    def get_device_list(self) -> List[Dict[str, Any]]:
        """
        List the devices bound to the developer account.

        Returns a list of dicts with: serial, name, product_type, online
        """
        devices = self._make_api_request(DEVICE_LIST_ENDPOINT) or []
        logger.info("Fetched %d devices from EcoFlow", len(devices))
        return [
            {
                "serial": d.get("sn"),
                "name": d.get("deviceName") or d.get("productName"),
                "product_type": d.get("productType") or d.get("productName"),
                "online": d.get("online") == 1,
            }
            for d in devices
        ]

    def get_device_quota(self, device_sn: str) -> Dict[str, Any]:
        """
        Get the current quota snapshot of a device as a flat key -> value map.

        Keys are dotted vendor names such as ``pd.soc`` or ``inv.outputWatts``.
        Values are numbers, numeric strings or ``{"val": ..., "scale": ...}``.
        """
        # The sn parameter is sent but deliberately left out of the signature
        data = self._make_api_request(
            DEVICE_QUOTA_ENDPOINT,
            params={"sn": device_sn},
            sign_params={},
        ) or {}

        if isinstance(data, dict) and isinstance(data.get("quotaMap"), dict):
            data = data["quotaMap"]

        logger.info("Successfully fetched device quota for %s (%d keys)", device_sn, len(data))
        return data
