"""
Completion broadcast over MQTT.

Open dashboards subscribe to the events topic and refresh when a background
collection lands, instead of polling.
"""

import json
import logging
import time
from typing import Any, Dict, Optional

import paho.mqtt.client as mqtt
from paho.mqtt.client import CallbackAPIVersion


logger = logging.getLogger("ecoflow-monitor.broadcast")

READING_COLLECTED = "READING_COLLECTED"


class EventBroadcaster:
    def __init__(
        self,
        host: str,
        port: int,
        topic: str,
        client: Optional[mqtt.Client] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.topic = topic
        self.client = client or mqtt.Client(
            callback_api_version=CallbackAPIVersion.VERSION2,
            client_id="ecoflow-monitor-sync",
        )
        self.client.on_connect = self.on_connect
        self.client.on_disconnect = self.on_disconnect

    def on_connect(self, client, userdata, flags, reason_code, properties):
        if reason_code == 0:
            logger.info("Connected to MQTT broker at %s:%s", self.host, self.port)
        else:
            logger.error("MQTT connection failed with code %s", reason_code)

    def on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties):
        logger.warning("Disconnected from MQTT broker (reason_code=%s)", reason_code)

    def connect(self) -> bool:
        try:
            self.client.connect(self.host, self.port, 60)
        except OSError as e:
            logger.error("Could not connect to MQTT broker at %s:%s: %s", self.host, self.port, e)
            return False
        self.client.loop_start()
        return True

    def close(self) -> None:
        self.client.loop_stop()
        self.client.disconnect()

    def publish_reading_collected(
        self,
        summary: Optional[Dict[str, Any]] = None,
        timestamp: Optional[int] = None,
    ) -> bool:
        payload = {
            "type": READING_COLLECTED,
            "timestamp": timestamp if timestamp is not None else int(time.time() * 1000),
            "summary": summary,
        }
        result = self.client.publish(self.topic, json.dumps(payload), qos=1)
        if result.rc != mqtt.MQTT_ERR_SUCCESS:
            logger.warning("Failed to publish %s event: rc=%s", READING_COLLECTED, result.rc)
            return False
        logger.debug("Published %s to %s", READING_COLLECTED, self.topic)
        return True
