# Multi-Vendor PDU Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 MIT License
# https://github.com/mvalancy/CyberPower-PDU

"""MQTT pub/sub handler — publishes outlet/power state, routes commands, HA discovery.

Supports multiple PDU devices on a single MQTT connection. Each device is
identified by its stable id (derived from the serial number), which forms
part of the MQTT topic hierarchy (``pdu/{stable_id}/…``). Per-device
callbacks are registered via :meth:`register_device` and routed by the
wildcard subscriptions for commands (``pdu/+/outlet/+/command``), manual
refresh (``pdu/+/refresh``) and on-demand reads (``pdu/+/outlet/+/get``,
``pdu/+/power/get``).
"""

import asyncio
import json
import logging
import time
from typing import Awaitable, Callable

import paho.mqtt.client as mqtt

from .config import Config
from .pdu_model import DeviceIdentity, Outlet

logger = logging.getLogger(__name__)

CommandCallback = Callable[[int, str], Awaitable[None]]
RefreshCallback = Callable[[], Awaitable[None]]
ReadCallback = Callable[[int | None], Awaitable[None]]

COMMAND_TOPIC = "pdu/+/outlet/+/command"
REFRESH_TOPIC = "pdu/+/refresh"
OUTLET_GET_TOPIC = "pdu/+/outlet/+/get"
POWER_GET_TOPIC = "pdu/+/power/get"


class MQTTHandler:
    def __init__(self, config: Config):
        self.config = config
        self.bridge_id = config.bridge_id
        self.status_topic = f"pdu/{self.bridge_id}/bridge/status"
        self._loop: asyncio.AbstractEventLoop | None = None

        # Per-device callbacks: stable_id -> callback
        self._command_callbacks: dict[str, CommandCallback] = {}
        self._refresh_callbacks: dict[str, RefreshCallback] = {}
        self._read_callbacks: dict[str, ReadCallback] = {}

        # Connection status tracking
        self._connected: bool = False
        self._reconnect_count: int = 0
        self._last_connect_time: float | None = None
        self._last_disconnect_time: float | None = None
        self._publish_errors: int = 0
        self._total_publishes: int = 0
        self._ha_discovery_sent: dict[str, bool] = {}

        # Pending publishes queued while disconnected (max 100)
        self._pending_publishes: list[tuple[str, str, bool, int]] = []
        self._max_pending = 100

        self.client = mqtt.Client(
            client_id=self.bridge_id,
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
        )
        self.client.will_set(self.status_topic, "offline", qos=1, retain=True)
        self.client.on_connect = self._on_connect
        self.client.on_message = self._on_message
        self.client.on_disconnect = self._on_disconnect
        # Auto-reconnect with backoff
        self.client.reconnect_delay_set(min_delay=1, max_delay=30)

    # ------------------------------------------------------------------
    # Device registration
    # ------------------------------------------------------------------

    def register_device(self, device_id: str, callback: CommandCallback,
                        refresh_callback: RefreshCallback | None = None,
                        read_callback: ReadCallback | None = None):
        """Register per-device callbacks.

        A command on ``pdu/{device_id}/outlet/{n}/command`` invokes
        *callback(n, command_str)*; a message on ``pdu/{device_id}/refresh``
        invokes *refresh_callback()*. ``pdu/{device_id}/outlet/{n}/get``
        invokes *read_callback(n)* and ``pdu/{device_id}/power/get``
        invokes *read_callback(None)*.
        """
        self._command_callbacks[device_id] = callback
        if refresh_callback is not None:
            self._refresh_callbacks[device_id] = refresh_callback
        if read_callback is not None:
            self._read_callbacks[device_id] = read_callback
        logger.info("Registered device %s for MQTT commands", device_id)

    def unregister_device(self, device_id: str):
        self._command_callbacks.pop(device_id, None)
        self._refresh_callbacks.pop(device_id, None)
        self._read_callbacks.pop(device_id, None)

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    def connect(self):
        logger.info("Connecting to MQTT broker %s:%d", self.config.mqtt_broker, self.config.mqtt_port)
        self._loop = asyncio.get_running_loop()

        if self.config.mqtt_username:
            self.client.username_pw_set(
                self.config.mqtt_username, self.config.mqtt_password
            )
            logger.info("MQTT authentication configured for user %s", self.config.mqtt_username)

        try:
            self.client.connect(self.config.mqtt_broker, self.config.mqtt_port, keepalive=60)
            self.client.loop_start()
        except Exception:
            logger.exception("Failed to connect to MQTT broker")

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        logger.info("MQTT connected (rc=%s)", reason_code)
        if self._last_connect_time is not None:
            self._reconnect_count += 1
            logger.info("MQTT reconnected (count=%d)", self._reconnect_count)
        self._connected = True
        self._last_connect_time = time.time()

        client.publish(self.status_topic, "online", qos=1, retain=True)

        for topic in (COMMAND_TOPIC, REFRESH_TOPIC, OUTLET_GET_TOPIC, POWER_GET_TOPIC):
            client.subscribe(topic, qos=1)
            logger.info("Subscribed to %s", topic)

        # Drain pending publishes queued during disconnect
        if self._pending_publishes:
            drained = len(self._pending_publishes)
            for topic, payload, retain, qos in self._pending_publishes:
                try:
                    client.publish(topic, payload, qos=qos, retain=retain)
                except Exception:
                    logger.debug("Dropped queued publish to %s", topic, exc_info=True)
            self._pending_publishes.clear()
            logger.info("Drained %d pending publishes after reconnect", drained)

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        logger.warning("MQTT disconnected (rc=%s)", reason_code)
        self._connected = False
        self._last_disconnect_time = time.time()

    def get_status(self) -> dict:
        """Return MQTT connection health info."""
        return {
            "connected": self._connected,
            "reconnect_count": self._reconnect_count,
            "last_connect": self._last_connect_time,
            "last_disconnect": self._last_disconnect_time,
            "broker": self.config.mqtt_broker,
            "port": self.config.mqtt_port,
            "publish_errors": self._publish_errors,
            "total_publishes": self._total_publishes,
            "ha_discovery_sent": dict(self._ha_discovery_sent),
            "registered_devices": list(self._command_callbacks.keys()),
        }

    def _publish(self, topic: str, payload, retain: bool = False, qos: int = 0):
        """Publish with error tracking. Queues retained messages on failure."""
        self._total_publishes += 1

        try:
            info = self.client.publish(topic, payload, qos=qos, retain=retain)
            if info.rc != mqtt.MQTT_ERR_SUCCESS:
                self._publish_errors += 1
                if self._publish_errors % 100 == 1:
                    logger.warning("MQTT publish failed (rc=%s, topic=%s)", info.rc, topic)
                if retain and len(self._pending_publishes) < self._max_pending:
                    self._pending_publishes.append((topic, str(payload), retain, qos))
        except Exception:
            self._publish_errors += 1
            if self._publish_errors % 100 == 1:
                logger.exception("MQTT publish exception (topic=%s)", topic)
            if retain and len(self._pending_publishes) < self._max_pending:
                self._pending_publishes.append((topic, str(payload), retain, qos))

    # ------------------------------------------------------------------
    # Incoming message routing
    # ------------------------------------------------------------------

    def _on_message(self, client, userdata, msg: mqtt.MQTTMessage):
        """Route command, refresh and read messages to the owning device."""
        try:
            parts = msg.topic.split("/")
            if not self._loop:
                logger.warning("Event loop not set — cannot dispatch %s", msg.topic)
                return

            # pdu/{device_id}/outlet/{n}/command
            if len(parts) == 5 and parts[0] == "pdu" and parts[2] == "outlet" and parts[4] == "command":
                device_id = parts[1]
                outlet_num = int(parts[3])
                command = msg.payload.decode("utf-8").strip().lower()
                logger.info("Command received: device=%s outlet=%d -> %s", device_id, outlet_num, command)
                cb = self._command_callbacks.get(device_id)
                if cb:
                    asyncio.run_coroutine_threadsafe(cb(outlet_num, command), self._loop)
                    return
                logger.warning("No callback registered for device %s", device_id)
                return

            # pdu/{device_id}/refresh
            if len(parts) == 3 and parts[0] == "pdu" and parts[2] == "refresh":
                device_id = parts[1]
                refresh = self._refresh_callbacks.get(device_id)
                if refresh:
                    logger.info("Refresh requested for %s", device_id)
                    asyncio.run_coroutine_threadsafe(refresh(), self._loop)
                    return
                logger.warning("No refresh callback registered for device %s", device_id)
                return

            # pdu/{device_id}/outlet/{n}/get or pdu/{device_id}/power/get
            if len(parts) == 5 and parts[0] == "pdu" and parts[2] == "outlet" and parts[4] == "get":
                self._dispatch_read(parts[1], int(parts[3]))
                return
            if len(parts) == 4 and parts[0] == "pdu" and parts[2] == "power" and parts[3] == "get":
                self._dispatch_read(parts[1], None)
        except Exception:
            logger.exception("Error handling MQTT message on %s", msg.topic)

    def _dispatch_read(self, device_id: str, outlet_num: int | None):
        read = self._read_callbacks.get(device_id)
        if not read:
            logger.warning("No read callback registered for device %s", device_id)
            return
        logger.info("Read requested: device=%s %s", device_id,
                    "power" if outlet_num is None else f"outlet {outlet_num}")
        asyncio.run_coroutine_threadsafe(read(outlet_num), self._loop)

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def publish_outlet_state(self, device_id: str, outlet_num: int, on: bool):
        self._publish(
            f"pdu/{device_id}/outlet/{outlet_num}/state",
            "on" if on else "off",
            retain=True,
        )

    def publish_outlet_name(self, device_id: str, outlet_num: int, name: str):
        self._publish(f"pdu/{device_id}/outlet/{outlet_num}/name", name, retain=True)

    def publish_power(self, device_id: str, watts: float):
        self._publish(f"pdu/{device_id}/power", str(round(watts, 4)), retain=True)

    def publish_command_response(
        self, device_id: str, outlet: int, command: str, success: bool,
        error: str | None = None,
    ):
        """Publish a command response."""
        resp = {
            "success": success,
            "command": command,
            "outlet": outlet,
            "error": error,
            "ts": time.time(),
        }
        self._publish(
            f"pdu/{device_id}/outlet/{outlet}/command/response",
            json.dumps(resp),
            qos=1,
        )

    # --- Home Assistant MQTT Discovery ---

    def publish_ha_discovery(
        self, identity: DeviceIdentity, outlets: list[Outlet], force: bool = False,
    ):
        """Publish Home Assistant MQTT auto-discovery configs.

        One switch per outlet plus one power sensor, grouped under a device
        whose identifier is the stable id. Configs are retained and keyed
        by unique_id, so republishing updates entities instead of adding
        new ones.
        """
        dev = identity.stable_id

        if self._ha_discovery_sent.get(dev, False) and not force:
            return

        base = f"pdu/{dev}"
        device_info = {
            "identifiers": [dev],
            "name": identity.display_name,
            "manufacturer": identity.manufacturer,
            "model": identity.model or identity.manufacturer,
            "serial_number": identity.serial,
        }
        if identity.firmware:
            device_info["sw_version"] = identity.firmware

        avail = {
            "topic": self.status_topic,
            "payload_available": "online",
            "payload_not_available": "offline",
        }

        for outlet in outlets:
            n = outlet.number
            uid = f"{dev}_outlet_{n}"
            config = {
                "name": outlet.label,
                "unique_id": uid,
                "device": device_info,
                "availability": avail,
                "state_topic": f"{base}/outlet/{n}/state",
                "command_topic": f"{base}/outlet/{n}/command",
                "payload_on": "on",
                "payload_off": "off",
                "state_on": "on",
                "state_off": "off",
                "device_class": "outlet",
                "icon": "mdi:power-socket",
            }
            self._publish(
                f"homeassistant/switch/{uid}/config",
                json.dumps(config),
                retain=True,
            )
            if outlet.name:
                self.publish_outlet_name(dev, n, outlet.name)

        uid = f"{dev}_power"
        config = {
            "name": "Power",
            "unique_id": uid,
            "device": device_info,
            "availability": avail,
            "state_topic": f"{base}/power",
            "unit_of_measurement": "W",
            "device_class": "power",
            "state_class": "measurement",
            "icon": "mdi:flash",
        }
        self._publish(
            f"homeassistant/sensor/{uid}/config",
            json.dumps(config),
            retain=True,
        )

        self._ha_discovery_sent[dev] = True
        logger.info(
            "Published HA MQTT Discovery configs for %s (%d outlets)",
            dev, len(outlets),
        )

    def remove_ha_discovery(self, device_id: str, outlet_count: int):
        """Clear the retained discovery configs of a device (empty payload)."""
        for n in range(1, outlet_count + 1):
            self._publish(f"homeassistant/switch/{device_id}_outlet_{n}/config", "", retain=True)
        self._publish(f"homeassistant/sensor/{device_id}_power/config", "", retain=True)
        self._ha_discovery_sent.pop(device_id, None)
        logger.info("Removed HA MQTT Discovery configs for %s", device_id)

    # ------------------------------------------------------------------
    # Disconnect
    # ------------------------------------------------------------------

    def disconnect(self):
        """Publish offline status and disconnect."""
        self._publish(self.status_topic, "offline", qos=1, retain=True)
        try:
            self.client.loop_stop()
            self.client.disconnect()
        except Exception:
            logger.debug("Error during MQTT disconnect", exc_info=True)
