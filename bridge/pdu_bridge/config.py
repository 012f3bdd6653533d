# Multi-Vendor PDU Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Configuration from environment variables with validation.

The device list itself lives in a JSON file (see pdu_config.py); this
module only holds bridge-wide settings. PDU_HOST / PDU_COMMUNITY describe a
single device for setups without a pdus.json.
"""

import logging
import os

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when configuration is invalid."""


class Config:
    def __init__(self):
        self.bridge_id = os.environ.get("BRIDGE_ID", "pdu-bridge")

        # Single-device fallback when no pdus.json exists
        self.pdu_host = os.environ.get("PDU_HOST", "")
        self.pdu_snmp_port = self._int("PDU_SNMP_PORT", "161", 1, 65535)
        self.pdu_community = os.environ.get("PDU_COMMUNITY", "public")

        self.mqtt_broker = os.environ.get("MQTT_BROKER", "mosquitto")
        self.mqtt_port = self._int("MQTT_PORT", "1883", 1, 65535)
        self.mqtt_username = os.environ.get("MQTT_USERNAME", "")
        self.mqtt_password = os.environ.get("MQTT_PASSWORD", "")

        self.poll_interval = self._float("BRIDGE_POLL_INTERVAL", "30", 1, 3600)
        self.mock_mode = os.environ.get("BRIDGE_MOCK_MODE", "false").lower() in ("true", "1", "yes")
        self.log_level = os.environ.get("BRIDGE_LOG_LEVEL", "INFO").upper()
        self.snmp_timeout = self._float("BRIDGE_SNMP_TIMEOUT", "2.0", 0.5, 30)
        self.snmp_retries = self._int("BRIDGE_SNMP_RETRIES", "1", 0, 5)

        self.pdus_file = os.environ.get("BRIDGE_PDUS_FILE", "/data/pdus.json")
        self.accessory_cache_file = os.environ.get(
            "BRIDGE_ACCESSORY_CACHE", "/data/accessories.json"
        )

        # bridge_id is used in MQTT client ids and topics
        if not self.bridge_id or any(c in self.bridge_id for c in "/#+ "):
            raise ConfigError(
                f"BRIDGE_ID contains invalid characters: {self.bridge_id!r}"
            )

        self._log_config()

    @staticmethod
    def _int(env: str, default: str, min_val: int, max_val: int) -> int:
        raw = os.environ.get(env, default)
        try:
            val = int(raw)
        except (ValueError, TypeError):
            raise ConfigError(f"{env}={raw!r} is not a valid integer")
        if not (min_val <= val <= max_val):
            raise ConfigError(f"{env}={val} out of range [{min_val}, {max_val}]")
        return val

    @staticmethod
    def _float(env: str, default: str, min_val: float, max_val: float) -> float:
        raw = os.environ.get(env, default)
        try:
            val = float(raw)
        except (ValueError, TypeError):
            raise ConfigError(f"{env}={raw!r} is not a valid number")
        if not (min_val <= val <= max_val):
            raise ConfigError(f"{env}={val} out of range [{min_val}, {max_val}]")
        return val

    def _log_config(self):
        logger.info(
            "Config: bridge=%s mock=%s poll=%.1fs mqtt=%s:%d pdus=%s",
            self.bridge_id, self.mock_mode, self.poll_interval,
            self.mqtt_broker, self.mqtt_port, self.pdus_file,
        )
