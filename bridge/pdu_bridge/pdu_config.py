# Multi-Vendor PDU Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""PDU device list — from a JSON file or a single device in env vars."""

import json
import logging
from dataclasses import dataclass
from pathlib import Path

from .config import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_PDUS_FILE = "/data/pdus.json"


@dataclass
class PDUConfig:
    """Configuration for a single PDU device."""
    host: str                           # IP address or hostname
    community: str = "public"           # read/write community string
    snmp_port: int = 161
    snmp_version: str = "2c"            # "1" or "2c"
    label: str = ""                     # Human-friendly name (overrides sysName)
    enabled: bool = True

    def to_dict(self) -> dict:
        d = {
            "host": self.host,
            "community": self.community,
            "snmp_port": self.snmp_port,
            "enabled": self.enabled,
        }
        if self.snmp_version != "2c":
            d["snmp_version"] = self.snmp_version
        if self.label:
            d["label"] = self.label
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "PDUConfig":
        return cls(
            host=d["host"],
            community=d.get("community", "public"),
            snmp_port=int(d.get("snmp_port", 161)),
            snmp_version=str(d.get("snmp_version", "2c")),
            label=d.get("label", ""),
            enabled=d.get("enabled", True),
        )

    def validate(self):
        if not self.host:
            raise ValueError("PDU entry has no host configured")
        if not (1 <= self.snmp_port <= 65535):
            raise ValueError(
                f"PDU {self.host!r} snmp_port out of range: {self.snmp_port}"
            )
        if self.snmp_version not in ("1", "2c"):
            raise ValueError(
                f"PDU {self.host!r} snmp_version must be '1' or '2c', got {self.snmp_version!r}"
            )


def load_pdu_configs(pdus_file: str = DEFAULT_PDUS_FILE,
                     env_host: str = "",
                     env_port: int = 161,
                     env_community: str = "public",
                     mock_mode: bool = False) -> list[PDUConfig]:
    """Load the configured device list.

    Priority:
    1. pdus.json file if it exists
    2. Mock mode generates one simulated device
    3. PDU_HOST env var (single PDU)

    With none of these the list is empty and discovery is skipped. A file
    that exists but cannot be parsed is a ConfigError.
    """
    path = Path(pdus_file)

    if path.exists():
        try:
            data = json.loads(path.read_text())
            entries = data.get("pdus") if isinstance(data, dict) else None
            if entries is None:
                entries = []
            if not isinstance(entries, list):
                raise ValueError("'pdus' must be a list")
            pdus = []
            for d in entries:
                if not isinstance(d, dict):
                    raise ValueError(f"PDU entry must be an object, got {d!r}")
                pdu = PDUConfig.from_dict(d)
                pdu.validate()
                pdus.append(pdu)
        except (ValueError, KeyError, TypeError, OSError) as e:
            raise ConfigError(f"Invalid PDU config file {path}: {e}") from e
        logger.info("Loaded %d PDU(s) from %s", len(pdus), path)
        return pdus

    if mock_mode:
        logger.info("Mock mode — using simulated PDU config")
        return [PDUConfig(host="127.0.0.1", label="Mock PDU")]

    if env_host:
        pdu = PDUConfig(
            host=env_host,
            snmp_port=env_port,
            community=env_community,
        )
        try:
            pdu.validate()
        except ValueError as e:
            raise ConfigError(str(e)) from e
        logger.info("Using single PDU from env vars: %s:%d", env_host, env_port)
        return [pdu]

    logger.info("No PDUs configured — device discovery disabled")
    return []
