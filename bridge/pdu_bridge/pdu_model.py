"""Data models for identified PDUs and their outlets."""

import hashlib
import re
from dataclasses import dataclass

from .vendor_profiles import VendorProfile

# Smallest power value pushed to the bridge. Consumers treat 0 as "no data".
POWER_FLOOR = 0.0001

_UNSAFE_ID_CHARS = re.compile(r"[^A-Za-z0-9_-]")


def clamp_power(watts: float) -> float:
    return max(float(watts), POWER_FLOOR)


def stable_id_from_serial(serial: str) -> str:
    """Bridge-facing identifier for a device, safe for MQTT topics.

    When characters had to be replaced, a short hash of the raw serial is
    appended so "A/B" and "A_B" stay distinct.
    """
    serial = serial.strip()
    safe = _UNSAFE_ID_CHARS.sub("_", serial)
    if safe != serial:
        digest = hashlib.sha1(serial.encode("utf-8")).hexdigest()[:6]
        safe = f"{safe}_{digest}"
    return "pdu_" + safe


@dataclass(frozen=True)
class DeviceIdentity:
    host: str
    community: str
    profile: VendorProfile
    serial: str
    outlet_count: int
    port: int = 161
    device_name: str = ""
    manufacturer: str = ""
    model: str = ""
    firmware: str = ""
    sys_description: str = ""

    @property
    def stable_id(self) -> str:
        return stable_id_from_serial(self.serial)

    @property
    def display_name(self) -> str:
        return self.device_name or f"{self.manufacturer} {self.model}".strip() or self.host


@dataclass
class Outlet:
    index: int                  # 0-based
    name: str | None = None     # None until names are resolved
    on: bool = False            # False until the first poll

    @property
    def number(self) -> int:
        """1-based outlet number used on the wire and in MQTT topics."""
        return self.index + 1

    @property
    def label(self) -> str:
        return self.name or f"Outlet {self.number}"
