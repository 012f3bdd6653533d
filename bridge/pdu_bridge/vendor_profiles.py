# Multi-Vendor PDU Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""OID templates and coded values for each supported PDU vendor.

A device announces its vendor through the first word of its sysDescr.
That word selects one VendorProfile; every OID the bridge touches after
identification comes from the selected profile.
"""

from dataclasses import dataclass

from .errors import UnknownVendorError

# MIB-II system group (shared by every vendor)
OID_SYS_DESCR = "1.3.6.1.2.1.1.1.0"
OID_SYS_NAME = "1.3.6.1.2.1.1.5.0"

# Raritan PX MIB
RARITAN_BASE = "1.3.6.1.4.1.13742.4.1"

# APC PowerNet MIB (rPDU)
APC_BASE = "1.3.6.1.4.1.318.1.1.12"


@dataclass(frozen=True)
class VendorProfile:
    """One manufacturer's SNMP dialect."""
    name: str                       # first sysDescr token, e.g. "Raritan"
    outlet_count: str
    device_name: str
    model: str
    serial: str
    firmware: str
    outlet_name_prefix: str
    outlet_status_prefix: str
    power: str
    power_multiplier: float = 1
    on_code: int = 1
    off_code: int = 0

    def outlet_name_oid(self, index: int) -> str:
        return f"{self.outlet_name_prefix}.{index + 1}"

    def outlet_status_oid(self, index: int) -> str:
        return f"{self.outlet_status_prefix}.{index + 1}"

    def identity_oids(self) -> list[str]:
        """OIDs fetched once at identification, in a fixed order."""
        return [
            self.outlet_count, self.device_name, self.model,
            self.serial, self.firmware,
        ]

    def encode(self, on: bool) -> int:
        return self.on_code if on else self.off_code

    def decode(self, raw) -> bool:
        """Map a raw status value to on/off. Anything but on_code is off."""
        return int(raw) == self.on_code

    def to_watts(self, raw) -> float:
        return float(raw) * self.power_multiplier


RARITAN = VendorProfile(
    name="Raritan",
    outlet_count=f"{RARITAN_BASE}.2.1.0",
    device_name=OID_SYS_NAME,
    model=f"{RARITAN_BASE}.1.12.0",
    serial=f"{RARITAN_BASE}.1.2.0",
    firmware=f"{RARITAN_BASE}.1.1.0",
    outlet_name_prefix=f"{RARITAN_BASE}.2.2.1.2",
    outlet_status_prefix=f"{RARITAN_BASE}.2.2.1.3",
    power=f"{RARITAN_BASE}.3.1.3.0",
    power_multiplier=1,
    on_code=1,
    off_code=0,
)

# rPDULoadStatusLoad is reported in tenths of amps; at 110V that is 11 W per unit.
APC = VendorProfile(
    name="APC",
    outlet_count=f"{APC_BASE}.1.8.0",
    device_name=f"{APC_BASE}.1.1.0",
    model=f"{APC_BASE}.1.5.0",
    serial=f"{APC_BASE}.1.6.0",
    firmware=f"{APC_BASE}.1.2.0",
    outlet_name_prefix=f"{APC_BASE}.3.5.1.1.2",
    outlet_status_prefix=f"{APC_BASE}.3.3.1.1.4",
    power=f"{APC_BASE}.2.3.1.1.2.1",
    power_multiplier=11,
    on_code=1,
    off_code=2,
)

VENDOR_PROFILES: tuple[VendorProfile, ...] = (RARITAN, APC)


def manufacturer_token(sys_description: str) -> str:
    """Return the first whitespace-delimited word of a sysDescr string."""
    parts = str(sys_description).split()
    return parts[0] if parts else ""


def lookup(token: str) -> VendorProfile:
    """Find the profile whose name matches *token* exactly (case-sensitive)."""
    for profile in VENDOR_PROFILES:
        if profile.name == token:
            return profile
    raise UnknownVendorError(token)
