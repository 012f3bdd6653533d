# Multi-Vendor PDU Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Accessories already announced to Home Assistant, persisted across restarts.

Keyed by stable id. On startup the bridge restores this file and matches
rediscovered PDUs against it, so a known PDU is re-attached to a fresh
poller instead of being registered a second time.
"""

import json
import logging
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path

from .pdu_model import DeviceIdentity, Outlet

logger = logging.getLogger(__name__)


@dataclass
class Accessory:
    stable_id: str
    display_name: str
    host: str = ""
    manufacturer: str = ""
    model: str = ""
    serial: str = ""
    firmware: str = ""
    outlet_count: int = 0
    outlet_names: list[str] = field(default_factory=list)
    registered_at: float = 0.0
    last_seen: float = 0.0

    @classmethod
    def from_identity(cls, identity: DeviceIdentity,
                      outlets: list[Outlet]) -> "Accessory":
        now = time.time()
        return cls(
            stable_id=identity.stable_id,
            display_name=identity.display_name,
            host=identity.host,
            manufacturer=identity.manufacturer,
            model=identity.model,
            serial=identity.serial,
            firmware=identity.firmware,
            outlet_count=identity.outlet_count,
            outlet_names=[o.label for o in outlets],
            registered_at=now,
            last_seen=now,
        )

    def refresh(self, identity: DeviceIdentity, outlets: list[Outlet]):
        """Update a restored accessory with freshly discovered details."""
        self.display_name = identity.display_name
        self.host = identity.host
        self.manufacturer = identity.manufacturer
        self.model = identity.model
        self.serial = identity.serial
        self.firmware = identity.firmware
        self.outlet_count = identity.outlet_count
        self.outlet_names = [o.label for o in outlets]
        self.last_seen = time.time()

    @classmethod
    def from_dict(cls, d: dict) -> "Accessory":
        return cls(
            stable_id=d["stable_id"],
            display_name=d.get("display_name", d["stable_id"]),
            host=d.get("host", ""),
            manufacturer=d.get("manufacturer", ""),
            model=d.get("model", ""),
            serial=d.get("serial", ""),
            firmware=d.get("firmware", ""),
            outlet_count=int(d.get("outlet_count", 0)),
            outlet_names=list(d.get("outlet_names", [])),
            registered_at=float(d.get("registered_at", 0.0)),
            last_seen=float(d.get("last_seen", 0.0)),
        )


class AccessoryCache:
    def __init__(self, path: str):
        self.path = Path(path)
        self.accessories: dict[str, Accessory] = {}

    def __contains__(self, stable_id: str) -> bool:
        return stable_id in self.accessories

    def __len__(self) -> int:
        return len(self.accessories)

    def get(self, stable_id: str) -> Accessory | None:
        return self.accessories.get(stable_id)

    def add(self, accessory: Accessory):
        self.accessories[accessory.stable_id] = accessory

    def remove(self, stable_id: str) -> Accessory | None:
        return self.accessories.pop(stable_id, None)

    def load(self) -> list[Accessory]:
        """Restore accessories from disk. A missing or corrupt file yields none."""
        if not self.path.exists():
            return []
        try:
            data = json.loads(self.path.read_text())
            restored = [Accessory.from_dict(d) for d in data.get("accessories", [])]
        except (ValueError, KeyError, TypeError, AttributeError, OSError):
            logger.exception("Failed to load accessory cache from %s", self.path)
            return []
        for accessory in restored:
            self.add(accessory)
            logger.info("Restoring accessory from cache: %s (%s)",
                        accessory.display_name, accessory.stable_id)
        return restored

    def save(self):
        """Write the cache atomically."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = json.dumps(
            {"accessories": [asdict(a) for a in self.accessories.values()]},
            indent=2,
        )
        tmp = self.path.with_suffix(".tmp")
        try:
            tmp.write_text(data)
            tmp.rename(self.path)
            logger.info("Saved %d accessories to %s", len(self.accessories), self.path)
        except OSError:
            logger.exception("Failed to save accessory cache to %s", self.path)
            tmp.unlink(missing_ok=True)
