# Multi-Vendor PDU Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Simulated PDU agent for running the bridge without real hardware.

Answers GET/SET from an in-memory OID table laid out the way the chosen
vendor profile expects, so identification, polling and control run
unchanged against it. GETs are split into the same 2-varbind requests
the real client sends.
"""

import logging
import math
import random
import time

from .errors import TransportError
from .snmp_client import DEFAULT_BATCH_SIZE, chunked
from .transport import Assignment, Varbind
from .vendor_profiles import OID_SYS_DESCR, RARITAN, VendorProfile

logger = logging.getLogger(__name__)


class MockSNMPChannel:
    """SNMPChannel backed by a dict of OID -> value."""

    def __init__(self, profile: VendorProfile = RARITAN, num_outlets: int = 8,
                 model: str = "PX-5000", serial: str = "",
                 device_name: str = "", sys_description: str = "",
                 power_raw: int | None = None):
        self.profile = profile
        self._num_outlets = num_outlets
        # Fixed raw power register value; None simulates a live load
        self.power_raw = power_raw
        self._start_time = time.time()
        self.offline = False
        self.get_requests: list[list[str]] = []
        self.set_requests: list[list[Assignment]] = []
        self._closed = False

        serial = serial or f"MOCK{random.randint(100000, 999999):06d}"
        self.oids: dict[str, object] = {
            OID_SYS_DESCR: sys_description or f"{profile.name} {model} Switched PDU (Mock)",
            profile.outlet_count: num_outlets,
            profile.device_name: device_name or f"{profile.name} {model} (Mock)",
            profile.model: model,
            profile.serial: serial,
            profile.firmware: "1.0.0",
            profile.power: 0,
        }
        for i in range(num_outlets):
            self.oids[profile.outlet_name_oid(i)] = f"Outlet {i + 1},{i + 1}"
            self.oids[profile.outlet_status_oid(i)] = profile.on_code

    def outlet_on(self, index: int) -> bool:
        return self.profile.decode(self.oids[self.profile.outlet_status_oid(index)])

    def _raw_power(self) -> int:
        """Raw power register value: a slow wobble per outlet that is on."""
        if self.power_raw is not None:
            return self.power_raw
        elapsed = time.time() - self._start_time
        on_count = sum(1 for i in range(self._num_outlets) if self.outlet_on(i))
        # Raritan reports watts; APC reports tenths of amps
        per_outlet = 60.0 if self.profile.power_multiplier == 1 else 5.0
        wobble = 1.0 + 0.1 * math.sin(elapsed / 30.0)
        return int(on_count * per_outlet * wobble)

    async def get(self, oids: list[str]) -> list[Varbind]:
        self._check_online()
        varbinds: list[Varbind] = []
        for chunk in chunked(list(oids), DEFAULT_BATCH_SIZE):
            self.get_requests.append(chunk)
            for oid in chunk:
                if oid == self.profile.power and self.profile.power in self.oids:
                    self.oids[oid] = self._raw_power()
                if oid not in self.oids:
                    raise TransportError(f"mock GET {oid}: noSuchObject")
                varbinds.append((oid, self.oids[oid]))
        return varbinds

    async def set(self, assignments: list[Assignment]) -> None:
        self._check_online()
        self.set_requests.append(list(assignments))
        for oid, _typ, value in assignments:
            if oid not in self.oids:
                raise TransportError(f"mock SET {oid}: notWritable")
        for oid, _typ, value in assignments:
            self.oids[oid] = value
            logger.debug("Mock SET %s = %s", oid, value)

    def _check_online(self):
        if self.offline:
            raise TransportError("mock PDU: requestTimedOut")

    def get_health(self) -> dict:
        return {
            "transport": "mock",
            "target": "mock",
            "total_gets": len(self.get_requests),
            "total_sets": len(self.set_requests),
            "consecutive_failures": 0,
            "reachable": not self.offline,
        }

    def close(self) -> None:
        self._closed = True
