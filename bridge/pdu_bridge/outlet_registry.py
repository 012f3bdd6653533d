# Multi-Vendor PDU Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Per-device outlet list and cached power reading."""

import logging

from .errors import TransportError
from .pdu_model import POWER_FLOOR, DeviceIdentity, Outlet, clamp_power
from .transport import SNMPChannel

logger = logging.getLogger(__name__)


class OutletRegistry:
    """Outlets of one identified PDU, indexed 0..outlet_count-1."""

    def __init__(self, identity: DeviceIdentity):
        self.identity = identity
        self.outlets: list[Outlet] = [
            Outlet(index=i) for i in range(identity.outlet_count)
        ]
        self._power = POWER_FLOOR

    def __len__(self) -> int:
        return len(self.outlets)

    @property
    def power(self) -> float:
        """Latest power draw in watts (never below POWER_FLOOR)."""
        return self._power

    def outlet(self, index: int) -> Outlet:
        if not 0 <= index < len(self.outlets):
            raise IndexError(
                f"outlet index {index} out of range [0, {len(self.outlets)})"
            )
        return self.outlets[index]

    def name_oids(self) -> list[str]:
        profile = self.identity.profile
        return [profile.outlet_name_oid(o.index) for o in self.outlets]

    def status_oids(self) -> list[str]:
        profile = self.identity.profile
        return [profile.outlet_status_oid(o.index) for o in self.outlets]

    def set_state(self, index: int, on: bool):
        self.outlet(index).on = on

    def states(self) -> list[bool]:
        return [o.on for o in self.outlets]

    def set_power(self, raw) -> float:
        """Store a raw power register value; returns the watts kept."""
        self._power = clamp_power(self.identity.profile.to_watts(raw))
        return self._power

    def apply_names(self, values: list) -> None:
        """Assign names positionally. Each value is "name,extra,..."."""
        for outlet, value in zip(self.outlets, values):
            outlet.name = str(value).split(",")[0]

    async def load_names(self, channel: SNMPChannel) -> bool:
        """Fetch all outlet names. Returns False (names left unset) on failure."""
        if not self.outlets:
            return True
        try:
            varbinds = await channel.get(self.name_oids())
        except TransportError as e:
            logger.warning("[%s] Could not load outlet names: %s",
                           self.identity.host, e)
            return False
        self.apply_names([value for _oid, value in varbinds])
        logger.info("[%s] Loaded outlet names: %s", self.identity.host,
                    ", ".join(o.label for o in self.outlets))
        return True
