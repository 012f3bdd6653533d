# Multi-Vendor PDU Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Abstract SNMP channel used by identification, polling and control.

Defines the SNMPChannel interface that SNMPClient and MockSNMPChannel
both implement. The resolver and PDUPoller only talk to this protocol,
so they work the same against real hardware and the simulator.
"""

from typing import Any, Protocol, runtime_checkable

# (oid, value) as returned by a GET
Varbind = tuple[str, Any]

# (oid, value type, value) for a SET; type is "integer" or "string"
Assignment = tuple[str, str, Any]


@runtime_checkable
class SNMPChannel(Protocol):
    """Protocol for a per-device SNMP channel.

    Implementations: SNMPClient, MockSNMPChannel.
    """

    async def get(self, oids: list[str]) -> list[Varbind]:
        """GET every OID; results come back in request order.

        Raises TransportError on any failure.
        """
        ...

    async def set(self, assignments: list[Assignment]) -> None:
        """SET all assignments in one request. Raises TransportError."""
        ...

    def get_health(self) -> dict:
        """Return channel health metrics."""
        ...

    def close(self) -> None:
        """Release the channel."""
        ...
