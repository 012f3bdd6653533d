# Multi-Vendor PDU Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 MIT License
# https://github.com/mvalancy/CyberPower-PDU

"""Batched SNMP GET/SET channel for one PDU, with health tracking.

One SNMPClient is created per configured device and kept for the whole
time that device is monitored; the SnmpEngine and transport target are
never rebuilt per request. Embedded PDU agents only answer a couple of
varbinds per PDU, so GETs are split into small chunks that are sent
concurrently and stitched back together in request order.
"""

import asyncio
import logging
import time
from typing import Any

from pysnmp.hlapi.asyncio import (
    CommunityData,
    ContextData,
    Integer32,
    ObjectIdentity,
    ObjectType,
    OctetString,
    SnmpEngine,
    UdpTransportTarget,
    getCmd,
    setCmd,
)
from pysnmp.proto.rfc1905 import EndOfMibView, NoSuchInstance, NoSuchObject

from .config import Config
from .errors import TransportError
from .pdu_config import PDUConfig
from .transport import Assignment, Varbind

logger = logging.getLogger(__name__)

# Varbinds per GET request that constrained agents answer reliably
DEFAULT_BATCH_SIZE = 2

_MISSING_VALUE_TYPES = (NoSuchObject, NoSuchInstance, EndOfMibView)

_VALUE_TYPES = {
    "integer": Integer32,
    "string": OctetString,
}


def chunked(items: list, size: int) -> list[list]:
    """Split *items* into consecutive chunks of at most *size* elements."""
    if size < 1:
        raise ValueError(f"chunk size must be >= 1, got {size}")
    return [items[i:i + size] for i in range(0, len(items), size)]


class SNMPClient:
    """SNMP channel bound to a single PDU address and community."""

    def __init__(self, pdu_config: PDUConfig,
                 global_config: Config | None = None,
                 batch_size: int = DEFAULT_BATCH_SIZE):
        self._host = pdu_config.host
        self._port = pdu_config.snmp_port
        self._batch_size = batch_size
        timeout = global_config.snmp_timeout if global_config else 2.0
        retries = global_config.snmp_retries if global_config else 1

        self.engine = SnmpEngine()
        # mpModel 0 = SNMPv1, 1 = SNMPv2c
        self._community = CommunityData(
            pdu_config.community,
            mpModel=0 if pdu_config.snmp_version == "1" else 1,
        )
        self._target = UdpTransportTarget(
            (self._host, self._port),
            timeout=timeout,
            retries=retries,
        )

        # Health tracking
        self._total_gets = 0
        self._failed_gets = 0
        self._total_sets = 0
        self._failed_sets = 0
        self._consecutive_failures = 0
        self._last_success_time: float | None = None
        self._last_error_time: float | None = None
        self._last_error_msg: str | None = None
        self._last_request_duration: float | None = None

    @property
    def target(self) -> str:
        return f"{self._host}:{self._port}"

    def get_health(self) -> dict:
        """Return SNMP connection health metrics."""
        return {
            "transport": "snmp",
            "target": self.target,
            "total_gets": self._total_gets,
            "failed_gets": self._failed_gets,
            "total_sets": self._total_sets,
            "failed_sets": self._failed_sets,
            "consecutive_failures": self._consecutive_failures,
            "last_success": self._last_success_time,
            "last_error": self._last_error_time,
            "last_error_msg": self._last_error_msg,
            "last_request_duration_ms": (
                round(self._last_request_duration * 1000, 1)
                if self._last_request_duration is not None else None
            ),
            "reachable": self._consecutive_failures < 10,
        }

    async def get(self, oids: list[str]) -> list[Varbind]:
        """GET all *oids*, batch_size per request, chunks in parallel.

        The returned varbinds are in the same order as *oids*. If any
        chunk fails the whole call raises TransportError, but only after
        every chunk has finished; requests already sent are not cancelled.
        """
        if not oids:
            return []
        start = time.monotonic()
        results = await asyncio.gather(
            *(self._get_chunk(chunk) for chunk in chunked(list(oids), self._batch_size)),
            return_exceptions=True,
        )
        self._last_request_duration = time.monotonic() - start

        varbinds: list[Varbind] = []
        for result in results:
            if isinstance(result, BaseException):
                raise result
            varbinds.extend(result)
        return varbinds

    async def _get_chunk(self, oids: list[str]) -> list[Varbind]:
        self._total_gets += 1
        desc = ",".join(oids)
        try:
            error_indication, error_status, error_index, var_binds = await getCmd(
                self.engine,
                self._community,
                self._target,
                ContextData(),
                *(ObjectType(ObjectIdentity(oid)) for oid in oids),
            )
        except Exception as e:
            raise self._get_failed(f"GET {desc}: {e}") from e

        if error_indication:
            raise self._get_failed(f"GET {desc}: {error_indication}")
        if error_status:
            raise self._get_failed(
                f"GET {desc}: {error_status.prettyPrint()} at "
                f"{var_binds[int(error_index) - 1][0] if error_index else '?'}"
            )
        if len(var_binds) != len(oids):
            raise self._get_failed(
                f"GET {desc}: expected {len(oids)} varbinds, got {len(var_binds)}"
            )

        result: list[Varbind] = []
        for oid, (_name, value) in zip(oids, var_binds):
            if isinstance(value, _MISSING_VALUE_TYPES):
                raise self._get_failed(f"GET {oid}: {value.__class__.__name__}")
            result.append((oid, value))

        self._record_success()
        return result

    async def set(self, assignments: list[Assignment]) -> None:
        """SET every (oid, type, value) triple in a single request."""
        self._total_sets += 1
        desc = ",".join(f"{oid}={value}" for oid, _typ, value in assignments)
        try:
            var_binds = [
                ObjectType(ObjectIdentity(oid), self._encode(typ, value))
                for oid, typ, value in assignments
            ]
        except (KeyError, ValueError, TypeError) as e:
            raise self._set_failed(f"SET {desc}: bad value ({e})") from e

        try:
            error_indication, error_status, error_index, out_binds = await setCmd(
                self.engine,
                self._community,
                self._target,
                ContextData(),
                *var_binds,
            )
        except Exception as e:
            raise self._set_failed(f"SET {desc}: {e}") from e

        if error_indication:
            raise self._set_failed(f"SET {desc}: {error_indication}")
        if error_status:
            raise self._set_failed(
                f"SET {desc}: {error_status.prettyPrint()} at "
                f"{out_binds[int(error_index) - 1][0] if error_index else '?'}"
            )

        self._record_success()

    @staticmethod
    def _encode(typ: str, value: Any):
        return _VALUE_TYPES[typ](value)

    def _get_failed(self, msg: str) -> TransportError:
        self._failed_gets += 1
        self._record_failure(msg)
        return TransportError(f"{self.target} {msg}")

    def _set_failed(self, msg: str) -> TransportError:
        self._failed_sets += 1
        self._record_failure(msg)
        return TransportError(f"{self.target} {msg}")

    def _record_success(self):
        self._consecutive_failures = 0
        self._last_success_time = time.time()

    def _record_failure(self, msg: str):
        self._consecutive_failures += 1
        self._last_error_time = time.time()
        self._last_error_msg = msg
        # Log at different levels based on consecutive failures
        if self._consecutive_failures == 1:
            logger.warning("SNMP %s: %s", self.target, msg)
        elif self._consecutive_failures <= 5:
            logger.error("SNMP %s: %s (failure %d)", self.target, msg,
                         self._consecutive_failures)
        elif self._consecutive_failures % 30 == 0:
            logger.error(
                "SNMP %s: PDU unreachable for %d consecutive failures — %s",
                self.target, self._consecutive_failures, msg,
            )

    @property
    def consecutive_failures(self) -> int:
        """Current consecutive failure count (read-only)."""
        return self._consecutive_failures

    def close(self):
        try:
            self.engine.close_dispatcher()
        except Exception:
            logger.debug("Error closing SNMP engine", exc_info=True)
