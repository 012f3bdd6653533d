# Multi-Vendor PDU Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""One-shot device identification.

Reads sysDescr to pick the vendor profile, then fetches the vendor's
identity OIDs in one batched call. Runs once per device at startup.
"""

import logging

from .errors import IdentificationError, MissingSerialError, TransportError
from .pdu_config import PDUConfig
from .pdu_model import DeviceIdentity
from .transport import SNMPChannel
from .vendor_profiles import OID_SYS_DESCR, lookup, manufacturer_token

logger = logging.getLogger(__name__)


async def resolve_identity(channel: SNMPChannel, pdu_cfg: PDUConfig) -> DeviceIdentity:
    """Identify the PDU behind *channel*.

    Raises UnknownVendorError, MissingSerialError or IdentificationError
    when the device cannot be used, and TransportError when it does not
    answer.
    """
    varbinds = await channel.get([OID_SYS_DESCR])
    if len(varbinds) != 1:
        raise TransportError(f"{pdu_cfg.host} returned no sysDescr")
    sys_description = str(varbinds[0][1]).strip()
    token = manufacturer_token(sys_description)
    profile = lookup(token)
    logger.debug("[%s] sysDescr %r -> %s profile",
                 pdu_cfg.host, sys_description, profile.name)

    oids = profile.identity_oids()
    values = [value for _oid, value in await channel.get(oids)]
    if len(values) != len(oids):
        raise TransportError(f"{pdu_cfg.host} returned an incomplete identity")
    raw_count, raw_name, raw_model, raw_serial, raw_firmware = values

    serial = str(raw_serial).strip()
    if not serial:
        raise MissingSerialError(f"{pdu_cfg.host} reported an empty serial number")

    try:
        outlet_count = int(raw_count)
    except (ValueError, TypeError):
        raise IdentificationError(
            f"{pdu_cfg.host} reported invalid outlet count {raw_count!r}"
        )
    if outlet_count < 0:
        raise IdentificationError(
            f"{pdu_cfg.host} reported negative outlet count {outlet_count}"
        )

    identity = DeviceIdentity(
        host=pdu_cfg.host,
        community=pdu_cfg.community,
        port=pdu_cfg.snmp_port,
        profile=profile,
        serial=serial,
        outlet_count=outlet_count,
        device_name=pdu_cfg.label or str(raw_name).strip(),
        manufacturer=profile.name,
        model=str(raw_model).strip(),
        firmware=str(raw_firmware).strip(),
        sys_description=sys_description,
    )
    logger.info(
        "[%s] Identity: manufacturer=%s model=%s serial=%s firmware=%s outlets=%d",
        pdu_cfg.host, identity.manufacturer, identity.model,
        identity.serial, identity.firmware, identity.outlet_count,
    )
    return identity
