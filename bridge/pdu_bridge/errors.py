# Multi-Vendor PDU Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Exception hierarchy for device identification, polling and control."""


class PDUBridgeError(Exception):
    """Base class for errors raised by a single PDU."""


class TransportError(PDUBridgeError):
    """SNMP request failed: timeout, unreachable host or malformed response."""


class IdentificationError(PDUBridgeError):
    """The device could not be identified; it is left out of the fleet."""


class UnknownVendorError(IdentificationError):
    """sysDescr names a manufacturer with no VendorProfile."""

    def __init__(self, token: str):
        super().__init__(f"unknown PDU vendor {token!r}")
        self.token = token


class MissingSerialError(IdentificationError):
    """The device reported an empty serial number."""


class CommandError(PDUBridgeError):
    """An outlet SET failed. The cached outlet state was not changed."""

    def __init__(self, index: int, on: bool, reason: str = ""):
        msg = f"failed to switch outlet {index} {'on' if on else 'off'}"
        if reason:
            msg = f"{msg}: {reason}"
        super().__init__(msg)
        self.index = index
        self.on = on
