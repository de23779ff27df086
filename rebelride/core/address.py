"""Bluetooth address validation."""

from __future__ import annotations

import re

from rebelride.core.errors import InvalidAddressError
from rebelride.core.model import DeviceHandle

_MAC_RE = re.compile(r"^[0-9A-F]{2}(?::[0-9A-F]{2}){5}$", re.IGNORECASE)


def is_valid_address(identifier: str) -> bool:
    return bool(_MAC_RE.match(identifier.strip()))


def resolve_device(identifier: str) -> DeviceHandle:
    candidate = identifier.strip()
    if not _MAC_RE.match(candidate):
        raise InvalidAddressError(f"Invalid MAC address: {identifier}")
    return DeviceHandle(address=candidate.upper())
