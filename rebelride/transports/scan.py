"""Nearby device discovery via BleakScanner."""

from __future__ import annotations

import asyncio
import logging

from bleak import BleakScanner
from bleak.exc import BleakError

from rebelride.core.errors import ScanError
from rebelride.core.model import ScannedDevice

LOGGER = logging.getLogger(__name__)
UNKNOWN_NAME = "Unknown Device"


class BleakDeviceScanner:
    async def scan(self, timeout_s: float = 5.0) -> list[ScannedDevice]:
        try:
            found = await BleakScanner.discover(timeout=timeout_s, return_adv=True)
        except (BleakError, asyncio.TimeoutError, OSError) as exc:
            raise ScanError(
                f"Bluetooth scan failed. Ensure the adapter is powered on. Details: {exc}"
            ) from exc

        seen: set[str] = set()
        devices: list[ScannedDevice] = []
        for device, advertisement in found.values():
            address = device.address.upper()
            if address in seen:
                continue
            seen.add(address)
            devices.append(
                ScannedDevice(
                    address=address,
                    name=device.name or advertisement.local_name or UNKNOWN_NAME,
                    rssi=advertisement.rssi,
                )
            )
        LOGGER.debug("Scan found %d devices", len(devices))
        return sorted(devices, key=_by_signal)


def _by_signal(device: ScannedDevice) -> tuple[bool, int]:
    return device.rssi is None, -(device.rssi or 0)
