"""BLE GATT transport implementation on top of bleak.

bleak exposes coroutines; the session expects submit-and-callback semantics. Each
request is therefore spawned as a task on the running loop and its result is
reported through the attempt's listener.
"""

from __future__ import annotations

import asyncio
import logging
import subprocess
import sys
from collections.abc import Callable, Coroutine
from pathlib import Path
from typing import Any

from bleak import BleakClient
from bleak.backends.characteristic import BleakGATTCharacteristic
from bleak.exc import BleakError

from rebelride.core.errors import ConnectFailedError
from rebelride.core.model import DeviceHandle, DiscoveredService
from rebelride.transports.base import GATT_FAILURE, GATT_SUCCESS, TransportListener

LOGGER = logging.getLogger(__name__)

_SYSFS_BLUETOOTH = Path("/sys/class/bluetooth")
_BLE_ERRORS = (BleakError, asyncio.TimeoutError, OSError)


class BleakConnection:
    def __init__(
        self,
        handle: DeviceHandle,
        listener: TransportListener,
        *,
        timeout_s: float,
        loop: asyncio.AbstractEventLoop,
    ) -> None:
        self.handle = handle
        self._listener = listener
        self._loop = loop
        self._closed = False
        self._disconnect_reported = False
        self._tasks: set[asyncio.Task[None]] = set()
        self._client = BleakClient(
            handle.address,
            disconnected_callback=self._on_disconnected,
            timeout=timeout_s,
        )
        self._spawn(self._connect())

    @property
    def pending(self) -> tuple[asyncio.Task[None], ...]:
        return tuple(self._tasks)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = self._loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _emit(self, deliver: Callable[[TransportListener], None]) -> None:
        if self._closed:
            return
        deliver(self._listener)

    def _on_disconnected(self, _: BleakClient) -> None:
        if self._disconnect_reported:
            return
        self._disconnect_reported = True
        self._emit(lambda listener: listener.on_connection_state_changed(False, GATT_SUCCESS))

    def _on_notification(self, characteristic: BleakGATTCharacteristic, data: bytearray) -> None:
        payload = bytes(data)
        self._emit(lambda listener: listener.on_characteristic_changed(characteristic.uuid, payload))

    async def _connect(self) -> None:
        try:
            await self._client.connect()
        except _BLE_ERRORS as exc:
            LOGGER.debug("BLE connect failed for %s: %s", self.handle.address, exc)
            self._disconnect_reported = True
            self._emit(lambda listener: listener.on_connection_state_changed(False, GATT_FAILURE))
            return
        self._emit(lambda listener: listener.on_connection_state_changed(True, GATT_SUCCESS))

    def discover_attributes(self) -> bool:
        if not self._client.is_connected:
            return False
        self._spawn(self._discover())
        return True

    async def _discover(self) -> None:
        # bleak resolves the GATT table while connecting.
        try:
            topology = tuple(
                DiscoveredService(
                    uuid=service.uuid,
                    characteristics=tuple(char.uuid for char in service.characteristics),
                )
                for service in self._client.services
            )
        except BleakError as exc:
            LOGGER.debug("Reading discovered services failed: %s", exc)
            self._emit(lambda listener: listener.on_discovery_complete(GATT_FAILURE, ()))
            return
        self._emit(lambda listener: listener.on_discovery_complete(GATT_SUCCESS, topology))

    def set_notify(self, uuid: str, enabled: bool) -> None:
        self._spawn(self._set_notify(uuid, enabled))

    async def _set_notify(self, uuid: str, enabled: bool) -> None:
        try:
            if enabled:
                await self._client.start_notify(uuid, self._on_notification)
            else:
                await self._client.stop_notify(uuid)
        except _BLE_ERRORS as exc:
            LOGGER.debug("Changing notify state on %s failed: %s", uuid, exc)
            self._emit(lambda listener: listener.on_notify_subscribed(uuid, False))
            return
        self._emit(lambda listener: listener.on_notify_subscribed(uuid, True))

    def write(self, uuid: str, payload: bytes) -> bool:
        if not self._client.is_connected:
            return False
        self._spawn(self._write(uuid, payload))
        return True

    async def _write(self, uuid: str, payload: bytes) -> None:
        try:
            await self._client.write_gatt_char(uuid, payload, response=True)
        except _BLE_ERRORS as exc:
            LOGGER.debug("Write to %s failed: %s", uuid, exc)
            self._emit(lambda listener: listener.on_write_complete(uuid, payload, GATT_FAILURE))
            return
        self._emit(lambda listener: listener.on_write_complete(uuid, payload, GATT_SUCCESS))

    def disconnect(self) -> None:
        self._spawn(self._disconnect())

    async def _disconnect(self) -> None:
        try:
            await self._client.disconnect()
        except _BLE_ERRORS as exc:
            LOGGER.warning("BLE disconnect from %s failed: %s", self.handle.address, exc)
        # bleak only fires the disconnected callback for links that were up.
        self._on_disconnected(self._client)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for task in list(self._tasks):
            task.cancel()
        self._spawn(self._disconnect())


class BleakTransport:
    def __init__(self, *, connect_timeout_s: float = 10.0) -> None:
        self.connect_timeout_s = connect_timeout_s
        self._connections: list[BleakConnection] = []

    def is_available(self) -> bool:
        if not sys.platform.startswith("linux"):
            return True
        return _SYSFS_BLUETOOTH.is_dir() and any(_SYSFS_BLUETOOTH.iterdir())

    def is_enabled(self) -> bool:
        result = _run_bluetoothctl(["bluetoothctl", "show"])
        if result is None or result.returncode != 0:
            # Without bluetoothctl the power state is unknown; let connect report it.
            return True
        return "Powered: yes" in result.stdout

    def open(self, handle: DeviceHandle, listener: TransportListener) -> BleakConnection:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError as exc:
            raise ConnectFailedError("BLE transport requires a running event loop") from exc
        try:
            connection = BleakConnection(
                handle,
                listener,
                timeout_s=self.connect_timeout_s,
                loop=loop,
            )
        except BleakError as exc:
            raise ConnectFailedError(f"BLE connect failed for {handle.address}: {exc}") from exc
        self._connections = [c for c in self._connections if c.pending]
        self._connections.append(connection)
        return connection

    async def aclose(self) -> None:
        pending = [task for connection in self._connections for task in connection.pending]
        self._connections = []
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


def _run_bluetoothctl(cmd: list[str]) -> subprocess.CompletedProcess[str] | None:
    try:
        return subprocess.run(
            cmd,
            check=False,
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (FileNotFoundError, subprocess.TimeoutExpired):
        return None
