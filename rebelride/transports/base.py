"""Transport interfaces."""

from __future__ import annotations

from collections.abc import Callable
from typing import Protocol

from rebelride.core.model import DeviceHandle, ScannedDevice, Topology

GATT_SUCCESS = 0
GATT_FAILURE = 257


class TransportListener(Protocol):
    """Receives asynchronous results for one open connection."""

    def on_connection_state_changed(self, connected: bool, status: int) -> None: ...

    def on_discovery_complete(self, status: int, topology: Topology) -> None: ...

    def on_notify_subscribed(self, uuid: str, result: bool) -> None: ...

    def on_write_complete(self, uuid: str, payload: bytes, status: int) -> None: ...

    def on_characteristic_changed(self, uuid: str, payload: bytes) -> None: ...


class TransportConnection(Protocol):
    def discover_attributes(self) -> bool:
        """Request service discovery; the result arrives via `on_discovery_complete`."""

    def set_notify(self, uuid: str, enabled: bool) -> None:
        """Request a notification subscription; the result arrives via `on_notify_subscribed`."""

    def write(self, uuid: str, payload: bytes) -> bool:
        """Submit a write and return whether it was accepted for transmission."""

    def disconnect(self) -> None:
        """Request link teardown; completion arrives as a disconnected state change."""

    def close(self) -> None:
        """Release the connection immediately. No further callbacks are delivered."""


class Transport(Protocol):
    def is_available(self) -> bool: ...

    def is_enabled(self) -> bool: ...

    def open(self, handle: DeviceHandle, listener: TransportListener) -> TransportConnection:
        """Begin connecting to ``handle``; raise `ConnectFailedError` if that is impossible."""

    async def aclose(self) -> None:
        """Wait for outstanding link teardown before the event loop goes away."""


class Scanner(Protocol):
    async def scan(self, timeout_s: float = 5.0) -> list[ScannedDevice]: ...


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def after(self, delay_s: float, callback: Callable[[], None]) -> TimerHandle: ...


PermissionGate = Callable[[], bool]


def always_permitted() -> bool:
    return True
