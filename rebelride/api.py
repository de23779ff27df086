"""Stable public API for building tooling on top of rebelride.

This module is the supported integration surface for third-party callers.
Avoid importing from private/internal modules unless intentionally depending on
non-stable internals.
"""

from __future__ import annotations

from collections.abc import Callable

from rebelride.core.codec import encode, render_payload
from rebelride.core.cooldown import WakeCooldown
from rebelride.core.errors import (
    AttributeResolutionError,
    CharacteristicNotFoundError,
    ConnectFailedError,
    CooldownActiveError,
    DiscoveryFailedError,
    InvalidAddressError,
    PermissionDeniedError,
    RebelRideError,
    ScanError,
    ServiceNotFoundError,
    SettingsError,
    SettingsLoadError,
    SettingsValidationError,
    TransportDisabledError,
    TransportError,
    TransportUnavailableError,
    WriteFailedError,
)
from rebelride.core.model import (
    AttributeSet,
    CommandIntent,
    DeviceHandle,
    DiscoveredService,
    Frame,
    ProgressEvent,
    ScannedDevice,
    SessionOutcome,
    SessionState,
    Settings,
)
from rebelride.core.progress import ProgressCallback, ProgressLog
from rebelride.core.service import ScooterService
from rebelride.core.settings import load_settings, save_settings
from rebelride.transports.base import PermissionGate, Scanner, Scheduler, Transport

__all__ = [
    "RebelRideError",
    "AttributeResolutionError",
    "CharacteristicNotFoundError",
    "ConnectFailedError",
    "CooldownActiveError",
    "DiscoveryFailedError",
    "InvalidAddressError",
    "PermissionDeniedError",
    "ScanError",
    "ServiceNotFoundError",
    "SettingsError",
    "SettingsLoadError",
    "SettingsValidationError",
    "TransportDisabledError",
    "TransportError",
    "TransportUnavailableError",
    "WriteFailedError",
    "AttributeSet",
    "CommandIntent",
    "DeviceHandle",
    "DiscoveredService",
    "Frame",
    "ProgressEvent",
    "ScannedDevice",
    "SessionOutcome",
    "SessionState",
    "Settings",
    "ProgressLog",
    "WakeCooldown",
    "encode",
    "render_payload",
    "load_settings",
    "save_settings",
    "Client",
]


class Client:
    """Public client for scanning and commanding a scooter.

    A `Client` wraps the connection session, the wake cooldown and settings
    behind a stable API intended for third-party tools (GUI/TUI/services/scripts).
    Operation methods must be awaited, or called, from inside a running event loop.
    """

    def __init__(
        self,
        *,
        transport: Transport | None = None,
        scanner: Scanner | None = None,
        scheduler: Scheduler | None = None,
        permission_gate: PermissionGate | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._service = ScooterService(
            transport=transport,
            scanner=scanner,
            scheduler=scheduler,
            permission_gate=permission_gate,
            settings=settings,
        )

    @property
    def settings(self) -> Settings:
        return self._service.settings

    @property
    def state(self) -> SessionState:
        return self._service.session.state

    @property
    def progress_lines(self) -> list[str]:
        return self._service.progress.lines()

    def subscribe(self, callback: ProgressCallback) -> Callable[[], None]:
        return self._service.progress.subscribe(callback)

    def clear_progress(self) -> None:
        self._service.progress.clear()

    def perform_operation(self, address: str, secret: str, intent: CommandIntent) -> bool:
        return self._service.perform_operation(address, secret, intent)

    async def run_operation(
        self,
        address: str,
        secret: str,
        intent: CommandIntent,
        *,
        timeout_s: float | None = None,
    ) -> SessionOutcome | None:
        return await self._service.run_operation(address, secret, intent, timeout_s=timeout_s)

    async def wake(self, address: str) -> SessionOutcome | None:
        return await self.run_operation(address, "", CommandIntent.WAKE_UP)

    async def lock(self, address: str, secret: str) -> SessionOutcome | None:
        return await self.run_operation(address, secret, CommandIntent.LOCK)

    async def unlock(self, address: str, secret: str) -> SessionOutcome | None:
        return await self.run_operation(address, secret, CommandIntent.UNLOCK)

    def disconnect(self) -> None:
        self._service.disconnect()

    async def scan(self, timeout_s: float | None = None) -> list[ScannedDevice]:
        return await self._service.scan(timeout_s)

    async def aclose(self) -> None:
        await self._service.aclose()
