"""Service layer used by the CLI and the public API."""

from __future__ import annotations

import logging

from rebelride.core.cooldown import WakeCooldown
from rebelride.core.errors import CooldownActiveError
from rebelride.core.model import CommandIntent, ScannedDevice, SessionOutcome, Settings
from rebelride.core.progress import ProgressLog
from rebelride.core.session import (
    DEFAULT_DISCONNECT_TIMEOUT_S,
    DEFAULT_SETUP_TIMEOUT_S,
    FRAME_GAP_S,
    ConnectionSession,
)
from rebelride.core.settings import load_settings
from rebelride.transports.base import PermissionGate, Scanner, Scheduler, Transport
from rebelride.transports.ble_gatt import BleakTransport
from rebelride.transports.scan import BleakDeviceScanner

LOGGER = logging.getLogger(__name__)


class ScooterService:
    def __init__(
        self,
        *,
        transport: Transport | None = None,
        scanner: Scanner | None = None,
        scheduler: Scheduler | None = None,
        permission_gate: PermissionGate | None = None,
        settings: Settings | None = None,
        cooldown: WakeCooldown | None = None,
        progress: ProgressLog | None = None,
    ) -> None:
        self.settings = settings if settings is not None else load_settings()
        self.progress = progress or ProgressLog()
        self.transport = transport or BleakTransport(connect_timeout_s=self.settings.connect_timeout_s)
        self.scanner = scanner or BleakDeviceScanner()
        self.wake_cooldown = cooldown or WakeCooldown()
        self.session = ConnectionSession(
            self.transport,
            progress=self.progress,
            scheduler=scheduler,
            permission_gate=permission_gate,
            connect_timeout_s=self.settings.connect_timeout_s,
            reply_timeout_s=self.settings.reply_timeout_s,
        )

    def perform_operation(self, address: str, secret: str, intent: CommandIntent) -> bool:
        """Queue ``intent`` for ``address`` and return whether it was accepted.

        Rejections (cooldown, missing password) are reported on the progress log;
        everything after acceptance is reported there too.
        """
        if intent is CommandIntent.WAKE_UP:
            try:
                self.wake_cooldown.acquire()
            except CooldownActiveError as exc:
                self.progress.error(str(exc))
                return False
            self.progress.append(
                f"Wake Up button disabled for {self.wake_cooldown.duration_s:g} seconds"
            )
        elif not secret:
            self.progress.error(f"A password is required for {intent.label}.")
            return False

        self.session.start(address, intent, secret)
        return True

    async def run_operation(
        self,
        address: str,
        secret: str,
        intent: CommandIntent,
        *,
        timeout_s: float | None = None,
    ) -> SessionOutcome | None:
        if not self.perform_operation(address, secret, intent):
            return SessionOutcome.FAILED
        deadline = timeout_s or self.operation_deadline_s()
        try:
            return await self.session.wait_idle(deadline)
        except TimeoutError:
            self.progress.error(f"Operation did not finish within {deadline:g} seconds.")
            self.session.request_disconnect()
            return SessionOutcome.TIMED_OUT

    def operation_deadline_s(self) -> float:
        """Upper bound for one run, with one second of slack on top of the session timers."""
        return (
            self.settings.connect_timeout_s
            + 2 * DEFAULT_SETUP_TIMEOUT_S
            + self.settings.reply_timeout_s
            + DEFAULT_DISCONNECT_TIMEOUT_S
            + FRAME_GAP_S
            + 1.0
        )

    def disconnect(self) -> None:
        self.session.request_disconnect()

    async def scan(self, timeout_s: float | None = None) -> list[ScannedDevice]:
        return await self.scanner.scan(timeout_s or self.settings.scan_timeout_s)

    async def aclose(self) -> None:
        await self.session.aclose()
