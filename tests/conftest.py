from __future__ import annotations

import asyncio
from dataclasses import dataclass

import pytest

from rebelride.core.attributes import CHAR_NOTIFY_UUID, CHAR_WRITE_UUID, SERVICE_UUID
from rebelride.core.model import DeviceHandle, DiscoveredService, SessionState

GAP_SERVICE = DiscoveredService(
    uuid="00001800-0000-1000-8000-00805f9b34fb",
    characteristics=("00002a00-0000-1000-8000-00805f9b34fb",),
)
SCOOTER_TOPOLOGY = (
    GAP_SERVICE,
    DiscoveredService(uuid=SERVICE_UUID, characteristics=(CHAR_WRITE_UUID, CHAR_NOTIFY_UUID)),
)


@dataclass(frozen=True)
class RecordedWrite:
    address: str
    payload: bytes
    at: float


class FakeConnection:
    def __init__(self, transport: FakeTransport, handle: DeviceHandle, listener) -> None:
        self.transport = transport
        self.handle = handle
        self.listener = listener
        self.closed = False
        self.writes = 0
        self._loop = asyncio.get_running_loop()
        if handle.address not in transport.hang_addresses:
            self._later(self._report_connect)

    def _later(self, fn, *args) -> None:
        self._loop.call_soon(fn, *args)

    def _record(self, *call) -> None:
        self.transport.calls.append((self.handle.address, *call))

    def _report_connect(self) -> None:
        if self.transport.connect_ok:
            self.transport.live_at_connect.append(self.transport.live_connections())
            self.listener.on_connection_state_changed(True, 0)
        else:
            self.listener.on_connection_state_changed(False, 133)

    def discover_attributes(self) -> bool:
        self._record("discover")
        if self.transport.silent_discovery:
            return True
        self._later(
            self.listener.on_discovery_complete,
            self.transport.discovery_status,
            self.transport.topology,
        )
        return True

    def set_notify(self, uuid: str, enabled: bool) -> None:
        self._record("set_notify", uuid, enabled)
        if self.transport.silent_notify:
            return
        self._later(self.listener.on_notify_subscribed, uuid, self.transport.notify_result)

    def write(self, uuid: str, payload: bytes) -> bool:
        self._record("write", uuid, payload)
        self.writes += 1
        self.transport.writes.append(
            RecordedWrite(address=self.handle.address, payload=payload, at=self._loop.time())
        )
        self._later(self.listener.on_write_complete, uuid, payload, self.transport.write_status)
        if self.transport.disconnect_after_write == self.writes:
            self._later(self.listener.on_connection_state_changed, False, 19)
        elif payload == b"\r\n" and self.transport.reply is not None:
            self._later(
                self.listener.on_characteristic_changed, self.transport.reply_uuid, self.transport.reply
            )
        return True

    def disconnect(self) -> None:
        self._record("disconnect")
        if not self.transport.silent_disconnect:
            self._later(self.listener.on_connection_state_changed, False, 0)

    def close(self) -> None:
        self._record("close")
        self.closed = True


class FakeTransport:
    def __init__(self) -> None:
        self.available = True
        self.enabled = True
        self.connect_ok = True
        self.hang_addresses: set[str] = set()
        self.topology = SCOOTER_TOPOLOGY
        self.discovery_status = 0
        self.notify_result = True
        self.write_status = 0
        self.reply: bytes | None = b"OK"
        self.reply_uuid = CHAR_NOTIFY_UUID
        self.disconnect_after_write: int | None = None
        self.silent_discovery = False
        self.silent_notify = False
        self.silent_disconnect = False

        self.calls: list[tuple] = []
        self.writes: list[RecordedWrite] = []
        self.connections: list[FakeConnection] = []
        self.live_at_connect: list[int] = []

    def live_connections(self) -> int:
        return sum(1 for connection in self.connections if not connection.closed)

    def is_available(self) -> bool:
        return self.available

    def is_enabled(self) -> bool:
        return self.enabled

    def open(self, handle: DeviceHandle, listener) -> FakeConnection:
        connection = FakeConnection(self, handle, listener)
        self.connections.append(connection)
        return connection

    async def aclose(self) -> None:
        return None


class ManualTimer:
    def __init__(self, delay_s: float, callback) -> None:
        self.delay_s = delay_s
        self.callback = callback
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        assert not self.cancelled, "timer was cancelled"
        self.fired = True
        self.callback()


class ManualScheduler:
    def __init__(self) -> None:
        self.timers: list[ManualTimer] = []

    def after(self, delay_s: float, callback) -> ManualTimer:
        timer = ManualTimer(delay_s, callback)
        self.timers.append(timer)
        return timer

    def armed(self, delay_s: float) -> list[ManualTimer]:
        return [
            timer
            for timer in self.timers
            if timer.delay_s == delay_s and not timer.cancelled and not timer.fired
        ]


async def _wait_for_state(session, state: SessionState, timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while session.state is not state:
        if loop.time() > deadline:
            raise AssertionError(f"session stuck in {session.state.value}, expected {state.value}")
        await asyncio.sleep(0.001)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def wait_for_state():
    return _wait_for_state
