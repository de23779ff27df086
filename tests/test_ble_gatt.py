from __future__ import annotations

import asyncio
import subprocess
import sys
from types import SimpleNamespace

import pytest
from bleak.exc import BleakError

from rebelride.core.attributes import CHAR_NOTIFY_UUID, CHAR_WRITE_UUID, SERVICE_UUID
from rebelride.core.errors import ConnectFailedError
from rebelride.core.model import DeviceHandle, DiscoveredService
from rebelride.transports import ble_gatt
from rebelride.transports.base import GATT_FAILURE, GATT_SUCCESS
from rebelride.transports.ble_gatt import BleakConnection, BleakTransport


def _cp(cmd: list[str], rc: int, stdout: str = "") -> subprocess.CompletedProcess[str]:
    return subprocess.CompletedProcess(cmd, rc, stdout=stdout, stderr="")


def test_enabled_reads_bluetoothctl_power_state(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        subprocess,
        "run",
        lambda cmd, **kwargs: _cp(cmd, 0, stdout="Controller 00:1A:7D:DA:71:13\n\tPowered: no\n"),
    )
    assert BleakTransport().is_enabled() is False

    monkeypatch.setattr(
        subprocess,
        "run",
        lambda cmd, **kwargs: _cp(cmd, 0, stdout="Controller 00:1A:7D:DA:71:13\n\tPowered: yes\n"),
    )
    assert BleakTransport().is_enabled() is True


def test_enabled_assumed_without_bluetoothctl(monkeypatch: pytest.MonkeyPatch) -> None:
    def missing(cmd, **kwargs):
        raise FileNotFoundError(cmd[0])

    monkeypatch.setattr(subprocess, "run", missing)
    assert BleakTransport().is_enabled() is True


def test_available_checks_sysfs_on_linux(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    monkeypatch.setattr(sys, "platform", "linux")
    monkeypatch.setattr(ble_gatt, "_SYSFS_BLUETOOTH", tmp_path)
    assert BleakTransport().is_available() is False

    (tmp_path / "hci0").mkdir()
    assert BleakTransport().is_available() is True


def test_open_without_event_loop_raises_clean_error() -> None:
    class Listener:
        pass

    with pytest.raises(ConnectFailedError):
        BleakTransport().open(DeviceHandle(address="AA:BB:CC:DD:EE:FF"), Listener())


def test_aclose_without_connections_is_noop() -> None:
    asyncio.run(BleakTransport().aclose())


class FakeBleakClient:
    connect_error: Exception | None = None

    def __init__(self, address, disconnected_callback=None, timeout=10.0) -> None:
        self.address = address
        self.disconnected_callback = disconnected_callback
        self.is_connected = False
        self.services = [
            SimpleNamespace(
                uuid=SERVICE_UUID,
                characteristics=[SimpleNamespace(uuid=CHAR_WRITE_UUID), SimpleNamespace(uuid=CHAR_NOTIFY_UUID)],
            )
        ]
        self.written: list[tuple[str, bytes, bool]] = []
        self.notify_callback = None

    async def connect(self) -> None:
        if self.connect_error is not None:
            raise self.connect_error
        self.is_connected = True

    async def disconnect(self) -> None:
        if not self.is_connected:
            return
        self.is_connected = False
        self.disconnected_callback(self)

    async def start_notify(self, uuid, callback) -> None:
        self.notify_callback = callback

    async def write_gatt_char(self, uuid, data, response=False) -> None:
        self.written.append((uuid, bytes(data), response))


class RecordingListener:
    def __init__(self) -> None:
        self.events: list[tuple] = []

    def on_connection_state_changed(self, connected, status) -> None:
        self.events.append(("state", connected, status))

    def on_discovery_complete(self, status, topology) -> None:
        self.events.append(("discovered", status, topology))

    def on_notify_subscribed(self, uuid, result) -> None:
        self.events.append(("notify", uuid, result))

    def on_write_complete(self, uuid, payload, status) -> None:
        self.events.append(("written", uuid, payload, status))

    def on_characteristic_changed(self, uuid, payload) -> None:
        self.events.append(("changed", uuid, payload))


@pytest.fixture
def fake_client(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(ble_gatt, "BleakClient", FakeBleakClient)
    monkeypatch.setattr(FakeBleakClient, "connect_error", None)
    return FakeBleakClient


async def _settle(connection: BleakConnection) -> None:
    while connection.pending:
        await asyncio.gather(*connection.pending, return_exceptions=True)
        await asyncio.sleep(0)


def _open(listener: RecordingListener) -> BleakConnection:
    return BleakConnection(
        DeviceHandle(address="AA:BB:CC:DD:EE:FF"),
        listener,
        timeout_s=1.0,
        loop=asyncio.get_running_loop(),
    )


def test_connection_reports_each_gatt_step(fake_client) -> None:
    listener = RecordingListener()

    async def scenario():
        connection = _open(listener)
        await _settle(connection)
        assert connection.discover_attributes()
        connection.set_notify(CHAR_NOTIFY_UUID, True)
        await _settle(connection)
        assert connection.write(CHAR_WRITE_UUID, b"\r\n")
        await _settle(connection)
        connection._client.notify_callback(SimpleNamespace(uuid=CHAR_NOTIFY_UUID), bytearray(b"OK"))
        return connection

    connection = asyncio.run(scenario())

    assert listener.events == [
        ("state", True, GATT_SUCCESS),
        (
            "discovered",
            GATT_SUCCESS,
            (DiscoveredService(uuid=SERVICE_UUID, characteristics=(CHAR_WRITE_UUID, CHAR_NOTIFY_UUID)),),
        ),
        ("notify", CHAR_NOTIFY_UUID, True),
        ("written", CHAR_WRITE_UUID, b"\r\n", GATT_SUCCESS),
        ("changed", CHAR_NOTIFY_UUID, b"OK"),
    ]
    assert connection._client.written == [(CHAR_WRITE_UUID, b"\r\n", True)]


def test_connect_failure_is_reported_once(fake_client) -> None:
    fake_client.connect_error = BleakError("device not found")
    listener = RecordingListener()

    async def scenario():
        connection = _open(listener)
        await _settle(connection)
        connection.disconnect()
        await _settle(connection)

    asyncio.run(scenario())

    assert listener.events == [("state", False, GATT_FAILURE)]


def test_requests_are_refused_before_the_link_is_up(fake_client) -> None:
    listener = RecordingListener()

    async def scenario():
        connection = _open(listener)
        refused = (connection.write(CHAR_WRITE_UUID, b"\r\n"), connection.discover_attributes())
        await _settle(connection)
        return refused

    assert asyncio.run(scenario()) == (False, False)
    assert listener.events == [("state", True, GATT_SUCCESS)]


def test_disconnect_is_reported_once(fake_client) -> None:
    listener = RecordingListener()

    async def scenario():
        connection = _open(listener)
        await _settle(connection)
        connection.disconnect()
        await _settle(connection)
        # A second teardown finds the link already down.
        connection.disconnect()
        await _settle(connection)

    asyncio.run(scenario())

    assert listener.events == [("state", True, GATT_SUCCESS), ("state", False, GATT_SUCCESS)]


def test_closed_connection_stays_silent(fake_client) -> None:
    listener = RecordingListener()

    async def scenario():
        connection = _open(listener)
        await _settle(connection)
        connection.set_notify(CHAR_NOTIFY_UUID, True)
        await _settle(connection)
        client = connection._client
        connection.close()
        await _settle(connection)
        client.notify_callback(SimpleNamespace(uuid=CHAR_NOTIFY_UUID), bytearray(b"late"))
        return client

    client = asyncio.run(scenario())

    assert listener.events == [("state", True, GATT_SUCCESS), ("notify", CHAR_NOTIFY_UUID, True)]
    assert not client.is_connected
