from __future__ import annotations

from pathlib import Path

import pytest
from typer.testing import CliRunner

from rebelride import cli
from rebelride.core.model import CommandIntent, ScannedDevice, SessionOutcome, Settings
from rebelride.core.progress import ProgressLog
from rebelride.core.settings import load_settings, save_settings

runner = CliRunner()


class FakeService:
    outcome = SessionOutcome.REPLIED
    calls: list[tuple[str, str, CommandIntent]] = []

    def __init__(self, *, settings: Settings | None = None) -> None:
        self.settings = settings or Settings()
        self.progress = ProgressLog()
        self.closed = False

    async def run_operation(self, address: str, secret: str, intent: CommandIntent):
        FakeService.calls.append((address, secret, intent))
        self.progress.append(f"Performing {intent.label} operation on {address}...")
        if self.outcome.succeeded:
            self.progress.append("Notification received: OK")
        else:
            self.progress.error("Service not found! UUID: 00002c00-0000-1000-8000-00805f9b34fb")
        return self.outcome

    async def scan(self, timeout_s: float | None = None):
        return [
            ScannedDevice(address="AA:BB:CC:DD:EE:FF", name="Scooter", rssi=-40),
            ScannedDevice(address="11:22:33:44:55:66", name="Unknown Device", rssi=None),
        ]

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture(autouse=True)
def _isolated(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "cfg"))
    monkeypatch.setattr(cli, "ScooterService", FakeService)
    FakeService.calls = []
    FakeService.outcome = SessionOutcome.REPLIED


def test_unlock_command() -> None:
    result = runner.invoke(cli.app, ["unlock", "--address", "AA:BB:CC:DD:EE:FF", "--password", "1234"])
    assert result.exit_code == 0
    assert "Notification received: OK" in result.stdout
    assert FakeService.calls == [("AA:BB:CC:DD:EE:FF", "1234", CommandIntent.UNLOCK)]


def test_lock_uses_saved_settings() -> None:
    save_settings(Settings(address="AA:BB:CC:DD:EE:FF", password="4321"))
    result = runner.invoke(cli.app, ["lock"])
    assert result.exit_code == 0
    assert FakeService.calls == [("AA:BB:CC:DD:EE:FF", "4321", CommandIntent.LOCK)]


def test_lock_requires_password() -> None:
    result = runner.invoke(cli.app, ["lock", "--address", "AA:BB:CC:DD:EE:FF"])
    assert result.exit_code == 1
    assert "Error: Insert password" in result.stderr
    assert FakeService.calls == []


def test_wake_requires_address() -> None:
    result = runner.invoke(cli.app, ["wake"])
    assert result.exit_code == 1
    assert "Error: Insert MAC address" in result.stderr


def test_wake_with_save_remembers_address() -> None:
    result = runner.invoke(cli.app, ["wake", "--address", "aa:bb:cc:dd:ee:ff", "--save"])
    assert result.exit_code == 0
    assert load_settings().address == "AA:BB:CC:DD:EE:FF"
    assert FakeService.calls == [("aa:bb:cc:dd:ee:ff", "", CommandIntent.WAKE_UP)]


def test_failed_outcome_exits_nonzero() -> None:
    FakeService.outcome = SessionOutcome.FAILED
    result = runner.invoke(cli.app, ["unlock", "-a", "AA:BB:CC:DD:EE:FF", "-p", "1234"])
    assert result.exit_code == 1
    assert "Service not found!" in result.stderr
    assert "Traceback" not in result.stdout


def test_invalid_settings_file_is_clean_error(tmp_path: Path) -> None:
    path = tmp_path / "cfg" / "rebelride" / "settings.yaml"
    path.parent.mkdir(parents=True)
    path.write_text("address: nope\n", encoding="utf-8")

    result = runner.invoke(cli.app, ["unlock", "-p", "1234"])
    assert result.exit_code == 1
    assert "Error: Schema validation failed" in result.stderr
    assert "Traceback" not in result.stderr


def test_scan_command() -> None:
    result = runner.invoke(cli.app, ["scan", "--timeout", "1"])
    assert result.exit_code == 0
    assert "AA:BB:CC:DD:EE:FF Scooter rssi=-40" in result.stdout
    assert "11:22:33:44:55:66 Unknown Device\n" in result.stdout


def test_config_set_and_show() -> None:
    result = runner.invoke(cli.app, ["config", "set", "--address", "aa:bb:cc:dd:ee:ff", "--password", "1234"])
    assert result.exit_code == 0
    assert "Saved settings to" in result.stdout

    result = runner.invoke(cli.app, ["config", "show"])
    assert result.exit_code == 0
    assert "address: AA:BB:CC:DD:EE:FF" in result.stdout
    assert "password: ****" in result.stdout
    assert "password: 1234" not in result.stdout


def test_config_set_rejects_bad_address() -> None:
    result = runner.invoke(cli.app, ["config", "set", "--address", "nope"])
    assert result.exit_code == 1
    assert result.stderr.startswith("Error: ")
