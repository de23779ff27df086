"""Typer CLI entrypoint."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace

import typer

from rebelride.core.errors import RebelRideError
from rebelride.core.model import CommandIntent, ProgressEvent, SessionOutcome, Settings
from rebelride.core.service import ScooterService
from rebelride.core.settings import load_settings, save_settings, settings_path

app = typer.Typer(help="Wake, lock and unlock electric scooters over Bluetooth LE")
config_app = typer.Typer(help="Show or change saved settings")
app.add_typer(config_app, name="config")

_MISSING_ADDRESS = "Insert MAC address (--address) or save one with 'rebelride config set'."
_MISSING_PASSWORD = "Insert password (--password) or save one with 'rebelride config set'."


def _build_service(settings: Settings) -> ScooterService:
    return ScooterService(settings=settings)


def _is_verbose(ctx: typer.Context) -> bool:
    return bool(ctx.obj and ctx.obj.get("verbose"))


def _echo_event(event: ProgressEvent, *, verbose: bool) -> None:
    if event.level < logging.INFO and not verbose:
        return
    typer.echo(event.message, err=event.level >= logging.ERROR)


async def _perform(
    service: ScooterService,
    address: str,
    secret: str,
    intent: CommandIntent,
) -> SessionOutcome | None:
    try:
        return await service.run_operation(address, secret, intent)
    finally:
        await service.aclose()


def _operate(
    ctx: typer.Context,
    intent: CommandIntent,
    address: str | None,
    password: str | None,
    save: bool,
) -> None:
    try:
        settings = load_settings()
        target = (address or settings.address or "").strip()
        secret = (password if password is not None else settings.password or "").strip()
        if not target:
            typer.echo(f"Error: {_MISSING_ADDRESS}", err=True)
            raise typer.Exit(code=1)
        if intent.requires_secret and not secret:
            typer.echo(f"Error: {_MISSING_PASSWORD}", err=True)
            raise typer.Exit(code=1)
        if save:
            save_settings(replace(settings, address=target, password=secret or settings.password))

        service = _build_service(settings)
        verbose = _is_verbose(ctx)
        service.progress.subscribe(lambda event: _echo_event(event, verbose=verbose))
        outcome = asyncio.run(_perform(service, target, secret, intent))
    except RebelRideError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None

    if outcome is None or not outcome.succeeded:
        raise typer.Exit(code=1)


@app.callback()
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug output"),
) -> None:
    ctx.obj = {"verbose": verbose}
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")


@app.command("scan")
def scan(
    timeout: float | None = typer.Option(None, "--timeout", help="Scan duration in seconds"),
) -> None:
    """List nearby Bluetooth LE devices."""
    try:
        service = _build_service(load_settings())
        devices = asyncio.run(service.scan(timeout))
    except RebelRideError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None

    if not devices:
        typer.echo("No Bluetooth devices found")
        return
    for device in devices:
        rssi = f" rssi={device.rssi}" if device.rssi is not None else ""
        typer.echo(f"{device.address} {device.name}{rssi}")


@app.command("wake")
def wake(
    ctx: typer.Context,
    address: str | None = typer.Option(None, "--address", "-a", help="Scooter MAC address"),
    save: bool = typer.Option(False, "--save", help="Remember the address"),
) -> None:
    """Wake the scooter up."""
    _operate(ctx, CommandIntent.WAKE_UP, address, None, save)


@app.command("lock")
def lock(
    ctx: typer.Context,
    address: str | None = typer.Option(None, "--address", "-a", help="Scooter MAC address"),
    password: str | None = typer.Option(None, "--password", "-p", help="Scooter password"),
    save: bool = typer.Option(False, "--save", help="Remember the address and password"),
) -> None:
    """Lock the scooter."""
    _operate(ctx, CommandIntent.LOCK, address, password, save)


@app.command("unlock")
def unlock(
    ctx: typer.Context,
    address: str | None = typer.Option(None, "--address", "-a", help="Scooter MAC address"),
    password: str | None = typer.Option(None, "--password", "-p", help="Scooter password"),
    save: bool = typer.Option(False, "--save", help="Remember the address and password"),
) -> None:
    """Unlock the scooter."""
    _operate(ctx, CommandIntent.UNLOCK, address, password, save)


@config_app.command("show")
def config_show() -> None:
    """Print the saved settings."""
    try:
        settings = load_settings()
    except RebelRideError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None

    typer.echo(f"path: {settings_path()}")
    typer.echo(f"address: {settings.address or '<unset>'}")
    typer.echo(f"password: {'****' if settings.password else '<unset>'}")
    typer.echo(f"connect_timeout_s: {settings.connect_timeout_s:g}")
    typer.echo(f"reply_timeout_s: {settings.reply_timeout_s:g}")
    typer.echo(f"scan_timeout_s: {settings.scan_timeout_s:g}")


@config_app.command("set")
def config_set(
    address: str | None = typer.Option(None, "--address", "-a", help="Scooter MAC address"),
    password: str | None = typer.Option(None, "--password", "-p", help="Scooter password"),
    connect_timeout: float | None = typer.Option(None, "--connect-timeout", help="Seconds"),
    reply_timeout: float | None = typer.Option(None, "--reply-timeout", help="Seconds"),
    scan_timeout: float | None = typer.Option(None, "--scan-timeout", help="Seconds"),
) -> None:
    """Save the address, password or timeouts."""
    try:
        settings = load_settings()
        changes: dict[str, object] = {}
        if address is not None:
            changes["address"] = address.strip().upper() or None
        if password is not None:
            changes["password"] = password.strip() or None
        if connect_timeout is not None:
            changes["connect_timeout_s"] = connect_timeout
        if reply_timeout is not None:
            changes["reply_timeout_s"] = reply_timeout
        if scan_timeout is not None:
            changes["scan_timeout_s"] = scan_timeout
        if not changes:
            typer.echo("Nothing to change")
            return
        path = save_settings(replace(settings, **changes))
    except RebelRideError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None
    typer.echo(f"Saved settings to {path}")


def run() -> None:
    app()


if __name__ == "__main__":
    run()
