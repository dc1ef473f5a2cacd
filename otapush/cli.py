"""
otapush - command-line interface
================================

Commands
--------
- **devices**: list the devices found in the devices directory
- **checksum**: print the size and CRC a firmware file will be announced with
- **upload**: build, then stream the firmware to a device

Usage Examples
--------------
Pick a device from a menu and upload ``./firmware.bin``:
    $ otapush upload

Upload to a known device without rebuilding:
    $ otapush upload -d esp32-garage --no-build

Allow two chunks ahead of the device:
    $ otapush upload -d esp32-garage --window 2
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path

import click
from loguru import logger

from otapush import __version__
from otapush.config.loader import load_config
from otapush.config.schema import Config
from otapush.errors import OTAError
from otapush.ota.bootstrap import make_transport, run_build, upload_firmware
from otapush.ota.devices import DeviceDescriptor, find_device, load_devices
from otapush.ota.protocol import StartAnnouncement
from otapush.ota.source import FirmwareImage

LOG_FORMAT = "<green>{time:HH:mm:ss}</green> | <level>{level: <7}</level> | {message}"


def _configure_logging(verbose: bool) -> None:
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "INFO", format=LOG_FORMAT)


def _select_device(devices: list[DeviceDescriptor]) -> DeviceDescriptor:
    """Numbered menu on the terminal."""
    for i, device in enumerate(devices, start=1):
        click.echo(f"  {i}) {device.label} [{device.device_id}]")
    choice = click.prompt(
        "Select a device", type=click.IntRange(1, len(devices)), default=1,
    )
    return devices[choice - 1]


def _apply_overrides(
    config: Config,
    *,
    firmware: Path | None,
    devices_dir: Path | None,
    window: int | None,
    chunk_size: int | None,
) -> None:
    if firmware is not None:
        config.firmware_path = str(firmware)
    if devices_dir is not None:
        config.devices_dir = str(devices_dir)
    if window is not None:
        config.uploader.window = window
    if chunk_size is not None:
        config.uploader.chunk_size = chunk_size


config_option = click.option(
    "--config", "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="JSON config file (default: ./otapush.json).",
)
devices_dir_option = click.option(
    "--devices-dir",
    type=click.Path(file_okay=False, path_type=Path),
    help="Directory of device descriptor files.",
)


@click.group()
@click.version_option(version=__version__, prog_name="otapush")
def main() -> None:
    """Stream firmware images to devices over MQTT."""


@main.command("devices")
@config_option
@devices_dir_option
def devices_cmd(config_path: Path | None, devices_dir: Path | None) -> None:
    """List known devices."""
    config = load_config(config_path)
    root = devices_dir or Path(config.devices_dir)
    devices = load_devices(root)
    if not devices:
        raise click.ClickException(f"no devices found in {root}")
    for device in devices:
        click.echo(f"{device.device_id}\t{device.label}")


@main.command("checksum")
@click.argument("firmware", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def checksum_cmd(firmware: Path) -> None:
    """Show the start announcement FIRMWARE would be sent with."""
    try:
        image = FirmwareImage.load(firmware)
    except OTAError as exc:
        raise click.ClickException(str(exc)) from exc
    announcement = StartAnnouncement(size=image.size, target_crc=image.checksum)
    click.echo(json.dumps(announcement.to_dict()))


@main.command("upload")
@click.option("-d", "--device", "device_id", help="Device id; prompts when omitted.")
@click.option(
    "-f", "--firmware",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Firmware image (default: ./firmware.bin).",
)
@click.option("--window", type=click.IntRange(min=1), help="Chunks allowed ahead of ready signals.")
@click.option("--chunk-size", type=click.IntRange(min=1), help="Bytes per data message.")
@click.option("--no-build", is_flag=True, help="Skip the build command.")
@devices_dir_option
@config_option
@click.option("-v", "--verbose", is_flag=True, help="Log every chunk.")
def upload_cmd(
    device_id: str | None,
    firmware: Path | None,
    window: int | None,
    chunk_size: int | None,
    no_build: bool,
    devices_dir: Path | None,
    config_path: Path | None,
    verbose: bool,
) -> None:
    """Build and upload firmware to a device."""
    _configure_logging(verbose)
    config = load_config(config_path)
    _apply_overrides(
        config, firmware=firmware, devices_dir=devices_dir,
        window=window, chunk_size=chunk_size,
    )

    try:
        devices = load_devices(config.devices_dir)
        if device_id:
            device = find_device(devices, device_id)
        elif devices:
            device = _select_device(devices)
        else:
            raise click.ClickException(f"no devices found in {config.devices_dir}")
        click.echo(f"Target: {device.label} [{device.device_id}]")

        transport = make_transport(config)
        if not no_build:
            run_build(config.build_command)
        image = FirmwareImage.load(config.firmware_path)
        status = asyncio.run(upload_firmware(config, device, image, transport))
    except OTAError as exc:
        raise click.ClickException(str(exc)) from exc
    except KeyboardInterrupt:
        click.echo("Aborted.", err=True)
        sys.exit(130)

    click.echo(
        f"Sent {status['bytes_sent']} bytes in {status['sent_count']} chunks "
        f"({status['state']})."
    )


if __name__ == "__main__":
    main()
