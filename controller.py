"""
MatchClock
Copyright (C) 2024 thiccaxe

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU Affero General Public License as published
by the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU Affero General Public License for more details.

You should have received a copy of the GNU Affero General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

import argparse
import asyncio
import dataclasses
import logging
import os

from rich.table import Table

from asset_replicator import AssetReplicator, AssetValidationError, AudioFile
from config import Config, ConfigurationLoadError, CONTROLLER_SCHEMA
from connection_manager import ConnectionManager, DeviceConnectError
from device_registry import DeviceRegistry
from logger import console, setup_logging
from mdns_registration import ClockBrowser, DiscoveredClock
from models import AudioType, BatchResult, SyncMode, TimerState
from sync_orchestrator import SyncOrchestrator, NoMasterDeviceError, DeviceNotConnectedError

# time for the first state broadcasts and settings replies to arrive
SETTLE_SECONDS = 1.5


def print_batch(title: str, batch: BatchResult):
    table = Table(title=title)
    table.add_column("Device")
    table.add_column("Result")
    table.add_column("Message")
    for result in batch.results:
        table.add_row(result.device_name, "[green]ok[/]" if result.success else "[red]failed[/]", result.message)
    console.print(table)
    console.print(batch.summary())


def print_state(device_name: str, state: TimerState):
    status = "running" if state.is_running else "paused" if state.is_paused else "idle"
    console.print(f"{device_name}: {state.phase.label} {state.format_time()} ({status})")


class Controller:
    """Connects to every registered device for the duration of one command."""

    def __init__(self, config: dict):
        self._config = config
        self.registry = DeviceRegistry(config["devices_file"])
        self.connections = ConnectionManager(config)
        self.orchestrator = SyncOrchestrator(config, self.connections)
        self.replicator = AssetReplicator(self.orchestrator, 2 * float(config["request_timeout"]))

    async def __aenter__(self):
        await self.registry.load()
        for device in self.registry.devices():
            try:
                await self.connections.connect(device)
            except DeviceConnectError as e:
                console.print(f"[red]{e}[/]")
        await asyncio.sleep(SETTLE_SECONDS)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.orchestrator.close()
        await self.connections.close_all()


async def show_devices(config: dict):
    registry = DeviceRegistry(config["devices_file"])
    table = Table(title="Devices")
    table.add_column("Id")
    table.add_column("Name")
    for device in await registry.load():
        table.add_row(device.id, device.name)
    console.print(table)


async def add_device(config: dict, address: str, port: int, name):
    registry = DeviceRegistry(config["devices_file"])
    await registry.load()
    device = await registry.add_device(address, port, name)
    console.print(f"Added {device.name} ({device.id})")


async def remove_device(config: dict, device_id: str):
    registry = DeviceRegistry(config["devices_file"])
    await registry.load()
    if await registry.remove_device(device_id):
        console.print(f"Removed {device_id}")
    else:
        console.print(f"[yellow]No device {device_id}[/]")


async def discover(config: dict, seconds: float):
    registry = DeviceRegistry(config["devices_file"])
    await registry.load()
    found: list[DiscoveredClock] = []

    console.print(f"Browsing for {seconds:g}s ...")
    async with ClockBrowser(found.append):
        await asyncio.sleep(seconds)

    for clock in found:
        device = await registry.add_discovered(clock.address, clock.port, clock.name)
        state = "added" if device is not None else "already known"
        console.print(f"{clock.name} at {clock.address}:{clock.port} ({state})")
    if not found:
        console.print("No clocks found")


async def show_status(controller: Controller):
    orchestrator = controller.orchestrator
    await orchestrator.request_session_status()
    await asyncio.sleep(SETTLE_SECONDS)

    table = Table(title="Match Clock")
    table.add_column("Device")
    table.add_column("Connected")
    table.add_column("Master")
    table.add_column("Session")
    for device in controller.registry.devices():
        session = orchestrator.session_status.get(device.id)
        if session is None or not session.is_active:
            session_text = "none"
        else:
            session_text = "protected" if session.is_protected else "open"
        table.add_row(
            device.name,
            "yes" if controller.connections.is_connected(device.id) else "no",
            "*" if device.id == orchestrator.master_device_id else "",
            session_text,
        )
    console.print(table)

    if orchestrator.last_known_state is not None:
        print_state("Master", orchestrator.last_known_state)
    if orchestrator.last_known_settings is not None:
        settings = orchestrator.last_known_settings
        console.print(f"Warm up {settings.warmup_minutes}m, match {settings.match_minutes}m, "
                      f"break {settings.break_minutes}m")


async def update_settings(controller: Controller, args):
    orchestrator = controller.orchestrator
    current = orchestrator.last_known_settings
    if current is None:
        await orchestrator.refresh_master_settings()
        await asyncio.sleep(SETTLE_SECONDS)
        current = orchestrator.last_known_settings
    if current is None:
        console.print("[red]Master did not report its settings, try again[/]")
        return

    changes = {
        key: value for key, value in (
            ("warmup_minutes", args.warmup),
            ("match_minutes", args.match),
            ("break_minutes", args.break_minutes),
        ) if value is not None
    }
    if changes:
        if not await orchestrator.update_master_settings(dataclasses.replace(current, **changes)):
            console.print("[red]Could not send settings to the master[/]")
            return
        await asyncio.sleep(SETTLE_SECONDS)
    console.print(orchestrator.last_known_settings)


async def sync_settings(controller: Controller):
    batch = await controller.orchestrator.sync_settings_from_master()
    if batch is None:
        await asyncio.sleep(SETTLE_SECONDS)
        batch = await controller.orchestrator.sync_settings_from_master()
    if batch is None:
        console.print("[yellow]Master settings not available yet, try again[/]")
        return
    print_batch("Sync from master", batch)


async def session_command(controller: Controller, args):
    orchestrator = controller.orchestrator
    if args.session_command == "create":
        print_batch("Create session", await orchestrator.create_session(args.password, args.owner))
    elif args.session_command == "auth":
        if args.device is not None:
            status = await orchestrator.authenticate(args.device, args.password)
            console.print(f"Authorized: {status.is_authorized}")
        else:
            print_batch("Authenticate", await orchestrator.authenticate_all(args.password))
    elif args.session_command == "end":
        print_batch("End session", await orchestrator.end_session())
    elif args.session_command == "status":
        await orchestrator.request_session_status()
        await asyncio.sleep(SETTLE_SECONDS)
        for device_id, status in orchestrator.session_status.items():
            device = controller.registry.get(device_id)
            console.print(f"{device.name if device else device_id}: {status}")


async def watch(controller: Controller):
    controller.orchestrator.subscribe_state(lambda state: print_state("Master", state))
    console.print("Ctrl^C to stop")
    while True:
        await asyncio.sleep(1)


async def run_connected(config: dict, args):
    async with Controller(config) as controller:
        orchestrator = controller.orchestrator
        try:
            if args.command == "status":
                await show_status(controller)
            elif args.command in ("start", "pause", "resume", "restart"):
                action = getattr(orchestrator, f"{args.command}_all")
                print_batch(args.command.capitalize(), await action())
            elif args.command == "emergency":
                print_batch("Emergency time", await orchestrator.set_emergency_time_all(args.minutes, args.seconds))
            elif args.command == "mode":
                print_batch("Sync mode", await orchestrator.set_sync_mode_all(SyncMode(args.mode)))
            elif args.command == "master":
                await orchestrator.set_master(args.device)
                console.print(f"Master set to {args.device}")
            elif args.command == "settings":
                await update_settings(controller, args)
            elif args.command == "sync":
                await sync_settings(controller)
            elif args.command == "upload":
                audio = await AudioFile.from_path(args.file)
                print_batch("Upload", await controller.replicator.upload_to_all(audio, AudioType(args.type)))
            elif args.command == "delete-audio":
                print_batch("Delete audio", await controller.replicator.delete_from_all(AudioType(args.type)))
            elif args.command == "session":
                await session_command(controller, args)
            elif args.command == "watch":
                await watch(controller)
        except (NoMasterDeviceError, DeviceNotConnectedError) as e:
            console.print(f"[red]{e}[/]")
        except AssetValidationError as e:
            console.print(f"[red]Rejected: {e}[/]")


async def main(args):
    config = Config(args.config, CONTROLLER_SCHEMA)
    try:
        await config.initialize()
        controller_config = config["controller"]

        if args.command == "devices":
            await show_devices(controller_config)
        elif args.command == "add":
            await add_device(controller_config, args.address, args.port, args.name)
        elif args.command == "remove":
            await remove_device(controller_config, args.device)
        elif args.command == "discover":
            await discover(controller_config, args.seconds)
        else:
            await run_connected(controller_config, args)
    except ConfigurationLoadError:
        logging.error("Could not load configuration. Exiting")
    finally:
        await config.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Drive a set of match clocks as one")
    parser.add_argument("--config", default=os.environ.get("MATCH_CLOCK_CONTROLLER_CONFIG", "./controller.toml"),
                        help="Controller configuration file (default: ./controller.toml)")

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("devices", help="List registered devices")

    add_parser = subparsers.add_parser("add", help="Register a device")
    add_parser.add_argument("address", help="Device IP address or hostname")
    add_parser.add_argument("--port", type=int, default=8080, help="Device port (default: 8080)")
    add_parser.add_argument("--name", help="Display name")

    remove_parser = subparsers.add_parser("remove", help="Forget a device")
    remove_parser.add_argument("device", help="Device id (address:port)")

    discover_parser = subparsers.add_parser("discover", help="Find clocks on the network and register them")
    discover_parser.add_argument("--seconds", type=float, default=5.0, help="How long to browse (default: 5)")

    subparsers.add_parser("status", help="Show devices, master and timer state")
    for command in ("start", "pause", "resume", "restart"):
        subparsers.add_parser(command, help=f"{command.capitalize()} the timer on every device")

    emergency_parser = subparsers.add_parser("emergency", help="Put every device in a match with the given time left")
    emergency_parser.add_argument("minutes", type=int)
    emergency_parser.add_argument("seconds", type=int)

    mode_parser = subparsers.add_parser("mode", help="Set the sync mode on every device")
    mode_parser.add_argument("mode", choices=[mode.value for mode in SyncMode])

    master_parser = subparsers.add_parser("master", help="Choose the master device")
    master_parser.add_argument("device", help="Device id (address:port)")

    settings_parser = subparsers.add_parser("settings", help="Show or change the master's settings")
    settings_parser.add_argument("--warmup", type=int, help="Warm up minutes")
    settings_parser.add_argument("--match", type=int, help="Match minutes")
    settings_parser.add_argument("--break", dest="break_minutes", type=int, help="Break minutes")

    subparsers.add_parser("sync", help="Copy the master's settings and state to every other device")

    upload_parser = subparsers.add_parser("upload", help="Upload a cue sound to every device")
    upload_parser.add_argument("type", choices=[audio_type.value for audio_type in AudioType])
    upload_parser.add_argument("file", help="MP3 file, at most 20 seconds")

    delete_parser = subparsers.add_parser("delete-audio", help="Remove a cue sound from every device")
    delete_parser.add_argument("type", choices=[audio_type.value for audio_type in AudioType])

    session_parser = subparsers.add_parser("session", help="Manage device sessions")
    session_subparsers = session_parser.add_subparsers(dest="session_command", required=True)
    create_parser = session_subparsers.add_parser("create", help="Start a session on every device")
    create_parser.add_argument("--password", help="Leave out for an open session")
    create_parser.add_argument("--owner")
    auth_parser = session_subparsers.add_parser("auth", help="Authorize this controller")
    auth_parser.add_argument("password")
    auth_parser.add_argument("--device", help="Only this device (address:port)")
    session_subparsers.add_parser("end", help="End the session on every device")
    session_subparsers.add_parser("status", help="Show the session on every device")

    subparsers.add_parser("watch", help="Follow the master's timer")

    return parser


def run():
    args = build_parser().parse_args()
    setup_logging()
    try:
        asyncio.run(main(args))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
