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

import logging
from pathlib import Path
from typing import Optional

import aiofiles
import tomlkit
import tomlkit.exceptions
from voluptuous import Schema, Required, Optional as OptionalKey, All, Range, Length, Invalid, REMOVE_EXTRA

from models import DEFAULT_PORT, Device

DEVICE_ENTRY_SCHEMA = Schema({
    Required('address'): All(str, Length(min=1)),
    OptionalKey('port', default=DEFAULT_PORT): All(int, Range(min=1, max=65535)),
    OptionalKey('name', default=None): object,
}, extra=REMOVE_EXTRA)


class DeviceRegistry:
    """
    Devices this controller knows about, stored as `[[devices]]` tables.
    Connection state lives in the connection manager and is never written here.
    """

    def __init__(self, path: Path):
        self._path = Path(path)
        self._devices: dict[str, Device] = dict()

    async def load(self) -> list[Device]:
        self._devices.clear()
        try:
            async with aiofiles.open(self._path, 'r') as registry_file:
                document = tomlkit.parse(await registry_file.read())
        except FileNotFoundError:
            logging.debug(f"No device registry at {self._path} yet")
            return []
        except tomlkit.exceptions.ParseError as e:
            logging.exception(e)
            logging.warning(f"Device registry {self._path} is invalid, starting empty")
            return []

        for entry in document.unwrap().get("devices", []):
            try:
                entry = DEVICE_ENTRY_SCHEMA(entry)
            except Invalid as e:
                logging.warning(f"Skipping device entry {entry}: {e}")
                continue
            device = self._make_device(entry['address'], entry['port'], entry['name'])
            self._devices[device.id] = device
        return self.devices()

    async def _save(self):
        self._path.parent.mkdir(parents=True, exist_ok=True)
        document = tomlkit.document()
        entries = tomlkit.aot()
        for device in self._devices.values():
            entries.append(tomlkit.item({"name": device.name, "address": device.address, "port": device.port}))
        document["devices"] = entries
        async with aiofiles.open(self._path, 'w') as registry_file:
            await registry_file.write(tomlkit.dumps(document))

    @staticmethod
    def _make_device(address: str, port: int, name: Optional[str]) -> Device:
        return Device(Device.make_id(address, port), name or f"TV at {address}", address, port)

    def devices(self) -> list[Device]:
        return list(self._devices.values())

    def get(self, device_id: str) -> Optional[Device]:
        return self._devices.get(device_id)

    async def add_device(self, address: str, port: int = DEFAULT_PORT, name: Optional[str] = None) -> Device:
        device = self._make_device(address, port, name)
        existing = self._devices.get(device.id)
        if existing is not None:
            if name:
                existing.name = name
                await self._save()
            return existing
        self._devices[device.id] = device
        await self._save()
        logging.info(f"Added device {device.name} ({device.id})")
        return device

    async def remove_device(self, device_id: str) -> bool:
        if self._devices.pop(device_id, None) is None:
            return False
        await self._save()
        logging.info(f"Removed device {device_id}")
        return True

    async def add_discovered(self, address: str, port: int, name: Optional[str] = None) -> Optional[Device]:
        """Adds a device found through service discovery. Returns None when it was already known."""
        if Device.make_id(address, port) in self._devices:
            return None
        return await self.add_device(address, port, name)
